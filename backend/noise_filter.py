from __future__ import annotations

from collections.abc import Iterable, Sequence

from models import PageData


def is_noise(line: str, fragments: Iterable[str]) -> bool:
    upper = line.upper()
    return any(fragment.upper() in upper for fragment in fragments)


def filter_noise(lines: Sequence[str], fragments: Sequence[str]) -> tuple[list[str], str]:
    """Drop legal boilerplate lines; return the kept lines and their joined text."""
    kept = [line for line in lines if not is_noise(line, fragments)]
    return kept, " ".join(kept)


def clean_page_data(page_data: PageData, fragments: Sequence[str]) -> PageData:
    lines, full_text = filter_noise(page_data.all_lines, fragments)
    return PageData(page2_items=list(page_data.page2_items), all_lines=lines, full_text=full_text)
