from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = ROOT / "backend"
for candidate in (ROOT, BACKEND_ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.append(path_str)

from carrier_config import NOISE_FRAGMENTS  # noqa: E402
from models import PageData, TextItem  # noqa: E402
from noise_filter import clean_page_data, filter_noise  # noqa: E402


def test_filter_noise_drops_disclaimer_lines_case_insensitively() -> None:
    lines = [
        "SEDEX",
        "Importante: informamos que a Shopee não guarda posse",
        "Maria Silva",
        "Acesse correios.com.br para rastrear",
    ]
    kept, full_text = filter_noise(lines, NOISE_FRAGMENTS)
    assert kept == ["SEDEX", "Maria Silva"]
    assert full_text == "SEDEX Maria Silva"


def test_filter_noise_preserves_order_and_is_pure() -> None:
    lines = ["b", "a", "c"]
    kept, full_text = filter_noise(lines, NOISE_FRAGMENTS)
    assert kept == ["b", "a", "c"]
    assert full_text == "b a c"
    assert lines == ["b", "a", "c"]


def test_clean_page_data_keeps_geometry_items() -> None:
    page = PageData(
        page2_items=[TextItem("NOME: Maria", 320.0, 500.0)],
        all_lines=["Maria", "CONSTITUI CRIME declarar"],
        full_text="Maria CONSTITUI CRIME declarar",
    )
    cleaned = clean_page_data(page, NOISE_FRAGMENTS)
    assert cleaned.all_lines == ["Maria"]
    assert cleaned.full_text == "Maria"
    assert cleaned.page2_items == page.page2_items
    assert page.all_lines == ["Maria", "CONSTITUI CRIME declarar"]
