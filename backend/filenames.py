from __future__ import annotations

import re
import unicodedata
from collections.abc import Iterable

from carrier_config import STOPWORDS
from models import OutputFormat

DEFAULT_NAME = "destinatario"
MAX_PRODUCT_TOKENS = 3


def slugify(text: str) -> str:
    decomposed = unicodedata.normalize("NFD", text or "")
    ascii_text = "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()
    cleaned = re.sub(r"[^a-z0-9\s]", "", ascii_text).strip()
    return re.sub(r"\s+", "_", cleaned)


def build_filename(
    recipient_name: str,
    product_desc: str,
    output_format: OutputFormat | str,
    stopwords: Iterable[str] = STOPWORDS,
) -> str:
    """Build ``<first-name>_<up to 3 product words>[_A4].pdf``.

    Never raises: garbage input degrades to ``destinatario_.pdf``.
    """
    name_parts = str(recipient_name or "").split()
    first_name = slugify(name_parts[0]) if name_parts else ""
    first_name = first_name or DEFAULT_NAME

    blocked = {word.lower() for word in stopwords}
    words = [word.lower().strip() for word in str(product_desc or "").split()]
    kept = [word for word in words if len(word) > 1 and word not in blocked][:MAX_PRODUCT_TOKENS]
    product_tokens = [slug for slug in (slugify(word) for word in kept) if slug]

    try:
        is_a4 = OutputFormat.parse(output_format) is OutputFormat.A4
    except ValueError:
        is_a4 = False
    suffix = "_A4" if is_a4 else ""
    return f"{first_name}_{'_'.join(product_tokens)}{suffix}.pdf"
