"""Itemised product rows from the declaration-of-content section."""

from __future__ import annotations

import re
from collections.abc import Sequence

from models import ProdItem

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

DECLARATION_RE = re.compile(r"DECLARA[ÇC][ÃA]O\s+DE\s+CONTE[ÚU]DO", re.IGNORECASE)
_HEADER = r"(?:VALOR|DESCRIÇÃO DO PRODUTO|Conteúdo)\b"
_TERMINATOR = r"(?:Peso Total\b|Assinatura\b|Total\s*\(|Declaro\b)"
TABLE_RE = re.compile(_HEADER + r"\s*(.+?)\s*" + _TERMINATOR, re.IGNORECASE | re.DOTALL)
TABLE_OPEN_RE = re.compile(_HEADER + r"\s*(.+)", re.IGNORECASE | re.DOTALL)
HEADER_WORDS_RE = re.compile(
    r"(?<!\w)(?:VARIAÇÃO|QTD|CÓDIGO\s*\(SKU\)|Nº|DESCRIÇÃO DO PRODUTO|VALOR|Conteúdo|Item)(?!\w)",
    re.IGNORECASE,
)
ROW_RE = re.compile(
    r"(?:^|\s)(\d+)\s+(.+?)\s+(\d+)\s+(?:R\$\s*)?([\d.,]+[.,]\d{2})(?=\s|$)"
)
VARIANT_COMMA_RE = re.compile(r"^(.*\S)\s+([^\s,]+\s*,\s*[^,]*\S)$")

TOTALS_RE = re.compile(r"Totais\s+(\d+)\s+(?:R\$\s*)?([\d.,]+[.,]\d{2})", re.IGNORECASE)
TOTAL_ITEMS_RE = re.compile(
    r"Total\s*\((\d+)\s*itens?\)(?:\s*(?:R\$\s*)?([\d.,]+[.,]\d{2}))?", re.IGNORECASE
)
CURRENCY_RE = re.compile(r"R\$\s*([\d.,]*\d)")

FALLBACK_DESC_LIMIT = 150
NO_TABLE_DESC = "Produtos conforme declaração"
DEFAULT_TOTAL_QTD = 1
ZERO_VALUE = "R$ 0,00"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def normalize_currency(raw: str) -> str:
    """Return ``raw`` as ``R$ X,XX`` (comma decimals, dot thousands)."""
    digits = re.sub(r"[^\d.,]", "", raw or "")
    if not re.search(r"\d", digits):
        return ZERO_VALUE
    last_sep = max(digits.rfind(","), digits.rfind("."))
    fraction_len = len(digits) - last_sep - 1
    if last_sep >= 0 and 1 <= fraction_len <= 2:
        whole = re.sub(r"\D", "", digits[:last_sep]) or "0"
        cents = digits[last_sep + 1 :].ljust(2, "0")
    else:
        whole = re.sub(r"\D", "", digits) or "0"
        cents = "00"
    grouped = f"{int(whole):,}".replace(",", ".")
    return f"R$ {grouped},{cents}"


def compute_totals(full_text: str) -> tuple[int, str]:
    total_qtd = DEFAULT_TOTAL_QTD
    total_val = ZERO_VALUE

    match = TOTALS_RE.search(full_text) or TOTAL_ITEMS_RE.search(full_text)
    if match:
        total_qtd = int(match.group(1))
        if match.group(2):
            total_val = normalize_currency(match.group(2))
        return total_qtd, total_val

    value_match = CURRENCY_RE.search(full_text)
    if value_match:
        total_val = normalize_currency(value_match.group(1))
    return total_qtd, total_val


def _color_re(color_words: Sequence[str]) -> re.Pattern[str] | None:
    words = [re.escape(word) for word in color_words if word]
    if not words:
        return None
    return re.compile(r"^(.*?)\s+((?:" + "|".join(words) + r").*?)$", re.IGNORECASE)


def split_variant(raw_desc: str, color_words: Sequence[str]) -> tuple[str, str]:
    desc = raw_desc.strip()
    match = VARIANT_COMMA_RE.match(desc)
    if match:
        return match.group(1).strip(), match.group(2).strip()
    color_re = _color_re(color_words)
    if color_re is not None:
        match = color_re.match(desc)
        if match and match.group(1).strip():
            return match.group(1).strip(), match.group(2).strip()
    return desc, "-"


def locate_table_block(full_text: str) -> str:
    """Return the raw product block of the declaration, or ``""`` when absent."""
    marker = DECLARATION_RE.search(full_text)
    scope = full_text[marker.end() :] if marker else full_text
    match = TABLE_RE.search(scope) or TABLE_OPEN_RE.search(scope)
    if not match:
        return ""
    return match.group(1)


def strip_header_words(block: str) -> str:
    return re.sub(r"\s+", " ", HEADER_WORDS_RE.sub(" ", block)).strip()


def extract_rows(block: str, color_words: Sequence[str]) -> list[ProdItem]:
    rows: list[ProdItem] = []
    for match in ROW_RE.finditer(block):
        desc, variant = split_variant(match.group(2), color_words)
        rows.append(
            ProdItem(
                n=match.group(1),
                desc=desc,
                var=variant,
                qtd=match.group(3),
                val=normalize_currency(match.group(4)),
            )
        )
    return rows


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def extract_products(
    full_text: str,
    color_words: Sequence[str],
) -> tuple[tuple[ProdItem, ...], int, str]:
    """Return ``(prods, total_qtd, total_val)``; ``prods`` is never empty."""
    total_qtd, total_val = compute_totals(full_text)

    block = strip_header_words(locate_table_block(full_text))
    if not block:
        fallback = ProdItem(n="1", desc=NO_TABLE_DESC, var="-", qtd=total_qtd, val=total_val)
        return (fallback,), total_qtd, total_val

    rows = extract_rows(block, color_words)
    if not rows:
        rows = [
            ProdItem(
                n="1",
                desc=block[:FALLBACK_DESC_LIMIT],
                var="-",
                qtd=total_qtd,
                val=total_val,
            )
        ]
    return tuple(rows), total_qtd, total_val
