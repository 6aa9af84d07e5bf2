from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = ROOT / "backend"
for candidate in (ROOT, BACKEND_ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.append(path_str)

from carrier_config import COLOR_WORDS  # noqa: E402
from models import ProdItem  # noqa: E402
from product_table import (  # noqa: E402
    compute_totals,
    extract_products,
    extract_rows,
    locate_table_block,
    normalize_currency,
    split_variant,
)


def test_row_with_comma_variant() -> None:
    rows = extract_rows("1 Body Manga Longa Azul, M 2 29,90", COLOR_WORDS)
    assert rows == [ProdItem(n="1", desc="Body Manga Longa", var="Azul, M", qtd="2", val="R$ 29,90")]


def test_row_with_trailing_colour_word() -> None:
    desc, variant = split_variant("Vestido Midi Preto Liso", COLOR_WORDS)
    assert desc == "Vestido Midi"
    assert variant == "Preto Liso"


def test_row_without_variant() -> None:
    assert split_variant("Short Infantil Menina Listrado", COLOR_WORDS) == (
        "Short Infantil Menina Listrado",
        "-",
    )


def test_multiple_rows_and_currency_prefix() -> None:
    block = "1 Body Azul, M 2 29,90 2 Short Listrado 1 R$ 45,00 3 Kit Meias 12 1.299,90"
    rows = extract_rows(block, COLOR_WORDS)
    assert [row.n for row in rows] == ["1", "2", "3"]
    assert rows[1].val == "R$ 45,00"
    assert rows[2].qtd == "12"
    assert rows[2].val == "R$ 1.299,90"


def test_normalize_currency() -> None:
    assert normalize_currency("29,90") == "R$ 29,90"
    assert normalize_currency("29.9") == "R$ 29,90"
    assert normalize_currency("1299,90") == "R$ 1.299,90"
    assert normalize_currency("1.299,90") == "R$ 1.299,90"
    assert normalize_currency("") == "R$ 0,00"


def test_totals_from_totais_line() -> None:
    assert compute_totals("foo Totais 3 104,80 bar") == (3, "R$ 104,80")


def test_item_count_line_without_value_keeps_zero_total() -> None:
    text = "Valor R$ 59,80 Total (4 itens)"
    assert compute_totals(text) == (4, "R$ 0,00")


def test_item_count_line_with_value() -> None:
    assert compute_totals("Total (2 itens) R$ 1.234,50") == (2, "R$ 1.234,50")


def test_first_currency_used_without_totals_line() -> None:
    assert compute_totals("Valor R$ 59,80 sem totais") == (1, "R$ 59,80")


def test_totals_defaults() -> None:
    assert compute_totals("nada aqui") == (1, "R$ 0,00")


def test_block_is_searched_after_declaration_marker() -> None:
    text = (
        "VALOR DO FRETE grátis DECLARAÇÃO DE CONTEÚDO "
        "Nº CONTEÚDO QTD VALOR 1 Caneca Branca 1 19,90 Peso Total (kg) 0,2"
    )
    block = locate_table_block(text)
    assert "Caneca" in block
    assert "FRETE" not in block
    assert "Peso" not in block


def test_unmatched_block_falls_back_to_single_row() -> None:
    text = "DECLARAÇÃO DE CONTEÚDO Conteúdo " + "texto livre sem numeros " * 10 + "Total (2 itens)"
    prods, total_qtd, total_val = extract_products(text, COLOR_WORDS)
    assert len(prods) == 1
    assert len(prods[0].desc) <= 150
    assert prods[0].desc.startswith("texto livre")
    assert prods[0].qtd == 2
    assert (total_qtd, total_val) == (2, "R$ 0,00")


def test_no_block_yields_placeholder_row() -> None:
    prods, total_qtd, total_val = extract_products("", COLOR_WORDS)
    assert prods == (
        ProdItem(n="1", desc="Produtos conforme declaração", var="-", qtd=1, val="R$ 0,00"),
    )
    assert (total_qtd, total_val) == (1, "R$ 0,00")
