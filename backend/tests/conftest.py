from __future__ import annotations

import os
import sys
import tempfile
from collections.abc import Callable, Sequence
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = ROOT / "backend"
for candidate in (ROOT, BACKEND_ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.append(path_str)

# Runtime state (logs, exports) must never land in the working tree during tests.
os.environ.setdefault("SHIPLABELS_ROOT", tempfile.mkdtemp(prefix="shiplabels-tests-"))
os.environ.setdefault("BACKEND_LOG_TO_STDOUT", "0")

import fitz  # noqa: E402
import pytest  # noqa: E402

from models import LabelData, ProdItem, Recipient, Sender  # noqa: E402

SENDER_X = 40
RECIPIENT_X = 320
LINE_STEP = 14

LABEL_PAGE = [
    "Contrato: 9912345678",
    "SEDEX",
    "AB123456789BR",
    "ID pedido: 240101ABCDEF12",
    "DESTINATÁRIO",
    "Maria Silva",
    "Rua das Flores, 123, Apto 4",
    "Jardim Paulista",
    "São Paulo",
    "SP",
    "01310-100",
    "REMETENTE",
    "Loja Exemplo",
]

SENDER_COLUMN = [
    "DECLARAÇÃO DE CONTEÚDO",
    "REMETENTE",
    "NOME: Loja Exemplo",
    "ENDEREÇO: Av. Brasil, 500,",
    "Centro",
    "MUNICÍPIO: Campinas",
    "UF: SP",
    "CEP: 13010000",
]

RECIPIENT_COLUMN = [
    "DESTINATÁRIO",
    "NOME: Maria Silva",
    "ENDEREÇO: Rua das Flores, 123, Apto 4",
    "MUNICÍPIO: São Paulo",
    "UF: SP",
    "CEP: 01310100",
]

TABLE_LINES = [
    "IDENTIFICAÇÃO DOS BENS",
    "Nº CONTEÚDO QTD VALOR",
    "1 Body Manga Longa Azul, M 2 29,90",
    "2 Short Infantil Menina Listrado 1 R$ 45,00",
    "Totais 3 104,80",
    "Peso Total (kg) 0,3",
    "IMPORTANTE: INFORMAMOS que a Shopee não guarda posse dos bens",
    "Assinatura do Remetente",
]


def build_pdf(pages: Sequence[Sequence[tuple[float, str]]], *, password: str | None = None) -> bytes:
    """Build a PDF whose pages hold ``(x, text)`` runs, one run per line."""
    doc = fitz.open()
    try:
        for runs in pages:
            page = doc.new_page(width=595, height=842)
            y = 60.0
            for x, text in runs:
                page.insert_text((x, y), text, fontsize=9)
                y += LINE_STEP
        if password:
            return doc.tobytes(
                encryption=fitz.PDF_ENCRYPT_AES_256,
                owner_pw=password,
                user_pw=password,
            )
        return doc.tobytes()
    finally:
        doc.close()


def build_label_pdf(
    label_page: Sequence[str] = LABEL_PAGE,
    sender_column: Sequence[str] = SENDER_COLUMN,
    recipient_column: Sequence[str] = RECIPIENT_COLUMN,
    table_lines: Sequence[str] = TABLE_LINES,
) -> bytes:
    # Columns are stacked vertically so no two runs share a baseline.
    first = [(SENDER_X, text) for text in label_page]
    second = [
        *((SENDER_X, text) for text in sender_column),
        *((RECIPIENT_X, text) for text in recipient_column),
        *((SENDER_X, text) for text in table_lines),
    ]
    return build_pdf([first, second])


@pytest.fixture
def label_pdf() -> bytes:
    return build_label_pdf()


@pytest.fixture
def pdf_factory() -> Callable[..., bytes]:
    return build_label_pdf


@pytest.fixture
def raw_pdf_factory() -> Callable[..., bytes]:
    return build_pdf


def make_label(prod_count: int = 2, **overrides: object) -> LabelData:
    prods = tuple(
        ProdItem(
            n=str(idx + 1),
            desc=f"Body Manga Longa Estampado Modelo {idx + 1}",
            var="Azul, M",
            qtd="1",
            val="R$ 29,90",
        )
        for idx in range(prod_count)
    )
    fields: dict[str, object] = {
        "tracking_code": "AB123456789BR",
        "contract": "9912345678",
        "order_id": "240101ABCDEF12",
        "modality": "SEDEX",
        "recipient": Recipient(
            name="Maria Silva",
            street="Rua das Flores, 123",
            neighborhood="Jardim Paulista",
            city="São Paulo",
            state="SP",
            postal_code="01310-100",
        ),
        "sender": Sender(
            name="Loja Exemplo",
            address="Av. Brasil, 500, Centro",
            city="Campinas",
            state="SP",
            postal_code="13010-000",
        ),
        "prods": prods,
        "total_qtd": prod_count,
        "total_val": "R$ 59,80",
    }
    fields.update(overrides)
    return LabelData(**fields)  # type: ignore[arg-type]


@pytest.fixture
def label_data() -> LabelData:
    return make_label()


@pytest.fixture
def label_factory() -> Callable[..., LabelData]:
    return make_label
