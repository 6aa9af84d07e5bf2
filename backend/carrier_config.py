"""Swappable vocabulary tables and page-template settings for carrier label PDFs."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Default tables
# ---------------------------------------------------------------------------

NOISE_FRAGMENTS = (
    "IMPORTANTE: INFORMAMOS",
    "NÃO GUARDA POSSE",
    "CONTEÚDOS CONTIDOS NESTE",
    "O A PESSOA IDENTIFICADA",
    "SÓ SE LIMITA À PUBLICAÇÃO",
    "RESPONSÁVEL PELO BEM ENVIADO",
    "DECLARO QUE NÃO ME ENQUADRO",
    "RISCO O TRANSPORTE AÉREO",
    "INICIEM NO EXTERIOR",
    "TERMOS DA LEI E A QUEM",
    "RESPONSABILIDADE PELA INFORMAÇÃO",
    "PENAL BRASILEIRO",
    "CORREIOS.COM.BR",
    "CONSTITUI CRIME",
    "LEI 8.137",
    "OBSERVAÇÃO:",
)

# First entry is the default when nothing in the document matches.
MODALITIES = ("SEDEX", "PAC", "MINI ENVIOS", "SHOPEE XPRESS")

COLOR_WORDS = (
    "Bege",
    "Preto",
    "Branco",
    "Azul",
    "Verde",
    "Vermelho",
    "Rosa",
    "Cinza",
    "Amarelo",
    "Lilás",
    "Roxo",
    "Laranja",
    "Marrom",
    "Sortido",
)

STOPWORDS = ("de", "da", "do", "das", "dos", "e", "para", "com", "em", "a", "o", "um", "uma")

FIELD_LABELS = (
    "NOME",
    "ENDEREÇO",
    "MUNICÍPIO",
    "UF",
    "CEP",
    "CPF",
    "CNPJ",
    "REMETENTE",
    "DESTINATÁRIO",
)

NON_NEIGHBORHOOD_KEYWORDS = (
    "SHOPEE",
    "SEDEX",
    "PAC",
    "DESTINATÁRIO",
    "REMETENTE",
    "CONTRATO",
    "RECEBEDOR",
    "ASSINATURA",
    "DOCUMENTO",
    "ID PEDIDO",
    "DECLARAÇÃO",
    "IDENTIFICAÇÃO",
)

STREET_PREFIXES = ("rua", "avenida", "av.", "al.", "alameda", "trav.", "travessa", "r.")


@dataclass(frozen=True)
class LabelVocabulary:
    """Word tables consulted by the parser; none of them encode control flow."""

    noise_fragments: tuple[str, ...] = NOISE_FRAGMENTS
    modalities: tuple[str, ...] = MODALITIES
    color_words: tuple[str, ...] = COLOR_WORDS
    stopwords: tuple[str, ...] = STOPWORDS
    field_labels: tuple[str, ...] = FIELD_LABELS
    non_neighborhood_keywords: tuple[str, ...] = NON_NEIGHBORHOOD_KEYWORDS
    street_prefixes: tuple[str, ...] = STREET_PREFIXES

    def __post_init__(self) -> None:
        if not self.modalities:
            raise ValueError("Modality vocabulary must contain at least one entry.")


@dataclass(frozen=True)
class CarrierTemplate:
    """Page-layout assumptions for one carrier's two-page label document."""

    name: str = "shopee-correios"
    # Runs with x below this value belong to the sender column of the geometry page.
    column_boundary: float = 300.0
    geometry_page: int = 2
    brand_mark: str = "Shopee"
    brand_initial: str = "S"
    recipient_name_placeholder: str = "Nome não encontrado"
    sender_name_placeholder: str = "VITTA@STORE"
    sender_city_fallback: str = ""
    sender_state_fallback: str = ""
    tracking_placeholder: str = "AD000000000BR"
    qr_placeholder: str = "NOID"
    disclaimer: str = "Shopee não é proprietário nem responsável pelos bens entregues (art.261 CP)."

    def __post_init__(self) -> None:
        if self.geometry_page < 1:
            raise ValueError("geometry_page is 1-based and must be positive.")


DEFAULT_VOCABULARY = LabelVocabulary()
DEFAULT_TEMPLATE = CarrierTemplate()


# ---------------------------------------------------------------------------
# JSON overrides
# ---------------------------------------------------------------------------


def _read_json_object(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        raise RuntimeError(f"Unable to read carrier configuration {path}: {exc}") from exc
    if not isinstance(raw, dict):
        raise RuntimeError(f"Carrier configuration {path} must contain a JSON object.")
    return raw


def _known_overrides(cls: type, raw: dict[str, Any]) -> dict[str, Any]:
    names = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - names)
    if unknown:
        raise RuntimeError(f"Unknown {cls.__name__} keys: {', '.join(unknown)}")
    return raw


def load_vocabulary(path: Path | None) -> LabelVocabulary:
    if path is None:
        return DEFAULT_VOCABULARY
    overrides = _known_overrides(LabelVocabulary, _read_json_object(path))
    tables: dict[str, tuple[str, ...]] = {}
    for key, value in overrides.items():
        if not isinstance(value, list):
            raise RuntimeError(f"LabelVocabulary key {key} must be a JSON list of strings.")
        tables[key] = tuple(str(item) for item in value)
    return replace(DEFAULT_VOCABULARY, **tables)


def load_template(path: Path | None) -> CarrierTemplate:
    if path is None:
        return DEFAULT_TEMPLATE
    overrides = _known_overrides(CarrierTemplate, _read_json_object(path))
    return replace(DEFAULT_TEMPLATE, **overrides)
