# models.py
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any


class OutputFormat(str, Enum):
    THERMAL = "thermal"
    A4 = "a4"

    @classmethod
    def parse(cls, raw: str | OutputFormat) -> OutputFormat:
        if isinstance(raw, OutputFormat):
            return raw
        key = str(raw or "").strip().lower()
        aliases = {"t": cls.THERMAL, "termica": cls.THERMAL, "a": cls.A4}
        if key in aliases:
            return aliases[key]
        try:
            return cls(key)
        except ValueError as exc:
            raise ValueError(f"Unsupported output format: {raw!r}") from exc


class LabelState(str, Enum):
    IDLE = "IDLE"
    PARSING = "PARSING"
    PARSED = "PARSED"
    EXPORTING = "EXPORTING"


class Severity(str, Enum):
    INFO = "info"
    LOADING = "loading"
    SUCCESS = "success"
    ERROR = "error"


@dataclass(frozen=True)
class Status:
    message: str
    severity: Severity = Severity.INFO

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message, "severity": self.severity.value}


@dataclass(frozen=True)
class Notification:
    title: str
    description: str


# --- Extraction -----------------------------------------------------------


@dataclass(frozen=True)
class TextItem:
    text: str
    x: float
    y: float


@dataclass
class PageData:
    page2_items: list[TextItem] = field(default_factory=list)
    all_lines: list[str] = field(default_factory=list)
    full_text: str = ""


# --- Parsed record --------------------------------------------------------


@dataclass(frozen=True)
class ProdItem:
    n: str
    desc: str
    var: str
    qtd: str | int
    val: str


@dataclass(frozen=True)
class Recipient:
    name: str = ""
    street: str = ""
    neighborhood: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""


@dataclass(frozen=True)
class Sender:
    name: str = ""
    address: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""


@dataclass(frozen=True)
class LabelData:
    tracking_code: str
    contract: str
    order_id: str
    modality: str
    recipient: Recipient
    sender: Sender
    prods: tuple[ProdItem, ...]
    total_qtd: int
    total_val: str

    def __post_init__(self) -> None:
        if not self.prods:
            raise ValueError("LabelData requires at least one product row.")

    @property
    def first_product_desc(self) -> str:
        return self.prods[0].desc or "produto"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["prods"] = [asdict(item) for item in self.prods]
        return payload
