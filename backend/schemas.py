from typing import Literal

from pydantic import BaseModel


class StatusOut(BaseModel):
    message: str
    severity: Literal["info", "loading", "success", "error"]


class ProdItemOut(BaseModel):
    n: str
    desc: str
    var: str
    qtd: str | int
    val: str


class RecipientOut(BaseModel):
    name: str
    street: str
    neighborhood: str
    city: str
    state: str
    postal_code: str


class SenderOut(BaseModel):
    name: str
    address: str
    city: str
    state: str
    postal_code: str


class LabelOut(BaseModel):
    tracking_code: str
    contract: str
    order_id: str
    modality: str
    recipient: RecipientOut
    sender: SenderOut
    prods: list[ProdItemOut]
    total_qtd: int
    total_val: str


class SessionOut(BaseModel):
    id: str
    state: Literal["IDLE", "PARSING", "PARSED", "EXPORTING"]
    status: StatusOut | None = None
    source_filename: str | None = None
    busy: bool = False
    label: LabelOut | None = None
    filenames: dict[str, str] = {}
    blank_slots: list[str] = []


class NotificationOut(BaseModel):
    title: str
    description: str


class NotificationsOut(BaseModel):
    session_id: str
    notifications: list[NotificationOut]
