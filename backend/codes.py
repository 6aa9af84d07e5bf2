"""Barcode and QR glyphs for the regenerated label (reportlab graphics)."""

from __future__ import annotations

import re
from dataclasses import dataclass

from reportlab.graphics.barcode import createBarcodeDrawing
from reportlab.graphics.shapes import Drawing

from carrier_config import DEFAULT_TEMPLATE, CarrierTemplate
from models import LabelData

POSTAL_CODE_DIGITS = 8
MAX_BAR_WIDTH = 1.4


class RenderGlyphFailure(Exception):
    """Raised when a single barcode or QR code cannot be encoded."""


@dataclass(frozen=True)
class CodePayloads:
    tracking: str
    postal_code: str
    qr: str


def tracking_payload(data: LabelData, template: CarrierTemplate = DEFAULT_TEMPLATE) -> str:
    return data.tracking_code or template.tracking_placeholder


def postal_code_payload(data: LabelData) -> str:
    digits = re.sub(r"\D", "", data.recipient.postal_code or "00000000")
    return digits.ljust(POSTAL_CODE_DIGITS, "0")[:POSTAL_CODE_DIGITS]


def qr_payload(data: LabelData, template: CarrierTemplate = DEFAULT_TEMPLATE) -> str:
    # Both QR slots carry the same payload.
    return data.order_id or data.tracking_code or template.qr_placeholder


def payloads_for(data: LabelData, template: CarrierTemplate = DEFAULT_TEMPLATE) -> CodePayloads:
    return CodePayloads(
        tracking=tracking_payload(data, template),
        postal_code=postal_code_payload(data),
        qr=qr_payload(data, template),
    )


def code128_drawing(
    value: str,
    *,
    max_width: float,
    bar_height: float,
    human_readable: bool,
    font_name: str = "Courier",
    font_size: float = 9,
) -> Drawing:
    """Code128 drawing whose bars fit ``max_width`` points."""
    if not value:
        raise RenderGlyphFailure("Code128 payload is empty.")
    try:
        probe = createBarcodeDrawing(
            "Code128", value=value, barWidth=1.0, barHeight=bar_height, quiet=False
        )
        bar_width = min(max_width / float(probe.width), MAX_BAR_WIDTH)
        return createBarcodeDrawing(
            "Code128",
            value=value,
            barWidth=bar_width,
            barHeight=bar_height,
            quiet=False,
            humanReadable=human_readable,
            fontName=font_name,
            fontSize=font_size,
        )
    except Exception as exc:
        raise RenderGlyphFailure(f"Code128 encoding failed for {value!r}: {exc}") from exc


def qr_drawing(value: str, *, size: float, border: int = 1) -> Drawing:
    if not value:
        raise RenderGlyphFailure("QR payload is empty.")
    try:
        return createBarcodeDrawing("QR", value=value, width=size, height=size, barBorder=border)
    except Exception as exc:
        raise RenderGlyphFailure(f"QR encoding failed for {value!r}: {exc}") from exc
