"""Fixed-geometry label renderer.

The label is drawn as a single vector PDF page 283 pt wide (the on-screen
preview width); its height grows with the product table. Sections are drawn
top to bottom in a fixed order. Canvas output is produced in reportlab's
invariant mode so identical :class:`LabelData` yields identical bytes and,
after rasterisation, identical pixels.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable
from dataclasses import dataclass

from reportlab.graphics import renderPDF
from reportlab.graphics.shapes import Drawing
from reportlab.lib import colors
from reportlab.lib.utils import simpleSplit
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

import codes
from carrier_config import DEFAULT_TEMPLATE, CarrierTemplate
from codes import CodePayloads, RenderGlyphFailure
from models import LabelData, ProdItem

logger = logging.getLogger(__name__)

LABEL_WIDTH = 283.0
PAD = 6.0
INNER_WIDTH = LABEL_WIDTH - 2 * PAD

BLACK = colors.black
WHITE = colors.white
GREY_TEXT = colors.HexColor("#777777")
MID_TEXT = colors.HexColor("#555555")
DARK_TEXT = colors.HexColor("#333333")
FAINT_TEXT = colors.HexColor("#aaaaaa")
SOFT_RULE = colors.HexColor("#cccccc")
ROW_RULE = colors.HexColor("#ebebeb")
ROW_SHADE = colors.HexColor("#f8f8f8")
TOTAL_SHADE = colors.HexColor("#e8e8e8")
SIGN_TEXT = colors.HexColor("#666666")

SANS = "Helvetica"
SANS_BOLD = "Helvetica-Bold"
MONO_BOLD = "Courier-Bold"

HEADER_H = 62.0
TRACKING_H = 92.0
RECEIVER_H = 48.0
TAG_H = 15.0
RECIPIENT_H = 62.0
POSTAL_H = 27.0
GOODS_TITLE_H = 14.0
TABLE_HEAD_H = 12.0
TOTALS_H = 16.0
SIGNATURE_H = 30.0
FOOTER_H = 12.0

HEADER_QR = 52.0
SENDER_QR = 42.0
MAIN_BAR_HEIGHT = 34.0
POSTAL_BAR_HEIGHT = 20.0
POSTAL_BAR_MAX_WIDTH = 155.0

ROW_FONT_SIZE = 6.5
ROW_LEADING = 8.8
ROW_PADDING = 6.0
ROW_MAX_LINES = 4
SENDER_LEADING = 10.5

# (heading, width); the last column takes the remaining width.
TABLE_COLUMNS = (
    ("#", 14.0),
    ("Descrição do Produto", 112.0),
    ("Variação", 62.0),
    ("Qtd", 30.0),
    ("Valor", LABEL_WIDTH - 218.0),
)

SLOT_QR_HEADER = "qr_header"
SLOT_TRACKING_BARCODE = "barcode_tracking"
SLOT_POSTAL_BARCODE = "barcode_postal_code"
SLOT_QR_SENDER = "qr_sender"


@dataclass(frozen=True)
class RenderedLabel:
    pdf_bytes: bytes
    width: float
    height: float
    payloads: CodePayloads
    blank_slots: tuple[str, ...] = ()


@dataclass(frozen=True)
class _Row:
    item: ProdItem
    desc_lines: list[str]
    var_lines: list[str]
    height: float


def fit_text(value: str, font: str, size: float, max_width: float) -> str:
    if stringWidth(value, font, size) <= max_width:
        return value
    trimmed = value
    while trimmed and stringWidth(trimmed + "...", font, size) > max_width:
        trimmed = trimmed[:-1]
    return trimmed.rstrip() + "..."


def _wrap(value: str, font: str, size: float, width: float, max_lines: int) -> list[str]:
    lines = simpleSplit(value or "", font, size, width) or [""]
    if len(lines) > max_lines:
        lines = lines[:max_lines]
        lines[-1] = fit_text(lines[-1] + " ...", font, size, width)
    return lines


def _table_rows(prods: tuple[ProdItem, ...]) -> list[_Row]:
    desc_width = TABLE_COLUMNS[1][1] - ROW_PADDING
    var_width = TABLE_COLUMNS[2][1] - ROW_PADDING
    rows: list[_Row] = []
    for item in prods:
        desc_lines = _wrap(item.desc, SANS_BOLD, ROW_FONT_SIZE, desc_width, ROW_MAX_LINES)
        var_lines = _wrap(item.var, SANS, ROW_FONT_SIZE, var_width, ROW_MAX_LINES)
        height = max(len(desc_lines), len(var_lines)) * ROW_LEADING + ROW_PADDING
        rows.append(_Row(item=item, desc_lines=desc_lines, var_lines=var_lines, height=height))
    return rows


def _sender_lines(address: str) -> list[str]:
    width = INNER_WIDTH - SENDER_QR - 8.0
    return _wrap(address, SANS, 7.5, width, 2) if address else []


def _sender_height(address_lines: list[str]) -> float:
    text_height = 13.0 + SENDER_LEADING * len(address_lines) + 11.0 + 6.0
    return max(text_height, SENDER_QR + 10.0)


class _Sheet:
    """Canvas wrapper addressed in top-down coordinates."""

    def __init__(self, canv: canvas.Canvas, height: float) -> None:
        self.canv = canv
        self.height = height

    def y(self, top: float) -> float:
        return self.height - top

    def text(
        self,
        x: float,
        baseline: float,
        value: str,
        font: str,
        size: float,
        color: colors.Color = BLACK,
        align: str = "left",
    ) -> None:
        self.canv.setFillColor(color)
        self.canv.setFont(font, size)
        if align == "right":
            self.canv.drawRightString(x, self.y(baseline), value)
        elif align == "center":
            self.canv.drawCentredString(x, self.y(baseline), value)
        else:
            self.canv.drawString(x, self.y(baseline), value)

    def hline(
        self,
        top: float,
        x0: float = 0.0,
        x1: float = LABEL_WIDTH,
        width: float = 1.0,
        color: colors.Color = BLACK,
    ) -> None:
        self.canv.setStrokeColor(color)
        self.canv.setLineWidth(width)
        self.canv.line(x0, self.y(top), x1, self.y(top))

    def fill(self, x: float, top: float, w: float, h: float, color: colors.Color) -> None:
        self.canv.setFillColor(color)
        self.canv.rect(x, self.y(top + h), w, h, stroke=0, fill=1)

    def drawing(self, drawing: Drawing, x: float, top: float) -> None:
        renderPDF.draw(drawing, self.canv, x, self.y(top + float(drawing.height)))


def _draw_glyph(
    sheet: _Sheet,
    slot: str,
    factory: Callable[[], Drawing],
    place: Callable[[Drawing], tuple[float, float]],
    blank: list[str],
) -> None:
    try:
        drawing = factory()
    except RenderGlyphFailure as exc:
        logger.warning("Leaving %s blank: %s", slot, exc)
        blank.append(slot)
        return
    x, top = place(drawing)
    sheet.drawing(drawing, x, top)


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def _draw_header(
    sheet: _Sheet, data: LabelData, template: CarrierTemplate, payloads: CodePayloads, blank: list[str]
) -> float:
    canv = sheet.canv
    canv.setStrokeColor(BLACK)
    canv.setLineWidth(2)
    canv.roundRect(PAD, sheet.y(5.0 + 22.0), 22.0, 22.0, 4.0, stroke=1, fill=0)
    sheet.text(PAD + 11.0, 5.0 + 15.5, template.brand_initial[:1], SANS_BOLD, 13, align="center")
    sheet.text(33.0, 19.0, fit_text(template.brand_mark, SANS_BOLD, 17, 150.0), SANS_BOLD, 17)
    sheet.text(33.0, 28.0, "ID pedido:", SANS, 5.5, GREY_TEXT)
    order_id = fit_text(data.order_id or "—", MONO_BOLD, 7.5, 170.0)
    sheet.text(33.0, 37.0, order_id, MONO_BOLD, 7.5)

    _draw_glyph(
        sheet,
        SLOT_QR_HEADER,
        lambda: codes.qr_drawing(payloads.qr, size=HEADER_QR),
        lambda d: (LABEL_WIDTH - PAD - float(d.width), 5.0),
        blank,
    )
    sheet.hline(HEADER_H)
    return HEADER_H


def _draw_tracking(
    sheet: _Sheet, top: float, data: LabelData, payloads: CodePayloads, blank: list[str]
) -> float:
    sheet.text(PAD, top + 10.0, f"Contrato: {data.contract}", SANS, 6, GREY_TEXT)
    sheet.text(PAD, top + 23.0, data.modality, SANS_BOLD, 10)
    sheet.text(PAD, top + 37.0, data.tracking_code, MONO_BOLD, 12)

    _draw_glyph(
        sheet,
        SLOT_TRACKING_BARCODE,
        lambda: codes.code128_drawing(
            payloads.tracking,
            max_width=INNER_WIDTH,
            bar_height=MAIN_BAR_HEIGHT,
            human_readable=True,
            font_name="Courier",
            font_size=9,
        ),
        lambda d: (PAD + (INNER_WIDTH - float(d.width)) / 2.0, top + 42.0),
        blank,
    )
    sheet.hline(top + TRACKING_H)
    return top + TRACKING_H


def _draw_receiver_lines(sheet: _Sheet, top: float) -> float:
    row_top = top + 3.0
    for label in ("Recebedor:", "Assinatura:", "Documento:"):
        sheet.text(PAD, row_top + 11.0, label, SANS, 6, MID_TEXT)
        start = PAD + stringWidth(label, SANS, 6) + 5.0
        sheet.hline(row_top + 12.0, start, LABEL_WIDTH - PAD, width=1.0)
        row_top += 14.0
    sheet.hline(top + RECEIVER_H, color=SOFT_RULE)
    return top + RECEIVER_H


def _draw_tag(sheet: _Sheet, top: float, title: str) -> float:
    sheet.fill(0.0, top, LABEL_WIDTH, TAG_H, BLACK)
    sheet.text(PAD, top + 11.0, title, SANS_BOLD, 9, WHITE)
    return top + TAG_H


def _draw_recipient(sheet: _Sheet, top: float, data: LabelData) -> float:
    recipient = data.recipient
    sheet.text(PAD, top + 13.0, fit_text(recipient.name or "—", SANS_BOLD, 10.5, INNER_WIDTH), SANS_BOLD, 10.5)
    sheet.text(PAD, top + 24.0, fit_text(recipient.street or "—", SANS, 8, INNER_WIDTH), SANS, 8)
    sheet.text(PAD, top + 34.0, fit_text(recipient.neighborhood, SANS, 7.5, INNER_WIDTH), SANS, 7.5, DARK_TEXT)

    cep_width = stringWidth(recipient.postal_code, MONO_BOLD, 9)
    city = fit_text(recipient.city, SANS_BOLD, 9, INNER_WIDTH - cep_width - 6.0)
    sheet.text(PAD, top + 47.0, city, SANS_BOLD, 9)
    sheet.text(LABEL_WIDTH - PAD, top + 47.0, recipient.postal_code, MONO_BOLD, 9, align="right")
    sheet.text(PAD, top + 57.0, fit_text(recipient.state, SANS, 7.5, INNER_WIDTH), SANS, 7.5, DARK_TEXT)
    sheet.hline(top + RECIPIENT_H, color=SOFT_RULE)
    return top + RECIPIENT_H


def _draw_postal_barcode(
    sheet: _Sheet, top: float, payloads: CodePayloads, blank: list[str]
) -> float:
    _draw_glyph(
        sheet,
        SLOT_POSTAL_BARCODE,
        lambda: codes.code128_drawing(
            payloads.postal_code,
            max_width=POSTAL_BAR_MAX_WIDTH,
            bar_height=POSTAL_BAR_HEIGHT,
            human_readable=False,
        ),
        lambda d: (PAD, top + 3.0),
        blank,
    )
    sheet.hline(top + POSTAL_H)
    return top + POSTAL_H


def _draw_sender(
    sheet: _Sheet,
    top: float,
    data: LabelData,
    address_lines: list[str],
    payloads: CodePayloads,
    blank: list[str],
) -> float:
    sender = data.sender
    text_width = INNER_WIDTH - SENDER_QR - 8.0
    sheet.text(PAD, top + 13.0, fit_text(sender.name, SANS_BOLD, 9.5, text_width), SANS_BOLD, 9.5)
    baseline = top + 13.0
    for line in address_lines:
        baseline += SENDER_LEADING
        sheet.text(PAD, baseline, line, SANS, 7.5)
    sheet.text(PAD, baseline + 11.0, f"CEP: {sender.postal_code}", SANS, 7.5)

    _draw_glyph(
        sheet,
        SLOT_QR_SENDER,
        lambda: codes.qr_drawing(payloads.qr, size=SENDER_QR),
        lambda d: (LABEL_WIDTH - PAD - float(d.width), top + 5.0),
        blank,
    )
    height = _sender_height(address_lines)
    sheet.hline(top + height)
    return top + height


def _draw_table(sheet: _Sheet, top: float, rows: list[_Row]) -> float:
    sheet.text(LABEL_WIDTH / 2.0, top + 10.0, "IDENTIFICAÇÃO DOS BENS", SANS_BOLD, 7, align="center")
    sheet.hline(top + GOODS_TITLE_H, color=SOFT_RULE)
    top += GOODS_TITLE_H

    sheet.fill(0.0, top, LABEL_WIDTH, TABLE_HEAD_H, BLACK)
    x = 0.0
    for heading, width in TABLE_COLUMNS:
        sheet.text(x + 3.0, top + 8.5, heading, SANS_BOLD, 5.5, WHITE)
        x += width
    top += TABLE_HEAD_H

    for index, row in enumerate(rows):
        if index % 2 == 0:
            sheet.fill(0.0, top, LABEL_WIDTH, row.height, ROW_SHADE)
        first = top + 3.0 + ROW_FONT_SIZE
        col_x = [0.0]
        for _, width in TABLE_COLUMNS:
            col_x.append(col_x[-1] + width)

        sheet.text(col_x[0] + 3.0, first, fit_text(row.item.n, SANS, ROW_FONT_SIZE, 10.0), SANS, ROW_FONT_SIZE)
        for offset, line in enumerate(row.desc_lines):
            sheet.text(col_x[1] + 3.0, first + offset * ROW_LEADING, line, SANS_BOLD, ROW_FONT_SIZE)
        for offset, line in enumerate(row.var_lines):
            sheet.text(col_x[2] + 3.0, first + offset * ROW_LEADING, line, SANS, ROW_FONT_SIZE)
        qtd = fit_text(str(row.item.qtd), SANS, ROW_FONT_SIZE, TABLE_COLUMNS[3][1] - 4.0)
        sheet.text((col_x[3] + col_x[4]) / 2.0, first, qtd, SANS, ROW_FONT_SIZE, align="center")
        val = fit_text(row.item.val, SANS_BOLD, ROW_FONT_SIZE, TABLE_COLUMNS[4][1] - 6.0)
        sheet.text(LABEL_WIDTH - 3.0, first, val, SANS_BOLD, ROW_FONT_SIZE, align="right")

        top += row.height
        sheet.hline(top, width=0.5, color=ROW_RULE)
    return top


def _draw_totals(sheet: _Sheet, top: float, data: LabelData) -> float:
    sheet.fill(0.0, top, LABEL_WIDTH, TOTALS_H, TOTAL_SHADE)
    sheet.text(PAD, top + 11.0, f"Total ({max(data.total_qtd, 1)} itens)", SANS_BOLD, 8)
    sheet.text(LABEL_WIDTH - PAD, top + 11.0, data.total_val, SANS_BOLD, 8, align="right")
    return top + TOTALS_H


def _draw_signature(sheet: _Sheet, top: float) -> float:
    sheet.hline(top, color=SOFT_RULE)
    sheet.hline(top + 18.0, PAD, PAD + 110.0)
    sheet.text(PAD, top + 25.0, "Assinatura do Remetente/Declarante", SANS, 5.5, SIGN_TEXT)
    right = LABEL_WIDTH - PAD
    sheet.hline(top + 18.0, right - 75.0, right)
    sheet.text(right, top + 25.0, "Data: ___/___/______", SANS, 5.5, SIGN_TEXT, align="right")
    return top + SIGNATURE_H


def _draw_footer(sheet: _Sheet, top: float, template: CarrierTemplate) -> float:
    disclaimer = fit_text(template.disclaimer, SANS, 4.5, INNER_WIDTH)
    sheet.text(LABEL_WIDTH / 2.0, top + 8.0, disclaimer, SANS, 4.5, FAINT_TEXT, align="center")
    return top + FOOTER_H


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def label_height(data: LabelData) -> float:
    rows = _table_rows(data.prods)
    return (
        HEADER_H
        + TRACKING_H
        + RECEIVER_H
        + TAG_H
        + RECIPIENT_H
        + POSTAL_H
        + TAG_H
        + _sender_height(_sender_lines(data.sender.address))
        + GOODS_TITLE_H
        + TABLE_HEAD_H
        + sum(row.height for row in rows)
        + TOTALS_H
        + SIGNATURE_H
        + FOOTER_H
    )


def render_label(data: LabelData, template: CarrierTemplate = DEFAULT_TEMPLATE) -> RenderedLabel:
    """Draw ``data`` onto the fixed label template; glyph failures leave blank slots."""
    rows = _table_rows(data.prods)
    address_lines = _sender_lines(data.sender.address)
    height = label_height(data)
    payloads = codes.payloads_for(data, template)
    blank: list[str] = []

    buffer = io.BytesIO()
    canv = canvas.Canvas(buffer, pagesize=(LABEL_WIDTH, height), invariant=1, pageCompression=1)
    sheet = _Sheet(canv, height)

    top = _draw_header(sheet, data, template, payloads, blank)
    top = _draw_tracking(sheet, top, data, payloads, blank)
    top = _draw_receiver_lines(sheet, top)
    top = _draw_tag(sheet, top, "DESTINATÁRIO")
    top = _draw_recipient(sheet, top, data)
    top = _draw_postal_barcode(sheet, top, payloads, blank)
    top = _draw_tag(sheet, top, "REMETENTE")
    top = _draw_sender(sheet, top, data, address_lines, payloads, blank)
    top = _draw_table(sheet, top, rows)
    top = _draw_totals(sheet, top, data)
    top = _draw_signature(sheet, top)
    _draw_footer(sheet, top, template)

    canv.setStrokeColor(BLACK)
    canv.setLineWidth(1.5)
    canv.rect(0.75, 0.75, LABEL_WIDTH - 1.5, height - 1.5, stroke=1, fill=0)
    canv.showPage()
    canv.save()

    return RenderedLabel(
        pdf_bytes=buffer.getvalue(),
        width=LABEL_WIDTH,
        height=height,
        payloads=payloads,
        blank_slots=tuple(blank),
    )
