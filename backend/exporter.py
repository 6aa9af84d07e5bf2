"""Rasterise a rendered label and embed it in a thermal or A4 PDF page."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

import fitz  # PyMuPDF

from carrier_config import STOPWORDS
from filenames import build_filename
from models import LabelData, OutputFormat
from renderer import RenderedLabel

logger = logging.getLogger(__name__)

LABEL_WIDTH_MM = 100.0
THERMAL_MIN_HEIGHT_MM = 100.0
A4_WIDTH_MM = 210.0
A4_HEIGHT_MM = 297.0
DEFAULT_RASTER_SCALE = 4.0
POINTS_PER_MM = 72.0 / 25.4


class ExportFailure(Exception):
    """Raised when rasterisation or PDF assembly fails."""


@dataclass(frozen=True)
class ExportResult:
    filename: str
    output_format: OutputFormat
    payload: bytes
    page_width_mm: float
    page_height_mm: float
    label_width_mm: float
    label_height_mm: float


def mm_to_pt(value: float) -> float:
    return value * POINTS_PER_MM


def label_height_mm(rendered: RenderedLabel) -> float:
    """Label height at a fixed 100 mm width, rounded to one decimal."""
    return round(rendered.height / rendered.width * LABEL_WIDTH_MM, 1)


def rasterize(rendered: RenderedLabel, scale: float = DEFAULT_RASTER_SCALE) -> bytes:
    """PNG of the rendered label at ``scale`` device pixels per point."""
    if scale <= 0:
        raise ExportFailure(f"Raster scale must be positive, got {scale}.")
    try:
        doc = fitz.open(stream=rendered.pdf_bytes, filetype="pdf")
    except Exception as exc:
        raise ExportFailure(f"Rendered label is not a readable PDF: {exc}") from exc
    try:
        pix = doc[0].get_pixmap(matrix=fitz.Matrix(scale, scale), alpha=False)
        return pix.tobytes("png")
    except Exception as exc:
        raise ExportFailure(f"Rasterisation failed: {exc}") from exc
    finally:
        doc.close()


def page_layout(output_format: OutputFormat, height_mm: float) -> tuple[float, float, fitz.Rect]:
    """Page size in mm and the image rectangle in points for ``output_format``."""
    if output_format is OutputFormat.A4:
        width, height = LABEL_WIDTH_MM, height_mm
        if height > A4_HEIGHT_MM:
            factor = A4_HEIGHT_MM / height
            width, height = width * factor, A4_HEIGHT_MM
        x = (A4_WIDTH_MM - width) / 2.0
        y = (A4_HEIGHT_MM - height) / 2.0
        rect = fitz.Rect(mm_to_pt(x), mm_to_pt(y), mm_to_pt(x + width), mm_to_pt(y + height))
        return A4_WIDTH_MM, A4_HEIGHT_MM, rect

    page_height = max(height_mm, THERMAL_MIN_HEIGHT_MM)
    rect = fitz.Rect(0, 0, mm_to_pt(LABEL_WIDTH_MM), mm_to_pt(height_mm))
    return LABEL_WIDTH_MM, page_height, rect


def export_label(
    rendered: RenderedLabel,
    data: LabelData,
    output_format: OutputFormat | str,
    *,
    scale: float = DEFAULT_RASTER_SCALE,
    stopwords: Iterable[str] = STOPWORDS,
) -> ExportResult:
    fmt = OutputFormat.parse(output_format)
    png = rasterize(rendered, scale)
    height_mm = label_height_mm(rendered)
    page_w, page_h, rect = page_layout(fmt, height_mm)

    try:
        out = fitz.open()
        try:
            page = out.new_page(width=mm_to_pt(page_w), height=mm_to_pt(page_h))
            page.insert_image(rect, stream=png, keep_proportion=False)
            payload = out.tobytes(garbage=3, deflate=True)
        finally:
            out.close()
    except Exception as exc:
        raise ExportFailure(f"PDF assembly failed: {exc}") from exc

    filename = build_filename(data.recipient.name, data.first_product_desc, fmt, stopwords)
    logger.info(
        "Exported label %s (%s, %.1fx%.1f mm page)",
        filename,
        fmt.value,
        page_w,
        page_h,
    )
    return ExportResult(
        filename=filename,
        output_format=fmt,
        payload=payload,
        page_width_mm=page_w,
        page_height_mm=page_h,
        label_width_mm=LABEL_WIDTH_MM,
        label_height_mm=height_mm,
    )
