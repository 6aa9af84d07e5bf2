"""Text-run geometry extraction for carrier label PDFs.

Two engines are available and chosen per extractor instance:

* ``pymupdf`` (default) walks ``page.get_text("dict")`` blocks -> lines -> spans.
  A MuPDF line is the end-of-line boundary; spans are the text runs.
* ``pdfplumber`` uses pdfminer.six words as runs and ``extract_text_lines`` for
  the logical lines.

Only the geometry page (page 2 of the carrier document) keeps per-run
coordinates; every page contributes logical lines.
"""

from __future__ import annotations

import asyncio
import io
import logging
from collections.abc import Callable

import fitz  # PyMuPDF
import pdfplumber

from models import PageData, TextItem

logger = logging.getLogger(__name__)


class ExtractionFailure(Exception):
    """Raised when the uploaded bytes cannot be decoded as a PDF."""


def _page_space_y(page_height: float, top_based_y: float) -> float:
    # PDF user space grows upwards from the bottom-left corner.
    return round(page_height - top_based_y, 2)


def _extract_pymupdf(payload: bytes, geometry_page: int) -> PageData:
    try:
        doc = fitz.open(stream=payload, filetype="pdf")
    except Exception as exc:
        raise ExtractionFailure(f"Unable to open PDF: {exc}") from exc

    data = PageData()
    try:
        if doc.needs_pass:
            raise ExtractionFailure("PDF is password protected.")
        if doc.page_count == 0:
            raise ExtractionFailure("PDF has no pages.")
        for page_number, page in enumerate(doc, start=1):
            height = float(page.rect.height)
            text_dict = page.get_text("dict", sort=False)
            for block in text_dict.get("blocks", []):
                if block.get("type", 0) != 0:
                    continue
                for line in block.get("lines", []):
                    acc = ""
                    for span in line.get("spans", []):
                        raw = str(span.get("text") or "")
                        acc += raw
                        text = raw.strip()
                        if page_number != geometry_page or not text:
                            continue
                        origin = span.get("origin") or span.get("bbox", (0.0, 0.0))[:2]
                        data.page2_items.append(
                            TextItem(
                                text=text,
                                x=round(float(origin[0]), 2),
                                y=_page_space_y(height, float(origin[1])),
                            )
                        )
                    assembled = acc.strip()
                    if assembled:
                        data.all_lines.append(assembled)
    except ExtractionFailure:
        raise
    except Exception as exc:
        raise ExtractionFailure(f"Unable to decode PDF text: {exc}") from exc
    finally:
        doc.close()

    data.full_text = " ".join(data.all_lines)
    return data


def _extract_pdfplumber(payload: bytes, geometry_page: int) -> PageData:
    data = PageData()
    try:
        with pdfplumber.open(io.BytesIO(payload)) as pdf:
            if not pdf.pages:
                raise ExtractionFailure("PDF has no pages.")
            for page_number, page in enumerate(pdf.pages, start=1):
                height = float(page.height)
                if page_number == geometry_page:
                    words = page.extract_words(keep_blank_chars=True, use_text_flow=True)
                    for word in words:
                        text = str(word.get("text") or "").strip()
                        if not text:
                            continue
                        data.page2_items.append(
                            TextItem(
                                text=text,
                                x=round(float(word["x0"]), 2),
                                y=_page_space_y(height, float(word["bottom"])),
                            )
                        )
                for line in page.extract_text_lines(return_chars=False, strip=True):
                    assembled = str(line.get("text") or "").strip()
                    if assembled:
                        data.all_lines.append(assembled)
    except ExtractionFailure:
        raise
    except Exception as exc:
        raise ExtractionFailure(f"Unable to decode PDF text: {exc}") from exc

    data.full_text = " ".join(data.all_lines)
    return data


_ENGINES: dict[str, Callable[[bytes, int], PageData]] = {
    "pymupdf": _extract_pymupdf,
    "pdfplumber": _extract_pdfplumber,
}


def available_engines() -> list[str]:
    return sorted(_ENGINES)


class GeometryExtractor:
    """Decode a PDF into :class:`PageData` using an explicitly chosen engine."""

    def __init__(self, engine: str = "pymupdf", *, geometry_page: int = 2) -> None:
        key = (engine or "").strip().lower()
        if key not in _ENGINES:
            raise ValueError(
                f"Unsupported PDF engine {engine!r}; expected one of {', '.join(available_engines())}."
            )
        if geometry_page < 1:
            raise ValueError("geometry_page must be 1 or greater.")
        self.engine = key
        self.geometry_page = geometry_page
        self._impl = _ENGINES[key]

    def extract_sync(self, payload: bytes) -> PageData:
        if not payload:
            raise ExtractionFailure("PDF payload is empty.")
        data = self._impl(payload, self.geometry_page)
        logger.debug(
            "Extracted %d lines and %d geometry items with %s",
            len(data.all_lines),
            len(data.page2_items),
            self.engine,
        )
        return data

    async def extract(self, payload: bytes) -> PageData:
        return await asyncio.to_thread(self.extract_sync, payload)
