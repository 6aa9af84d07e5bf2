"""Extract -> filter -> parse -> render -> export, plus a command line entry point.

Usage::

    python -m label_pipeline INPUT.pdf [--format thermal|a4] [-o DIR]
        [--engine pymupdf|pdfplumber] [--json]
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from collections.abc import Iterable
from pathlib import Path

from carrier_config import (
    DEFAULT_TEMPLATE,
    DEFAULT_VOCABULARY,
    CarrierTemplate,
    LabelVocabulary,
    load_template,
    load_vocabulary,
)
from exporter import DEFAULT_RASTER_SCALE, ExportFailure, ExportResult, export_label
from geometry import ExtractionFailure, GeometryExtractor, available_engines
from label_parser import parse_page_data
from models import LabelData, OutputFormat, PageData
from noise_filter import clean_page_data
from paths import exports_dir
from renderer import render_label

logger = logging.getLogger(__name__)

DEFAULT_ENGINE = "pymupdf"


def parse_engine(raw: str | None) -> str:
    if raw is None or raw.strip() == "":
        return DEFAULT_ENGINE
    engine = raw.strip().lower()
    if engine not in available_engines():
        choices = ", ".join(available_engines())
        raise RuntimeError(f"SHIPLABELS_PDF_ENGINE must be one of: {choices}.")
    return engine


def parse_raster_scale(raw: str | None) -> float:
    if raw is None or raw.strip() == "":
        return DEFAULT_RASTER_SCALE
    try:
        value = float(raw)
    except ValueError as exc:
        raise RuntimeError("SHIPLABELS_RASTER_SCALE must be a number.") from exc
    if value <= 0:
        raise RuntimeError("SHIPLABELS_RASTER_SCALE must be greater than zero.")
    return value


def _optional_path(raw: str | None) -> Path | None:
    if raw is None or raw.strip() == "":
        return None
    return Path(raw.strip()).expanduser()


def vocabulary_from_env() -> LabelVocabulary:
    return load_vocabulary(_optional_path(os.getenv("SHIPLABELS_VOCABULARY_FILE")))


def template_from_env() -> CarrierTemplate:
    return load_template(_optional_path(os.getenv("SHIPLABELS_TEMPLATE_FILE")))


def parse_page(
    page_data: PageData,
    vocabulary: LabelVocabulary = DEFAULT_VOCABULARY,
    template: CarrierTemplate = DEFAULT_TEMPLATE,
) -> LabelData:
    cleaned = clean_page_data(page_data, vocabulary.noise_fragments)
    return parse_page_data(cleaned, vocabulary, template)


def parse_label_pdf_sync(
    payload: bytes,
    extractor: GeometryExtractor,
    vocabulary: LabelVocabulary = DEFAULT_VOCABULARY,
    template: CarrierTemplate = DEFAULT_TEMPLATE,
) -> LabelData:
    return parse_page(extractor.extract_sync(payload), vocabulary, template)


async def parse_label_pdf(
    payload: bytes,
    extractor: GeometryExtractor,
    vocabulary: LabelVocabulary = DEFAULT_VOCABULARY,
    template: CarrierTemplate = DEFAULT_TEMPLATE,
) -> LabelData:
    page_data = await extractor.extract(payload)
    return parse_page(page_data, vocabulary, template)


def build_label(
    payload: bytes,
    output_format: OutputFormat | str,
    *,
    engine: str = DEFAULT_ENGINE,
    vocabulary: LabelVocabulary = DEFAULT_VOCABULARY,
    template: CarrierTemplate = DEFAULT_TEMPLATE,
    scale: float = DEFAULT_RASTER_SCALE,
) -> tuple[LabelData, ExportResult]:
    extractor = GeometryExtractor(engine, geometry_page=template.geometry_page)
    data = parse_label_pdf_sync(payload, extractor, vocabulary, template)
    rendered = render_label(data, template)
    return data, export_label(
        rendered, data, output_format, scale=scale, stopwords=vocabulary.stopwords
    )


def main(argv: Iterable[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Regenerate a printable shipping label from a carrier PDF.")
    parser.add_argument("input", help="Path to the carrier label PDF")
    parser.add_argument(
        "--format",
        default=OutputFormat.THERMAL.value,
        choices=[fmt.value for fmt in OutputFormat],
        help="Output page format.",
    )
    parser.add_argument("-o", "--out-dir", default=None, help="Directory for the generated PDF.")
    parser.add_argument(
        "--engine",
        default=None,
        choices=available_engines(),
        help="PDF text engine (defaults to SHIPLABELS_PDF_ENGINE or pymupdf).",
    )
    parser.add_argument("--json", action="store_true", help="Also print the parsed record as JSON.")
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        engine = args.engine or parse_engine(os.getenv("SHIPLABELS_PDF_ENGINE"))
        scale = parse_raster_scale(os.getenv("SHIPLABELS_RASTER_SCALE"))
        vocabulary = vocabulary_from_env()
        template = template_from_env()
        payload = Path(args.input).read_bytes()
        data, result = build_label(
            payload,
            args.format,
            engine=engine,
            vocabulary=vocabulary,
            template=template,
            scale=scale,
        )
    except (OSError, RuntimeError, ExtractionFailure, ExportFailure) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    out_dir = Path(args.out_dir) if args.out_dir else exports_dir()
    out_dir.mkdir(parents=True, exist_ok=True)
    target = out_dir / result.filename
    target.write_bytes(result.payload)

    if args.json:
        print(json.dumps(data.to_dict(), ensure_ascii=False, indent=2))
    print(f"Wrote {target}")
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
