"""Per-session label workflow: IDLE -> PARSING -> PARSED -> EXPORTING -> PARSED."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from carrier_config import DEFAULT_TEMPLATE, DEFAULT_VOCABULARY, CarrierTemplate, LabelVocabulary
from exporter import DEFAULT_RASTER_SCALE, ExportFailure, ExportResult, export_label, rasterize
from filenames import build_filename
from geometry import ExtractionFailure, GeometryExtractor
from label_pipeline import parse_label_pdf
from models import LabelData, LabelState, Notification, OutputFormat, Severity, Status
from renderer import RenderedLabel, render_label

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
MAX_PENDING_NOTIFICATIONS = 20

StatusListener = Callable[["LabelSession"], Awaitable[None]]


class InvalidInputType(Exception):
    """Raised when an upload is not declared as a PDF."""


class LabelNotReady(Exception):
    """Raised when an export is requested before a label was parsed."""


class ExportInProgress(Exception):
    """Raised when an export is requested while another one is running."""


def _is_pdf_mime(content_type: str | None) -> bool:
    base = (content_type or "").split(";", 1)[0].strip().lower()
    return base == PDF_MIME


class LabelSession:
    def __init__(
        self,
        session_id: str,
        extractor: GeometryExtractor,
        *,
        vocabulary: LabelVocabulary = DEFAULT_VOCABULARY,
        template: CarrierTemplate = DEFAULT_TEMPLATE,
        raster_scale: float = DEFAULT_RASTER_SCALE,
        listener: StatusListener | None = None,
    ) -> None:
        self.session_id = session_id
        self.extractor = extractor
        self.vocabulary = vocabulary
        self.template = template
        self.raster_scale = raster_scale
        self.listener = listener

        self.state = LabelState.IDLE
        self.status: Status | None = None
        self.source_filename: str | None = None
        self.label: LabelData | None = None
        self.rendered: RenderedLabel | None = None
        self.preview: bytes | None = None
        self.last_export: ExportResult | None = None
        self.busy = False
        self._notifications: deque[Notification] = deque(maxlen=MAX_PENDING_NOTIFICATIONS)

    async def _transition(self, state: LabelState, status: Status | None) -> None:
        previous = self.state
        self.state = state
        self.status = status
        logger.info(
            "Session %s: %s -> %s (%s)",
            self.session_id,
            previous.value,
            state.value,
            status.message if status else "no status",
        )
        if self.listener is not None:
            await self.listener(self)

    # ----------------- Upload / parse -----------------

    async def upload(self, filename: str | None, content_type: str | None, payload: bytes) -> LabelData:
        if not _is_pdf_mime(content_type):
            await self._transition(self.state, Status("Selecione um arquivo PDF.", Severity.ERROR))
            raise InvalidInputType(f"Expected {PDF_MIME}, got {content_type or 'no content type'}.")

        self.source_filename = filename
        await self._transition(LabelState.PARSING, Status("Lendo PDF…", Severity.LOADING))
        try:
            data = await parse_label_pdf(payload, self.extractor, self.vocabulary, self.template)
            rendered = await asyncio.to_thread(render_label, data, self.template)
        except ExtractionFailure as exc:
            await self._fail_upload(f"Erro ao ler PDF: {exc}")
            raise
        except Exception as exc:
            logger.exception("Unexpected parse failure for session %s", self.session_id)
            await self._fail_upload(f"Erro ao processar etiqueta: {exc}")
            raise

        try:
            preview = await asyncio.to_thread(rasterize, rendered, self.raster_scale)
        except ExportFailure:
            logger.warning("Preview rasterisation failed for session %s", self.session_id, exc_info=True)
            preview = None

        # Concurrent uploads are not cancelled; the last one to finish wins.
        self.label = data
        self.rendered = rendered
        self.preview = preview
        self.last_export = None
        shown = data.tracking_code or "Etiqueta"
        await self._transition(
            LabelState.PARSED, Status(f"✓ {shown} extraído com sucesso!", Severity.SUCCESS)
        )
        return data

    async def _fail_upload(self, message: str) -> None:
        self._clear()
        await self._transition(LabelState.IDLE, Status(message, Severity.ERROR))

    # ----------------- Export -----------------

    async def export(self, output_format: OutputFormat | str) -> ExportResult:
        fmt = OutputFormat.parse(output_format)
        if self.busy:
            raise ExportInProgress("An export is already running for this session.")
        if self.state is not LabelState.PARSED or self.label is None or self.rendered is None:
            raise LabelNotReady("No parsed label to export.")

        self.busy = True
        data, rendered = self.label, self.rendered
        try:
            await self._transition(LabelState.EXPORTING, Status("Gerando imagem…", Severity.LOADING))
            try:
                result = await asyncio.to_thread(
                    export_label,
                    rendered,
                    data,
                    fmt,
                    scale=self.raster_scale,
                    stopwords=self.vocabulary.stopwords,
                )
            except ExportFailure as exc:
                await self._finish_export(Status(f"Erro: {exc}", Severity.ERROR))
                raise
            self.last_export = result
            self._notifications.append(Notification("Etiqueta exportada!", result.filename))
            await self._finish_export(Status(f"✓ {result.filename} baixado!", Severity.SUCCESS))
            return result
        finally:
            self.busy = False

    async def _finish_export(self, status: Status) -> None:
        # An upload that started mid-export owns the state from then on.
        if self.state is LabelState.EXPORTING and self.label is not None:
            await self._transition(LabelState.PARSED, status)

    # ----------------- Housekeeping -----------------

    def _clear(self) -> None:
        self.label = None
        self.rendered = None
        self.preview = None
        self.last_export = None

    async def reset(self) -> None:
        self._clear()
        self.source_filename = None
        await self._transition(LabelState.IDLE, None)

    def drain_notifications(self) -> list[Notification]:
        drained = list(self._notifications)
        self._notifications.clear()
        return drained

    def preview_png(self) -> bytes | None:
        return self.preview

    def suggested_filenames(self) -> dict[str, str]:
        if self.label is None:
            return {}
        return {
            fmt.value: build_filename(
                self.label.recipient.name,
                self.label.first_product_desc,
                fmt,
                self.vocabulary.stopwords,
            )
            for fmt in OutputFormat
        }

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.session_id,
            "state": self.state.value,
            "status": self.status.to_dict() if self.status else None,
            "source_filename": self.source_filename,
            "busy": self.busy,
            "label": self.label.to_dict() if self.label else None,
            "filenames": self.suggested_filenames(),
            "blank_slots": list(self.rendered.blank_slots) if self.rendered else [],
        }
