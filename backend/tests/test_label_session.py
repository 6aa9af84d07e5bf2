from __future__ import annotations

import asyncio
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Self

import pytest
from pytest import MonkeyPatch

ROOT = Path(__file__).resolve().parents[2]
BACKEND_ROOT = ROOT / "backend"
for candidate in (ROOT, BACKEND_ROOT):
    path_str = str(candidate)
    if path_str not in sys.path:
        sys.path.append(path_str)

import label_session as label_session_module  # noqa: E402
from carrier_config import LabelVocabulary  # noqa: E402
from exporter import ExportFailure  # noqa: E402
from geometry import ExtractionFailure, GeometryExtractor  # noqa: E402
from label_session import (  # noqa: E402
    ExportInProgress,
    InvalidInputType,
    LabelNotReady,
    LabelSession,
)
from models import LabelState, OutputFormat, PageData, Severity  # noqa: E402


class SpyExtractor(GeometryExtractor):
    def __init__(self: Self) -> None:
        super().__init__("pymupdf")
        self.calls = 0

    def extract_sync(self: Self, payload: bytes) -> PageData:
        self.calls += 1
        return super().extract_sync(payload)


class GatedExtractor(GeometryExtractor):
    """Holds each extraction until the gate registered for its payload opens."""

    def __init__(self: Self, gates: dict[bytes, asyncio.Event]) -> None:
        super().__init__("pymupdf")
        self.gates = gates

    async def extract(self: Self, payload: bytes) -> PageData:
        await self.gates[payload].wait()
        return await super().extract(payload)


class Recorder:
    def __init__(self: Self) -> None:
        self.events: list[tuple[str, str | None]] = []

    async def __call__(self: Self, session: LabelSession) -> None:
        message = session.status.message if session.status else None
        self.events.append((session.state.value, message))


def _session(extractor: GeometryExtractor | None = None, recorder: Recorder | None = None) -> LabelSession:
    return LabelSession(
        "TEST",
        extractor or SpyExtractor(),
        raster_scale=1,
        listener=recorder,
    )


@pytest.mark.asyncio
async def test_upload_parses_and_reports_tracking_code(label_pdf: bytes) -> None:
    recorder = Recorder()
    session = _session(recorder=recorder)

    data = await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    assert data.tracking_code == "AB123456789BR"
    assert session.state is LabelState.PARSED
    assert session.status is not None
    assert session.status.severity is Severity.SUCCESS
    assert session.status.message == "✓ AB123456789BR extraído com sucesso!"
    assert session.preview_png() is not None
    assert recorder.events == [
        ("PARSING", "Lendo PDF…"),
        ("PARSED", "✓ AB123456789BR extraído com sucesso!"),
    ]


@pytest.mark.asyncio
async def test_non_pdf_upload_never_reaches_extractor(label_pdf: bytes) -> None:
    extractor = SpyExtractor()
    session = _session(extractor)
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)
    previous = session.label

    with pytest.raises(InvalidInputType):
        await session.upload("foto.png", "image/png", b"\x89PNG")

    assert extractor.calls == 1
    assert session.label is previous
    assert session.state is LabelState.PARSED
    assert session.status is not None
    assert session.status.severity is Severity.ERROR


@pytest.mark.asyncio
async def test_mime_parameters_are_ignored(label_pdf: bytes) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "Application/PDF; charset=binary", label_pdf)
    assert session.state is LabelState.PARSED


@pytest.mark.asyncio
async def test_extraction_failure_clears_data_and_returns_to_idle(label_pdf: bytes) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    with pytest.raises(ExtractionFailure):
        await session.upload("quebrado.pdf", "application/pdf", b"%PDF-1.4 broken")

    assert session.state is LabelState.IDLE
    assert session.label is None
    assert session.preview_png() is None
    assert session.status is not None
    assert session.status.severity is Severity.ERROR
    assert session.status.message.startswith("Erro ao ler PDF:")


@pytest.mark.asyncio
async def test_export_requires_parsed_label() -> None:
    session = _session()
    with pytest.raises(LabelNotReady):
        await session.export(OutputFormat.THERMAL)
    assert session.state is LabelState.IDLE


@pytest.mark.asyncio
async def test_export_success_queues_one_notification(label_pdf: bytes) -> None:
    recorder = Recorder()
    session = _session(recorder=recorder)
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    result = await session.export("thermal")

    assert result.filename == "maria_body_manga_longa.pdf"
    assert session.state is LabelState.PARSED
    assert session.busy is False
    assert recorder.events[-2:] == [
        ("EXPORTING", "Gerando imagem…"),
        ("PARSED", "✓ maria_body_manga_longa.pdf baixado!"),
    ]
    notifications = session.drain_notifications()
    assert [(n.title, n.description) for n in notifications] == [
        ("Etiqueta exportada!", "maria_body_manga_longa.pdf")
    ]
    assert session.drain_notifications() == []


@pytest.mark.asyncio
async def test_concurrent_export_is_rejected(label_pdf: bytes, monkeypatch: MonkeyPatch) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    loop = asyncio.get_running_loop()
    gate = asyncio.Event()
    real_export = label_session_module.export_label

    def slow_export(*args: object, **kwargs: object) -> object:
        loop.call_soon_threadsafe(gate.set)
        return real_export(*args, **kwargs)

    monkeypatch.setattr(label_session_module, "export_label", slow_export)

    first = asyncio.create_task(session.export(OutputFormat.A4))
    await gate.wait()
    with pytest.raises(ExportInProgress):
        await session.export(OutputFormat.THERMAL)

    result = await first
    assert result.filename.endswith("_A4.pdf")
    assert session.busy is False


@pytest.mark.asyncio
async def test_export_failure_keeps_parsed_data(label_pdf: bytes, monkeypatch: MonkeyPatch) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)
    preview = session.preview_png()

    def failing_export(*args: object, **kwargs: object) -> object:
        raise ExportFailure("sem memória")

    monkeypatch.setattr(label_session_module, "export_label", failing_export)
    with pytest.raises(ExportFailure):
        await session.export(OutputFormat.THERMAL)

    assert session.state is LabelState.PARSED
    assert session.label is not None
    assert session.preview_png() == preview
    assert session.busy is False
    assert session.status is not None
    assert session.status.message == "Erro: sem memória"
    assert session.drain_notifications() == []


@pytest.mark.asyncio
async def test_reset_returns_to_idle(label_pdf: bytes) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    await session.reset()

    assert session.state is LabelState.IDLE
    assert session.status is None
    assert session.label is None
    assert session.snapshot()["filenames"] == {}


@pytest.mark.asyncio
async def test_snapshot_lists_filename_suggestions(label_pdf: bytes) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    snapshot = session.snapshot()

    assert snapshot["state"] == "PARSED"
    assert snapshot["source_filename"] == "etiqueta.pdf"
    assert snapshot["filenames"] == {
        "thermal": "maria_body_manga_longa.pdf",
        "a4": "maria_body_manga_longa_A4.pdf",
    }
    assert snapshot["label"]["recipient"]["postal_code"] == "01310-100"


@pytest.mark.asyncio
async def test_unexpected_parse_error_returns_to_idle(label_pdf: bytes, monkeypatch: MonkeyPatch) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    def broken_render(*args: object, **kwargs: object) -> object:
        raise ValueError("layout overflow")

    monkeypatch.setattr(label_session_module, "render_label", broken_render)
    with pytest.raises(ValueError):
        await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    assert session.state is LabelState.IDLE
    assert session.label is None
    assert session.preview_png() is None
    assert session.status is not None
    assert session.status.severity is Severity.ERROR
    assert "layout overflow" in session.status.message


@pytest.mark.asyncio
async def test_export_is_refused_while_parsing(label_pdf: bytes) -> None:
    gates = {label_pdf: asyncio.Event(), b"%PDF-1.4 second": asyncio.Event()}
    gates[label_pdf].set()
    session = _session(GatedExtractor(gates))
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    reupload = asyncio.create_task(session.upload("nova.pdf", "application/pdf", b"%PDF-1.4 second"))
    await asyncio.sleep(0)
    assert session.state is LabelState.PARSING

    with pytest.raises(LabelNotReady):
        await session.export(OutputFormat.THERMAL)

    gates[b"%PDF-1.4 second"].set()
    with pytest.raises(ExtractionFailure):
        await reupload
    assert session.state is LabelState.IDLE


@pytest.mark.asyncio
async def test_failed_upload_during_export_is_not_overwritten(
    label_pdf: bytes, monkeypatch: MonkeyPatch
) -> None:
    session = _session()
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    loop = asyncio.get_running_loop()
    started = asyncio.Event()
    release = threading.Event()
    real_export = label_session_module.export_label

    def held_export(*args: object, **kwargs: object) -> object:
        loop.call_soon_threadsafe(started.set)
        release.wait(timeout=10)
        return real_export(*args, **kwargs)

    monkeypatch.setattr(label_session_module, "export_label", held_export)

    export_task = asyncio.create_task(session.export(OutputFormat.THERMAL))
    await started.wait()
    assert session.state is LabelState.EXPORTING

    with pytest.raises(ExtractionFailure):
        await session.upload("quebrado.pdf", "application/pdf", b"%PDF-1.4 broken")
    release.set()
    result = await export_task

    assert result.filename == "maria_body_manga_longa.pdf"
    assert session.state is LabelState.IDLE
    assert session.label is None
    assert session.busy is False
    assert session.status is not None
    assert session.status.message.startswith("Erro ao ler PDF:")


@pytest.mark.asyncio
async def test_overlapping_uploads_keep_last_completed(
    label_pdf: bytes, pdf_factory: Callable[..., bytes]
) -> None:
    other_pdf = pdf_factory(label_page=["PAC", "XY987654321BR", "DESTINATÁRIO", "João Souza"])
    gates = {label_pdf: asyncio.Event(), other_pdf: asyncio.Event()}
    session = _session(GatedExtractor(gates))

    first = asyncio.create_task(session.upload("primeira.pdf", "application/pdf", label_pdf))
    second = asyncio.create_task(session.upload("segunda.pdf", "application/pdf", other_pdf))
    await asyncio.sleep(0)

    gates[other_pdf].set()
    await second
    assert session.label is not None
    assert session.label.tracking_code == "XY987654321BR"

    gates[label_pdf].set()
    await first

    assert session.state is LabelState.PARSED
    assert session.label.tracking_code == "AB123456789BR"
    assert session.status is not None
    assert session.status.message == "✓ AB123456789BR extraído com sucesso!"


@pytest.mark.asyncio
async def test_vocabulary_stopwords_shape_filenames(label_pdf: bytes) -> None:
    session = LabelSession(
        "TEST",
        SpyExtractor(),
        vocabulary=LabelVocabulary(stopwords=("body",)),
        raster_scale=1,
    )
    await session.upload("etiqueta.pdf", "application/pdf", label_pdf)

    assert session.suggested_filenames()["thermal"] == "maria_manga_longa.pdf"
    result = await session.export(OutputFormat.A4)
    assert result.filename == "maria_manga_longa_A4.pdf"
