import asyncio
import datetime as dt
import hashlib
import json
import logging
import logging.config
import os
import time
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from secrets import token_hex
from threading import Lock
from typing import Annotated, Any, Literal, Self, cast

from fastapi import (
    FastAPI,
    File,
    HTTPException,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from exporter import ExportFailure
from geometry import ExtractionFailure, GeometryExtractor
from label_pipeline import parse_engine, parse_raster_scale, template_from_env, vocabulary_from_env
from label_session import ExportInProgress, InvalidInputType, LabelNotReady, LabelSession
from paths import ensure_app_dirs, logs_dir
from schemas import NotificationOut, NotificationsOut, SessionOut

status_clients: set[WebSocket] = set()
sessions: dict[str, LabelSession] = {}

UploadFileDep = Annotated[UploadFile, File(...)]
FormatLiteral = Literal["thermal", "a4"]

logger = logging.getLogger("shiplabels.backend")

DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024  # 10 MiB default ceiling


_METRICS_REGISTRY = CollectorRegistry(auto_describe=True)

UPLOAD_COUNTER = Counter(
    "shiplabels_uploads_total",
    "Number of label PDFs uploaded",
    ["result"],
    registry=_METRICS_REGISTRY,
)
UPLOAD_BYTES = Histogram(
    "shiplabels_upload_size_bytes",
    "Size of uploaded label PDFs in bytes",
    buckets=(
        16 * 1024,
        64 * 1024,
        256 * 1024,
        512 * 1024,
        1024 * 1024,
        2 * 1024 * 1024,
        4 * 1024 * 1024,
        8 * 1024 * 1024,
    ),
    registry=_METRICS_REGISTRY,
)
PARSE_COUNTER = Counter(
    "shiplabels_parse_events_total",
    "Number of label parse attempts",
    ["engine", "result"],
    registry=_METRICS_REGISTRY,
)
PARSE_DURATION = Histogram(
    "shiplabels_parse_duration_seconds",
    "Time spent extracting, parsing and previewing a label",
    ["engine"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
    registry=_METRICS_REGISTRY,
)
EXPORT_COUNTER = Counter(
    "shiplabels_exports_total",
    "Number of label exports",
    ["format", "result"],
    registry=_METRICS_REGISTRY,
)
EXPORT_DURATION = Histogram(
    "shiplabels_export_duration_seconds",
    "Time spent rasterising and assembling label PDFs",
    ["format"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0),
    registry=_METRICS_REGISTRY,
)
ACTIVE_JOBS_GAUGE = Gauge(
    "shiplabels_active_jobs",
    "Number of active backend jobs",
    registry=_METRICS_REGISTRY,
)

DIAGNOSTICS_MAX_ENTRIES = max(1, int(os.getenv("DIAGNOSTICS_MAX_ENTRIES", "100")))
DIAGNOSTICS_BUFFER: deque[dict[str, object]] = deque(maxlen=DIAGNOSTICS_MAX_ENTRIES)
_LOGGING_CONFIGURED = False


class UploadTooLargeError(Exception):
    """Raised when an uploaded file exceeds the configured byte limit."""


class DiagnosticsHandler(logging.Handler):
    def emit(self: Self, record: logging.LogRecord) -> None:
        if record.levelno < logging.ERROR:
            return
        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - defensive
            message = str(record.msg)
        entry = {
            "timestamp": dt.datetime.fromtimestamp(record.created, tz=dt.UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
            "code": _diagnostic_code(record, message),
            "pathname": record.pathname,
            "lineno": record.lineno,
        }
        if record.exc_info:
            try:
                entry["detail"] = logging.Formatter().formatException(record.exc_info)
            except Exception:
                entry["detail"] = None
        elif record.stack_info:
            entry["detail"] = record.stack_info
        DIAGNOSTICS_BUFFER.append(entry)


class JsonFormatter(logging.Formatter):
    def format(self: Self, record: logging.LogRecord) -> str:
        try:
            message = record.getMessage()
        except Exception:  # pragma: no cover - defensive
            message = str(record.msg)
        payload: dict[str, object] = {
            "timestamp": dt.datetime.fromtimestamp(record.created, tz=dt.UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": message,
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        if record.stack_info:
            payload["stack_info"] = record.stack_info
        if record.pathname:
            payload["pathname"] = record.pathname
            payload["lineno"] = record.lineno
        return json.dumps(payload, ensure_ascii=False)


def _diagnostic_code(record: logging.LogRecord, message: str) -> str:
    raw = f"{record.name}:{record.lineno}:{message}".encode("utf-8", errors="ignore")
    return hashlib.sha1(raw).hexdigest()[:8].upper()


def _configure_logging() -> None:
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    log_dir = logs_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / os.getenv("BACKEND_LOG_FILE", "backend.jsonl")
    max_bytes = int(os.getenv("BACKEND_LOG_MAX_BYTES", str(5 * 1024 * 1024)))
    backup_count = int(os.getenv("BACKEND_LOG_BACKUP_COUNT", "5"))
    level = os.getenv("BACKEND_LOG_LEVEL", "INFO").upper()
    console_enabled = os.getenv("BACKEND_LOG_TO_STDOUT", "1").lower() in {"1", "true", "yes", "on"}

    handlers = {
        "file": {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": str(log_file),
            "maxBytes": max_bytes,
            "backupCount": backup_count,
            "encoding": "utf-8",
            "formatter": "json",
        },
        "diagnostics": {
            "()": DiagnosticsHandler,
            "level": "ERROR",
        },
    }

    root_handlers = ["file", "diagnostics"]
    if console_enabled:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "formatter": "json",
        }
        root_handlers.append("console")

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": JsonFormatter}},
            "handlers": handlers,
            "root": {"level": level, "handlers": root_handlers},
        }
    )
    _LOGGING_CONFIGURED = True


ensure_app_dirs()
_configure_logging()


def _parse_max_upload_bytes(raw: str | None) -> int:
    if raw is None or raw.strip() == "":
        return DEFAULT_MAX_UPLOAD_BYTES
    try:
        value = int(raw)
    except ValueError as exc:
        raise RuntimeError("MAX_UPLOAD_BYTES must be an integer number of bytes.") from exc
    if value <= 0:
        raise RuntimeError("MAX_UPLOAD_BYTES must be greater than zero.")
    return value


MAX_UPLOAD_BYTES = _parse_max_upload_bytes(os.getenv("MAX_UPLOAD_BYTES"))
PDF_ENGINE = parse_engine(os.getenv("SHIPLABELS_PDF_ENGINE"))
RASTER_SCALE = parse_raster_scale(os.getenv("SHIPLABELS_RASTER_SCALE"))
VOCABULARY = vocabulary_from_env()
TEMPLATE = template_from_env()


def _format_bytes(num_bytes: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(num_bytes)
    idx = 0
    while value >= 1024 and idx < len(units) - 1:
        value /= 1024
        idx += 1
    precision = 1 if idx > 0 else 0
    return f"{value:.{precision}f} {units[idx]}"


def _detect_uploaded_size(upload: UploadFile, fallback: int) -> int:
    raw = upload.file
    if not hasattr(raw, "tell") or not hasattr(raw, "seek"):
        return fallback
    try:
        position = raw.tell()
    except Exception:
        return fallback
    try:
        raw.seek(0, os.SEEK_END)
        total = raw.tell()
    except Exception:
        total = fallback
    finally:
        try:
            raw.seek(position, os.SEEK_SET)
        except Exception:
            pass
    return total if total > 0 else fallback


def _parse_allowed_origins(raw: str | None) -> list[str]:
    if not raw:
        return ["http://127.0.0.1:5173", "http://localhost:5173"]
    origins = [item.strip() for item in raw.split(",") if item.strip()]
    if not origins:
        message = (
            "ALLOWED_ORIGINS is set but empty; specify at least one origin or unset the "
            "variable for the default."
        )
        raise RuntimeError(message)
    if "*" in origins:
        raise RuntimeError(
            "ALLOWED_ORIGINS may not contain wildcard '*'. Specify explicit origins."
        )
    return origins


ALLOWED_ORIGINS = _parse_allowed_origins(os.getenv("ALLOWED_ORIGINS"))
ALLOW_CREDENTIALS = os.getenv("CORS_ALLOW_CREDENTIALS", "false").lower() in {
    "1",
    "true",
    "yes",
    "on",
}

_active_jobs = 0
_active_jobs_lock = Lock()


async def on_startup() -> None:
    ensure_app_dirs()
    logger.info(
        "Label backend ready (engine=%s, raster scale=%s, template=%s, upload limit=%s)",
        PDF_ENGINE,
        RASTER_SCALE,
        TEMPLATE.name,
        _format_bytes(MAX_UPLOAD_BYTES),
    )


async def on_shutdown() -> None:
    sessions.clear()
    for ws in list(status_clients):
        try:
            await ws.close()
        except Exception:  # pragma: no cover - best effort close
            pass
    status_clients.clear()


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    await on_startup()
    try:
        yield
    finally:
        await on_shutdown()


app = FastAPI(title="Shipping Label Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=ALLOW_CREDENTIALS,
    expose_headers=["Content-Disposition"],
)


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/metrics")
def metrics() -> Response:
    payload = cast(bytes, generate_latest(_METRICS_REGISTRY))
    return Response(payload, media_type=CONTENT_TYPE_LATEST)


def _recent_diagnostics(limit: int) -> list[dict]:
    if limit <= 0:
        return []
    snapshot = list(DIAGNOSTICS_BUFFER)
    if not snapshot:
        return []
    limited = snapshot[-limit:]
    limited.reverse()
    return limited


@app.get("/diagnostics")
def diagnostics(limit: int = 20) -> dict[str, list[dict]]:
    limit = max(1, min(limit, DIAGNOSTICS_MAX_ENTRIES))
    return {"entries": _recent_diagnostics(limit)}


def _read_upload_payload(upload: UploadFile, *, max_bytes: int) -> bytes:
    """Read an upload stream while enforcing a byte ceiling."""
    raw = upload.file
    total = 0
    chunks: list[bytes] = []
    while True:
        chunk = raw.read(65536)
        if not chunk:
            break
        if isinstance(chunk, str):
            chunk = chunk.encode()
        total += len(chunk)
        if total > max_bytes:
            reported_total = _detect_uploaded_size(upload, fallback=total)
            human_total = _format_bytes(reported_total)
            human_limit = _format_bytes(max_bytes)
            raise UploadTooLargeError(f"Upload size {human_total} exceeds the {human_limit} limit.")
        chunks.append(chunk)
    return b"".join(chunks)


def _active_jobs_count() -> int:
    with _active_jobs_lock:
        return _active_jobs


def _note_job_started(tag: str) -> None:
    global _active_jobs
    with _active_jobs_lock:
        _active_jobs += 1
        count = _active_jobs
    ACTIVE_JOBS_GAUGE.set(count)
    logger.info("Job started (%s); active jobs: %d.", tag, count)


def _note_job_finished(tag: str) -> None:
    global _active_jobs
    with _active_jobs_lock:
        _active_jobs = max(0, _active_jobs - 1)
        count = _active_jobs
    ACTIVE_JOBS_GAUGE.set(count)
    logger.info("Job finished (%s); active jobs: %d.", tag, count)


# ----------------- WebSocket status feed -----------------


@app.websocket("/ws/status")
async def ws_status(ws: WebSocket) -> None:
    await ws.accept()
    status_clients.add(ws)
    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    except Exception:
        try:
            await ws.close()
        except Exception:
            pass
    finally:
        status_clients.discard(ws)


async def broadcast(event: dict[str, object]) -> None:
    """Send JSON event to all connected status screens."""
    dead = []
    for ws in list(status_clients):
        try:
            await ws.send_json(event)
        except Exception:
            dead.append(ws)
    for d in dead:
        try:
            await d.close()
        except Exception:
            pass
        status_clients.discard(d)


async def _broadcast_status(session: LabelSession) -> None:
    await broadcast(
        {
            "type": "status",
            "sessionId": session.session_id,
            "state": session.state.value,
            "status": session.status.to_dict() if session.status else None,
            "ts": time.time(),
        }
    )


# ----------------- Sessions -----------------


def short_code() -> str:
    return token_hex(4).upper()  # 8 hex chars


def _new_session() -> LabelSession:
    session_id = short_code()
    while session_id in sessions:
        session_id = short_code()
    extractor = GeometryExtractor(PDF_ENGINE, geometry_page=TEMPLATE.geometry_page)
    session = LabelSession(
        session_id,
        extractor,
        vocabulary=VOCABULARY,
        template=TEMPLATE,
        raster_scale=RASTER_SCALE,
        listener=_broadcast_status,
    )
    sessions[session_id] = session
    return session


def _get_session(session_id: str) -> LabelSession:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(404, "Session not found")
    return session


def _session_out(session: LabelSession) -> SessionOut:
    return SessionOut.model_validate(session.snapshot())


def _error_detail(session: LabelSession, message: str) -> dict[str, Any]:
    return {
        "message": message,
        "state": session.state.value,
        "status": session.status.to_dict() if session.status else None,
    }


@app.post("/sessions", response_model=SessionOut)
async def create_session() -> SessionOut:
    session = _new_session()
    logger.info("Created label session %s", session.session_id)
    return _session_out(session)


@app.get("/sessions/{session_id}", response_model=SessionOut)
async def get_session_status(session_id: str) -> SessionOut:
    return _session_out(_get_session(session_id))


@app.delete("/sessions/{session_id}")
async def delete_session(session_id: str) -> dict[str, bool]:
    _get_session(session_id)
    sessions.pop(session_id, None)
    logger.info("Closed label session %s", session_id)
    return {"ok": True}


@app.post("/sessions/{session_id}/reset", response_model=SessionOut)
async def reset_session(session_id: str) -> SessionOut:
    session = _get_session(session_id)
    await session.reset()
    return _session_out(session)


# ----------------- Upload / Preview / Export -----------------


@app.post("/sessions/{session_id}/upload", response_model=SessionOut)
async def upload_label(session_id: str, file: UploadFileDep) -> SessionOut:
    session = _get_session(session_id)

    _note_job_started("upload")
    try:
        try:
            payload = await asyncio.to_thread(
                _read_upload_payload, file, max_bytes=MAX_UPLOAD_BYTES
            )
        except UploadTooLargeError as exc:
            UPLOAD_COUNTER.labels(result="too_large").inc()
            raise HTTPException(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                detail=str(exc),
            ) from exc
        if not payload:
            UPLOAD_COUNTER.labels(result="empty").inc()
            raise HTTPException(400, "Uploaded file is empty.")

        parse_started = time.perf_counter()
        try:
            await session.upload(file.filename, file.content_type, payload)
        except InvalidInputType as exc:
            UPLOAD_COUNTER.labels(result="rejected").inc()
            raise HTTPException(
                status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
                detail=_error_detail(session, str(exc)),
            ) from exc
        except ExtractionFailure as exc:
            UPLOAD_COUNTER.labels(result="accepted").inc()
            PARSE_COUNTER.labels(engine=PDF_ENGINE, result="failure").inc()
            logger.warning("Extraction failed for session %s: %s", session_id, exc)
            raise HTTPException(
                status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=_error_detail(session, str(exc)),
            ) from exc

        UPLOAD_COUNTER.labels(result="accepted").inc()
        UPLOAD_BYTES.observe(len(payload))
        PARSE_COUNTER.labels(engine=PDF_ENGINE, result="success").inc()
        PARSE_DURATION.labels(engine=PDF_ENGINE).observe(time.perf_counter() - parse_started)
        return _session_out(session)
    finally:
        _note_job_finished("upload")


@app.get("/sessions/{session_id}/preview")
async def preview_label(session_id: str) -> Response:
    session = _get_session(session_id)
    png = session.preview_png()
    if png is None:
        raise HTTPException(404, "No label preview available.")
    return Response(png, media_type="image/png")


@app.post("/sessions/{session_id}/export")
async def export_label_pdf(session_id: str, format: FormatLiteral = "thermal") -> Response:
    session = _get_session(session_id)

    _note_job_started("export")
    started = time.perf_counter()
    try:
        try:
            result = await session.export(format)
        except (LabelNotReady, ExportInProgress) as exc:
            raise HTTPException(
                status.HTTP_409_CONFLICT,
                detail=_error_detail(session, str(exc)),
            ) from exc
        except ExportFailure as exc:
            EXPORT_COUNTER.labels(format=format, result="failure").inc()
            logger.exception("Export failed for session %s (format=%s)", session_id, format)
            raise HTTPException(
                status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=_error_detail(session, str(exc)),
            ) from exc
        EXPORT_COUNTER.labels(format=format, result="success").inc()
        EXPORT_DURATION.labels(format=format).observe(time.perf_counter() - started)
        headers = {"Content-Disposition": f'attachment; filename="{result.filename}"'}
        return Response(result.payload, media_type="application/pdf", headers=headers)
    finally:
        _note_job_finished("export")


@app.get("/sessions/{session_id}/notifications", response_model=NotificationsOut)
async def drain_notifications(session_id: str) -> NotificationsOut:
    session = _get_session(session_id)
    drained = [
        NotificationOut(title=item.title, description=item.description)
        for item in session.drain_notifications()
    ]
    return NotificationsOut(session_id=session_id, notifications=drained)
