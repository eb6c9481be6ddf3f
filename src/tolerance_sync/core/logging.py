"""Structured logging for the sync daemon.

Every ``logging.getLogger(__name__)`` call site in the package is rendered
through structlog's ProcessorFormatter, so modules keep using plain stdlib
loggers.  Each record carries the room the session is attached to and the
trace/span ids of the current OTel span.

Console output is ``text`` (colored, for development) or ``json`` (one
object per line).  With a ``log_root`` the daemon also writes JSON files::

    <log_root>/sync/<name>.log      everything the engine logs
    <log_root>/backend/<name>.log   remote store and HTTP transport loggers
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_room_context: ContextVar[str | None] = ContextVar("room_id", default=None)


def set_room_context(room_id: str | None) -> None:
    """Record the attached room for log records emitted from this context."""
    _room_context.set(room_id)


def get_room_context() -> str | None:
    return _room_context.get()


def add_room_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["room"] = _room_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Add ``trace_id``/``span_id``; zeroed when no span is recording."""
    ctx = trace.get_current_span().get_span_context()
    trace_id = ctx.trace_id if ctx.is_valid else 0
    span_id = ctx.span_id if ctx.is_valid else 0
    event_dict["trace_id"] = format(trace_id, "032x")
    event_dict["span_id"] = format(span_id, "016x")
    return event_dict


# Third-party loggers kept at WARNING on the console.
_NOISE_LOGGERS = (
    "httpx",
    "httpcore",
    "urllib3",
    "google.auth",
    "firebase_admin",
)

# Loggers mirrored into the backend log file.
_BACKEND_LOGGERS = (*_NOISE_LOGGERS, "tolerance_sync.remote")

_DIR_SYNC = "sync"
_DIR_BACKEND = "backend"

_CONSOLE_TIME_FMT = {"text": "%H:%M:%S", "json": "iso"}


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_room_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _formatter(renderer: structlog.types.Processor, pre_chain: list) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=pre_chain,
    )


def _json_file_handler(path: Path) -> logging.FileHandler:
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(path)
    handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), _pre_chain("iso")))
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    name: str = "tolerance-sync",
    room_id: str | None = None,
) -> None:
    """Install the console handler (and file handlers when *log_root* is set).

    Safe to call again: the root logger's handlers are replaced, not added to.
    *room_id* seeds the room context when the daemon already knows its room.
    """
    if room_id:
        set_room_context(room_id)

    pre_chain = _pre_chain(_CONSOLE_TIME_FMT.get(fmt, "%H:%M:%S"))
    renderer = (
        structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer()
    )
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, pre_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for noisy in _NOISE_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        root.addHandler(_json_file_handler(log_root / _DIR_SYNC / f"{name}.log"))
        backend = _json_file_handler(log_root / _DIR_BACKEND / f"{name}.log")
        for backend_logger in _BACKEND_LOGGERS:
            target = logging.getLogger(backend_logger)
            for stale in [h for h in target.handlers if isinstance(h, logging.FileHandler)]:
                target.removeHandler(stale)
                stale.close()
            target.addHandler(backend)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
