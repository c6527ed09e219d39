"""Structured logging for studiolink.

Every stdlib ``logging.getLogger(__name__)`` record is routed through a
structlog ``ProcessorFormatter``, so modules keep using plain stdlib loggers.

Each record is enriched with the studio name, the artist currently being
served and the active OTel trace/span ids.  Keys that could carry OAuth
material (tokens, client secrets, authorization codes) are masked before
rendering, whatever module emitted them.

When ``log_root`` is set, JSON lines are also written to::

    {log_root}/{studio}.log          application records
    {log_root}/{studio}.access.log   uvicorn and httpx transport records
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

_studio_context: ContextVar[str | None] = ContextVar("studio_name", default=None)
_artist_context: ContextVar[str | None] = ContextVar("artist_id", default=None)

# Transport loggers: quieted on the console, mirrored to the access log.
_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

SECRET_KEYS = frozenset(
    {"access_token", "refresh_token", "client_secret", "code", "id_token", "authorization"}
)
REDACTED = "***"

_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def set_studio_context(name: str) -> None:
    _studio_context.set(name)


def set_artist_context(artist_id: str | None) -> None:
    """Tag subsequent records in this async context with *artist_id*."""
    _artist_context.set(artist_id)


def get_artist_context() -> str | None:
    return _artist_context.get()


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_studio_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    event_dict["studio"] = _studio_context.get()
    artist_id = _artist_context.get()
    if artist_id is not None:
        event_dict.setdefault("artist_id", artist_id)
    return event_dict


def add_otel_context(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """Attach ``trace_id``/``span_id``; zeros when no span is recording."""
    ctx = trace.get_current_span().get_span_context()
    valid = bool(ctx and ctx.trace_id)
    event_dict["trace_id"] = format(ctx.trace_id, "032x") if valid else _ZERO_TRACE_ID
    event_dict["span_id"] = format(ctx.span_id, "016x") if valid else _ZERO_SPAN_ID
    return event_dict


def redact_secrets(logger, method_name, event_dict: dict) -> dict:  # noqa: ARG001
    """Mask values under OAuth-sensitive keys, including ``extra=`` fields."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def _pre_chain(time_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_studio_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
    ]


def _formatter(
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> structlog.stdlib.ProcessorFormatter:
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
    log_root: Path | str | None = None,
    studio_name: str | None = None,
) -> None:
    """Install the console handler (and optional JSON files) on the root logger.

    Parameters
    ----------
    level:
        Root log level name.
    fmt:
        ``"text"`` renders colored console lines, ``"json"`` renders JSON lines.
    log_root:
        Directory for the JSON log files; no files are written when ``None``.
    studio_name:
        Stored in the studio ContextVar and used to name the log files.
    """
    if studio_name:
        set_studio_context(studio_name)

    if fmt == "json":
        console_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        console_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(_formatter(renderer, console_chain))

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(console)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        base = Path(log_root)
        stem = studio_name or "studiolink"
        root.addHandler(_json_file_handler(base / f"{stem}.log"))
        access = _json_file_handler(base / f"{stem}.access.log")
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(access)

    structlog.configure(
        processors=[*console_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
