"""Structured logging for cardsync.

Uses structlog's ProcessorFormatter so every ``logging.getLogger(__name__)``
call site gets structured output without changes.

Two output formats:
- ``text``: colored, human-readable console output (dev default)
- ``json``: JSON lines (production / log aggregation)

The service name, the id of the sync run in progress and the OTel trace
context are injected into every event.

Log directory layout (when ``log_root`` is set)::

    logs/
      cardsync/{service}.log   # application logs (JSON)
      http/{service}.log       # uvicorn and httpx transport logs (JSON)
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar, Token
from pathlib import Path

import structlog
from opentelemetry import trace

_service_context: ContextVar[str | None] = ContextVar("service_name", default=None)
_sync_run_context: ContextVar[str | None] = ContextVar("sync_run_id", default=None)


def set_service_context(name: str) -> None:
    """Set the service name for the current async context."""
    _service_context.set(name)


def get_service_context() -> str | None:
    return _service_context.get()


def bind_sync_run(run_id: str | None) -> Token[str | None]:
    """Tag log events in the current context with *run_id*; returns a reset token."""
    return _sync_run_context.set(run_id)


def reset_sync_run(token: Token[str | None]) -> None:
    _sync_run_context.reset(token)


def get_sync_run() -> str | None:
    return _sync_run_context.get()


def add_service_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``service`` and ``sync_run`` keys from the ContextVars."""
    event_dict["service"] = _service_context.get()
    run_id = _sync_run_context.get()
    if run_id is not None:
        event_dict["sync_run"] = run_id
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Inject ``trace_id`` and ``span_id`` from the current OTel span."""
    span = trace.get_current_span()
    ctx = span.get_span_context()
    if ctx and ctx.trace_id:
        event_dict["trace_id"] = format(ctx.trace_id, "032x")
        event_dict["span_id"] = format(ctx.span_id, "016x")
    else:
        event_dict["trace_id"] = "0" * 32
        event_dict["span_id"] = "0" * 16
    return event_dict


_NOISE_LOGGERS = (
    "uvicorn.access",
    "uvicorn.error",
    "httpx",
    "httpcore",
)

_DIR_APP = "cardsync"
_DIR_HTTP = "http"


def _build_processors(
    time_fmt: str,
) -> list[structlog.types.Processor]:
    """Build the pre-chain processor list with the given timestamp format."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=time_fmt),
        add_service_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _make_file_handler(path: Path, processors: list) -> logging.FileHandler:
    """Create a JSON file handler at *path*."""
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=processors,
    )
    handler = logging.FileHandler(path)
    handler.setFormatter(formatter)
    handler.setLevel(logging.DEBUG)
    return handler


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
    service_name: str | None = None,
) -> None:
    """Configure structured logging for the process.

    Parameters
    ----------
    level:
        Root log level (e.g. "DEBUG", "INFO", "WARNING").
    fmt:
        ``"text"`` for colored console, ``"json"`` for JSON lines.
    log_root:
        Root directory for JSON log files. When set, creates
        ``{log_root}/cardsync/{service}.log`` and ``{log_root}/http/{service}.log``.
    service_name:
        Service identity, stored in the ContextVar and used for file naming.
    """
    if service_name:
        set_service_context(service_name)

    if fmt == "json":
        console_processors = _build_processors(time_fmt="iso")
        renderer = structlog.processors.JSONRenderer()
    else:
        console_processors = _build_processors(time_fmt="%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=console_processors,
    )

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    # Remove existing handlers to avoid duplicate output on reconfiguration
    root.handlers.clear()
    root.addHandler(console_handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    if log_root is not None:
        log_root = Path(log_root)
        file_processors = _build_processors(time_fmt="iso")
        log_name = service_name or "cardsync"

        for subdir in (_DIR_APP, _DIR_HTTP):
            (log_root / subdir).mkdir(parents=True, exist_ok=True)

        root.addHandler(
            _make_file_handler(log_root / _DIR_APP / f"{log_name}.log", file_processors)
        )

        http_handler = _make_file_handler(log_root / _DIR_HTTP / f"{log_name}.log", file_processors)
        for name in _NOISE_LOGGERS:
            logging.getLogger(name).addHandler(http_handler)

    # Configure structlog itself (for direct structlog.get_logger() usage)
    structlog.configure(
        processors=[
            *console_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
