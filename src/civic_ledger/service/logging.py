"""Structured logging for the pipeline service.

structlog renders every record: JSON when stderr is not a terminal (or
``CIVIC_LOG_JSON=1``), coloured console output otherwise. Modules keep using
``logging.getLogger(__name__)``; stdlib records run through the same processor
chain as structlog events, so context bound by the request middleware, and
re-bound by side-effect workers, appears on both.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

NOISY_LOGGERS = ("uvicorn.access", "httpx", "httpcore")


def _stamp_service(service_name: str):
    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        event_dict.setdefault("service", service_name)
        return event_dict

    return processor


def _wants_json() -> bool:
    return os.getenv("CIVIC_LOG_JSON") == "1" or not sys.stderr.isatty()


def build_processors(service_name: str) -> list[Any]:
    """Processors shared by structlog events and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        _stamp_service(service_name),
    ]


def configure_logging(
    level: str = "INFO",
    json_output: bool | None = None,
    service_name: str = "civic-ledger",
) -> None:
    """Install structlog as the renderer of the root logger.

    Args:
        level: Root log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Force JSON (True) or console (False) output;
            None picks JSON outside a terminal
        service_name: Value of the ``service`` key on every entry
    """
    if json_output is None:
        json_output = _wants_json()

    shared = build_processors(service_name)
    renderer: Any
    if json_output:
        shared.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper()))

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def bind_context(**values: Any) -> None:
    """Attach values to every log entry of the current context.

    Example:
        bind_context(correlation_id="abc123")
        logger.info("Processing request")  # carries correlation_id
    """
    structlog.contextvars.bind_contextvars(**values)


def get_context() -> dict[str, Any]:
    """Snapshot the bound values, for handing over to a worker thread."""
    return dict(structlog.contextvars.get_contextvars())


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()


@contextmanager
def bound_context(**values: Any) -> Iterator[None]:
    """Bind values for the duration of a block, then clear the context."""
    bind_context(**values)
    try:
        yield
    finally:
        clear_context()


__all__ = [
    "build_processors",
    "configure_logging",
    "bind_context",
    "bound_context",
    "get_context",
    "clear_context",
]
