"""structlog configuration and per-scan correlation.

Two renderers:
- "json": one JSON object per line, for the service and log shipping
- "console": colored key/value output for a terminal

A correlation ID ties together every log line produced while handling one
QR scan or one offline replay batch. Scans inside a batch share the batch's
ID. The tenant is bound separately with ``bind_tenant``.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4

import structlog

_correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def set_correlation_id(cid: str) -> None:
    _correlation_id.set(cid)


def get_correlation_id() -> str:
    return _correlation_id.get()


def new_correlation_id(prefix: str) -> str:
    """``<prefix>-<12 hex chars>``, e.g. ``replay-3f9c0a1b2d4e``."""
    return f"{prefix}-{uuid4().hex[:12]}"


@contextmanager
def correlation_scope(prefix: str) -> Iterator[str]:
    """Bind a fresh correlation ID for the block unless one is already bound.

    An outer scope wins, so a scan replayed inside a batch logs under the
    batch's ID. The previous value is restored on exit.
    """
    current = _correlation_id.get()
    if current:
        yield current
        return
    token = _correlation_id.set(new_correlation_id(prefix))
    try:
        yield _correlation_id.get()
    finally:
        _correlation_id.reset(token)


def bind_tenant(tenant_id: str) -> None:
    """Attach tenant_id to every subsequent log entry in this context."""
    structlog.contextvars.bind_contextvars(tenant_id=tenant_id)


def _add_correlation_id(
    logger: structlog.types.WrappedLogger,
    method_name: str,
    event_dict: structlog.types.EventDict,
) -> structlog.types.EventDict:
    cid = _correlation_id.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def setup_logging(level: str = "INFO", log_format: str = "json") -> None:
    """Route structlog through stdlib logging to stderr.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        log_format: "json" or "console".
    """
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_correlation_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    renderer: structlog.types.Processor
    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                renderer,
            ],
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level.upper())
