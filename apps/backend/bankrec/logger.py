"""Structured logging configuration.

structlog is routed through stdlib logging so uvicorn, SQLAlchemy and the
engine share one handler. Production renders JSON, debug renders console.

Helpers:
- bind_batch_context: attach batch and line numbers to every event emitted
  while a request works on a reconciliation batch
- log_timing / async_log_timing: one "<operation> completed" event per pass
- log_exception: error event carrying the exception type and module
"""

import logging
import sys
import time
from collections.abc import AsyncIterator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

import structlog
from structlog.stdlib import BoundLogger
from structlog.types import Processor

from bankrec.config import settings

_BATCH_CONTEXT_KEYS = ("batch_id", "batch_number", "line_number")


def _build_processors() -> list[Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]


def _select_renderer() -> Processor:
    if settings.debug:
        return structlog.dev.ConsoleRenderer()
    return structlog.processors.JSONRenderer()


def configure_logging() -> None:
    """Route structlog and stdlib records through one stdout handler."""
    shared = _build_processors()

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(processor=_select_renderer(), foreign_pre_chain=shared)
    )
    logging.basicConfig(handlers=[handler], level=logging.DEBUG if settings.debug else logging.INFO)
    # SQL echo stays opt-in through DEBUG only
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.debug else logging.WARNING)


def get_logger(name: str | None = None) -> BoundLogger:
    return structlog.get_logger(name)


def bind_batch_context(**values: Any) -> None:
    """Bind batch_id / batch_number / line_number for the current task."""
    unknown = set(values) - set(_BATCH_CONTEXT_KEYS)
    if unknown:
        raise ValueError(f"Unsupported log context keys: {sorted(unknown)}")
    structlog.contextvars.bind_contextvars(**{k: str(v) for k, v in values.items() if v is not None})


# =============================================================================
# Timing
# =============================================================================


def _emit_timing(
    log: BoundLogger,
    level: str,
    operation: str,
    started: float,
    outcome: str,
    context: dict[str, Any],
    collected: dict[str, Any],
) -> None:
    fields = {**context, **{k: v for k, v in collected.items() if k not in ("duration_ms", "outcome")}}
    getattr(log, level, log.info)(
        f"{operation} completed",
        operation=operation,
        outcome=outcome,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
        **fields,
    )


@contextmanager
def log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> Iterator[dict[str, Any]]:
    """Time a synchronous block such as a matching pass.

    The yielded dict collects counters added while the block runs; they are
    logged alongside ``duration_ms`` and ``outcome`` ("ok" or "error").

        with log_timing("invoice_pass", logger, lines=len(lines)) as timing:
            timing["mutations"] = len(mutations)
    """
    log = logger or get_logger(__name__)
    started = time.perf_counter()
    collected: dict[str, Any] = {}
    outcome = "error"
    try:
        yield collected
        outcome = "ok"
    finally:
        _emit_timing(log, level, operation, started, outcome, context, collected)


@asynccontextmanager
async def async_log_timing(
    operation: str,
    logger: BoundLogger | None = None,
    level: str = "info",
    **context: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Async counterpart of log_timing for persistence work."""
    log = logger or get_logger(__name__)
    started = time.perf_counter()
    collected: dict[str, Any] = {}
    outcome = "error"
    try:
        yield collected
        outcome = "ok"
    finally:
        _emit_timing(log, level, operation, started, outcome, context, collected)


# =============================================================================
# Exceptions
# =============================================================================


def log_exception(
    logger: BoundLogger,
    exc: BaseException,
    context: str,
    *,
    level: str = "error",
    include_traceback: bool = True,
    **extra: Any,
) -> None:
    """Log ``exc`` under the ``context`` event name.

        except SQLAlchemyError as exc:
            log_exception(logger, exc, "Line upsert failed", line_number=number)
    """
    fields: dict[str, Any] = {
        "error": str(exc),
        "error_type": type(exc).__name__,
        "error_module": type(exc).__module__,
        **extra,
    }
    if include_traceback:
        fields["exc_info"] = exc
    getattr(logger, level, logger.error)(context, **fields)
