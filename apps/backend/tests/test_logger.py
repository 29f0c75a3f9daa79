"""Tests for logging helpers."""

import pytest
import structlog
from structlog.dev import ConsoleRenderer
from structlog.processors import JSONRenderer

from bankrec import logger as logger_module


def _events(caplog) -> list[dict]:
    """Structlog event dicts handed to stdlib logging."""
    return [record.msg for record in caplog.records if isinstance(record.msg, dict)]


def test_select_renderer_uses_console_in_debug(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", True)
    renderer = logger_module._select_renderer()
    assert isinstance(renderer, ConsoleRenderer)


def test_select_renderer_uses_json_in_production(monkeypatch) -> None:
    monkeypatch.setattr(logger_module.settings, "debug", False)
    renderer = logger_module._select_renderer()
    assert isinstance(renderer, JSONRenderer)


def test_log_timing_reports_context(caplog) -> None:
    log = logger_module.get_logger("timing-test")
    with logger_module.log_timing("invoice_pass", logger=log, lines=3) as timing:
        timing["mutations"] = 2

    (event,) = [e for e in _events(caplog) if e["event"] == "invoice_pass completed"]
    assert event["lines"] == 3
    assert event["mutations"] == 2
    assert event["duration_ms"] >= 0
    assert event["outcome"] == "ok"


def test_log_timing_logs_even_on_error(caplog) -> None:
    log = logger_module.get_logger("timing-test")
    with pytest.raises(RuntimeError):
        with logger_module.log_timing("failing_pass", logger=log, level="warning"):
            raise RuntimeError("boom")
    (event,) = [e for e in _events(caplog) if e["event"] == "failing_pass completed"]
    assert event["level"] == "warning"
    assert event["outcome"] == "error"


@pytest.mark.asyncio
async def test_async_log_timing(caplog) -> None:
    async with logger_module.async_log_timing("validate_batch", batch="RAP-2401-01") as timing:
        timing["processed"] = 4
    (event,) = [e for e in _events(caplog) if e["event"] == "validate_batch completed"]
    assert event["batch"] == "RAP-2401-01"
    assert event["processed"] == 4


def test_log_exception_includes_type(caplog) -> None:
    log = logger_module.get_logger("exc-test")
    try:
        raise ValueError("bad amount")
    except ValueError as exc:
        logger_module.log_exception(log, exc, "Line upsert failed", include_traceback=False, line_number="RL-1")
    (event,) = [e for e in _events(caplog) if e["event"] == "Line upsert failed"]
    assert event["error_type"] == "ValueError"
    assert event["error"] == "bad amount"
    assert event["line_number"] == "RL-1"


def test_bind_batch_context_tags_events(caplog) -> None:
    structlog.contextvars.clear_contextvars()
    log = logger_module.get_logger("context-test")
    try:
        logger_module.bind_batch_context(batch_number="RAP-2401-01", line_number="RL-20240115-AB12C-0001")
        log.info("Line reset")
    finally:
        structlog.contextvars.clear_contextvars()

    (event,) = [e for e in _events(caplog) if e["event"] == "Line reset"]
    assert event["batch_number"] == "RAP-2401-01"
    assert event["line_number"] == "RL-20240115-AB12C-0001"


def test_bind_batch_context_rejects_unknown_keys() -> None:
    with pytest.raises(ValueError, match="user_id"):
        logger_module.bind_batch_context(user_id="42")
