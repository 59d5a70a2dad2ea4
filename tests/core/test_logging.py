"""Tests for log correlation context."""

import logging

from app.core.logging import LogContextFilter, sync_run_context, sync_run_id_ctx


def _record() -> logging.LogRecord:
    return logging.LogRecord("test", logging.INFO, __file__, 1, "message", None, None)


def test_sync_run_id_attached_inside_context():
    log_filter = LogContextFilter()

    with sync_run_context("run-123"):
        record = _record()
        log_filter.filter(record)

    assert record.sync_run_id == "run-123"
    assert sync_run_id_ctx.get() == ""


def test_placeholders_outside_context():
    record = _record()
    LogContextFilter().filter(record)
    assert record.sync_run_id == "-"
    assert record.request_id == "-"
