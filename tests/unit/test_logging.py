"""
Tests for the console log formatter.
"""
import logging

from app.core.logging import ExecutionFormatter, log_execution_context


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("app.test", logging.WARNING, __file__, 1, message, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestExecutionFormatter:

    def test_context_ids_are_appended(self):
        formatter = ExecutionFormatter("%(levelname)s | %(message)s", use_color=False)
        context = log_execution_context("exec_1", "order-9", step="orphan_tickets")

        line = formatter.format(make_record("Pass started", context=context))

        assert line == "WARNING | Pass started | execution_id=exec_1 order_id=order-9"

    def test_plain_record(self):
        formatter = ExecutionFormatter("%(levelname)s | %(message)s", use_color=False)

        assert formatter.format(make_record("hello")) == "WARNING | hello"

    def test_color_does_not_leak_into_record(self):
        formatter = ExecutionFormatter("%(levelname)s | %(message)s", use_color=True)
        record = make_record("hello")

        line = formatter.format(record)

        assert "\033[33m" in line
        assert record.levelname == "WARNING"
