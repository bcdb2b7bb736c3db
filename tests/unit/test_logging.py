"""Unit tests for structured logging."""

from __future__ import annotations

import json
import logging
import sys

import pytest

from task_trigger.logging import JsonFormatter, configure_logging


def _record(msg: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord("task_trigger.test", logging.INFO, __file__, 1, msg, None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_puts_extras_under_extra() -> None:
    line = JsonFormatter().format(_record("Run triggered", run_id="run_1", task_id="echo"))
    data = json.loads(line)

    assert data["level"] == "INFO"
    assert data["logger"] == "task_trigger.test"
    assert data["message"] == "Run triggered"
    assert data["extra"] == {"run_id": "run_1", "task_id": "echo"}


def test_json_formatter_renders_exceptions() -> None:
    try:
        raise ValueError("boom")
    except ValueError:
        record = logging.LogRecord(
            "task_trigger.test", logging.ERROR, __file__, 1, "failed", None, sys.exc_info()
        )

    data = json.loads(JsonFormatter().format(record))
    assert "ValueError: boom" in data["exception"]


@pytest.mark.usefixtures("restore_logging")
def test_configure_logging_replaces_handlers() -> None:
    configure_logging("debug")
    configure_logging("warning", "text")

    root = logging.getLogger()
    assert root.level == logging.WARNING
    assert len(root.handlers) == 1
    assert not isinstance(root.handlers[0].formatter, JsonFormatter)
