# tests/unit/test_logging_config.py
"""Tests for the JSON formatter and level resolution."""

import json
import logging
import sys

import pytest

from buildloop.logging_config import JsonFormatter, resolve_level


def _record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        "buildloop.background.worker", logging.ERROR, __file__, 1, "Job %s failed", ("j1",), None
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_line_carries_context():
    line = JsonFormatter().format(_record(job_id="j1", queue="build", unrelated="x"))
    data = json.loads(line)

    assert data["msg"] == "Job j1 failed"
    assert data["level"] == "ERROR"
    assert data["job_id"] == "j1"
    assert data["queue"] == "build"
    assert "project_id" not in data
    assert "unrelated" not in data


def test_exception_is_included():
    try:
        raise ValueError("boom")
    except ValueError:
        record = _record()
        record.exc_info = sys.exc_info()

    data = json.loads(JsonFormatter().format(record))

    assert "ValueError: boom" in data["exc"]


@pytest.mark.parametrize(
    "value, expected",
    [
        ("debug", logging.DEBUG),
        (" WARNING ", logging.WARNING),
        (logging.ERROR, logging.ERROR),
        ("nope", logging.INFO),
    ],
)
def test_resolve_level(value, expected):
    assert resolve_level(value) == expected


def test_resolve_level_from_env(monkeypatch):
    monkeypatch.setenv("BUILDLOOP_LOG_LEVEL", "debug")

    assert resolve_level() == logging.DEBUG
