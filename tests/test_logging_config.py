"""Tests for logging setup and formatters."""

import io
import json
import logging
import sys

import pytest

from gossip_rotator.error_mapping import ConfigurationError
from gossip_rotator.logging_config import JSONFormatter, TextFormatter, configure_logging, parse_level


@pytest.fixture(autouse=True)
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg="Rotation completed", fields=None, exc_info=None):
    record = logging.LogRecord("gossip_rotator.orchestrator", logging.INFO, __file__, 1, msg, None, exc_info)
    if fields is not None:
        record.fields = fields
    return record


@pytest.mark.parametrize(
    "name,level",
    [("trace", logging.DEBUG), ("debug", logging.DEBUG), ("INFO", logging.INFO), ("warn", logging.WARNING)],
)
def test_parse_level(name, level):
    assert parse_level(name) == level


def test_parse_level_unknown():
    with pytest.raises(ConfigurationError):
        parse_level("verbose")


def test_json_formatter_includes_fields():
    line = JSONFormatter().format(make_record(fields={"fingerprint": "abcdef012345", "attempts": {"installing": 1}}))
    entry = json.loads(line)

    assert entry["level"] == "INFO"
    assert entry["logger"] == "gossip_rotator.orchestrator"
    assert entry["msg"] == "Rotation completed"
    assert entry["fingerprint"] == "abcdef012345"
    assert entry["attempts"] == {"installing": 1}


def test_json_formatter_exception():
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        record = make_record(exc_info=sys.exc_info())

    entry = json.loads(JSONFormatter().format(record))

    assert entry["exception"]["type"] == "RuntimeError"
    assert "boom" in entry["exception"]["traceback"]


def test_text_formatter():
    line = TextFormatter().format(make_record(fields={"from": "idle", "to": "detected"}))

    assert "[INFO]" in line
    assert "Rotation completed" in line
    assert line.endswith("from=idle to=detected")


def test_configure_logging_replaces_handlers():
    stream = io.StringIO()
    configure_logging("debug", json_output=True, stream=stream)
    configure_logging("debug", json_output=True, stream=stream)

    logging.getLogger("gossip_rotator.test").debug("hello", extra={"fields": {"k": "v"}})

    lines = stream.getvalue().splitlines()
    assert len(lines) == 1
    assert json.loads(lines[0])["k"] == "v"
    assert logging.getLogger("httpx").level == logging.WARNING
