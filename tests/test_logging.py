import json
import logging

import pytest

from tflcycles_exporter.core.logging import JsonFormatter, configure_logging, resolve_log_format


@pytest.mark.parametrize(
    "level, log_format, want",
    [
        ("INFO", "auto", "json"),
        ("debug", "auto", "text"),
        ("DEBUG", "json", "json"),
        ("WARNING", "text", "text"),
    ],
)
def test_resolve_log_format(level, log_format, want):
    assert resolve_log_format(level, log_format) == want


def test_json_formatter_emits_one_object_per_line():
    record = logging.LogRecord("tflcycles", logging.WARNING, __file__, 1, "retrying %s", ("a\nb",), None)

    line = JsonFormatter().format(record)

    assert "\n" not in line
    payload = json.loads(line)
    assert payload["level"] == "WARNING"
    assert payload["logger"] == "tflcycles"
    assert payload["msg"] == "retrying a\nb"


def test_configure_logging_switches_formatter_with_level():
    root = logging.getLogger()
    saved_level, saved_handlers = root.level, list(root.handlers)
    try:
        configure_logging("DEBUG")
        assert not isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.DEBUG

        configure_logging("INFO")
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert root.level == logging.INFO
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
