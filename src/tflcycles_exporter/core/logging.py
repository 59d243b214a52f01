"""
Logging configuration.

We use a YAML logging config (`src/tflcycles_exporter/config/logging.yaml`) and then apply
runtime overrides from settings (e.g., `TFLCYCLES_LOG_LEVEL`, or `--debug` on the CLI).

Output is one JSON object per line by default; at DEBUG (or with `log_format: text`) it
switches to logfmt-style text, which is easier to read in a terminal.
"""

from __future__ import annotations

import copy
import json
import logging
import logging.config

from tflcycles_exporter.config.settings import get_logging_config, get_settings


class JsonFormatter(logging.Formatter):
    """Render a record as a single-line JSON object."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "time": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def resolve_log_format(level: str, log_format: str = "auto") -> str:
    if log_format != "auto":
        return log_format
    return "text" if level.upper() == "DEBUG" else "json"


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure the Python logging system based on packaged YAML config + settings."""
    settings = get_settings()
    config = copy.deepcopy(get_logging_config())

    level = (level or settings.app.log_level).upper()
    formatter = resolve_log_format(level, log_format or settings.app.log_format)

    config.setdefault("root", {})["level"] = level
    for handler in config.get("handlers", {}).values():
        if isinstance(handler, dict) and "level" in handler:
            handler["level"] = level
        if isinstance(handler, dict) and "formatter" in handler:
            handler["formatter"] = formatter

    logging.config.dictConfig(config)
