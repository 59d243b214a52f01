# src/tflcycles_exporter/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/tflcycles_exporter/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `APP_KEY`, `TFLCYCLES_LOG_LEVEL`)
- an external YAML file via `TFLCYCLES_CONFIG_PATH`

Design rule:
- Tuning knobs live in YAML, not hard-coded in the client or exporter.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field

from tflcycles_exporter.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `tflcycles_exporter.config`."""
    text = resources.files("tflcycles_exporter.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "tflcycles_exporter"
    log_level: str = "INFO"
    # "auto": logfmt-style text at DEBUG, JSON lines otherwise.
    log_format: Literal["auto", "text", "json"] = "auto"


class ServerSettings(BaseModel):
    host: str = "0.0.0.0"
    port: int = Field(9722, ge=1, le=65535)


class RetrySettings(BaseModel):
    """Exponential backoff between failed BikePoint attempts."""

    initial_delay_seconds: float = Field(0.5, ge=0)
    multiplier: float = Field(1.5, ge=1)
    max_delay_seconds: float = Field(60.0, ge=0)
    jitter: float = Field(0.5, ge=0, le=1)


class BikePointSettings(BaseModel):
    url: str = "https://api.tfl.gov.uk/BikePoint"
    app_key: str = ""
    app_key_scheme: Literal["header", "query"] = "header"
    attempt_timeout_seconds: float = Field(3.0, gt=0)
    no_cache: bool = False
    user_agent: str | None = None
    retry: RetrySettings = Field(default_factory=RetrySettings)


class ScrapeSettings(BaseModel):
    default_timeout_seconds: float = Field(10.0, gt=0)
    timeout_offset_seconds: float = Field(0.5, ge=0)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)
    bikepoint: BikePointSettings = Field(default_factory=BikePointSettings)
    scrape: ScrapeSettings = Field(default_factory=ScrapeSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("TFLCYCLES_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    log_format = os.getenv("TFLCYCLES_LOG_FORMAT")
    if log_format:
        data.setdefault("app", {})["log_format"] = log_format.strip().lower()

    bikepoint = data.setdefault("bikepoint", {})
    app_key = os.getenv("APP_KEY")
    if app_key:
        bikepoint["app_key"] = app_key

    scheme = os.getenv("TFLCYCLES_APP_KEY_SCHEME")
    if scheme:
        bikepoint["app_key_scheme"] = scheme.strip().lower()

    attempt_timeout = os.getenv("TFLCYCLES_ATTEMPT_TIMEOUT_SECONDS")
    if attempt_timeout:
        bikepoint["attempt_timeout_seconds"] = attempt_timeout

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("TFLCYCLES_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
