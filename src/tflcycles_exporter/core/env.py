"""
Environment helpers.

Operators often keep the TfL application key in a `.env` file next to where the
exporter is started. `load_dotenv_if_present()` loads it once, without overriding
variables already set in the process environment (e.g., by systemd or Docker).
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


@lru_cache
def load_dotenv_if_present() -> Path | None:
    """Load `.env` once if present; returns the loaded env path (or None)."""
    # Respect explicit env file path if provided.
    explicit = os.getenv("TFLCYCLES_ENV_FILE")
    if explicit:
        env_path = Path(explicit).expanduser().resolve()
        if env_path.is_file():
            load_dotenv(dotenv_path=env_path, override=False)
            return env_path
        return None

    env_path = Path.cwd() / ".env"
    if env_path.is_file():
        load_dotenv(dotenv_path=env_path, override=False)
        return env_path
    return None
