"""
HTTP helpers.

This module centralizes the `httpx` client construction used by the BikePoint client.

Design goals:
- One pooled client per process; connections are reused across scrapes.
- Deterministic defaults (User-Agent). TfL rejects generic client identifiers such as
  `python-httpx/x.y`, so every request must carry a descriptive one.
- No client-level timeout: each attempt supplies its own, derived from the scrape deadline.
"""

from __future__ import annotations

import httpx

from tflcycles_exporter import __version__

DEFAULT_USER_AGENT = f"tflcycles_exporter/{__version__}"


def build_http_client(
    *,
    user_agent: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> httpx.Client:
    """Return a pooled client carrying the exporter's User-Agent.

    `transport` is only overridden in tests (e.g., `httpx.MockTransport`).
    """
    return httpx.Client(
        headers={"User-Agent": user_agent or DEFAULT_USER_AGENT},
        timeout=None,
        follow_redirects=False,
        transport=transport,
    )
