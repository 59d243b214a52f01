"""
BikePoint ingestion client (TfL Unified API).

This module is responsible only for:
- issuing `GET /BikePoint` with the configured app key and User-Agent,
- bounding each attempt by a per-attempt timeout and the scrape's `FetchContext`,
- retrying transient faults with exponential backoff until the context is done,
- recording request metrics.

Fault classification per attempt:
- transport errors (connect/read failures, timeouts): transient
- HTTP 5xx: transient
- any other non-200 status: permanent, raised immediately
- undecodable payload: transient (TfL occasionally serves an inconsistent snapshot)

Station ID filtering is deliberately not implemented: the whole feed has to be decoded
anyway, so filtering is left to consumers of the metrics.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

import httpx
from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from tflcycles_exporter.config.settings import BikePointSettings
from tflcycles_exporter.core.backoff import ExponentialBackoff
from tflcycles_exporter.core.deadline import FetchContext
from tflcycles_exporter.core.http import DEFAULT_USER_AGENT, build_http_client
from tflcycles_exporter.ingestion.bikepoint import (
    FeedFormatError,
    StationAvailability,
    decode_station_availabilities,
)

logger = logging.getLogger(__name__)

# Longest response body quoted in an error message.
_MAX_ERROR_BODY_CHARS = 512


def exponential_buckets(start: float, factor: float, count: int) -> tuple[float, ...]:
    """Return `count` histogram bucket bounds: start, start*factor, start*factor**2, ..."""
    if start <= 0 or factor <= 1 or count < 1:
        raise ValueError("exponential buckets need start > 0, factor > 1, count >= 1")
    return tuple(start * factor**i for i in range(count))


class FetchError(RuntimeError):
    """Base class for errors raised by `BikePointClient.fetch()`."""


class UpstreamStatusError(FetchError):
    """BikePoint answered with a status other than 200."""

    def __init__(self, status_code: int, body: str = ""):
        self.status_code = int(status_code)
        self.body = body
        msg = f"got HTTP {self.status_code}"
        super().__init__(f"{msg}: {body}" if body else msg)

    @property
    def permanent(self) -> bool:
        return self.status_code < 500


class TransportFetchError(FetchError):
    """One attempt failed below HTTP (connection error, timeout, protocol error)."""


class FetchInterrupted(FetchError):
    """The fetch context expired or was cancelled before an attempt succeeded."""

    def __init__(self, reason: str, last_error: Exception | None = None):
        self.reason = reason
        self.last_error = last_error
        super().__init__(f"{reason}: {last_error}" if last_error else reason)


@dataclass(frozen=True)
class BikePointMetrics:
    """Process-wide request metrics; never reset."""

    request_duration: Histogram
    request_failures: Counter
    request_retries: Counter

    @classmethod
    def register(cls, registry: CollectorRegistry = REGISTRY) -> "BikePointMetrics":
        return cls(
            # Observes a shorter value if an attempt is cut short by its timeout.
            request_duration=Histogram(
                "tflcycles_bikepoint_http_request_duration_seconds",
                "Observes the duration of all requests to /BikePoint, including response parsing.",
                # The last bucket is just above the default attempt timeout.
                buckets=exponential_buckets(0.2, 1.355, 10),
                registry=registry,
            ),
            request_failures=Counter(
                "tflcycles_bikepoint_http_request_failures",
                "The number of BikePoint API requests that timed out or returned an invalid response.",
                registry=registry,
            ),
            request_retries=Counter(
                "tflcycles_bikepoint_http_request_retries",
                "The number of times we timed-out or received a 5xx error from /BikePoint, and retried.",
                registry=registry,
            ),
        )


class BikePointClient:
    """Fetches `StationAvailability` records from the BikePoint API."""

    def __init__(
        self,
        settings: BikePointSettings,
        *,
        metrics: BikePointMetrics,
        http_client: httpx.Client | None = None,
    ):
        self._settings = settings
        self._metrics = metrics
        self._http = http_client or build_http_client(user_agent=settings.user_agent)
        self._request = self._build_request()

    def _build_request(self) -> httpx.Request:
        """Build the request template reused (copied) by every attempt."""
        headers = {"User-Agent": self._settings.user_agent or DEFAULT_USER_AGENT}
        params: dict[str, str] = {}
        if self._settings.no_cache:
            # Otherwise we may receive data up to 30s old.
            headers["Cache-Control"] = "no-cache"
        if self._settings.app_key:
            # The header form is undocumented but supported by TfL.
            if self._settings.app_key_scheme == "query":
                params["app_key"] = self._settings.app_key
            else:
                headers["app_key"] = self._settings.app_key
        return self._http.build_request("GET", self._settings.url, headers=headers, params=params or None)

    def _attempt_request(self, timeout_seconds: float) -> httpx.Request:
        return httpx.Request(
            self._request.method,
            self._request.url,
            headers=self._request.headers,
            extensions={"timeout": httpx.Timeout(timeout_seconds).as_dict()},
        )

    def _attempt(self, ctx: FetchContext, timeout_seconds: float) -> list[StationAvailability]:
        """Run one request + decode. Counts the failure before re-raising any fault."""
        with self._metrics.request_duration.time():
            try:
                return self._attempt_unmetered(ctx, timeout_seconds)
            except (FetchError, FeedFormatError):
                self._metrics.request_failures.inc()
                raise

    def _attempt_unmetered(self, ctx: FetchContext, timeout_seconds: float) -> list[StationAvailability]:
        # httpx timeouts bound each network operation; this bounds the whole exchange.
        deadline = time.monotonic() + timeout_seconds
        try:
            resp = self._http.send(self._attempt_request(timeout_seconds), stream=True)
        except httpx.RequestError as exc:
            raise TransportFetchError(f"{type(exc).__name__}: {exc}") from exc

        try:
            if resp.status_code != httpx.codes.OK:
                raise UpstreamStatusError(resp.status_code, self._read_error_body(resp, ctx, deadline))
            body = self._read_body(resp, ctx, deadline)
        finally:
            resp.close()

        return decode_station_availabilities(body)

    @staticmethod
    def _read_body(
        resp: httpx.Response,
        ctx: FetchContext,
        deadline: float,
        limit: int | None = None,
    ) -> bytes:
        """Read the body chunk by chunk, abandoning it once the attempt or `ctx` is over."""
        chunks: list[bytes] = []
        size = 0
        try:
            for chunk in resp.iter_bytes():
                if ctx.done():
                    raise TransportFetchError(f"attempt interrupted: {ctx.reason()}")
                if time.monotonic() >= deadline:
                    raise TransportFetchError("attempt timed out while reading the response body")
                chunks.append(chunk)
                size += len(chunk)
                if limit is not None and size >= limit:
                    break
        except (httpx.RequestError, httpx.StreamError) as exc:
            raise TransportFetchError(f"{type(exc).__name__}: {exc}") from exc
        return b"".join(chunks)

    @classmethod
    def _read_error_body(cls, resp: httpx.Response, ctx: FetchContext, deadline: float) -> str:
        """Best-effort body of an error response, for the error message."""
        try:
            raw = cls._read_body(resp, ctx, deadline, limit=_MAX_ERROR_BODY_CHARS * 4)
        except FetchError:
            return ""
        return raw.decode("utf-8", errors="replace").strip()[:_MAX_ERROR_BODY_CHARS]

    def fetch(self, ctx: FetchContext) -> list[StationAvailability]:
        """Retrieve the latest dock and bike availability for all stations.

        Backs off exponentially until `ctx` is done. The returned list keeps the feed's
        order (by station ID).

        Raises:
            UpstreamStatusError: On a permanent (non-5xx) status; no retry is made.
            FetchInterrupted: When `ctx` expires or is cancelled; wraps the last fault.
        """
        backoff = ExponentialBackoff.from_settings(self._settings.retry)
        last_error: Exception | None = None

        while True:
            if ctx.done():
                raise FetchInterrupted(ctx.reason() or "deadline exceeded", last_error) from last_error

            timeout = ctx.attempt_timeout(self._settings.attempt_timeout_seconds)
            started = time.perf_counter()
            try:
                records = self._attempt(ctx, timeout)
            except UpstreamStatusError as exc:
                if exc.permanent:
                    raise
                last_error = exc
            except (TransportFetchError, FeedFormatError) as exc:
                last_error = exc
            else:
                logger.debug(
                    "Fetched %s stations in %.3fs",
                    len(records),
                    time.perf_counter() - started,
                )
                return records

            wait = backoff.next_wait()
            self._metrics.request_retries.inc()
            # `timeout` may not be the cause of the error above, but typically it is.
            logger.warning(
                "BikePoint attempt failed; retrying. error=%s timeout=%.3fs wait=%.3fs",
                last_error,
                timeout,
                wait,
            )
            ctx.wait(wait)
