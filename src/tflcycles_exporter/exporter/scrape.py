"""
Scrape orchestration.

Every `/stations` request runs `StationsExporter.scrape()`, which:
1) fetches the BikePoint feed once, under the scrape's `FetchContext`,
2) builds a fresh `CollectorRegistry` holding the outcome (always) and station series (on success),
3) renders it in the exposition format the scraper asked for.

Nothing is cached between scrapes; concurrent scrapes trigger independent fetches.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram
from prometheus_client.exposition import choose_encoder

from tflcycles_exporter import __version__
from tflcycles_exporter.config.settings import ScrapeSettings
from tflcycles_exporter.core.deadline import FetchContext
from tflcycles_exporter.exporter.collectors import (
    FetchOutcome,
    ScrapeCollector,
    StationAvailabilitiesCollector,
)
from tflcycles_exporter.ingestion.bikepoint_client import BikePointClient, FetchError

logger = logging.getLogger(__name__)

SCRAPE_TIMEOUT_HEADER = "X-Prometheus-Scrape-Timeout-Seconds"


@dataclass(frozen=True)
class ExporterMetrics:
    """Process-wide fetch metrics; never reset."""

    fetch_duration: Histogram
    fetch_failures: Counter

    @classmethod
    def register(cls, registry: CollectorRegistry = REGISTRY) -> "ExporterMetrics":
        return cls(
            fetch_duration=Histogram(
                "tflcycles_exporter_fetch_duration_seconds",
                "Observes the end-to-end duration of fetch operations.",
                registry=registry,
            ),
            fetch_failures=Counter(
                "tflcycles_exporter_fetch_failures",
                "Counts the number of fetch operations that have failed.",
                registry=registry,
            ),
        )


def register_build_info(registry: CollectorRegistry = REGISTRY) -> Gauge:
    """Expose `tflcycles_exporter_build_info{version}`; always 1."""
    build_info = Gauge(
        "tflcycles_exporter_build_info",
        "The version of the running exporter. Always 1.",
        ["version"],
        registry=registry,
    )
    build_info.labels(version=__version__).set(1)
    return build_info


def scrape_context(timeout_header: str | None, settings: ScrapeSettings) -> FetchContext:
    """Build the fetch context for one scrape.

    Prometheus advertises its scrape timeout in `X-Prometheus-Scrape-Timeout-Seconds`; we
    leave `timeout_offset_seconds` of it for rendering and transfer.
    """
    timeout = float(settings.default_timeout_seconds)
    if timeout_header:
        try:
            advertised = float(timeout_header)
        except ValueError:
            logger.debug("Ignoring invalid %s header: %r", SCRAPE_TIMEOUT_HEADER, timeout_header)
        else:
            if advertised > 0:
                timeout = advertised
                if timeout > settings.timeout_offset_seconds:
                    timeout -= settings.timeout_offset_seconds
    return FetchContext.with_timeout(timeout)


class StationsExporter:
    """Serves one scrape at a time per call; safe to share across threads."""

    def __init__(self, client: BikePointClient, metrics: ExporterMetrics):
        self._client = client
        self._metrics = metrics

    def build_registry(self, ctx: FetchContext) -> CollectorRegistry:
        """Fetch once and return a registry describing this scrape only."""
        start = time.perf_counter()
        try:
            station_availabilities = self._client.fetch(ctx)
        except FetchError as exc:
            logger.error("Failed to fetch station availabilities: %s", exc)
            station_availabilities = None
        elapsed = time.perf_counter() - start

        self._metrics.fetch_duration.observe(elapsed)
        if station_availabilities is None:
            self._metrics.fetch_failures.inc()

        registry = CollectorRegistry(auto_describe=False)
        registry.register(
            ScrapeCollector(
                FetchOutcome(succeeded=station_availabilities is not None, elapsed_seconds=elapsed)
            )
        )
        if station_availabilities is not None:
            registry.register(StationAvailabilitiesCollector(station_availabilities))
        return registry

    def scrape(self, ctx: FetchContext, accept: str | None = None) -> tuple[bytes, str]:
        """Run one scrape; returns (body, content type) negotiated from `accept`."""
        registry = self.build_registry(ctx)
        encoder, content_type = choose_encoder(accept or "")
        return encoder(registry), content_type
