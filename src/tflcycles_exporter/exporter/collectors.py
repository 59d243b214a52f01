"""
Per-scrape Prometheus collectors.

Both collectors are immutable views over data owned by a single scrape; they are
registered on a throwaway `CollectorRegistry` and never on the process registry.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator, Sequence
from dataclasses import dataclass

from prometheus_client.core import GaugeMetricFamily, Metric

from tflcycles_exporter.ingestion.bikepoint import StationAvailability

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchOutcome:
    """Whether the scrape's fetch succeeded, and how long it took."""

    succeeded: bool
    elapsed_seconds: float


class ScrapeCollector:
    """Yields `tflcycles_up` and `tflcycles_scrape_duration_seconds` for one fetch."""

    def __init__(self, outcome: FetchOutcome):
        self._outcome = outcome

    def collect(self) -> Iterator[Metric]:
        yield GaugeMetricFamily(
            "tflcycles_up",
            "Whether the request to TfL's /BikePoint API succeeded.",
            value=1.0 if self._outcome.succeeded else 0.0,
        )
        yield GaugeMetricFamily(
            "tflcycles_scrape_duration_seconds",
            "The amount of time it took to retrieve and parse the data for the scrape.",
            value=float(self._outcome.elapsed_seconds),
        )


class StationAvailabilitiesCollector:
    """Yields one gauge family per station attribute, labelled by station name.

    Samples are emitted in list order. Repeated names are passed through as-is (and
    logged), since dropping either row would silently hide a station.
    """

    def __init__(self, station_availabilities: Sequence[StationAvailability]):
        self._station_availabilities = tuple(station_availabilities)

    def collect(self) -> Iterator[Metric]:
        docks = GaugeMetricFamily(
            "tflcycles_docks",
            "The total number of docks at the station, including those that are out of service.",
            labels=["station"],
        )
        docks_available = GaugeMetricFamily(
            "tflcycles_docks_available",
            "The number of in-service, vacant docks to which a bike can be returned.",
            labels=["station"],
        )
        bicycles_available = GaugeMetricFamily(
            "tflcycles_bicycles_available",
            "The number of in-service, conventional bikes available for hire.",
            labels=["station"],
        )
        ebikes_available = GaugeMetricFamily(
            "tflcycles_ebikes_available",
            "The number of in-service e-bikes available for hire.",
            labels=["station"],
        )

        for sa in self._station_availabilities:
            labels = [sa.station.name]
            docks.add_metric(labels, float(sa.station.docks))
            docks_available.add_metric(labels, float(sa.availability.docks))
            bicycles_available.add_metric(labels, float(sa.availability.bicycles))
            ebikes_available.add_metric(labels, float(sa.availability.ebikes))

        duplicates = sorted(
            name
            for name, count in Counter(sa.station.name for sa in self._station_availabilities).items()
            if count > 1
        )
        if duplicates:
            logger.warning("Duplicate station names in feed: %s", ", ".join(duplicates))

        yield docks
        yield docks_available
        yield bicycles_available
        yield ebikes_available
