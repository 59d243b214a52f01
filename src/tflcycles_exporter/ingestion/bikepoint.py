"""
BikePoint feed decoding (TfL Unified API `/BikePoint`).

This module is responsible only for:
- the typed records exposed by the exporter (`Station`, `Availability`, `StationAvailability`),
- mapping the feed's loosely-typed `additionalProperties` list onto those records,
- normalizing station names.

It performs no I/O; see `tflcycles_exporter.ingestion.bikepoint_client` for fetching.

Feed shape (one element per docking station, sorted by station ID upstream):

    [{"commonName": "River Street , Clerkenwell",
      "additionalProperties": [{"key": "NbDocks", "value": "19", "modified": "..."}, ...]},
     ...]

The `modified` timestamps are not interpreted: the Unified API may not update them if a
bike is rented and returned within the same interval, so freshness is the poll time.
"""

from __future__ import annotations

import enum
import json
import re
from dataclasses import dataclass
from typing import Any


class FeedFormatError(ValueError):
    """The feed payload is malformed and no records may be used from it."""


@dataclass(frozen=True)
class Station:
    """Relatively-stable metadata about a docking point."""

    # Human-readable location, e.g. "Stonecutter Street, Holborn" (`commonName`).
    name: str
    # Total docks, including those out of service (`NbDocks`).
    docks: int


@dataclass(frozen=True)
class Availability:
    """Hire and drop-off services currently available at a station.

    Values are independent: out-of-service docks and bikes mean they need not sum to
    `Station.docks`.
    """

    # In-service, vacant docks to which a bike can be returned (`NbEmptyDocks`).
    docks: int
    # In-service, conventional bikes available for hire (`NbStandardBikes`).
    bicycles: int
    # In-service e-bikes available for hire (`NbEBikes`).
    ebikes: int


@dataclass(frozen=True)
class StationAvailability:
    """One snapshot row: a station paired with its current availability."""

    station: Station
    availability: Availability


class StationField(enum.Enum):
    """Record field targeted by a feed property."""

    DOCKS = "docks"
    AVAILABLE_DOCKS = "available_docks"
    AVAILABLE_BICYCLES = "available_bicycles"
    AVAILABLE_EBIKES = "available_ebikes"


PROPERTY_FIELDS: dict[str, StationField] = {
    "NbDocks": StationField.DOCKS,
    "NbEmptyDocks": StationField.AVAILABLE_DOCKS,
    "NbStandardBikes": StationField.AVAILABLE_BICYCLES,
    "NbEBikes": StationField.AVAILABLE_EBIKES,
}

_WHITESPACE_BEFORE_COMMA = re.compile(r"\s+,", re.ASCII)
_DECIMAL_INT = re.compile(r"[+-]?[0-9]+", re.ASCII)


def property_field(key: str) -> StationField | None:
    """Return the field a property key populates, or None if the key is not relevant."""
    return PROPERTY_FIELDS.get(key)


def normalize_station_name(name: str) -> str:
    """Remove whitespace before commas.

    Dozens of stations have a space before the comma, and at least one has two
    ("Kennington Road  , Vauxhall").
    """
    return _WHITESPACE_BEFORE_COMMA.sub(",", name)


def _parse_count(key: str, value: Any) -> int:
    if not isinstance(value, str) or not _DECIMAL_INT.fullmatch(value):
        raise FeedFormatError(f"property {key!r} has non-integer value {value!r}")
    return int(value)


def _decode_place(place: Any, index: int) -> StationAvailability:
    if not isinstance(place, dict):
        raise FeedFormatError(f"place {index} is not an object")

    name = place.get("commonName") or ""
    if not isinstance(name, str):
        raise FeedFormatError(f"place {index} has non-string commonName")

    properties = place.get("additionalProperties") or []
    if not isinstance(properties, list):
        raise FeedFormatError(f"place {index} additionalProperties is not a list")

    counts = dict.fromkeys(StationField, 0)
    for prop in properties:
        if not isinstance(prop, dict):
            raise FeedFormatError(f"place {index} has a non-object property")
        key = prop.get("key")
        target = property_field(key) if isinstance(key, str) else None
        if target is None:
            continue
        counts[target] = _parse_count(key, prop.get("value"))

    return StationAvailability(
        station=Station(
            name=normalize_station_name(name),
            docks=counts[StationField.DOCKS],
        ),
        availability=Availability(
            docks=counts[StationField.AVAILABLE_DOCKS],
            bicycles=counts[StationField.AVAILABLE_BICYCLES],
            ebikes=counts[StationField.AVAILABLE_EBIKES],
        ),
    )


def decode_places(places: Any) -> list[StationAvailability]:
    """Decode an already-parsed feed array, preserving document order."""
    if not isinstance(places, list):
        raise FeedFormatError("BikePoint payload is not a JSON array")
    return [_decode_place(place, i) for i, place in enumerate(places)]


def decode_station_availabilities(payload: bytes | str) -> list[StationAvailability]:
    """Parse a raw `/BikePoint` response body.

    Raises:
        FeedFormatError: If the body is not valid JSON, is not an array of places, or a
            relevant property value is not a base-10 integer. No partial result is returned.
    """
    try:
        places = json.loads(payload)
    except ValueError as exc:
        raise FeedFormatError(f"invalid JSON: {exc}") from exc
    except RecursionError as exc:
        raise FeedFormatError("invalid JSON: nested too deeply") from exc
    return decode_places(places)
