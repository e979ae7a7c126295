"""CSV export of completed trips for expense reporting."""

from __future__ import annotations

import logging
from datetime import date
from typing import TYPE_CHECKING

import config
from core.constants import SECONDS_PER_HOUR
from core.date_utils import ms_to_datetime

if TYPE_CHECKING:
    from collections.abc import Iterable
    from pathlib import Path

    from tracking.models import Trip

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "Date,Purpose,Start Odometer,End Odometer,Distance (km),"
    "Duration (hours),Average Speed (km/h),Start Location,End Location"
)


def _quoted(value: str | None) -> str:
    return '"' + (value or "").replace('"', '""') + '"'


def _number(value: float | None) -> str:
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def format_trip_date(epoch_ms: int, tz_name: str) -> str:
    """Short numeric date, e.g. ``3/7/2025``."""
    dt = ms_to_datetime(epoch_ms, tz_name)
    return f"{dt.month}/{dt.day}/{dt.year}"


def format_trip_row(trip: Trip, tz_name: str) -> str:
    hours = trip.duration_seconds / SECONDS_PER_HOUR
    return ",".join(
        [
            format_trip_date(trip.start_timestamp_ms, tz_name),
            _quoted(trip.purpose),
            _number(trip.start_odometer),
            _number(trip.end_odometer),
            f"{trip.distance_km:.2f}",
            f"{hours:.2f}",
            f"{trip.average_speed_kmh:.1f}",
            _quoted(trip.start_location),
            _quoted(trip.end_location),
        ],
    )


def build_trips_csv(trips: Iterable[Trip], tz_name: str | None = None) -> str:
    """Render trips as CSV text, one row per trip in the given order."""
    tz = tz_name or config.get_timezone_name()
    lines = [CSV_HEADER, *(format_trip_row(trip, tz) for trip in trips)]
    return "\n".join(lines)


def export_filename(today: date) -> str:
    return f"business_trips_{today.isoformat()}.csv"


def write_trips_csv(path: Path, trips: Iterable[Trip], tz_name: str | None = None) -> int:
    """Write the CSV export to ``path``; returns the number of trip rows."""
    rows = list(trips)
    content = build_trips_csv(rows, tz_name)
    with path.open("w", encoding="utf-8", newline="") as handle:
        handle.write(content)
    logger.info("Exported %d trips to %s", len(rows), path)
    return len(rows)
