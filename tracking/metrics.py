"""
Route metrics: distance, duration and average speed.

Everything here is a pure function of its inputs so a resumed trip
recomputes exactly the values it had before the restart.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING

from core.constants import EARTH_RADIUS_KM

if TYPE_CHECKING:
    from collections.abc import Sequence

    from tracking.models import Sample

# Stored trip records use distance_km / seconds * 3.6 for averageSpeedKmh.
SPEED_FACTOR = 3.6


@dataclass(frozen=True, slots=True)
class TripMetrics:
    distance_km: float
    duration_seconds: int
    average_speed_kmh: float


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometers between two lat/lon points."""
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(d_phi / 2.0) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2.0) ** 2
    )
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return EARTH_RADIUS_KM * c


def route_distance_km(route: Sequence[Sample]) -> float:
    """Sum of Haversine distances between consecutive route points."""
    total = 0.0
    for prev, curr in zip(route, route[1:]):
        total += haversine_km(
            prev.latitude,
            prev.longitude,
            curr.latitude,
            curr.longitude,
        )
    return total


def duration_seconds(start_ms: int, end_ms: int) -> int:
    """Whole seconds between two epoch-ms instants, floored and never negative."""
    return max(0, (end_ms - start_ms) // 1000)


def average_speed_kmh(distance_km: float, seconds: int) -> float:
    if seconds <= 0:
        return 0.0
    return distance_km / seconds * SPEED_FACTOR


def compute_metrics(
    route: Sequence[Sample],
    *,
    start_ms: int | None = None,
    end_ms: int | None = None,
) -> TripMetrics:
    """
    Compute distance, duration and average speed for a route.

    Args:
        route: Points in chronological order.
        start_ms: Trip start; defaults to the first point's timestamp.
        end_ms: "Now" for an active trip or the recorded end of a completed
            one; defaults to the last point's timestamp.

    Returns:
        TripMetrics for the route.
    """
    if not route:
        return TripMetrics(distance_km=0.0, duration_seconds=0, average_speed_kmh=0.0)

    start = route[0].timestamp_ms if start_ms is None else start_ms
    end = route[-1].timestamp_ms if end_ms is None else end_ms

    distance = route_distance_km(route)
    seconds = duration_seconds(start, end)
    return TripMetrics(
        distance_km=distance,
        duration_seconds=seconds,
        average_speed_kmh=average_speed_kmh(distance, seconds),
    )


__all__ = [
    "SPEED_FACTOR",
    "TripMetrics",
    "average_speed_kmh",
    "compute_metrics",
    "duration_seconds",
    "haversine_km",
    "route_distance_km",
]
