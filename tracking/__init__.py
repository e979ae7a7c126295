"""Trip tracking engine: position sampling, route metrics and durable trip state."""

from tracking.models import RoutePoint, Sample, Trip, TripStatus

__all__ = ["RoutePoint", "Sample", "Trip", "TripStatus"]
