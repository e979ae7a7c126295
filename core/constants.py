"""Global constants for the core package.

This module contains shared constants used across the application core.
"""

from typing import Final

# HTTP Client Constants
HTTP_CONNECTION_LIMIT: Final[int] = 10
HTTP_TIMEOUT_CONNECT: Final[float] = 10.0
HTTP_TIMEOUT_SOCK_READ: Final[float] = 30.0
HTTP_TIMEOUT_TOTAL: Final[float] = 60.0

# Geodesy
EARTH_RADIUS_KM: Final[float] = 6371.0
SECONDS_PER_HOUR: Final[int] = 3600

# Positioning options (milliseconds)
POSITION_TIMEOUT_MS: Final[int] = 10_000
CONTINUOUS_MAX_AGE_MS: Final[int] = 5_000
ONE_SHOT_MAX_AGE_MS: Final[int] = 60_000

# Storage keys
CURRENT_TRIP_KEY: Final[str] = "trip_tracker_current_trip"
TRIP_HISTORY_KEY: Final[str] = "trip_tracker_trips"
