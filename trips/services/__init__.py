"""Trip services module."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from trips.services.trip_sync_client import TripSyncClient
    from trips.services.trip_sync_mirror import TripSyncMirror

__all__ = ("TripSyncClient", "TripSyncMirror")


def __getattr__(name: str):
    if name == "TripSyncClient":
        from trips.services.trip_sync_client import TripSyncClient

        return TripSyncClient
    if name == "TripSyncMirror":
        from trips.services.trip_sync_mirror import TripSyncMirror

        return TripSyncMirror
    msg = f"module {__name__!r} has no attribute {name!r}"
    raise AttributeError(msg)
