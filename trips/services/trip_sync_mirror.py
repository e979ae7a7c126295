"""
Mirror local trip transitions to the remote trip-sync API.

The mirror is a ``TripEventListener``. Its handlers only enqueue work; a
single background task replays the calls in order, so a slow or failing
remote API never blocks the tracker. Failures are logged and counted, and
the local trip state is never affected by them.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

import aiohttp

from core.date_utils import format_ms_iso
from core.exceptions import ExternalServiceError
from tracking.models import RoutePoint, Trip
from trips.models import AddRoutePointRequest, CreateTripRequest, RemoteTrip
from trips.services.trip_sync_client import TripSyncClient

logger = logging.getLogger(__name__)

RemoteCall = Callable[[], Awaitable[None]]


def _same_trip(remote: RemoteTrip, trip: Trip) -> bool:
    return (
        remote.recorded_purpose == trip.purpose
        and remote.start_odometer == trip.start_odometer
    )


class TripSyncMirror:
    def __init__(self, client: TripSyncClient) -> None:
        self._client = client
        self._remote_ids: dict[str, str] = {}
        self._queue: asyncio.Queue[tuple[str, RemoteCall]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None
        self.failures = 0

    def remote_id(self, trip_id: str) -> str | None:
        return self._remote_ids.get(trip_id)

    async def trip_started(self, trip: Trip) -> None:
        async def create() -> None:
            remote = await self._client.create_trip(
                CreateTripRequest(
                    title=trip.purpose,
                    business_purpose=trip.purpose,
                    start_location=trip.start_location,
                    start_odometer=trip.start_odometer,
                ),
            )
            self._remote_ids[trip.id] = remote.id
            logger.info("Trip %s mirrored as remote trip %s", trip.id, remote.id)

        self._enqueue("create", create)

    async def trip_resumed(self, trip: Trip) -> None:
        async def recover() -> None:
            remote = await self._client.get_active_trip()
            if remote is None:
                logger.warning("No active remote trip found for resumed trip %s", trip.id)
                return
            if not _same_trip(remote, trip):
                logger.warning(
                    "Active remote trip %s (%r, odometer %s) does not match resumed trip %s",
                    remote.id,
                    remote.recorded_purpose,
                    remote.start_odometer,
                    trip.id,
                )
                return
            self._remote_ids[trip.id] = remote.id
            logger.info(
                "Resumed trip %s linked to remote trip %s started %s",
                trip.id,
                remote.id,
                remote.start_time.isoformat() if remote.start_time else "at an unknown time",
            )

        self._enqueue("recover", recover)

    async def sample_applied(self, trip: Trip, point: RoutePoint) -> None:
        async def add_point() -> None:
            remote_id = self._remote_ids.get(trip.id)
            if remote_id is None:
                logger.debug("Trip %s has no remote id; skipping route point", trip.id)
                return
            await self._client.add_route_point(
                remote_id,
                AddRoutePointRequest(
                    latitude=point.latitude,
                    longitude=point.longitude,
                    accuracy=point.accuracy_m,
                ),
            )

        self._enqueue("route", add_point)

    async def trip_completed(self, trip: Trip) -> None:
        async def complete() -> None:
            remote_id = self._remote_ids.pop(trip.id, None)
            if remote_id is None:
                logger.warning("Trip %s has no remote id; cannot complete remotely", trip.id)
                return
            await self._client.complete_trip(
                remote_id,
                end_location=trip.end_location,
                end_odometer=trip.end_odometer,
            )
            logger.info(
                "Remote trip %s completed at %s",
                remote_id,
                format_ms_iso(trip.end_timestamp_ms),
            )

        self._enqueue("complete", complete)

    async def drain(self) -> None:
        await self._queue.join()

    async def aclose(self) -> None:
        worker = self._worker
        self._worker = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker

    def _enqueue(self, label: str, call: RemoteCall) -> None:
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(),
                name="trip-sync-mirror",
            )
        self._queue.put_nowait((label, call))

    async def _run(self) -> None:
        while True:
            label, call = await self._queue.get()
            try:
                await call()
            except (ExternalServiceError, aiohttp.ClientError, TimeoutError) as exc:
                self.failures += 1
                logger.warning("Trip sync %s failed: %s", label, exc)
            except Exception:
                self.failures += 1
                logger.exception("Unexpected trip sync failure during %s", label)
            finally:
                self._queue.task_done()
