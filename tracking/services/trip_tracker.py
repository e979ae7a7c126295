"""
Trip lifecycle state machine.

``TripTracker`` owns the single current trip. It consumes samples from a
``PositionSource``, recomputes route metrics, and writes every accepted
change through a ``TripStore`` before the change becomes visible.

All mutations (sample application, start/end commits, history deletes) run
on one consumer task fed by an ``asyncio.Queue``. A mutation is fully
applied, including its store write, before the next one starts, so samples
arriving while a write is in flight are never interleaved with it.

Transitions return a ``TripResult`` instead of raising: positioning,
validation, state and persistence failures come back as ``error`` and the
tracker stays in the state it was in.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Any, Protocol

from core.date_utils import now_ms
from core.exceptions import (
    NoActiveTripError,
    PersistenceError,
    ResourceNotFoundError,
    StateError,
    TripTrackerError,
    ValidationError,
)
from tracking.metrics import compute_metrics
from tracking.models import RoutePoint, Sample, Trip, TripStatus
from tracking.position_source import PositionSource
from tracking.services.trip_store import TripStore
from trips.services.trip_export_service import build_trips_csv

logger = logging.getLogger(__name__)

Clock = Callable[[], int]
Operation = Callable[[], Awaitable[Any]]


class TrackerState(str, Enum):
    IDLE = "idle"
    ACTIVE = "active"


@dataclass(frozen=True, slots=True)
class TripResult:
    """Outcome of a tracker operation: ``trip`` on success, ``error`` otherwise."""

    trip: Trip | None = None
    error: TripTrackerError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, trip: Trip) -> TripResult:
        return cls(trip=trip)

    @classmethod
    def failure(cls, error: TripTrackerError) -> TripResult:
        return cls(error=error)


class TripEventListener(Protocol):
    """Observer notified after a transition has been durably applied.

    Handlers should return quickly; the tracker awaits them on its
    consumer task.
    """

    async def trip_started(self, trip: Trip) -> None: ...

    async def trip_resumed(self, trip: Trip) -> None: ...

    async def sample_applied(self, trip: Trip, point: RoutePoint) -> None: ...

    async def trip_completed(self, trip: Trip) -> None: ...


def _finite_odometer(value: Any, field: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        msg = f"{field} must be a number"
        raise ValidationError(msg, {field: value}) from exc
    if isinstance(value, bool) or not math.isfinite(number):
        msg = f"{field} must be a finite number"
        raise ValidationError(msg, {field: value})
    return number


class TripTracker:
    """Single-owner state machine for the current business trip."""

    def __init__(
        self,
        position_source: PositionSource,
        store: TripStore,
        *,
        clock: Clock = now_ms,
        listeners: Iterable[TripEventListener] = (),
    ) -> None:
        self._source = position_source
        self._store = store
        self._clock = clock
        self._listeners: list[TripEventListener] = list(listeners)
        self._state = TrackerState.IDLE
        self._current: Trip | None = None
        self._history: list[Trip] = []
        self._queue: asyncio.Queue[tuple[Operation, asyncio.Future | None]] | None = None
        self._worker: asyncio.Task | None = None
        self.dropped_samples = 0
        self.applied_samples = 0

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------

    @property
    def state(self) -> TrackerState:
        return self._state

    @property
    def is_active(self) -> bool:
        return self._state is TrackerState.ACTIVE

    @property
    def current_trip(self) -> Trip | None:
        return self._current

    @property
    def history(self) -> tuple[Trip, ...]:
        return tuple(self._history)

    @property
    def position_source(self) -> PositionSource:
        return self._source

    @property
    def diagnostics(self) -> list:
        return list(self._store.diagnostics)

    def add_listener(self, listener: TripEventListener) -> None:
        self._listeners.append(listener)

    def export_history_csv(self, tz_name: str | None = None) -> str:
        """Render the completed-trip history in the expense CSV layout."""
        return build_trips_csv(self._history, tz_name)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> TrackerState:
        """Load stored state and resume an in-progress trip, if any."""
        self._ensure_worker()
        await self._submit(self._load)
        return self._state

    async def close(self) -> None:
        """Stop sampling and the consumer task. Stored state is untouched."""
        self._source.stop_continuous()
        worker, queue = self._worker, self._queue
        self._worker = None
        self._queue = None
        if worker is not None:
            worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        while queue is not None and not queue.empty():
            _, future = queue.get_nowait()
            queue.task_done()
            if future is not None and not future.done():
                future.cancel()

    async def drain(self) -> None:
        """Wait until every queued sample and transition has been applied."""
        if self._queue is not None:
            await self._queue.join()

    async def start_trip(
        self,
        purpose: str,
        start_odometer: float,
        *,
        start_location: str | None = None,
    ) -> TripResult:
        """Acquire an anchor fix, create the trip and begin sampling."""
        if self._state is TrackerState.ACTIVE:
            return TripResult.failure(
                StateError(
                    "A trip is already active",
                    {"trip_id": self._current.id if self._current else None},
                ),
            )
        try:
            odometer = _finite_odometer(start_odometer, "start_odometer")
        except ValidationError as exc:
            return TripResult.failure(exc)

        position = await self._source.get_one_shot()
        if not position.ok:
            logger.warning("Failed to start trip: %s", position.error)
            return TripResult.failure(position.error)

        return await self._submit(
            partial(
                self._commit_start,
                purpose,
                odometer,
                start_location,
                position.sample,
            ),
        )

    async def on_sample(self, sample: Sample) -> bool:
        """Apply one sample; returns whether it was appended to the route."""
        if self._state is not TrackerState.ACTIVE:
            return False
        return await self._submit(partial(self._apply_sample, sample))

    async def end_trip(
        self,
        end_odometer: float,
        *,
        end_location: str | None = None,
    ) -> TripResult:
        """Anchor the final fix, archive the trip and return to idle."""
        trip = self._current
        if self._state is not TrackerState.ACTIVE or trip is None:
            return TripResult.failure(NoActiveTripError("No active trip"))
        try:
            odometer = _finite_odometer(end_odometer, "end_odometer")
        except ValidationError as exc:
            return TripResult.failure(exc)
        if odometer < trip.start_odometer:
            return TripResult.failure(
                ValidationError(
                    "End odometer cannot be less than start odometer",
                    {
                        "start_odometer": trip.start_odometer,
                        "end_odometer": odometer,
                    },
                ),
            )

        position = await self._source.get_one_shot()
        if not position.ok:
            logger.warning("Failed to end trip %s: %s", trip.id, position.error)
            return TripResult.failure(position.error)

        return await self._submit(
            partial(
                self._commit_end,
                trip.id,
                odometer,
                end_location,
                position.sample,
            ),
        )

    async def delete_trip(self, trip_id: str) -> TripResult:
        """Remove a completed trip from history."""
        return await self._submit(partial(self._commit_delete, trip_id))

    # ------------------------------------------------------------------
    # Serialized mutations (run on the consumer task only)
    # ------------------------------------------------------------------

    async def _load(self) -> None:
        self._history = await self._store.load_history()
        current = await self._store.load_current()
        if current is None:
            self._state = TrackerState.IDLE
            logger.info("Tracker initialized idle (%d trips in history)", len(self._history))
            return

        self._current = current
        self._state = TrackerState.ACTIVE
        self._source.start_continuous(self._on_source_sample)
        logger.info(
            "Resumed active trip %s with %d route points",
            current.id,
            len(current.route),
        )
        await self._notify("trip_resumed", current)

    async def _commit_start(
        self,
        purpose: str,
        start_odometer: float,
        start_location: str | None,
        sample: Sample,
    ) -> TripResult:
        if self._state is TrackerState.ACTIVE:
            return TripResult.failure(StateError("A trip is already active"))

        trip = Trip(
            purpose=purpose,
            start_timestamp_ms=self._clock(),
            start_odometer=start_odometer,
            start_location=start_location,
            route=(RoutePoint.from_sample(sample),),
            status=TripStatus.ACTIVE,
        )
        try:
            await self._store.save_current(trip)
        except PersistenceError as exc:
            logger.exception("Failed to persist new trip")
            return TripResult.failure(exc)

        self._current = trip
        self._state = TrackerState.ACTIVE
        self._source.start_continuous(self._on_source_sample)
        logger.info("Trip %s started (%s)", trip.id, purpose)
        await self._notify("trip_started", trip)
        return TripResult.success(trip)

    async def _apply_sample(self, sample: Sample) -> bool:
        trip = self._current
        if self._state is not TrackerState.ACTIVE or trip is None:
            return False

        last_ts = trip.last_point.timestamp_ms
        if sample.timestamp_ms <= last_ts:
            self.dropped_samples += 1
            logger.debug(
                "Dropping out-of-order sample at %d (last point %d); %d dropped so far",
                sample.timestamp_ms,
                last_ts,
                self.dropped_samples,
            )
            return False

        point = RoutePoint.from_sample(sample)
        route = (*trip.route, point)
        metrics = compute_metrics(
            route,
            start_ms=trip.start_timestamp_ms,
            end_ms=self._clock(),
        )
        updated = trip.model_copy(
            update={
                "route": route,
                "distance_km": metrics.distance_km,
                "duration_seconds": metrics.duration_seconds,
                "average_speed_kmh": metrics.average_speed_kmh,
            },
        )
        try:
            await self._store.save_current(updated)
        except PersistenceError:
            logger.exception("Failed to persist sample for trip %s", trip.id)
            return False

        self._current = updated
        self.applied_samples += 1
        await self._notify("sample_applied", updated, point)
        return True

    async def _commit_end(
        self,
        trip_id: str,
        end_odometer: float,
        end_location: str | None,
        sample: Sample,
    ) -> TripResult:
        trip = self._current
        if self._state is not TrackerState.ACTIVE or trip is None or trip.id != trip_id:
            return TripResult.failure(NoActiveTripError("No active trip"))

        route = trip.route
        if sample.timestamp_ms >= trip.last_point.timestamp_ms:
            route = (*route, RoutePoint.from_sample(sample))
        else:
            logger.debug(
                "Final fix at %d predates last route point; not appended",
                sample.timestamp_ms,
            )

        end_ms = self._clock()
        metrics = compute_metrics(route, start_ms=trip.start_timestamp_ms, end_ms=end_ms)
        completed = trip.model_copy(
            update={
                "route": route,
                "end_timestamp_ms": end_ms,
                "end_odometer": end_odometer,
                "end_location": end_location,
                "distance_km": metrics.distance_km,
                "duration_seconds": metrics.duration_seconds,
                "average_speed_kmh": metrics.average_speed_kmh,
                "status": TripStatus.COMPLETED,
            },
        )
        try:
            history = await self._store.archive(completed)
        except PersistenceError as exc:
            logger.exception("Failed to archive trip %s", trip.id)
            return TripResult.failure(exc)

        self._history = history
        self._current = None
        self._state = TrackerState.IDLE
        self._source.stop_continuous()
        logger.info(
            "Trip %s completed: %.2f km in %d s",
            completed.id,
            completed.distance_km,
            completed.duration_seconds,
        )
        await self._notify("trip_completed", completed)
        return TripResult.success(completed)

    async def _commit_delete(self, trip_id: str) -> TripResult:
        trip = next((t for t in self._history if t.id == trip_id), None)
        try:
            removed = await self._store.remove_history(trip_id)
        except PersistenceError as exc:
            return TripResult.failure(exc)
        if not removed or trip is None:
            return TripResult.failure(
                ResourceNotFoundError("Trip not found", {"trip_id": trip_id}),
            )
        self._history = [t for t in self._history if t.id != trip_id]
        logger.info("Deleted trip %s from history", trip_id)
        return TripResult.success(trip)

    # ------------------------------------------------------------------
    # Queue plumbing
    # ------------------------------------------------------------------

    def _on_source_sample(self, sample: Sample) -> None:
        self._enqueue(partial(self._apply_sample, sample), None)

    def _ensure_worker(self) -> asyncio.Queue:
        if self._worker is None or self._worker.done() or self._queue is None:
            self._queue = asyncio.Queue()
            self._worker = asyncio.get_running_loop().create_task(
                self._run_queue(self._queue),
                name="trip-tracker",
            )
        return self._queue

    def _enqueue(self, operation: Operation, future: asyncio.Future | None) -> None:
        self._ensure_worker().put_nowait((operation, future))

    async def _submit(self, operation: Operation) -> Any:
        future = asyncio.get_running_loop().create_future()
        self._enqueue(operation, future)
        return await future

    async def _run_queue(self, queue: asyncio.Queue) -> None:
        while True:
            operation, future = await queue.get()
            try:
                result = await operation()
            except asyncio.CancelledError:
                if future is not None and not future.done():
                    future.cancel()
                raise
            except Exception as exc:
                if future is None:
                    logger.exception("Trip tracker operation failed")
                elif not future.done():
                    future.set_exception(exc)
            else:
                if future is not None and not future.done():
                    future.set_result(result)
            finally:
                queue.task_done()

    async def _notify(self, event: str, *args: Any) -> None:
        for listener in self._listeners:
            handler = getattr(listener, event, None)
            if handler is None:
                continue
            try:
                await handler(*args)
            except Exception:
                logger.exception("Trip listener %r failed on %s", listener, event)


__all__ = [
    "TrackerState",
    "TripEventListener",
    "TripResult",
    "TripTracker",
]
