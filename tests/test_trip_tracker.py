import asyncio
import math

import pytest

from core.exceptions import (
    LocationPermissionDenied,
    LocationTimeout,
    NoActiveTripError,
    PersistenceCorruptError,
    PersistenceError,
    ResourceNotFoundError,
    StateError,
    ValidationError,
)
from position_fakes import FakeClock, ScriptedProvider, raw
from tracking.models import Sample, TripStatus
from tracking.position_source import PositionSource
from tracking.services.trip_store import InMemoryTripStore
from tracking.services.trip_tracker import TrackerState, TripTracker

T0 = 1_700_000_000_000


class FlakyStore(InMemoryTripStore):
    """In-memory store whose writes can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_save = False
        self.fail_archive = False

    async def save_current(self, trip) -> None:
        if self.fail_save:
            msg = "disk full"
            raise PersistenceError(msg)
        await super().save_current(trip)

    async def archive(self, trip):
        if self.fail_archive:
            msg = "disk full"
            raise PersistenceError(msg)
        return await super().archive(trip)


class RecordingListener:
    def __init__(self) -> None:
        self.events: list[tuple[str, str]] = []

    async def trip_started(self, trip) -> None:
        self.events.append(("started", trip.id))

    async def trip_resumed(self, trip) -> None:
        self.events.append(("resumed", trip.id))

    async def sample_applied(self, trip, point) -> None:
        self.events.append(("sample", trip.id))

    async def trip_completed(self, trip) -> None:
        self.events.append(("completed", trip.id))


class ExplodingListener:
    async def trip_started(self, trip) -> None:
        msg = "listener bug"
        raise RuntimeError(msg)


def _sample(lon: float, ts: int, lat: float = 0.0) -> Sample:
    return Sample(latitude=lat, longitude=lon, accuracy_m=5.0, timestamp_ms=ts)


async def _start(tracker, provider, purpose="client visit", odometer=1000):
    provider.one_shots.append(raw(0.0, 0.0, T0))
    result = await tracker.start_trip(purpose, odometer)
    assert result.ok, result.error
    return result.trip


@pytest.mark.asyncio
async def test_initialize_empty_store_is_idle(tracker) -> None:
    assert tracker.state is TrackerState.IDLE
    assert tracker.current_trip is None
    assert tracker.history == ()


@pytest.mark.asyncio
async def test_full_trip_lifecycle(tracker, provider, store, clock) -> None:
    trip = await _start(tracker, provider)

    assert tracker.state is TrackerState.ACTIVE
    assert trip.purpose == "client visit"
    assert trip.start_odometer == 1000
    assert trip.start_timestamp_ms == T0
    assert len(trip.route) == 1
    assert trip.status is TripStatus.ACTIVE
    assert store.records[store.current_key]
    assert provider.watch_calls == 1

    clock.advance(1_800_000)
    assert await tracker.on_sample(_sample(0.1, T0 + 1_800_000)) is True
    clock.advance(1_800_000)
    assert await tracker.on_sample(_sample(0.2, T0 + 3_600_000)) is True

    live = tracker.current_trip
    assert len(live.route) == 3
    assert live.duration_seconds == 3600
    assert live.distance_km == pytest.approx(22.24, abs=0.1)

    provider.one_shots.append(raw(0.0, 0.2, T0 + 3_600_000))
    result = await tracker.end_trip(1050, end_location="Client HQ")

    assert result.ok
    completed = result.trip
    assert completed.status is TripStatus.COMPLETED
    assert completed.end_odometer == 1050
    assert completed.end_location == "Client HQ"
    assert completed.end_timestamp_ms == T0 + 3_600_000
    assert len(completed.route) == 4
    assert completed.duration_seconds == 3600
    assert completed.average_speed_kmh == pytest.approx(
        completed.distance_km / 3600 * 3.6,
    )

    assert tracker.state is TrackerState.IDLE
    assert tracker.current_trip is None
    assert tracker.history == (completed,)
    assert store.current_key not in store.records
    assert await store.load_history() == [completed]
    assert provider.watches == {}


@pytest.mark.asyncio
async def test_history_is_most_recent_first(tracker, provider, clock) -> None:
    first = await _start(tracker, provider, purpose="first")
    provider.one_shots.append(raw(0.0, 0.0, T0))
    await tracker.end_trip(1000)

    clock.advance(60_000)
    provider.one_shots.append(raw(0.0, 0.0, T0 + 60_000))
    second = (await tracker.start_trip("second", 1000)).trip
    provider.one_shots.append(raw(0.0, 0.0, T0 + 60_000))
    await tracker.end_trip(1001)

    assert [t.id for t in tracker.history] == [second.id, first.id]


@pytest.mark.asyncio
async def test_start_while_active_is_state_error(tracker, provider) -> None:
    trip = await _start(tracker, provider)

    result = await tracker.start_trip("again", 5)

    assert isinstance(result.error, StateError)
    assert tracker.current_trip == trip


@pytest.mark.asyncio
@pytest.mark.parametrize("odometer", [math.nan, math.inf, "abc", None, True])
async def test_start_rejects_non_finite_odometer(tracker, provider, odometer) -> None:
    result = await tracker.start_trip("visit", odometer)

    assert isinstance(result.error, ValidationError)
    assert tracker.state is TrackerState.IDLE
    assert provider.one_shot_options == []


@pytest.mark.asyncio
async def test_start_positioning_failure_stays_idle(tracker, provider, store) -> None:
    denied = LocationPermissionDenied("Location access denied by user.")
    provider.one_shots.append(denied)

    result = await tracker.start_trip("visit", 10)

    assert result.error is denied
    assert tracker.state is TrackerState.IDLE
    assert store.records == {}
    assert provider.watch_calls == 0


@pytest.mark.asyncio
async def test_start_persistence_failure_stays_idle(provider, clock) -> None:
    store = FlakyStore()
    store.fail_save = True
    tracker = TripTracker(PositionSource(provider), store, clock=clock)
    await tracker.initialize()
    try:
        provider.one_shots.append(raw(0.0, 0.0, T0))
        result = await tracker.start_trip("visit", 10)

        assert isinstance(result.error, PersistenceError)
        assert tracker.state is TrackerState.IDLE
        assert tracker.current_trip is None
    finally:
        await tracker.close()


@pytest.mark.asyncio
async def test_sample_when_idle_is_ignored(tracker) -> None:
    assert await tracker.on_sample(_sample(0.1, T0)) is False
    assert tracker.applied_samples == 0


@pytest.mark.asyncio
async def test_out_of_order_sample_is_dropped(tracker, provider, clock) -> None:
    await _start(tracker, provider)
    clock.advance(10_000)
    assert await tracker.on_sample(_sample(0.01, T0 + 10_000))
    before = tracker.current_trip

    assert await tracker.on_sample(_sample(0.02, T0 + 5_000)) is False
    assert await tracker.on_sample(_sample(0.02, T0 + 10_000)) is False

    assert tracker.current_trip == before
    assert tracker.dropped_samples == 2


@pytest.mark.asyncio
async def test_sample_persistence_failure_keeps_previous_trip(provider, clock) -> None:
    store = FlakyStore()
    tracker = TripTracker(PositionSource(provider), store, clock=clock)
    await tracker.initialize()
    try:
        trip = await _start(tracker, provider)
        store.fail_save = True
        clock.advance(1_000)

        assert await tracker.on_sample(_sample(0.01, T0 + 1_000)) is False
        assert tracker.current_trip == trip
        assert await store.load_current() == trip
    finally:
        await tracker.close()


@pytest.mark.asyncio
async def test_source_samples_are_applied_in_arrival_order(tracker, provider, clock) -> None:
    listener = RecordingListener()
    tracker.add_listener(listener)
    await _start(tracker, provider)
    clock.advance(30_000)

    provider.emit(raw(0.0, 0.01, T0 + 10_000))
    provider.emit(raw(0.0, 0.005, T0 + 5_000))
    provider.emit(raw(0.0, 0.02, T0 + 20_000))
    await tracker.drain()

    route = tracker.current_trip.route
    assert [p.timestamp_ms for p in route] == [T0, T0 + 10_000, T0 + 20_000]
    assert tracker.applied_samples == 2
    assert tracker.dropped_samples == 1
    assert [kind for kind, _ in listener.events] == ["started", "sample", "sample"]


@pytest.mark.asyncio
async def test_end_when_idle_is_no_active_trip(tracker) -> None:
    result = await tracker.end_trip(100)

    assert isinstance(result.error, NoActiveTripError)


@pytest.mark.asyncio
async def test_end_below_start_odometer_is_rejected(tracker, provider, store) -> None:
    trip = await _start(tracker, provider)

    result = await tracker.end_trip(900)

    assert isinstance(result.error, ValidationError)
    assert tracker.state is TrackerState.ACTIVE
    assert tracker.current_trip == trip
    assert await store.load_current() == trip


@pytest.mark.asyncio
async def test_end_rejects_non_finite_odometer(tracker, provider) -> None:
    await _start(tracker, provider)

    result = await tracker.end_trip(math.inf)

    assert isinstance(result.error, ValidationError)
    assert tracker.is_active


@pytest.mark.asyncio
async def test_end_positioning_failure_stays_active(tracker, provider) -> None:
    trip = await _start(tracker, provider)
    provider.one_shots.append(LocationTimeout("Location request timed out."))

    result = await tracker.end_trip(1010)

    assert isinstance(result.error, LocationTimeout)
    assert tracker.state is TrackerState.ACTIVE
    assert tracker.current_trip == trip
    assert provider.watch_calls == 1
    assert provider.watches


@pytest.mark.asyncio
async def test_end_archive_failure_keeps_trip_active(provider, clock) -> None:
    store = FlakyStore()
    tracker = TripTracker(PositionSource(provider), store, clock=clock)
    await tracker.initialize()
    try:
        trip = await _start(tracker, provider)
        store.fail_archive = True
        provider.one_shots.append(raw(0.0, 0.0, T0))

        result = await tracker.end_trip(1001)

        assert isinstance(result.error, PersistenceError)
        assert tracker.state is TrackerState.ACTIVE
        assert tracker.current_trip == trip
        assert tracker.history == ()
        assert await store.load_current() == trip
    finally:
        await tracker.close()


@pytest.mark.asyncio
async def test_zero_duration_trip_has_zero_speed(tracker, provider) -> None:
    await _start(tracker, provider)
    provider.one_shots.append(raw(0.0, 0.001, T0))

    result = await tracker.end_trip(1000)

    assert result.trip.duration_seconds == 0
    assert result.trip.average_speed_kmh == 0
    assert result.trip.distance_km > 0


@pytest.mark.asyncio
async def test_stale_final_fix_is_not_appended(tracker, provider, clock) -> None:
    await _start(tracker, provider)
    clock.advance(20_000)
    await tracker.on_sample(_sample(0.01, T0 + 20_000))
    provider.one_shots.append(raw(0.0, 0.5, T0 + 1_000))

    result = await tracker.end_trip(1001)

    assert [p.timestamp_ms for p in result.trip.route] == [T0, T0 + 20_000]


@pytest.mark.asyncio
async def test_resume_restores_trip_without_new_anchor(store, clock) -> None:
    first_provider = ScriptedProvider()
    first = TripTracker(PositionSource(first_provider), store, clock=clock)
    await first.initialize()
    trip = await _start(first, first_provider)
    clock.advance(5_000)
    await first.on_sample(_sample(0.01, T0 + 5_000))
    saved = first.current_trip
    await first.close()

    provider = ScriptedProvider()
    listener = RecordingListener()
    resumed = TripTracker(PositionSource(provider), store, clock=clock, listeners=[listener])
    try:
        assert await resumed.initialize() is TrackerState.ACTIVE
        assert resumed.current_trip == saved
        assert resumed.current_trip.id == trip.id
        assert provider.one_shot_options == []
        assert provider.watch_calls == 1
        assert listener.events == [("resumed", trip.id)]
    finally:
        await resumed.close()


@pytest.mark.asyncio
async def test_corrupt_current_record_starts_idle(provider, clock) -> None:
    store = InMemoryTripStore({"trip_tracker_current_trip": "{not json"})
    tracker = TripTracker(PositionSource(provider), store, clock=clock)
    try:
        assert await tracker.initialize() is TrackerState.IDLE
        assert len(tracker.diagnostics) == 1
        assert isinstance(tracker.diagnostics[0], PersistenceCorruptError)
        assert store.records == {}
    finally:
        await tracker.close()


@pytest.mark.asyncio
async def test_delete_trip_from_history(tracker, provider, store) -> None:
    trip = await _start(tracker, provider)
    provider.one_shots.append(raw(0.0, 0.0, T0))
    await tracker.end_trip(1000)

    result = await tracker.delete_trip(trip.id)

    assert result.ok
    assert result.trip.id == trip.id
    assert tracker.history == ()
    assert await store.load_history() == []

    missing = await tracker.delete_trip(trip.id)
    assert isinstance(missing.error, ResourceNotFoundError)


@pytest.mark.asyncio
async def test_listener_failure_does_not_break_transition(tracker, provider) -> None:
    recorder = RecordingListener()
    tracker.add_listener(ExplodingListener())
    tracker.add_listener(recorder)

    trip = await _start(tracker, provider)

    assert tracker.is_active
    assert recorder.events == [("started", trip.id)]


@pytest.mark.asyncio
async def test_live_duration_uses_clock_not_last_sample(tracker, provider, clock) -> None:
    await _start(tracker, provider)
    clock.advance(120_000)

    await tracker.on_sample(_sample(0.01, T0 + 30_000))

    assert tracker.current_trip.duration_seconds == 120


def test_tracker_starts_idle_without_event_loop() -> None:
    tracker = TripTracker(PositionSource(ScriptedProvider()), InMemoryTripStore(), clock=FakeClock(T0))

    assert tracker.state is TrackerState.IDLE
    assert tracker.dropped_samples == 0


@pytest.mark.asyncio
async def test_export_history_csv_lists_completed_trips(tracker, provider, clock) -> None:
    await _start(tracker, provider, purpose="warehouse audit")
    clock.advance(7_200_000)
    provider.one_shots.append(raw(0.0, 0.0, T0 + 7_200_000))
    await tracker.end_trip(1000)

    header, row = tracker.export_history_csv().split("\n")

    assert header.startswith("Date,Purpose,")
    assert row == '11/14/2023,"warehouse audit",1000,1000,0.00,2.00,0.0,"",""'


class BlockingStore(InMemoryTripStore):
    """Store whose current-trip write waits until released."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def save_current(self, trip) -> None:
        self.entered.set()
        await self.release.wait()
        await super().save_current(trip)


@pytest.mark.asyncio
async def test_close_cancels_transition_in_flight(provider, clock) -> None:
    store = BlockingStore()
    tracker = TripTracker(PositionSource(provider), store, clock=clock)
    await tracker.initialize()
    provider.one_shots.append(raw(0.0, 0.0, T0))

    start = asyncio.create_task(tracker.start_trip("visit", 10))
    await asyncio.wait_for(store.entered.wait(), timeout=1)
    await tracker.close()
    done, _ = await asyncio.wait({start}, timeout=1)

    assert start in done
    assert start.cancelled()
    assert tracker.state is TrackerState.IDLE
    assert store.records == {}
