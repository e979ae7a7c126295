import asyncio
from datetime import UTC, datetime, timedelta

import gpxpy.gpx
import pytest

from core.exceptions import LocationUnavailable
from tracking.position_source import CONTINUOUS_OPTIONS, PositionSource
from tracking.providers.gpx_replay import GpxReplayProvider, load_gpx_positions

START = datetime(2025, 3, 7, 9, 0, tzinfo=UTC)
START_MS = int(START.timestamp() * 1000)


def _gpx(points, *, timed: bool = True) -> gpxpy.gpx.GPX:
    gpx = gpxpy.gpx.GPX()
    track = gpxpy.gpx.GPXTrack()
    segment = gpxpy.gpx.GPXTrackSegment()
    for index, (lat, lon) in enumerate(points):
        time = START + timedelta(seconds=30 * index) if timed else None
        segment.points.append(gpxpy.gpx.GPXTrackPoint(lat, lon, time=time))
    track.segments.append(segment)
    gpx.tracks.append(track)
    return gpx


ROUTE = [(41.0, -87.0), (41.001, -87.0), (41.002, -87.001)]


def test_load_gpx_positions_uses_point_times() -> None:
    positions = load_gpx_positions(_gpx(ROUTE), accuracy_m=3.0)

    assert [p.timestamp_ms for p in positions] == [
        START_MS,
        START_MS + 30_000,
        START_MS + 60_000,
    ]
    assert {p.accuracy for p in positions} == {3.0}


def test_load_gpx_positions_spaces_untimed_points() -> None:
    positions = load_gpx_positions(_gpx(ROUTE, timed=False), interval_ms=500, start_ms=10)

    assert [p.timestamp_ms for p in positions] == [10, 510, 1010]


def test_from_file_parses_gpx(tmp_path) -> None:
    path = tmp_path / "trip.gpx"
    path.write_text(_gpx(ROUTE).to_xml(), encoding="utf-8")

    provider = GpxReplayProvider.from_file(path)

    assert provider.remaining == 2


@pytest.mark.asyncio
async def test_one_shot_reports_point_under_cursor() -> None:
    provider = GpxReplayProvider(load_gpx_positions(_gpx(ROUTE)))

    result = await PositionSource(provider).get_one_shot()

    assert result.ok
    assert (result.sample.latitude, result.sample.longitude) == ROUTE[0]


@pytest.mark.asyncio
async def test_watch_replays_remaining_points_in_order() -> None:
    provider = GpxReplayProvider(load_gpx_positions(_gpx(ROUTE)))
    received = []

    provider.watch(received.append, lambda _error: None, CONTINUOUS_OPTIONS)
    await asyncio.wait_for(provider.finished.wait(), timeout=1)

    assert [(p.latitude, p.longitude) for p in received] == ROUTE[1:]
    assert provider.remaining == 0
    last = await provider.get_current(CONTINUOUS_OPTIONS)
    assert (last.latitude, last.longitude) == ROUTE[-1]
    await provider.aclose()


@pytest.mark.asyncio
async def test_empty_track_reports_unavailable() -> None:
    provider = GpxReplayProvider([])
    errors = []

    result = await PositionSource(provider).get_one_shot()
    provider.watch(lambda _p: None, errors.append, CONTINUOUS_OPTIONS)
    await asyncio.wait_for(provider.finished.wait(), timeout=1)

    assert isinstance(result.error, LocationUnavailable)
    assert isinstance(errors[0], LocationUnavailable)


@pytest.mark.asyncio
async def test_clear_watch_stops_replay() -> None:
    provider = GpxReplayProvider(load_gpx_positions(_gpx(ROUTE)), speedup=0.001)
    received = []

    watch_id = provider.watch(received.append, lambda _error: None, CONTINUOUS_OPTIONS)
    await asyncio.sleep(0)
    provider.clear_watch(watch_id)
    await asyncio.sleep(0)

    assert received == []
    assert not provider.finished.is_set()
    await provider.aclose()
