"""GPX replay positioning provider.

Plays back the track points of a GPX file as if they were live fixes. The
provider keeps a cursor: ``get_current`` reports the point under the cursor,
and an active watch advances it, emitting each following point with the
recorded inter-point spacing divided by ``speedup``.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import Callable, Hashable
from pathlib import Path

import gpxpy
import gpxpy.gpx

from core.date_utils import datetime_to_ms
from core.exceptions import LocationError, LocationUnavailable
from tracking.position_source import PermissionState, PositionOptions, RawPosition

logger = logging.getLogger(__name__)

DEFAULT_ACCURACY_M = 5.0
DEFAULT_INTERVAL_MS = 1000


def load_gpx_positions(
    gpx: gpxpy.gpx.GPX,
    *,
    accuracy_m: float = DEFAULT_ACCURACY_M,
    interval_ms: int = DEFAULT_INTERVAL_MS,
    start_ms: int = 0,
) -> list[RawPosition]:
    """Flatten every track segment into timestamped readings.

    Points without a time are placed ``interval_ms`` after the previous one.
    """
    positions: list[RawPosition] = []
    last_ms: int | None = None
    for track in gpx.tracks:
        for segment in track.segments:
            for point in segment.points:
                if point.time is not None:
                    ts = datetime_to_ms(point.time)
                elif last_ms is None:
                    ts = start_ms
                else:
                    ts = last_ms + interval_ms
                positions.append(
                    RawPosition(
                        latitude=point.latitude,
                        longitude=point.longitude,
                        accuracy=accuracy_m,
                        timestamp_ms=ts,
                    ),
                )
                last_ms = ts
    return positions


class GpxReplayProvider:
    """Positioning provider backed by a recorded GPX track."""

    def __init__(
        self,
        positions: list[RawPosition],
        *,
        speedup: float | None = None,
    ) -> None:
        self._positions = list(positions)
        self._speedup = speedup
        self._cursor = 0
        self._watch_ids = itertools.count(1)
        self._tasks: dict[int, asyncio.Task] = {}
        self.finished = asyncio.Event()

    @classmethod
    def from_file(
        cls,
        path: str | Path,
        *,
        speedup: float | None = None,
        accuracy_m: float = DEFAULT_ACCURACY_M,
    ) -> GpxReplayProvider:
        with Path(path).open("r", encoding="utf-8") as handle:
            gpx = gpxpy.parse(handle)
        positions = load_gpx_positions(gpx, accuracy_m=accuracy_m)
        logger.info("Loaded %d GPX points from %s", len(positions), path)
        return cls(positions, speedup=speedup)

    @property
    def remaining(self) -> int:
        return max(0, len(self._positions) - self._cursor - 1)

    def is_supported(self) -> bool:
        return True

    async def query_permission(self) -> PermissionState:
        return PermissionState.GRANTED

    async def get_current(self, options: PositionOptions) -> RawPosition:
        del options
        if not self._positions:
            msg = "GPX track has no points"
            raise LocationUnavailable(msg)
        return self._positions[self._cursor]

    def watch(
        self,
        on_position: Callable[[RawPosition], None],
        on_error: Callable[[LocationError], None],
        options: PositionOptions,
    ) -> Hashable:
        del options
        watch_id = next(self._watch_ids)
        self._tasks[watch_id] = asyncio.get_running_loop().create_task(
            self._replay(on_position, on_error),
        )
        return watch_id

    def clear_watch(self, watch_id: Hashable) -> None:
        task = self._tasks.pop(watch_id, None)
        if task is not None:
            task.cancel()

    async def aclose(self) -> None:
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def _replay(
        self,
        on_position: Callable[[RawPosition], None],
        on_error: Callable[[LocationError], None],
    ) -> None:
        if not self._positions:
            on_error(LocationUnavailable("GPX track has no points"))
            self.finished.set()
            return

        while self._cursor + 1 < len(self._positions):
            prev = self._positions[self._cursor]
            nxt = self._positions[self._cursor + 1]
            await asyncio.sleep(self._delay_seconds(prev, nxt))
            self._cursor += 1
            on_position(nxt)

        self.finished.set()
        logger.info("GPX replay finished after %d points", len(self._positions))

    def _delay_seconds(self, prev: RawPosition, nxt: RawPosition) -> float:
        if not self._speedup:
            return 0
        gap_ms = max(0, nxt.timestamp_ms - prev.timestamp_ms)
        return gap_ms / 1000.0 / self._speedup
