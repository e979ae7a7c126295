"""
Durable storage for the current trip slot and the trip history.

Two logical keys are kept: the current (active) trip record and a JSON
array of completed trips, most recent first. Every backend guarantees that
``archive`` (prepend to history + clear the current slot) commits as one
unit, so a crash leaves either the pre-archive or the post-archive state.

Malformed records are never raised to the caller on load: the affected key
is treated as absent/empty and the problem is appended to ``diagnostics``.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import tempfile
from collections.abc import Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

import redis.asyncio as aioredis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import RedisError, WatchError

import config
from core.constants import CURRENT_TRIP_KEY, TRIP_HISTORY_KEY
from core.exceptions import PersistenceCorruptError, PersistenceError
from core.redis import get_shared_redis
from tracking.models import Trip, TripStatus

logger = logging.getLogger(__name__)

MAX_WATCH_RETRIES = 5

HistoryUpdate = Callable[[list[Trip]], list[Trip]]


@runtime_checkable
class TripStore(Protocol):
    diagnostics: list[PersistenceCorruptError]

    async def load_current(self) -> Trip | None: ...

    async def load_history(self) -> list[Trip]: ...

    async def save_current(self, trip: Trip) -> None: ...

    async def clear_current(self) -> None: ...

    async def prepend_history(self, trip: Trip) -> list[Trip]: ...

    async def archive(self, trip: Trip) -> list[Trip]: ...

    async def remove_history(self, trip_id: str) -> bool: ...


def _prepend(trip: Trip) -> HistoryUpdate:
    def update(history: list[Trip]) -> list[Trip]:
        return [trip, *(t for t in history if t.id != trip.id)]

    return update


class _TripRecordStore:
    """Record encoding and corruption handling shared by all backends."""

    def __init__(
        self,
        *,
        current_key: str = CURRENT_TRIP_KEY,
        history_key: str = TRIP_HISTORY_KEY,
    ) -> None:
        self.current_key = current_key
        self.history_key = history_key
        self.diagnostics: list[PersistenceCorruptError] = []

    def _corrupt(self, key: str, reason: str) -> None:
        error = PersistenceCorruptError(
            f"Stored record for {key!r} is malformed",
            {"key": key, "reason": reason},
        )
        self.diagnostics.append(error)
        logger.warning("Ignoring malformed record for %s: %s", key, reason)

    @staticmethod
    def _encode_current(trip: Trip) -> str:
        return json.dumps(trip.to_record(), separators=(",", ":"))

    @staticmethod
    def _encode_history(history: list[Trip]) -> str:
        return json.dumps([t.to_record() for t in history], separators=(",", ":"))

    def _decode_current(self, raw: Any) -> Trip | None:
        if raw is None:
            return None
        try:
            record = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
            trip = Trip.from_record(record)
        except (ValueError, TypeError, PydanticValidationError) as exc:
            self._corrupt(self.current_key, str(exc))
            return None
        if trip.status is not TripStatus.ACTIVE:
            self._corrupt(self.current_key, f"unexpected status {trip.status.value}")
            return None
        return trip

    def _decode_history(self, raw: Any) -> list[Trip]:
        if raw is None:
            return []
        try:
            records = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else raw
            if not isinstance(records, list):
                msg = "history is not a list"
                raise TypeError(msg)
            return [Trip.from_record(record) for record in records]
        except (ValueError, TypeError, PydanticValidationError) as exc:
            self._corrupt(self.history_key, str(exc))
            return []


class InMemoryTripStore(_TripRecordStore):
    """Process-local store holding serialized records in a dict."""

    def __init__(
        self,
        records: dict[str, str] | None = None,
        *,
        current_key: str = CURRENT_TRIP_KEY,
        history_key: str = TRIP_HISTORY_KEY,
    ) -> None:
        super().__init__(current_key=current_key, history_key=history_key)
        self.records: dict[str, str] = dict(records or {})

    async def load_current(self) -> Trip | None:
        trip = self._decode_current(self.records.get(self.current_key))
        if trip is None:
            self.records.pop(self.current_key, None)
        return trip

    async def load_history(self) -> list[Trip]:
        return self._decode_history(self.records.get(self.history_key))

    async def save_current(self, trip: Trip) -> None:
        self.records[self.current_key] = self._encode_current(trip)

    async def clear_current(self) -> None:
        self.records.pop(self.current_key, None)

    async def prepend_history(self, trip: Trip) -> list[Trip]:
        return self._update_history(_prepend(trip), clear_current=False)

    async def archive(self, trip: Trip) -> list[Trip]:
        return self._update_history(_prepend(trip), clear_current=True)

    async def remove_history(self, trip_id: str) -> bool:
        before = self._decode_history(self.records.get(self.history_key))
        after = [t for t in before if t.id != trip_id]
        if len(after) == len(before):
            return False
        self.records[self.history_key] = self._encode_history(after)
        return True

    def _update_history(self, update: HistoryUpdate, *, clear_current: bool) -> list[Trip]:
        history = update(self._decode_history(self.records.get(self.history_key)))
        records = dict(self.records)
        records[self.history_key] = self._encode_history(history)
        if clear_current:
            records.pop(self.current_key, None)
        self.records = records
        return history


class JsonFileTripStore(_TripRecordStore):
    """Both keys in one JSON document, replaced atomically on every write."""

    def __init__(
        self,
        path: str | Path,
        *,
        current_key: str = CURRENT_TRIP_KEY,
        history_key: str = TRIP_HISTORY_KEY,
    ) -> None:
        super().__init__(current_key=current_key, history_key=history_key)
        self.path = Path(path)

    def _read_document(self) -> dict[str, Any]:
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return {}
        except OSError as exc:
            msg = f"Cannot read trip state file {self.path}"
            raise PersistenceError(msg, {"path": str(self.path)}) from exc

        try:
            document = json.loads(text)
        except json.JSONDecodeError as exc:
            self._corrupt(self.current_key, f"state file unreadable: {exc}")
            self._corrupt(self.history_key, f"state file unreadable: {exc}")
            return {}
        if not isinstance(document, dict):
            self._corrupt(self.current_key, "state file is not an object")
            self._corrupt(self.history_key, "state file is not an object")
            return {}
        return document

    def _write_document(self, document: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            dir=self.path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(document, handle, separators=(",", ":"))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            msg = f"Cannot write trip state file {self.path}"
            raise PersistenceError(msg, {"path": str(self.path)}) from exc

    # File I/O (including fsync) runs in a worker thread.

    async def load_current(self) -> Trip | None:
        document = await asyncio.to_thread(self._read_document)
        return self._decode_current(document.get(self.current_key))

    async def load_history(self) -> list[Trip]:
        document = await asyncio.to_thread(self._read_document)
        return self._decode_history(document.get(self.history_key))

    async def save_current(self, trip: Trip) -> None:
        await asyncio.to_thread(self._save_current, trip.to_record())

    async def clear_current(self) -> None:
        await asyncio.to_thread(self._clear_current)

    async def prepend_history(self, trip: Trip) -> list[Trip]:
        return await asyncio.to_thread(
            self._update_history,
            _prepend(trip),
            clear_current=False,
        )

    async def archive(self, trip: Trip) -> list[Trip]:
        return await asyncio.to_thread(
            self._update_history,
            _prepend(trip),
            clear_current=True,
        )

    async def remove_history(self, trip_id: str) -> bool:
        return await asyncio.to_thread(self._remove_history, trip_id)

    def _save_current(self, record: dict[str, Any]) -> None:
        document = self._read_document()
        document[self.current_key] = record
        self._write_document(document)

    def _clear_current(self) -> None:
        document = self._read_document()
        if document.pop(self.current_key, None) is not None:
            self._write_document(document)

    def _remove_history(self, trip_id: str) -> bool:
        document = self._read_document()
        before = self._decode_history(document.get(self.history_key))
        after = [t for t in before if t.id != trip_id]
        if len(after) == len(before):
            return False
        document[self.history_key] = [t.to_record() for t in after]
        self._write_document(document)
        return True

    def _update_history(self, update: HistoryUpdate, *, clear_current: bool) -> list[Trip]:
        document = self._read_document()
        history = update(self._decode_history(document.get(self.history_key)))
        document[self.history_key] = [t.to_record() for t in history]
        if clear_current:
            document.pop(self.current_key, None)
        self._write_document(document)
        return history


class RedisTripStore(_TripRecordStore):
    """Redis-backed store; multi-key writes use WATCH + MULTI/EXEC."""

    def __init__(
        self,
        client: aioredis.Redis | None = None,
        *,
        current_key: str = CURRENT_TRIP_KEY,
        history_key: str = TRIP_HISTORY_KEY,
    ) -> None:
        super().__init__(current_key=current_key, history_key=history_key)
        self._client = client

    async def _get_client(self) -> aioredis.Redis:
        if self._client is not None:
            return self._client
        return await get_shared_redis()

    async def load_current(self) -> Trip | None:
        try:
            client = await self._get_client()
            raw = await client.get(self.current_key)
        except RedisError as exc:
            msg = "Failed to load current trip from Redis"
            raise PersistenceError(msg, {"key": self.current_key}) from exc

        trip = self._decode_current(raw)
        if raw is not None and trip is None:
            logger.warning("Deleting malformed current trip key %s", self.current_key)
            with contextlib.suppress(RedisError):
                await client.delete(self.current_key)
        return trip

    async def load_history(self) -> list[Trip]:
        try:
            client = await self._get_client()
            raw = await client.get(self.history_key)
        except RedisError as exc:
            msg = "Failed to load trip history from Redis"
            raise PersistenceError(msg, {"key": self.history_key}) from exc
        return self._decode_history(raw)

    async def save_current(self, trip: Trip) -> None:
        try:
            client = await self._get_client()
            await client.set(self.current_key, self._encode_current(trip))
        except RedisError as exc:
            msg = "Failed to save current trip to Redis"
            raise PersistenceError(msg, {"trip_id": trip.id}) from exc

    async def clear_current(self) -> None:
        try:
            client = await self._get_client()
            await client.delete(self.current_key)
        except RedisError as exc:
            msg = "Failed to clear current trip in Redis"
            raise PersistenceError(msg, {"key": self.current_key}) from exc

    async def prepend_history(self, trip: Trip) -> list[Trip]:
        return await self._update_history(_prepend(trip), clear_current=False)

    async def archive(self, trip: Trip) -> list[Trip]:
        return await self._update_history(_prepend(trip), clear_current=True)

    async def remove_history(self, trip_id: str) -> bool:
        removed = False

        def update(history: list[Trip]) -> list[Trip]:
            nonlocal removed
            kept = [t for t in history if t.id != trip_id]
            removed = len(kept) != len(history)
            return kept

        await self._update_history(update, clear_current=False)
        return removed

    async def _update_history(
        self,
        update: HistoryUpdate,
        *,
        clear_current: bool,
    ) -> list[Trip]:
        try:
            client = await self._get_client()
            async with client.pipeline(transaction=True) as pipe:
                for attempt in range(1, MAX_WATCH_RETRIES + 1):
                    try:
                        await pipe.watch(self.history_key)
                        raw = await pipe.get(self.history_key)
                        history = update(self._decode_history(raw))
                        pipe.multi()
                        pipe.set(self.history_key, self._encode_history(history))
                        if clear_current:
                            pipe.delete(self.current_key)
                        await pipe.execute()
                    except WatchError:
                        logger.warning(
                            "Trip history changed during update (attempt %d/%d)",
                            attempt,
                            MAX_WATCH_RETRIES,
                        )
                        continue
                    return history
        except RedisError as exc:
            msg = "Failed to update trip history in Redis"
            raise PersistenceError(msg, {"key": self.history_key}) from exc

        msg = "Trip history kept changing during update"
        raise PersistenceError(msg, {"key": self.history_key})


def create_trip_store(backend: str | None = None) -> TripStore:
    """Build the store selected by configuration."""
    backend = backend or config.get_store_backend()
    current_key, history_key = config.get_store_keys()
    if backend == "redis":
        return RedisTripStore(current_key=current_key, history_key=history_key)
    if backend == "file":
        return JsonFileTripStore(
            config.get_store_path(),
            current_key=current_key,
            history_key=history_key,
        )
    if backend == "memory":
        return InMemoryTripStore(current_key=current_key, history_key=history_key)
    msg = f"Unknown trip store backend: {backend}"
    raise ValueError(msg)


__all__ = [
    "InMemoryTripStore",
    "JsonFileTripStore",
    "RedisTripStore",
    "TripStore",
    "create_trip_store",
]
