"""
Position source adapter.

Wraps a platform positioning provider (continuous watch + one-shot query)
and turns its raw readings into validated ``Sample`` objects. Positioning
failures never escape as exceptions: continuous errors are recorded on the
source, and one-shot failures come back as a ``PositionResult`` carrying a
``LocationError``.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Hashable
from dataclasses import dataclass
from enum import Enum
from typing import Protocol, runtime_checkable

from pydantic import ValidationError as PydanticValidationError

from core.constants import (
    CONTINUOUS_MAX_AGE_MS,
    ONE_SHOT_MAX_AGE_MS,
    POSITION_TIMEOUT_MS,
)
from core.exceptions import (
    LocationError,
    LocationPermissionDenied,
    LocationTimeout,
    LocationUnavailable,
    LocationUnsupported,
)
from tracking.models import Sample

logger = logging.getLogger(__name__)


class PermissionState(str, Enum):
    GRANTED = "granted"
    DENIED = "denied"
    PROMPT = "prompt"
    UNKNOWN = "unknown"


@dataclass(frozen=True, slots=True)
class PositionOptions:
    enable_high_accuracy: bool = True
    timeout_ms: int = POSITION_TIMEOUT_MS
    maximum_age_ms: int = CONTINUOUS_MAX_AGE_MS


CONTINUOUS_OPTIONS = PositionOptions(
    enable_high_accuracy=True,
    timeout_ms=POSITION_TIMEOUT_MS,
    maximum_age_ms=CONTINUOUS_MAX_AGE_MS,
)


@dataclass(frozen=True, slots=True)
class RawPosition:
    """A reading as reported by a provider, before validation."""

    latitude: float
    longitude: float
    accuracy: float
    timestamp_ms: int


@dataclass(frozen=True, slots=True)
class PositionResult:
    """Outcome of a one-shot query: exactly one of ``sample`` / ``error`` is set."""

    sample: Sample | None = None
    error: LocationError | None = None

    @property
    def ok(self) -> bool:
        return self.sample is not None

    @classmethod
    def success(cls, sample: Sample) -> PositionResult:
        return cls(sample=sample)

    @classmethod
    def failure(cls, error: LocationError) -> PositionResult:
        return cls(error=error)


@runtime_checkable
class PositioningProvider(Protocol):
    """Platform positioning primitive.

    ``get_current`` raises ``LocationError`` subclasses on failure; watch
    errors are delivered through ``on_error``.
    """

    def is_supported(self) -> bool: ...

    async def query_permission(self) -> PermissionState: ...

    def watch(
        self,
        on_position: Callable[[RawPosition], None],
        on_error: Callable[[LocationError], None],
        options: PositionOptions,
    ) -> Hashable: ...

    def clear_watch(self, watch_id: Hashable) -> None: ...

    async def get_current(self, options: PositionOptions) -> RawPosition: ...


SampleListener = Callable[[Sample], None]


def sample_from_raw(raw: RawPosition) -> Sample:
    """Validate a provider reading; raises pydantic's ValidationError."""
    return Sample(
        latitude=raw.latitude,
        longitude=raw.longitude,
        accuracy_m=raw.accuracy,
        timestamp_ms=raw.timestamp_ms,
    )


class PositionSource:
    """Continuous and one-shot positioning with structured errors."""

    def __init__(self, provider: PositioningProvider | None) -> None:
        self._provider = provider
        self._watch_id: Hashable | None = None
        self._listener: SampleListener | None = None
        self.permission = PermissionState.UNKNOWN
        self.last_error: LocationError | None = None
        self.last_sample: Sample | None = None
        self.rejected_samples = 0

    @property
    def is_supported(self) -> bool:
        return self._provider is not None and self._provider.is_supported()

    @property
    def is_tracking(self) -> bool:
        return self._watch_id is not None

    async def refresh_permission(self) -> PermissionState:
        """Query the provider for its permission state and cache it."""
        if not self.is_supported:
            self.permission = PermissionState.UNKNOWN
            return self.permission
        try:
            self.permission = await self._provider.query_permission()
        except LocationError as exc:
            self._record_error(exc)
        return self.permission

    def start_continuous(self, listener: SampleListener) -> bool:
        """
        Begin emitting samples to ``listener``.

        Returns:
            True when a watch is running after the call. Calling while a
            watch is already active is a no-op.
        """
        if self._watch_id is not None:
            logger.debug("Continuous positioning already started")
            return True
        if not self.is_supported:
            self._record_error(
                LocationUnsupported("Positioning is not supported on this platform"),
            )
            return False

        self._listener = listener
        self._watch_id = self._provider.watch(
            self._handle_position,
            self._handle_error,
            CONTINUOUS_OPTIONS,
        )
        self.last_error = None
        logger.info("Continuous positioning started (watch %s)", self._watch_id)
        return True

    def stop_continuous(self) -> None:
        """Cancel the watch; safe to call when nothing is running."""
        watch_id = self._watch_id
        self._watch_id = None
        self._listener = None
        if watch_id is None or self._provider is None:
            return
        self._provider.clear_watch(watch_id)
        logger.info("Continuous positioning stopped (watch %s)", watch_id)

    async def get_one_shot(
        self,
        timeout_ms: int = POSITION_TIMEOUT_MS,
        max_age_ms: int = ONE_SHOT_MAX_AGE_MS,
    ) -> PositionResult:
        """Acquire a single sample, bounded by ``timeout_ms``."""
        if not self.is_supported:
            error = LocationUnsupported("Positioning is not supported on this platform")
            self._record_error(error)
            return PositionResult.failure(error)

        options = PositionOptions(
            enable_high_accuracy=True,
            timeout_ms=timeout_ms,
            maximum_age_ms=max_age_ms,
        )
        try:
            raw = await asyncio.wait_for(
                self._provider.get_current(options),
                timeout=timeout_ms / 1000.0,
            )
        except TimeoutError:
            error = LocationTimeout(
                "Location request timed out.",
                {"timeout_ms": timeout_ms},
            )
            self._record_error(error)
            return PositionResult.failure(error)
        except LocationError as exc:
            self._record_error(exc)
            return PositionResult.failure(exc)

        try:
            sample = sample_from_raw(raw)
        except PydanticValidationError as exc:
            self.rejected_samples += 1
            error = LocationUnavailable(
                "Location information is invalid.",
                {"errors": exc.errors(include_url=False)},
            )
            self._record_error(error)
            return PositionResult.failure(error)

        self.last_sample = sample
        self.last_error = None
        return PositionResult.success(sample)

    def _handle_position(self, raw: RawPosition) -> None:
        try:
            sample = sample_from_raw(raw)
        except PydanticValidationError:
            self.rejected_samples += 1
            logger.warning("Dropping invalid position reading: %s", raw)
            return

        self.last_sample = sample
        self.last_error = None
        listener = self._listener
        if listener is not None:
            listener(sample)

    def _handle_error(self, error: LocationError) -> None:
        self._record_error(error)

    def _record_error(self, error: LocationError) -> None:
        self.last_error = error
        if isinstance(error, LocationPermissionDenied):
            self.permission = PermissionState.DENIED
        logger.warning("Positioning error (%s): %s", error.code, error.message)


__all__ = [
    "CONTINUOUS_OPTIONS",
    "PermissionState",
    "PositionOptions",
    "PositionResult",
    "PositionSource",
    "PositioningProvider",
    "RawPosition",
    "SampleListener",
    "sample_from_raw",
]
