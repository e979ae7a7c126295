"""Pydantic models for position samples and trips.

Models are immutable values. The tracker replaces its current ``Trip`` with
an updated copy on every accepted sample, so an archived trip can never be
mutated through a stale reference.
"""

from __future__ import annotations

import uuid
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class TripStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"


class Sample(BaseModel):
    """A single positioning reading; ``accuracy_m`` is the uncertainty radius."""

    latitude: float = Field(ge=-90.0, le=90.0)
    longitude: float = Field(ge=-180.0, le=180.0)
    accuracy_m: float = Field(default=0.0, ge=0.0, alias="accuracyMeters")
    timestamp_ms: int = Field(ge=0)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        allow_inf_nan=False,
    )


class RoutePoint(Sample):
    """A sample stored in a trip's route."""

    @classmethod
    def from_sample(cls, sample: Sample) -> RoutePoint:
        if isinstance(sample, RoutePoint):
            return sample
        return cls.model_validate(sample.model_dump())


def new_trip_id() -> str:
    return uuid.uuid4().hex


class Trip(BaseModel):
    """A tracked business trip.

    ``route`` is in chronological order and never empty; it is seeded with
    the sample acquired when the trip started.
    """

    id: str = Field(default_factory=new_trip_id)
    purpose: str
    start_timestamp_ms: int
    end_timestamp_ms: int | None = None
    start_odometer: float
    end_odometer: float | None = None
    start_location: str | None = None
    end_location: str | None = None
    route: tuple[RoutePoint, ...] = Field(min_length=1)
    distance_km: float = 0.0
    duration_seconds: int = 0
    average_speed_kmh: float = 0.0
    status: TripStatus = TripStatus.ACTIVE

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        allow_inf_nan=False,
    )

    @model_validator(mode="after")
    def _check_odometer(self) -> Trip:
        if self.end_odometer is not None and self.end_odometer < self.start_odometer:
            msg = (
                f"end odometer {self.end_odometer} is below start odometer "
                f"{self.start_odometer}"
            )
            raise ValueError(msg)
        return self

    @property
    def is_active(self) -> bool:
        return self.status is TripStatus.ACTIVE

    @property
    def last_point(self) -> RoutePoint:
        return self.route[-1]

    def to_record(self) -> dict:
        """Serialize to the JSON-compatible record kept in storage."""
        return self.model_dump(mode="json", by_alias=True)

    @classmethod
    def from_record(cls, record: object) -> Trip:
        return cls.model_validate(record)


__all__ = ["RoutePoint", "Sample", "Trip", "TripStatus", "new_trip_id"]
