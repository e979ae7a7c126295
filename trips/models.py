"""Pydantic models for the remote trip-sync API."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from core.date_utils import parse_timestamp

RemoteTripStatus = Literal["active", "completed", "cancelled"]


class _ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class RemoteRoutePoint(_ApiModel):
    latitude: float
    longitude: float
    timestamp: datetime | None = None
    speed: float | None = None
    accuracy: float | None = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def parse_timestamp_field(cls, v: Any) -> datetime | None:
        return parse_timestamp(v)


class RemoteTrip(_ApiModel):
    """Trip record as returned by the sync API."""

    id: str
    title: str | None = None
    description: str | None = None
    start_location: str | None = None
    end_location: str | None = None
    start_odometer: float | None = None
    end_odometer: float | None = None
    distance: float | None = None
    status: RemoteTripStatus = "active"
    start_time: datetime | None = None
    end_time: datetime | None = None
    route: list[RemoteRoutePoint] = []
    total_expenses: float | None = None
    business_purpose: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @field_validator("start_time", "end_time", "created_at", "updated_at", mode="before")
    @classmethod
    def parse_datetime_fields(cls, v: Any) -> datetime | None:
        """Unparseable timestamps become None rather than failing the record."""
        return parse_timestamp(v)

    @property
    def recorded_purpose(self) -> str | None:
        return self.business_purpose or self.title


class CreateTripRequest(_ApiModel):
    title: str
    description: str | None = None
    start_location: str | None = None
    start_odometer: float
    business_purpose: str


class UpdateTripRequest(_ApiModel):
    title: str | None = None
    description: str | None = None
    end_location: str | None = None
    end_odometer: float | None = None
    business_purpose: str | None = None


class AddRoutePointRequest(_ApiModel):
    latitude: float
    longitude: float
    speed: float | None = None
    accuracy: float | None = None


class CompleteTripRequest(_ApiModel):
    end_location: str | None = None
    end_odometer: float | None = None
