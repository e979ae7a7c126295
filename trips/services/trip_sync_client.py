"""
Remote trip-sync API client.

Thin async wrapper over the trip REST endpoints (list/get/create/update,
route points, complete/cancel/delete). Transport failures are retried with
tenacity; HTTP error statuses raise ``ExternalServiceError``.
"""

from __future__ import annotations

import logging
from typing import Any

import config
from core.exceptions import ExternalServiceError
from core.http.request import request_json
from core.http.retry import retry_async
from core.http.session import get_session
from trips.models import (
    AddRoutePointRequest,
    CompleteTripRequest,
    CreateTripRequest,
    RemoteTrip,
    UpdateTripRequest,
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "Trip sync API"


class TripSyncClient:
    def __init__(self, base_url: str | None = None, token: str | None = None) -> None:
        base = base_url or config.get_trip_sync_api_url()
        if not base:
            msg = "TRIP_SYNC_API_URL is not configured"
            raise ExternalServiceError(msg)
        self._base_url = base.rstrip("/")
        self._token = token if token is not None else config.get_trip_sync_api_token()

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    @retry_async()
    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json: dict[str, Any] | None = None,
        expected_status: tuple[int, ...] = (200, 201),
        none_on: tuple[int, ...] = (),
    ) -> Any:
        session = await get_session()
        return await request_json(
            method,
            self._url(path),
            session=session,
            params=params,
            json=json,
            headers=self._headers(),
            expected_status=expected_status,
            none_on=none_on,
            service_name=SERVICE_NAME,
        )

    @staticmethod
    def _trip(payload: Any) -> RemoteTrip:
        if not isinstance(payload, dict):
            msg = f"{SERVICE_NAME} error: unexpected response"
            raise ExternalServiceError(msg, {"payload": payload})
        return RemoteTrip.model_validate(payload)

    async def list_trips(self, status: str | None = None) -> list[RemoteTrip]:
        params = {"status": status} if status else None
        payload = await self._request("GET", "/trips", params=params)
        if not isinstance(payload, list):
            msg = f"{SERVICE_NAME} error: unexpected response"
            raise ExternalServiceError(msg, {"payload": payload})
        return [self._trip(item) for item in payload]

    async def get_trip(self, trip_id: str) -> RemoteTrip | None:
        payload = await self._request("GET", f"/trips/{trip_id}", none_on=(404,))
        if payload is None:
            return None
        return self._trip(payload)

    async def get_active_trip(self) -> RemoteTrip | None:
        trips = await self.list_trips(status="active")
        return trips[0] if trips else None

    async def create_trip(self, request: CreateTripRequest) -> RemoteTrip:
        payload = await self._request("POST", "/trips", json=request.to_payload())
        return self._trip(payload)

    async def update_trip(self, trip_id: str, request: UpdateTripRequest) -> RemoteTrip:
        payload = await self._request(
            "PUT",
            f"/trips/{trip_id}",
            json=request.to_payload(),
        )
        return self._trip(payload)

    async def add_route_point(
        self,
        trip_id: str,
        request: AddRoutePointRequest,
    ) -> RemoteTrip:
        payload = await self._request(
            "POST",
            f"/trips/{trip_id}/route",
            json=request.to_payload(),
        )
        return self._trip(payload)

    async def complete_trip(
        self,
        trip_id: str,
        end_location: str | None = None,
        end_odometer: float | None = None,
    ) -> RemoteTrip:
        request = CompleteTripRequest(end_location=end_location, end_odometer=end_odometer)
        payload = await self._request(
            "POST",
            f"/trips/{trip_id}/complete",
            json=request.to_payload(),
        )
        return self._trip(payload)

    async def cancel_trip(self, trip_id: str) -> RemoteTrip:
        payload = await self._request("POST", f"/trips/{trip_id}/cancel")
        return self._trip(payload)

    async def delete_trip(self, trip_id: str) -> None:
        await self._request(
            "DELETE",
            f"/trips/{trip_id}",
            expected_status=(200, 204),
            none_on=(200, 204),
        )
        logger.info("Deleted remote trip %s", trip_id)
