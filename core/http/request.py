"""
Shared HTTP request helpers for service backends.

Keeps JSON request/response handling and error mapping consistent across
remote API clients.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from core.exceptions import ExternalServiceError

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger(__name__)


async def request_json(
    method: str,
    url: str,
    *,
    session: Any,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    expected_status: int | Iterable[int] = 200,
    none_on: Iterable[int] | None = None,
    service_name: str = "Service",
) -> Any | None:
    """Send a request and decode the JSON body.

    Returns None for statuses listed in ``none_on`` and for empty bodies
    (e.g. 204). Any other unexpected status raises ExternalServiceError.
    """
    method_upper = method.upper()
    if isinstance(expected_status, int):
        expected = {expected_status}
    else:
        expected = set(expected_status)
    none_on_set = set(none_on or [])

    request_kwargs: dict[str, Any] = {"headers": headers}
    if params is not None:
        request_kwargs["params"] = params
    if json is not None:
        request_kwargs["json"] = json

    async with session.request(method_upper, url, **request_kwargs) as response:
        if response.status in none_on_set:
            logger.debug("%s returned %s for %s", service_name, response.status, url)
            return None
        if response.status not in expected:
            body = await response.text()
            msg = f"{service_name} error: {response.status}"
            raise ExternalServiceError(
                msg,
                {
                    "status": response.status,
                    "body": body,
                    "url": str(getattr(response, "url", url)),
                },
            )
        if response.status == 204:
            return None
        return await response.json()
