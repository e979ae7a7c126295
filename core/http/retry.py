"""Retry utilities for async HTTP operations.

This module provides retry decorators using tenacity for resilient HTTP
calls. Only transport failures are retried; HTTP error statuses are mapped
to ``ExternalServiceError`` by ``request_json`` and surface immediately.
"""

from __future__ import annotations

import asyncio
import logging

from aiohttp import ClientConnectionError, ClientPayloadError
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

TRANSPORT_ERRORS: tuple[type[BaseException], ...] = (
    ClientConnectionError,
    ClientPayloadError,
    asyncio.TimeoutError,
)


def retry_async(
    max_retries: int = 3,
    retry_delay: float = 1.0,
    backoff_factor: float = 2.0,
    retry_exceptions: tuple[type[BaseException], ...] = TRANSPORT_ERRORS,
):
    """Factory that returns a tenacity retry decorator.

    Args:
        max_retries: Maximum number of retry attempts after the first one.
        retry_delay: Initial delay between retries in seconds.
        backoff_factor: Exponential backoff base.
        retry_exceptions: Exception types that trigger a retry.
    """
    return retry(
        stop=stop_after_attempt(max_retries + 1),
        wait=wait_exponential(multiplier=retry_delay, exp_base=backoff_factor),
        retry=retry_if_exception_type(retry_exceptions),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True,
    )
