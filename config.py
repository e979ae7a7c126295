"""Centralized configuration for environment variables and external APIs.

This module is the single source of truth for configuration used across the
application. Import getters from here rather than calling os.getenv directly
in multiple places. Getters read the environment at call time so tests can
patch ``os.environ``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Final

from dotenv import load_dotenv

from core.constants import CURRENT_TRIP_KEY, TRIP_HISTORY_KEY

# Load environment variables from .env if present
load_dotenv()


STORE_BACKENDS: Final[tuple[str, ...]] = ("redis", "file", "memory")
DEFAULT_STORE_BACKEND: Final[str] = "file"
DEFAULT_STORE_PATH: Final[str] = "trip_tracker_state.json"
DEFAULT_TIMEZONE: Final[str] = "UTC"


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def get_store_backend() -> str:
    """Return the configured persistence backend name."""
    backend = _env("TRIP_STORE_BACKEND", DEFAULT_STORE_BACKEND).lower()
    if backend not in STORE_BACKENDS:
        msg = f"TRIP_STORE_BACKEND must be one of {', '.join(STORE_BACKENDS)}; got {backend!r}"
        raise RuntimeError(msg)
    return backend


def get_store_path() -> Path:
    """Return the JSON state file used by the file backend."""
    return Path(_env("TRIP_STORE_PATH") or DEFAULT_STORE_PATH)


def get_store_keys() -> tuple[str, str]:
    """Return the (current trip, history) storage keys, optionally prefixed."""
    prefix = _env("TRIP_STORE_KEY_PREFIX")
    if prefix:
        return f"{prefix}:{CURRENT_TRIP_KEY}", f"{prefix}:{TRIP_HISTORY_KEY}"
    return CURRENT_TRIP_KEY, TRIP_HISTORY_KEY


def get_trip_sync_api_url() -> str | None:
    """Return the remote trip-sync API base URL, or None when mirroring is off."""
    url = _env("TRIP_SYNC_API_URL")
    return url.rstrip("/") or None


def get_trip_sync_api_token() -> str | None:
    return _env("TRIP_SYNC_API_TOKEN") or None


def get_timezone_name() -> str:
    """IANA timezone used when rendering trip dates for export."""
    return _env("TRIP_TRACKER_TIMEZONE") or DEFAULT_TIMEZONE


__all__ = [
    "DEFAULT_STORE_BACKEND",
    "DEFAULT_STORE_PATH",
    "DEFAULT_TIMEZONE",
    "STORE_BACKENDS",
    "get_store_backend",
    "get_store_keys",
    "get_store_path",
    "get_timezone_name",
    "get_trip_sync_api_token",
    "get_trip_sync_api_url",
]
