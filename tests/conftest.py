import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]

if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from position_fakes import FakeClock, ScriptedProvider
from tracking.position_source import PositionSource
from tracking.services.trip_store import InMemoryTripStore
from tracking.services.trip_tracker import TripTracker


@pytest.fixture(autouse=True)
def _default_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in (
        "TRIP_STORE_BACKEND",
        "TRIP_STORE_PATH",
        "TRIP_STORE_KEY_PREFIX",
        "TRIP_SYNC_API_URL",
        "TRIP_SYNC_API_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TRIP_TRACKER_TIMEZONE", "UTC")


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(1_700_000_000_000)


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def store() -> InMemoryTripStore:
    return InMemoryTripStore()


@pytest.fixture
async def tracker(provider, store, clock):
    instance = TripTracker(PositionSource(provider), store, clock=clock)
    await instance.initialize()
    yield instance
    await instance.close()
