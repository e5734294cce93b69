"""Shared fixtures, canned Garmin payloads and a scriptable provider for sync tests."""

from __future__ import annotations

import asyncio
import json
from datetime import date
from pathlib import Path
from typing import Any
from uuid import UUID

import pytest

from trainsync.wearables.base import ActivityProvider
from trainsync.wearables.config_loader import SyncConfig, load_sync_config
from trainsync.wearables.sync.storage import InMemorySyncStorage

# Fixtures directory
FIXTURES_DIR = Path(__file__).parent / "fixtures"

# Canonical test user ID
TEST_USER_ID = UUID("12345678-1234-5678-1234-567812345678")
OTHER_USER_ID = UUID("87654321-4321-8765-4321-876543218765")
TEST_DATE = date(2024, 5, 1)

ANY = "*"


def load_fixture(name: str) -> Any:
    return json.loads((FIXTURES_DIR / name).read_text())


class FakeProvider(ActivityProvider):
    """In-process provider serving canned payloads.

    Payload maps are keyed by activity id (str) or by date.  ``fail()``
    makes one method raise, either for one key or for every call.
    """

    PROVIDER_ID = "fake"
    SOURCE_ID = "garmin"

    def __init__(
        self,
        activities: list[dict[str, Any]] | None = None,
        details: dict[str, Any] | None = None,
        splits: dict[str, Any] | None = None,
        daily: dict[date, Any] | None = None,
        sleep: dict[date, Any] | None = None,
        hrv: dict[date, Any] | None = None,
        body_composition: dict[str, Any] | None = None,
        connect_error: Exception | None = None,
    ) -> None:
        self.activities = activities or []
        self.details = details or {}
        self.splits = splits or {}
        self.daily = daily or {}
        self.sleep = sleep or {}
        self.hrv = hrv or {}
        self.body_composition = body_composition or {}
        self.connect_error = connect_error
        self.failures: dict[tuple[str, Any], Exception] = {}
        self.calls: list[tuple[str, Any]] = []
        self.connect_calls = 0
        self.disconnect_calls = 0

    def fail(self, method: str, exc: Exception, key: Any = ANY) -> None:
        self.failures[(method, key)] = exc

    def _record(self, method: str, key: Any = None) -> None:
        self.calls.append((method, key))
        exc = self.failures.get((method, key)) or self.failures.get((method, ANY))
        if exc is not None:
            raise exc

    def called(self, method: str) -> list[Any]:
        return [key for name, key in self.calls if name == method]

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error

    async def disconnect(self) -> None:
        self.disconnect_calls += 1

    async def list_activities(self, limit: int = 20) -> list[dict[str, Any]]:
        self._record("list_activities", limit)
        return list(self.activities)[:limit]

    async def get_activity(self, activity_id: str) -> dict[str, Any]:
        self._record("get_activity", activity_id)
        return self.details.get(activity_id, {})

    async def get_activity_splits(self, activity_id: str) -> Any:
        self._record("get_activity_splits", activity_id)
        return self.splits.get(activity_id)

    async def get_daily_summary(self, target_date: date) -> dict[str, Any]:
        self._record("get_daily_summary", target_date)
        return self.daily.get(target_date, {})

    async def get_sleep_data(self, target_date: date) -> dict[str, Any]:
        self._record("get_sleep_data", target_date)
        return self.sleep.get(target_date, {})

    async def get_hrv_data(self, target_date: date) -> dict[str, Any]:
        self._record("get_hrv_data", target_date)
        return self.hrv.get(target_date, {})

    async def get_body_composition(
        self, start_date: date, end_date: date | None = None
    ) -> dict[str, Any]:
        self._record("get_body_composition", (start_date, end_date))
        return self.body_composition


class OverlapTrackingProvider(FakeProvider):
    """Records how many runs are inside connect()..disconnect() at once."""

    def __init__(self, tracker: dict[str, int], **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.tracker = tracker

    async def connect(self) -> None:
        await super().connect()
        self.tracker["active"] += 1
        self.tracker["max"] = max(self.tracker["max"], self.tracker["active"])
        await asyncio.sleep(0.01)

    async def disconnect(self) -> None:
        await super().disconnect()
        self.tracker["active"] -= 1


# ---------------------------------------------------------------------------
# Config / storage fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def bundled_config() -> SyncConfig:
    """Load the real sync config for tests."""
    return load_sync_config()


@pytest.fixture
def sync_config() -> SyncConfig:
    return SyncConfig()


@pytest.fixture
def storage() -> InMemorySyncStorage:
    return InMemorySyncStorage()


# ---------------------------------------------------------------------------
# JSON fixture loaders
# ---------------------------------------------------------------------------


@pytest.fixture
def garmin_activities_raw() -> list:
    return load_fixture("garmin_activities.json")


@pytest.fixture
def garmin_activity_detail_raw() -> dict:
    return load_fixture("garmin_activity_detail.json")


@pytest.fixture
def garmin_splits_raw() -> dict:
    return load_fixture("garmin_splits.json")


@pytest.fixture
def garmin_daily_raw() -> dict:
    return load_fixture("garmin_daily.json")


@pytest.fixture
def garmin_sleep_raw() -> dict:
    return load_fixture("garmin_sleep.json")


@pytest.fixture
def garmin_hrv_raw() -> dict:
    return load_fixture("garmin_hrv.json")


@pytest.fixture
def garmin_body_composition_raw() -> dict:
    return load_fixture("garmin_body_composition.json")


# ---------------------------------------------------------------------------
# Provider fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def garmin_provider(
    garmin_activities_raw: list,
    garmin_activity_detail_raw: dict,
    garmin_splits_raw: dict,
    garmin_daily_raw: dict,
    garmin_sleep_raw: dict,
    garmin_hrv_raw: dict,
    garmin_body_composition_raw: dict,
) -> FakeProvider:
    """Two activities in the 2024-04-30..2024-05-01 window plus full health data for 05-01."""
    return FakeProvider(
        activities=garmin_activities_raw,
        details={"14000000001": garmin_activity_detail_raw},
        splits={"14000000001": garmin_splits_raw},
        daily={TEST_DATE: garmin_daily_raw},
        sleep={TEST_DATE: garmin_sleep_raw},
        hrv={TEST_DATE: garmin_hrv_raw},
        body_composition=garmin_body_composition_raw,
    )
