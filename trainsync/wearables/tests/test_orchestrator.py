"""Tests for the sync orchestrator: activity reconciliation, health snapshots,
failure isolation and run bookkeeping."""

from __future__ import annotations

import asyncio
import json
from datetime import date, timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
import requests

from trainsync.wearables.adapters import GarminGarthProvider
from trainsync.wearables.base import PlannedWorkout
from trainsync.wearables.config_loader import (
    ReconciliationConfig,
    SyncConfig,
    WindowConfig,
)
from trainsync.wearables.errors import (
    PersistenceError,
    ProviderConnectionError,
    RequestTimeoutError,
    ToolError,
)
from trainsync.wearables.sync import orchestrator as orchestrator_module
from trainsync.wearables.sync.orchestrator import (
    SyncOptions,
    SyncOrchestrator,
    UserSyncLocks,
    match_offsets,
    merge_metadata,
)
from trainsync.wearables.sync.storage import InMemorySyncStorage
from trainsync.wearables.tests.conftest import (
    OTHER_USER_ID,
    TEST_DATE,
    TEST_USER_ID,
    FakeProvider,
    OverlapTrackingProvider,
    load_fixture,
)

YESTERDAY = TEST_DATE - timedelta(days=1)
HEALTH_ONLY = frozenset({"daily_summary", "sleep", "hrv"})


def _orchestrator(provider, storage, config: SyncConfig | None = None, **kwargs) -> SyncOrchestrator:
    return SyncOrchestrator(
        provider, storage, config=config or SyncConfig(), clock=lambda: TEST_DATE, **kwargs
    )


def _workout(storage: InMemorySyncStorage, provider_activity_id: str) -> dict:
    matches = [
        row for row in storage.workouts.values()
        if row.get("provider_activity_id") == provider_activity_id
    ]
    assert len(matches) == 1
    return matches[0]


def _run_only() -> FakeProvider:
    return FakeProvider(activities=[load_fixture("garmin_activities.json")[0]])


# ---------------------------------------------------------------------------
# Options and helpers
# ---------------------------------------------------------------------------


class TestSyncOptions:
    def test_dates_are_ascending_and_inclusive(self) -> None:
        assert SyncOptions(days_back=2).dates(TEST_DATE) == [
            date(2024, 4, 29),
            date(2024, 4, 30),
            date(2024, 5, 1),
        ]

    def test_end_date_override(self) -> None:
        options = SyncOptions(days_back=0, end_date=date(2024, 1, 15))
        assert options.dates(TEST_DATE) == [date(2024, 1, 15)]

    def test_from_config_with_overrides(self) -> None:
        config = SyncConfig(reconciliation=ReconciliationConfig(match_window_days=2))
        options = SyncOptions.from_config(config, days_back=7, sync_type="scheduled")
        assert options.days_back == 7
        assert options.match_window_days == 2
        assert options.sync_type == "scheduled"
        assert not options.wants("body_composition")

    def test_match_offsets_nearest_first(self) -> None:
        assert match_offsets(0) == [0]
        assert match_offsets(2) == [0, -1, 1, -2, 2]

    def test_merge_metadata_is_recursive(self) -> None:
        existing = {"manual": {"note": "x"}, "bodyBattery": {"current": 1, "note": "kept"}}
        incoming = {"bodyBattery": {"current": 60, "highest": 92}}
        assert merge_metadata(existing, incoming) == {
            "manual": {"note": "x"},
            "bodyBattery": {"current": 60, "highest": 92, "note": "kept"},
        }

    def test_planned_workout_from_row(self) -> None:
        planned = PlannedWorkout.from_record(
            {
                "id": 7,
                "user_id": TEST_USER_ID,
                "scheduled_date": "2024-05-01T00:00:00",
                "title": None,
            }
        )
        assert planned.id == "7"
        assert planned.scheduled_date == TEST_DATE
        assert planned.title == ""
        assert planned.workout_type == "other"
        assert planned.status == "planned"


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


class TestActivitySync:
    @pytest.mark.asyncio
    async def test_inserts_standalone_workouts(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.status == "completed"
        assert result.errors == []
        assert result.activities_synced == 2
        assert result.plans_completed == 0
        assert len(storage.workouts) == 2

        run = _workout(storage, "14000000001")
        assert run["status"] == "completed"
        assert run["title"] == "Morning Run"
        assert run["workout_type"] == "run"
        assert run["scheduled_date"] == TEST_DATE
        assert run["actual_distance_miles"] == 6.0
        assert run["avg_pace"] == "8:00"
        assert run["avg_heart_rate"] == 149
        assert len(run["splits"]) == 3
        assert run["tags"] == ["garmin-synced"]
        assert run["source"] == "garmin"

        ride = _workout(storage, "14000000002")
        assert ride["workout_type"] == "cycle"
        assert ride["scheduled_date"] == YESTERDAY
        assert ride["avg_pace"] == "3:00"

    @pytest.mark.asyncio
    async def test_activities_outside_window_are_ignored(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)
        assert "13999999999" not in garmin_provider.called("get_activity")
        assert garmin_provider.called("list_activities") == [50]

    @pytest.mark.asyncio
    async def test_second_run_creates_no_duplicates(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        first = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)
        second = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert first.activities_synced == 2
        assert second.activities_synced == 0
        assert second.errors == []
        assert len(storage.workouts) == 2
        assert len(storage.health_snapshots) == 1
        assert second.health_snapshots_synced == 1

    @pytest.mark.asyncio
    async def test_planned_workout_completed_in_place(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        plan_id = storage.add_planned(TEST_USER_ID, TEST_DATE, title="Tempo 6")

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.activities_synced == 2
        assert result.plans_completed == 1
        assert len(storage.workouts) == 2
        plan = storage.workouts[plan_id]
        assert plan["status"] == "completed"
        assert plan["provider_activity_id"] == "14000000001"
        assert plan["title"] == "Tempo 6"
        assert plan["actual_duration_minutes"] == 48.0

    @pytest.mark.asyncio
    async def test_other_users_plan_is_untouched(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        plan_id = storage.add_planned(OTHER_USER_ID, TEST_DATE)

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.plans_completed == 0
        assert storage.workouts[plan_id]["status"] == "planned"
        assert len(storage.workouts) == 3

    @pytest.mark.asyncio
    async def test_same_date_match_by_default(self, storage: InMemorySyncStorage) -> None:
        plan_id = storage.add_planned(TEST_USER_ID, YESTERDAY)

        result = await _orchestrator(_run_only(), storage).sync(TEST_USER_ID)

        assert result.plans_completed == 0
        assert storage.workouts[plan_id]["status"] == "planned"

    @pytest.mark.asyncio
    async def test_match_window_tries_nearest_day_first(self, storage: InMemorySyncStorage) -> None:
        earlier = storage.add_planned(TEST_USER_ID, YESTERDAY)
        later = storage.add_planned(TEST_USER_ID, TEST_DATE + timedelta(days=1))
        config = SyncConfig(reconciliation=ReconciliationConfig(match_window_days=1))

        result = await _orchestrator(_run_only(), storage, config).sync(TEST_USER_ID)

        assert result.plans_completed == 1
        assert storage.workouts[earlier]["status"] == "completed"
        assert storage.workouts[later]["status"] == "planned"

    @pytest.mark.asyncio
    async def test_detail_failure_falls_back_to_summary(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        garmin_provider.fail("get_activity", ToolError("Activity not found"))

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.errors == []
        assert _workout(storage, "14000000001")["avg_heart_rate"] == 148

    @pytest.mark.asyncio
    async def test_missing_splits_are_optional(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        garmin_provider.fail("get_activity_splits", ToolError("No splits"))

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.activities_synced == 2
        assert _workout(storage, "14000000001")["splits"] == []

    @pytest.mark.asyncio
    async def test_bad_activity_is_recorded_and_loop_continues(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        garmin_provider.activities.insert(0, {"activityId": 555, "activityName": "No date"})

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.errors == [
            "Activity 555: activity payload is missing required field 'startTimeLocal'"
        ]
        assert result.activities_synced == 2
        assert result.status == "partial"

    @pytest.mark.asyncio
    async def test_each_activity_without_id_is_reported(self, storage: InMemorySyncStorage) -> None:
        anonymous = {"activityName": "Untitled", "startTimeLocal": "2024-05-01 06:00:00"}
        provider = FakeProvider(activities=[anonymous, dict(anonymous)])

        result = await _orchestrator(provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=frozenset({"activities"}))
        )

        assert result.errors == [
            "Activity None: activity payload is missing required field 'activityId'"
        ] * 2
        assert result.activities_synced == 0

    @pytest.mark.asyncio
    async def test_listing_failure_does_not_stop_health(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        garmin_provider.fail("list_activities", ToolError("rate limited"))

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.errors == ["Activities sync failed: rate limited"]
        assert result.health_snapshots_synced == 1

    @pytest.mark.asyncio
    async def test_duplicate_listing_processed_once(self, storage: InMemorySyncStorage) -> None:
        run = load_fixture("garmin_activities.json")[0]
        provider = FakeProvider(activities=[run, dict(run)])

        result = await _orchestrator(provider, storage).sync(TEST_USER_ID)

        assert result.activities_synced == 1
        assert provider.called("get_activity") == ["14000000001"]

    @pytest.mark.asyncio
    async def test_storage_failure_is_per_activity(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        storage.insert_workout = AsyncMock(
            side_effect=PersistenceError("insert on workouts failed: disk full", "insert", "workouts")
        )

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.activities_synced == 0
        assert len(result.errors) == 2
        assert all("disk full" in error for error in result.errors)
        assert result.health_snapshots_synced == 1


# ---------------------------------------------------------------------------
# Health snapshots
# ---------------------------------------------------------------------------


def _health_provider(days: list[date]) -> FakeProvider:
    daily = load_fixture("garmin_daily.json")
    hrv = load_fixture("garmin_hrv.json")
    return FakeProvider(
        daily={d: {**daily, "calendarDate": d.isoformat()} for d in days},
        hrv={d: hrv for d in days},
        sleep={TEST_DATE: load_fixture("garmin_sleep.json")},
    )


class TestHealthSync:
    @pytest.mark.asyncio
    async def test_snapshot_from_all_sources(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        (snapshot,) = storage.health_snapshots.values()
        assert snapshot["user_id"] == TEST_USER_ID
        assert snapshot["snapshot_date"] == TEST_DATE
        assert snapshot["hrv"] == 61
        assert snapshot["sleep_hours"] == 7.5
        assert snapshot["resting_hr"] == 48
        assert snapshot["stress_level"] == 3
        assert snapshot["provider_sync_id"] == "garmin-2024-05-01"

    @pytest.mark.asyncio
    async def test_one_failed_family_is_isolated(self, storage: InMemorySyncStorage) -> None:
        days = [date(2024, 4, 29), YESTERDAY, TEST_DATE]
        provider = _health_provider(days)
        provider.fail("get_hrv_data", RequestTimeoutError("tools/call", 30), key=YESTERDAY)

        result = await _orchestrator(provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=HEALTH_ONLY, days_back=2)
        )

        assert result.errors == ["HRV 2024-04-30: Request tools/call timed out after 30s"]
        assert result.health_snapshots_synced == 3
        by_date = {row["snapshot_date"]: row for row in storage.health_snapshots.values()}
        assert by_date[YESTERDAY]["hrv"] is None
        assert by_date[YESTERDAY]["resting_hr"] == 48
        assert by_date[date(2024, 4, 29)]["hrv"] == 61
        assert by_date[TEST_DATE]["sleep_hours"] == 7.5

    @pytest.mark.asyncio
    async def test_dates_fetched_in_ascending_order(self, storage: InMemorySyncStorage) -> None:
        provider = FakeProvider()
        await _orchestrator(provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=frozenset({"daily_summary"}), days_back=3)
        )
        fetched = provider.called("get_daily_summary")
        assert fetched == sorted(fetched)
        assert len(fetched) == 4

    @pytest.mark.asyncio
    async def test_update_keeps_existing_values_and_merges_metadata(
        self, storage: InMemorySyncStorage
    ) -> None:
        await storage.insert_health_snapshot(
            {
                "user_id": TEST_USER_ID,
                "snapshot_date": TEST_DATE,
                "sleep_quality": 5,
                "metadata": {"manual": {"note": "felt good"}, "bodyBattery": {"note": "x"}},
            }
        )
        provider = FakeProvider(daily={TEST_DATE: load_fixture("garmin_daily.json")})

        result = await _orchestrator(provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=HEALTH_ONLY)
        )

        assert result.health_snapshots_synced == 1
        (snapshot,) = storage.health_snapshots.values()
        assert snapshot["sleep_quality"] == 5
        assert snapshot["resting_hr"] == 48
        assert snapshot["metadata"]["manual"] == {"note": "felt good"}
        assert snapshot["metadata"]["bodyBattery"]["highest"] == 92
        assert snapshot["metadata"]["bodyBattery"]["note"] == "x"

    @pytest.mark.asyncio
    async def test_infinite_value_in_payload_is_absorbed(self, storage: InMemorySyncStorage) -> None:
        daily = json.loads(
            '{"calendarDate": "2024-05-01", "totalDistanceMeters": 1e400, "totalSteps": 8000}'
        )
        provider = FakeProvider(daily={TEST_DATE: daily})

        result = await _orchestrator(provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=HEALTH_ONLY)
        )

        assert result.errors == []
        assert result.health_snapshots_synced == 1

    @pytest.mark.asyncio
    async def test_unexpected_normalizer_error_is_recorded(
        self,
        garmin_provider: FakeProvider,
        storage: InMemorySyncStorage,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        def explode(payload, day):
            raise OverflowError("math range error")

        monkeypatch.setitem(orchestrator_module._NORMALIZERS, "sleep", explode)

        result = await _orchestrator(garmin_provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=HEALTH_ONLY)
        )

        assert result.errors == ["Sleep 2024-05-01: math range error"]
        assert result.health_snapshots_synced == 1
        assert not result.aborted

    @pytest.mark.asyncio
    async def test_date_without_data_writes_nothing(self, storage: InMemorySyncStorage) -> None:
        result = await _orchestrator(FakeProvider(), storage).sync(
            TEST_USER_ID, SyncOptions(families=HEALTH_ONLY)
        )
        assert result.health_snapshots_synced == 0
        assert storage.health_snapshots == {}


# ---------------------------------------------------------------------------
# Body composition
# ---------------------------------------------------------------------------


class TestBodyCompositionSync:
    @pytest.mark.asyncio
    async def test_upserts_one_row_per_date(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        options = SyncOptions(families=frozenset({"body_composition"}))
        orchestrator = _orchestrator(garmin_provider, storage)

        first = await orchestrator.sync(TEST_USER_ID, options)
        second = await orchestrator.sync(TEST_USER_ID, options)

        assert first.body_compositions_synced == 2
        assert second.body_compositions_synced == 2
        assert len(storage.body_compositions) == 2
        weights = {row["measured_date"]: row["weight_lbs"] for row in storage.body_compositions.values()}
        assert weights == {YESTERDAY: 160.0, TEST_DATE: 159.5}
        assert garmin_provider.called("get_body_composition")[0] == (YESTERDAY, TEST_DATE)

    @pytest.mark.asyncio
    async def test_disabled_by_default(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)
        assert garmin_provider.called("get_body_composition") == []

    @pytest.mark.asyncio
    async def test_fetch_failure_recorded(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        garmin_provider.fail("get_body_composition", ToolError("boom"))
        result = await _orchestrator(garmin_provider, storage).sync(
            TEST_USER_ID, SyncOptions(families=frozenset({"body_composition"}))
        )
        assert result.errors == ["Body composition: boom"]


# ---------------------------------------------------------------------------
# Connection handling and run bookkeeping
# ---------------------------------------------------------------------------


class TestRunLifecycle:
    @pytest.mark.asyncio
    async def test_connection_failure_aborts(self, storage: InMemorySyncStorage) -> None:
        provider = FakeProvider(connect_error=ProviderConnectionError("spawn failed"))

        result = await _orchestrator(provider, storage).sync(TEST_USER_ID)

        assert result.aborted
        assert result.status == "failed"
        assert result.errors == ["Connection failed: spawn failed"]
        assert provider.called("list_activities") == []
        assert provider.disconnect_calls == 1
        assert result.completed_at is not None

    @pytest.mark.asyncio
    async def test_connection_lost_midway_keeps_partial_counts(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        garmin_provider.fail("get_daily_summary", ProviderConnectionError("pipe closed"), key=TEST_DATE)

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.aborted
        assert result.activities_synced == 2
        assert result.errors == ["Connection failed: pipe closed"]
        assert garmin_provider.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_unreachable_garth_provider_aborts_once(self, storage: InMemorySyncStorage) -> None:
        client = MagicMock()
        client.connectapi.side_effect = requests.ConnectionError("Name or service not known")
        provider = GarminGarthProvider(client=client)

        result = await _orchestrator(provider, storage).sync(
            TEST_USER_ID, SyncOptions(days_back=2)
        )

        assert result.aborted
        assert result.errors == [
            "Connection failed: Garmin Connect unreachable: Name or service not known"
        ]
        assert client.connectapi.call_count == 1

    @pytest.mark.asyncio
    async def test_disconnect_after_success(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)
        assert garmin_provider.connect_calls == 1
        assert garmin_provider.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_cancel_event_stops_before_work(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        cancel = asyncio.Event()
        cancel.set()

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID, cancel_event=cancel)

        assert result.cancelled
        assert result.status == "partial"
        assert result.activities_synced == 0
        assert garmin_provider.called("get_activity") == []
        assert garmin_provider.called("get_daily_summary") == []
        assert garmin_provider.disconnect_calls == 1

    @pytest.mark.asyncio
    async def test_sync_log_written(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        result = await _orchestrator(garmin_provider, storage).sync_morning(TEST_USER_ID)

        (entry,) = storage.sync_log
        assert entry["user_id"] == TEST_USER_ID
        assert entry["sync_type"] == "morning"
        assert entry["status"] == "completed"
        assert entry["activities_synced"] == 2
        assert entry["duration_ms"] == result.duration_ms
        assert await storage.last_sync(TEST_USER_ID) == entry

    @pytest.mark.asyncio
    async def test_sync_log_failure_does_not_fail_run(
        self, garmin_provider: FakeProvider, storage: InMemorySyncStorage
    ) -> None:
        storage.log_sync = AsyncMock(side_effect=PersistenceError("log table missing"))

        result = await _orchestrator(garmin_provider, storage).sync(TEST_USER_ID)

        assert result.status == "completed"
        storage.log_sync.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_backfill_is_capped_and_covers_every_family(
        self, storage: InMemorySyncStorage
    ) -> None:
        provider = FakeProvider()
        config = SyncConfig(window=WindowConfig(days_back=1, backfill_max_days=5))

        await _orchestrator(provider, storage, config).backfill(TEST_USER_ID, 100)

        fetched = provider.called("get_daily_summary")
        assert len(fetched) == 6
        assert fetched[0] == TEST_DATE - timedelta(days=5)
        assert provider.called("get_body_composition") == [(fetched[0], TEST_DATE)]
        assert storage.sync_log[-1]["sync_type"] == "backfill"


class TestPerUserSerialization:
    @pytest.mark.asyncio
    async def test_same_user_runs_do_not_overlap(self, storage: InMemorySyncStorage) -> None:
        tracker = {"active": 0, "max": 0}
        locks = UserSyncLocks()
        runs = [
            _orchestrator(OverlapTrackingProvider(tracker), storage, locks=locks).sync(TEST_USER_ID)
            for _ in range(2)
        ]

        await asyncio.gather(*runs)

        assert tracker["max"] == 1
        assert len(storage.sync_log) == 2

    @pytest.mark.asyncio
    async def test_different_users_run_concurrently(self, storage: InMemorySyncStorage) -> None:
        tracker = {"active": 0, "max": 0}
        locks = UserSyncLocks()

        await asyncio.gather(
            _orchestrator(OverlapTrackingProvider(tracker), storage, locks=locks).sync(TEST_USER_ID),
            _orchestrator(OverlapTrackingProvider(tracker), storage, locks=locks).sync(OTHER_USER_ID),
        )

        assert tracker["max"] == 2

    def test_lock_registry_reuses_lock_per_user(self) -> None:
        locks = UserSyncLocks()
        assert locks.for_user(TEST_USER_ID) is locks.for_user(TEST_USER_ID)
        assert locks.for_user(TEST_USER_ID) is not locks.for_user(OTHER_USER_ID)
        assert not locks.is_locked(TEST_USER_ID)
