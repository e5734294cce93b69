"""Date-bounded provider sync.

One ``sync()`` call:

1. Connects the provider (failure ends the run, recorded once).
2. Activities: lists recent activities, keeps those whose local start date
   falls in the window, and for each one skips it if already stored,
   otherwise completes a matching planned workout in place or inserts a
   standalone completed workout.
3. Health: for each date (ascending) fetches daily summary, sleep and HRV
   concurrently, each isolated from the others' failures, and upserts one
   snapshot per date.
4. Body composition: one range call, upserted per measured date.
5. Always disconnects the provider.

Per-item failures land in ``SyncResult.errors``; only a lost provider
connection stops the run early.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import date, timedelta
from typing import Any, Awaitable, Callable
from uuid import UUID

from trainsync.wearables.base import (
    ActivityProvider,
    CanonicalActivity,
    PlannedWorkout,
    SyncResult,
    utc_now,
)
from trainsync.wearables.config_loader import FAMILIES, SyncConfig, get_sync_config
from trainsync.wearables.errors import ProviderConnectionError
from trainsync.wearables.normalizer import (
    build_health_snapshot,
    normalize_activity,
    normalize_body_composition,
    normalize_daily_summary,
    normalize_hrv,
    normalize_sleep,
)
from trainsync.wearables.normalizer.fields import parse_date
from trainsync.wearables.sync.dedup import InMemoryDedupCache, activity_key
from trainsync.wearables.sync.storage import SyncStorage

logger = logging.getLogger("trainsync.wearables.sync.orchestrator")

HEALTH_FAMILIES = ("daily_summary", "sleep", "hrv")

_FAMILY_LABELS = {
    "daily_summary": "Daily summary",
    "sleep": "Sleep",
    "hrv": "HRV",
}

_NORMALIZERS: dict[str, Callable[..., Any]] = {
    "daily_summary": normalize_daily_summary,
    "sleep": normalize_sleep,
    "hrv": normalize_hrv,
}


@dataclass(frozen=True)
class SyncOptions:
    """What one sync run covers.

    Attributes:
        families:          Metric families to sync (see ``config_loader.FAMILIES``).
        days_back:         Days before ``end_date`` included in the window.
        end_date:          Last day of the window (default: today).
        activity_limit:    Recent activities requested from the provider.
        match_window_days: Planned-workout match tolerance in days (0 = same date).
        sync_type:         Label written to the sync log.
    """

    families: frozenset[str] = frozenset(f for f in FAMILIES if f != "body_composition")
    days_back: int = 1
    end_date: date | None = None
    activity_limit: int = 50
    match_window_days: int = 0
    sync_type: str = "manual"

    @classmethod
    def from_config(cls, config: SyncConfig, **overrides: Any) -> "SyncOptions":
        options = cls(
            families=config.enabled_families(),
            days_back=config.window.days_back,
            activity_limit=config.activities.list_limit,
            match_window_days=config.reconciliation.match_window_days,
        )
        return replace(options, **overrides) if overrides else options

    def wants(self, family: str) -> bool:
        return family in self.families

    def dates(self, today: date) -> list[date]:
        """Every date in the window, ascending."""
        end = self.end_date or today
        start = end - timedelta(days=max(self.days_back, 0))
        return [start + timedelta(days=i) for i in range((end - start).days + 1)]


def match_offsets(window_days: int) -> list[int]:
    """Day offsets to try when matching a plan: 0, -1, +1, -2, +2, ..."""
    offsets = [0]
    for distance in range(1, max(window_days, 0) + 1):
        offsets.extend((-distance, distance))
    return offsets


def merge_metadata(existing: dict[str, Any], incoming: dict[str, Any]) -> dict[str, Any]:
    """Recursive merge; incoming values win, nested dicts are merged key by key."""
    merged = dict(existing)
    for key, value in incoming.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_metadata(merged[key], value)
        else:
            merged[key] = value
    return merged


class UserSyncLocks:
    """One ``asyncio.Lock`` per user so runs for the same user never overlap."""

    def __init__(self) -> None:
        self._locks: dict[Any, asyncio.Lock] = {}

    def for_user(self, user_id: UUID) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    def is_locked(self, user_id: UUID) -> bool:
        lock = self._locks.get(user_id)
        return lock is not None and lock.locked()


class SyncOrchestrator:
    """Drive one provider into storage for a user and a date window.

    Args:
        provider: Connected-on-demand data provider.
        storage:  Persistence collaborator.
        config:   Sync configuration (defaults to the bundled YAML).
        locks:    Shared per-user lock registry.
        clock:    Returns "today"; injectable for tests.
    """

    def __init__(
        self,
        provider: ActivityProvider,
        storage: SyncStorage,
        *,
        config: SyncConfig | None = None,
        locks: UserSyncLocks | None = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.provider = provider
        self.storage = storage
        self.config = config or get_sync_config()
        self.locks = locks or UserSyncLocks()
        self._clock = clock
        self.source = getattr(provider, "SOURCE_ID", "garmin")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def sync(
        self,
        user_id: UUID,
        options: SyncOptions | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> SyncResult:
        """Run a sync and return what happened.  Never raises for partial failures."""
        options = options or SyncOptions.from_config(self.config)
        if self.locks.is_locked(user_id):
            logger.info("Sync already running for %s; waiting", user_id)
        async with self.locks.for_user(user_id):
            result = await self._run(user_id, options, cancel_event)
        await self._write_log(user_id, options, result)
        return result

    async def sync_morning(
        self, user_id: UUID, cancel_event: asyncio.Event | None = None
    ) -> SyncResult:
        """Yesterday and today, default families."""
        options = SyncOptions.from_config(self.config, days_back=1, sync_type="morning")
        return await self.sync(user_id, options, cancel_event)

    async def backfill(
        self, user_id: UUID, days: int, cancel_event: asyncio.Event | None = None
    ) -> SyncResult:
        """Every family over ``days`` days, capped at ``window.backfill_max_days``."""
        max_days = self.config.window.backfill_max_days
        if days > max_days:
            logger.warning("Backfill of %d days capped to %d", days, max_days)
            days = max_days
        logger.info("Starting backfill for %d days", days)
        options = SyncOptions.from_config(
            self.config,
            families=frozenset(FAMILIES),
            days_back=days,
            sync_type="backfill",
        )
        return await self.sync(user_id, options, cancel_event)

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def _run(
        self, user_id: UUID, options: SyncOptions, cancel_event: asyncio.Event | None
    ) -> SyncResult:
        result = SyncResult()
        dates = options.dates(self._clock())
        logger.info(
            "Starting %s sync for %s: %s..%s families=%s",
            self.source,
            user_id,
            dates[0],
            dates[-1],
            sorted(options.families),
        )
        try:
            await self.provider.connect()
            if options.wants("activities"):
                await self._sync_activities(user_id, dates, options, result, cancel_event)
            if any(options.wants(family) for family in HEALTH_FAMILIES):
                await self._sync_health(user_id, dates, options, result, cancel_event)
            if options.wants("body_composition") and not self._cancelled(cancel_event, result):
                await self._sync_body_composition(user_id, dates, result)
        except ProviderConnectionError as exc:
            result.errors.append(f"Connection failed: {exc}")
            result.aborted = True
            logger.error("%s sync connection failed: %s", self.source, exc)
        finally:
            await self._disconnect()
            result.completed_at = utc_now()

        logger.info(
            "%s sync finished: status=%s activities=%d plans_completed=%d "
            "snapshots=%d body_compositions=%d errors=%d",
            self.source,
            result.status,
            result.activities_synced,
            result.plans_completed,
            result.health_snapshots_synced,
            result.body_compositions_synced,
            len(result.errors),
        )
        return result

    async def _disconnect(self) -> None:
        try:
            await self.provider.disconnect()
        except Exception:
            logger.warning("Provider disconnect failed", exc_info=True)

    def _cancelled(self, cancel_event: asyncio.Event | None, result: SyncResult) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            if not result.cancelled:
                logger.info("Sync cancelled")
            result.cancelled = True
            return True
        return False

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def _sync_activities(
        self,
        user_id: UUID,
        dates: list[date],
        options: SyncOptions,
        result: SyncResult,
        cancel_event: asyncio.Event | None,
    ) -> None:
        try:
            listed = await self.provider.list_activities(options.activity_limit)
        except ProviderConnectionError:
            raise
        except Exception as exc:
            result.errors.append(f"Activities sync failed: {exc}")
            logger.warning("Listing activities failed: %s", exc)
            return

        start, end = dates[0], dates[-1]
        seen = InMemoryDedupCache()
        for summary in listed:
            if self._cancelled(cancel_event, result):
                return
            activity_id = summary.get("activityId")
            local_date = parse_date(summary.get("startTimeLocal"))
            if local_date is not None and not start <= local_date <= end:
                continue
            if activity_id is not None and seen.check_and_mark(
                activity_key(user_id, self.source, str(activity_id))
            ):
                continue
            try:
                outcome = await self._sync_activity(user_id, summary, options)
            except ProviderConnectionError:
                raise
            except Exception as exc:
                result.errors.append(f"Activity {activity_id}: {exc}")
                logger.warning("Failed to sync activity %s: %s", activity_id, exc)
                continue
            if outcome == "skipped":
                continue
            result.activities_synced += 1
            if outcome == "completed_plan":
                result.plans_completed += 1

    async def _sync_activity(
        self, user_id: UUID, summary: dict[str, Any], options: SyncOptions
    ) -> str:
        activity_id = summary.get("activityId")
        if activity_id is not None:
            existing = await self.storage.find_by_provider_id(user_id, str(activity_id))
            if existing:
                logger.debug("Activity %s already synced", activity_id)
                return "skipped"

            payload = {**summary, **await self._fetch_detail(activity_id)}
            splits = await self._fetch_splits(activity_id)
        else:
            payload, splits = summary, None

        activity = normalize_activity(payload, splits, source=self.source)

        planned = await self._find_planned(user_id, activity.activity_date, options.match_window_days)
        if planned is not None:
            await self.storage.update_workout(planned.id, self._execution_fields(activity))
            logger.debug(
                "Completed planned workout %s (%s, scheduled %s) with activity %s",
                planned.id,
                planned.title,
                planned.scheduled_date,
                activity_id,
            )
            return "completed_plan"

        await self.storage.insert_workout(self._new_workout(user_id, activity))
        logger.debug("Inserted workout from activity %s", activity_id)
        return "inserted"

    async def _fetch_detail(self, activity_id: Any) -> dict[str, Any]:
        try:
            detail = await self.provider.get_activity(str(activity_id))
        except ProviderConnectionError:
            raise
        except Exception as exc:
            logger.warning("Detail fetch for activity %s failed, using summary: %s", activity_id, exc)
            return {}
        return detail if isinstance(detail, dict) else {}

    async def _fetch_splits(self, activity_id: Any) -> Any:
        try:
            return await self.provider.get_activity_splits(str(activity_id))
        except ProviderConnectionError:
            raise
        except Exception as exc:
            logger.debug("No splits for activity %s: %s", activity_id, exc)
            return None

    async def _find_planned(
        self, user_id: UUID, activity_date: date, window_days: int
    ) -> PlannedWorkout | None:
        for offset in match_offsets(window_days):
            row = await self.storage.find_planned(user_id, activity_date + timedelta(days=offset))
            if row is not None:
                return PlannedWorkout.from_record(row)
        return None

    def _execution_fields(self, activity: CanonicalActivity) -> dict[str, Any]:
        """Columns written when an activity completes an existing plan."""
        return {
            "provider_activity_id": activity.provider_activity_id,
            "status": "completed",
            "started_at": activity.start_time,
            "completed_at": activity.end_time,
            "actual_duration_minutes": activity.duration_minutes,
            "actual_distance_miles": activity.distance_miles,
            "avg_pace": activity.avg_pace,
            "avg_heart_rate": activity.avg_heart_rate,
            "max_heart_rate": activity.max_heart_rate,
            "training_load": activity.training_load,
            "training_effect_aerobic": activity.training_effect_aerobic,
            "training_effect_anaerobic": activity.training_effect_anaerobic,
            "cadence_avg": activity.cadence_avg,
            "cadence_max": activity.cadence_max,
            "ground_contact_time_ms": activity.ground_contact_time_ms,
            "vertical_oscillation_cm": activity.vertical_oscillation_cm,
            "avg_power_watts": activity.avg_power_watts,
            "elevation_gain_ft": activity.elevation_gain_ft,
            "elevation_loss_ft": activity.elevation_loss_ft,
            "calories_burned": activity.calories,
            "device_data": activity.device_data,
            "splits": [lap.to_dict() for lap in activity.laps],
            "raw_payload": activity.raw_payload,
            "source": activity.source,
        }

    def _new_workout(self, user_id: UUID, activity: CanonicalActivity) -> dict[str, Any]:
        return {
            "user_id": user_id,
            "title": activity.name,
            "workout_type": activity.activity_type,
            "scheduled_date": activity.activity_date,
            **self._execution_fields(activity),
            "tags": [f"{activity.source}-synced"],
            "metadata": {},
        }

    # ------------------------------------------------------------------
    # Health snapshots
    # ------------------------------------------------------------------

    async def _sync_health(
        self,
        user_id: UUID,
        dates: list[date],
        options: SyncOptions,
        result: SyncResult,
        cancel_event: asyncio.Event | None,
    ) -> None:
        fetchers: dict[str, Callable[[date], Awaitable[Any]]] = {
            "daily_summary": self.provider.get_daily_summary,
            "sleep": self.provider.get_sleep_data,
            "hrv": self.provider.get_hrv_data,
        }
        families = [family for family in HEALTH_FAMILIES if options.wants(family)]

        for day in dates:
            if self._cancelled(cancel_event, result):
                return
            outcomes = await asyncio.gather(
                *(fetchers[family](day) for family in families), return_exceptions=True
            )

            records: dict[str, Any] = {}
            for family, outcome in zip(families, outcomes):
                if isinstance(outcome, ProviderConnectionError):
                    raise outcome
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    result.errors.append(f"{_FAMILY_LABELS[family]} {day}: {outcome}")
                    logger.warning("%s fetch for %s failed: %s", family, day, outcome)
                    continue
                if not outcome:
                    continue
                try:
                    records[family] = _NORMALIZERS[family](outcome, day)
                except Exception as exc:
                    result.errors.append(f"{_FAMILY_LABELS[family]} {day}: {exc}")
                    logger.warning("%s payload for %s rejected: %s", family, day, exc)

            if not records:
                logger.debug("No health data for %s", day)
                continue

            snapshot = build_health_snapshot(
                day,
                records.get("daily_summary"),
                records.get("sleep"),
                records.get("hrv"),
                source=self.source,
            )
            try:
                await self._upsert_snapshot(user_id, snapshot)
            except Exception as exc:
                result.errors.append(f"Health snapshot {day}: {exc}")
                logger.warning("Failed to store health snapshot for %s: %s", day, exc)
                continue
            result.health_snapshots_synced += 1

    async def _upsert_snapshot(self, user_id: UUID, snapshot: dict[str, Any]) -> None:
        day = snapshot["snapshot_date"]
        existing = await self.storage.find_health_snapshot(user_id, day)
        if existing is None:
            await self.storage.insert_health_snapshot({**snapshot, "user_id": user_id})
            logger.debug("Inserted health snapshot for %s", day)
            return

        fields = {
            key: value
            for key, value in snapshot.items()
            if value is not None and key not in ("snapshot_date", "metadata")
        }
        fields["metadata"] = merge_metadata(existing.get("metadata") or {}, snapshot["metadata"])
        await self.storage.update_health_snapshot(existing["id"], fields)
        logger.debug("Updated health snapshot for %s", day)

    # ------------------------------------------------------------------
    # Body composition
    # ------------------------------------------------------------------

    async def _sync_body_composition(
        self, user_id: UUID, dates: list[date], result: SyncResult
    ) -> None:
        try:
            payload = await self.provider.get_body_composition(dates[0], dates[-1])
            records = normalize_body_composition(payload or {}, dates[-1])
        except ProviderConnectionError:
            raise
        except Exception as exc:
            result.errors.append(f"Body composition: {exc}")
            logger.warning("Body composition fetch failed: %s", exc)
            return

        for record in records:
            row = {
                "measured_date": record.calendar_date,
                "weight_lbs": record.weight_lbs,
                "bmi": record.bmi,
                "body_fat_pct": record.body_fat_pct,
                "body_water_pct": record.body_water_pct,
                "muscle_mass_lbs": record.muscle_mass_lbs,
                "bone_mass_lbs": record.bone_mass_lbs,
                "visceral_fat": record.visceral_fat,
                "metabolic_age": record.metabolic_age,
                "physique_rating": record.physique_rating,
                "source": self.source,
                "raw_payload": record.raw_payload,
            }
            try:
                existing = await self.storage.find_body_composition(user_id, record.calendar_date)
                if existing is None:
                    await self.storage.insert_body_composition({**row, "user_id": user_id})
                else:
                    await self.storage.update_body_composition(
                        existing["id"], {k: v for k, v in row.items() if v is not None}
                    )
            except Exception as exc:
                result.errors.append(f"Body composition {record.calendar_date}: {exc}")
                logger.warning("Failed to store body composition for %s: %s", record.calendar_date, exc)
                continue
            result.body_compositions_synced += 1

    # ------------------------------------------------------------------
    # Sync log
    # ------------------------------------------------------------------

    async def _write_log(self, user_id: UUID, options: SyncOptions, result: SyncResult) -> None:
        entry = {
            "user_id": user_id,
            "sync_type": options.sync_type,
            "status": result.status,
            "activities_synced": result.activities_synced,
            "health_snapshots_synced": result.health_snapshots_synced,
            "body_compositions_synced": result.body_compositions_synced,
            "errors": list(result.errors),
            "started_at": result.started_at,
            "completed_at": result.completed_at,
            "duration_ms": result.duration_ms,
        }
        try:
            await self.storage.log_sync(entry)
        except Exception as exc:
            logger.warning("Failed to write sync log: %s", exc)
