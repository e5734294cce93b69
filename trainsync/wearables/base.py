"""Base classes and canonical data models for trainsync provider sync.

Every provider returns raw payloads; the normalizer turns them into the
canonical records defined here.  All distances are miles (elevation in
feet) and all durations minutes by the time a value lands in one of these
types: nothing here holds provider-native units.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

logger = logging.getLogger("trainsync.wearables")


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Activities
# ---------------------------------------------------------------------------


@dataclass
class CanonicalLap:
    """One lap or split of an activity.

    Attributes:
        lap_number:        1-based sequence number.
        distance_miles:    Lap distance (2-decimal miles).
        duration_minutes:  Lap duration (2-decimal minutes).
        pace:              Derived ``M:SS`` per mile, None when distance is 0.
        avg_heart_rate:    Average heart rate (bpm).
        max_heart_rate:    Maximum heart rate (bpm).
        avg_cadence:       Average cadence (steps/min).
        elevation_gain_ft: Elevation gained during the lap.
        elevation_loss_ft: Elevation lost during the lap.
    """

    lap_number: int
    distance_miles: float = 0.0
    duration_minutes: float = 0.0
    pace: str | None = None
    avg_heart_rate: int | None = None
    max_heart_rate: int | None = None
    avg_cadence: int | None = None
    elevation_gain_ft: int | None = None
    elevation_loss_ft: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "lapNumber": self.lap_number,
            "distanceMiles": self.distance_miles,
            "durationMinutes": self.duration_minutes,
            "pacePerMile": self.pace,
            "avgHeartRate": self.avg_heart_rate,
            "maxHeartRate": self.max_heart_rate,
            "avgCadence": self.avg_cadence,
            "elevationGainFt": self.elevation_gain_ft,
            "elevationLossFt": self.elevation_loss_ft,
        }


@dataclass
class CanonicalActivity:
    """Canonical executed activity.

    ``provider_activity_id`` is unique per user and is the idempotence key
    for repeat syncs.  ``raw_payload`` keeps the provider response verbatim
    for audit and reprocessing.
    """

    provider_activity_id: str
    name: str
    activity_type: str
    start_time: datetime | None
    activity_date: date
    duration_minutes: float
    source: str = "garmin"
    end_time: datetime | None = None
    distance_miles: float | None = None
    avg_pace: str | None = None
    avg_heart_rate: int | None = None
    max_heart_rate: int | None = None
    cadence_avg: int | None = None
    cadence_max: int | None = None
    avg_power_watts: int | None = None
    elevation_gain_ft: int | None = None
    elevation_loss_ft: int | None = None
    calories: int | None = None
    training_load: float | None = None
    training_effect_aerobic: float | None = None
    training_effect_anaerobic: float | None = None
    ground_contact_time_ms: float | None = None
    vertical_oscillation_cm: float | None = None
    laps: list[CanonicalLap] = field(default_factory=list)
    device_data: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


@dataclass
class CanonicalDailyHealth:
    """Daily summary for one calendar date."""

    calendar_date: date
    steps: int | None = None
    step_goal: int | None = None
    total_calories: int | None = None
    active_calories: int | None = None
    distance_miles: float | None = None
    floors_ascended: int | None = None
    resting_heart_rate: int | None = None
    min_heart_rate: int | None = None
    max_heart_rate: int | None = None
    stress_avg: int | None = None
    stress_max: int | None = None
    body_battery_current: int | None = None
    body_battery_highest: int | None = None
    body_battery_lowest: int | None = None
    body_battery_charged: int | None = None
    body_battery_drained: int | None = None
    spo2_avg: float | None = None
    spo2_lowest: float | None = None
    spo2_latest: float | None = None
    moderate_intensity_minutes: int | None = None
    vigorous_intensity_minutes: int | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class SleepRecord:
    """Sleep for the night ending on ``calendar_date``.

    Stage minutes are integer-rounded from the provider's second counts.
    """

    calendar_date: date
    total_sleep_minutes: int | None = None
    deep_minutes: int | None = None
    light_minutes: int | None = None
    rem_minutes: int | None = None
    awake_minutes: int | None = None
    sleep_score: int | None = None
    sleep_start: datetime | None = None
    sleep_end: datetime | None = None
    restless_moments: int | None = None
    avg_sleep_stress: float | None = None
    body_battery_change: int | None = None
    resting_heart_rate: int | None = None
    avg_overnight_hrv: float | None = None
    hrv_status: str | None = None
    scores: dict[str, Any] = field(default_factory=dict)
    raw_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def sleep_hours(self) -> float | None:
        if not self.total_sleep_minutes:
            return None
        return round(self.total_sleep_minutes / 60, 1)


@dataclass
class HRVRecord:
    """Overnight heart-rate variability for one date (milliseconds)."""

    calendar_date: date
    last_night_avg: float | None = None
    weekly_avg: float | None = None
    last_night_5min_high: float | None = None
    status: str | None = None
    feedback: str | None = None
    baseline: dict[str, Any] = field(default_factory=dict)
    sample_count: int = 0
    raw_payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class BodyComposition:
    """Body composition snapshot.  Masses are pounds."""

    calendar_date: date
    weight_lbs: float | None = None
    bmi: float | None = None
    body_fat_pct: float | None = None
    body_water_pct: float | None = None
    muscle_mass_lbs: float | None = None
    bone_mass_lbs: float | None = None
    visceral_fat: float | None = None
    metabolic_age: int | None = None
    physique_rating: int | None = None
    raw_payload: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Planning / results
# ---------------------------------------------------------------------------


@dataclass
class PlannedWorkout:
    """A training-plan entry awaiting execution data (stored externally)."""

    id: str
    user_id: UUID
    scheduled_date: date
    title: str = ""
    workout_type: str = "other"
    status: str = "planned"
    plan_id: str | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "PlannedWorkout":
        scheduled = record.get("scheduled_date")
        if isinstance(scheduled, str):
            scheduled = date.fromisoformat(scheduled[:10])
        return cls(
            id=str(record["id"]),
            user_id=record["user_id"],
            scheduled_date=scheduled,
            title=record.get("title") or "",
            workout_type=record.get("workout_type") or "other",
            status=record.get("status") or "planned",
            plan_id=record.get("plan_id"),
        )


@dataclass
class SyncResult:
    """Outcome of one sync invocation.

    Attributes:
        activities_synced:        Activities inserted or reconciled.
        plans_completed:          Subset of activities that completed a planned workout.
        health_snapshots_synced:  Daily snapshots inserted or updated.
        body_compositions_synced: Body composition records inserted or updated.
        errors:                   One string per failed item.
        aborted:                  True when the provider connection failed.
        cancelled:                True when the caller's cancel event stopped the run.
        started_at:               UTC start timestamp.
        completed_at:             UTC completion timestamp (set when the run ends).
    """

    activities_synced: int = 0
    plans_completed: int = 0
    health_snapshots_synced: int = 0
    body_compositions_synced: int = 0
    errors: list[str] = field(default_factory=list)
    aborted: bool = False
    cancelled: bool = False
    started_at: datetime = field(default_factory=utc_now)
    completed_at: datetime | None = None

    @property
    def status(self) -> str:
        if self.aborted:
            return "failed"
        if self.errors or self.cancelled:
            return "partial"
        return "completed"

    @property
    def duration_ms(self) -> int | None:
        if self.completed_at is None:
            return None
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


# ---------------------------------------------------------------------------
# Provider interface
# ---------------------------------------------------------------------------


class ActivityProvider(ABC):
    """Abstract data provider consumed by the sync orchestrator.

    Implementations return raw, provider-shaped payloads; normalization
    happens afterwards and never inside a provider.

    Subclasses must implement:
        - connect() / disconnect()
        - list_activities()
        - get_activity() / get_activity_splits()
        - get_daily_summary() / get_sleep_data() / get_hrv_data()
        - get_body_composition()
    """

    #: Registry key (e.g. 'garmin_mcp').
    PROVIDER_ID: str = "unknown"

    #: Slug written to the ``source`` column of synced records.
    SOURCE_ID: str = "unknown"

    @abstractmethod
    async def connect(self) -> None:
        """Open the provider session.

        Raises:
            ProviderConnectionError: If the provider cannot be reached.
        """

    @abstractmethod
    async def disconnect(self) -> None:
        """Close the provider session.  Safe to call when not connected."""

    @abstractmethod
    async def list_activities(self, limit: int = 20) -> list[dict[str, Any]]:
        """Return recent activities, newest first, in the summary shape."""

    @abstractmethod
    async def get_activity(self, activity_id: str) -> dict[str, Any]:
        """Return one activity in the detailed shape."""

    @abstractmethod
    async def get_activity_splits(self, activity_id: str) -> Any:
        """Return lap/split data for one activity (list or wrapper dict)."""

    @abstractmethod
    async def get_daily_summary(self, target_date: date) -> dict[str, Any]:
        """Return steps, calories, stress, body battery, SpO2 for a date."""

    @abstractmethod
    async def get_sleep_data(self, target_date: date) -> dict[str, Any]:
        """Return sleep for the night ending on ``target_date``."""

    @abstractmethod
    async def get_hrv_data(self, target_date: date) -> dict[str, Any]:
        """Return overnight HRV for ``target_date``."""

    @abstractmethod
    async def get_body_composition(
        self, start_date: date, end_date: date | None = None
    ) -> dict[str, Any]:
        """Return body composition measurements for a date range."""

    async def __aenter__(self) -> "ActivityProvider":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()
