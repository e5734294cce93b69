"""Request/response schemas for the sync endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal
from uuid import UUID

from pydantic import Field

from trainsync.models.base import TrainsyncBase
from trainsync.wearables.base import SyncResult


class SyncRequest(TrainsyncBase):
    type: Literal["morning", "scheduled", "backfill"] = "scheduled"
    days_back: int | None = Field(default=None, ge=0, le=3650)
    user_id: UUID | None = None


class SyncResponse(TrainsyncBase):
    success: bool
    status: str
    sync_type: str
    user_id: UUID
    activities_synced: int
    plans_completed: int
    health_snapshots_synced: int
    body_compositions_synced: int
    errors: list[str]
    duration_ms: int | None
    completed_at: datetime | None

    @classmethod
    def from_result(cls, result: SyncResult, *, sync_type: str, user_id: UUID) -> "SyncResponse":
        return cls(
            success=not result.aborted,
            status=result.status,
            sync_type=sync_type,
            user_id=user_id,
            activities_synced=result.activities_synced,
            plans_completed=result.plans_completed,
            health_snapshots_synced=result.health_snapshots_synced,
            body_compositions_synced=result.body_compositions_synced,
            errors=result.errors,
            duration_ms=result.duration_ms,
            completed_at=result.completed_at,
        )


class SyncStatusResponse(TrainsyncBase):
    user_id: UUID
    last_sync: dict[str, Any] | None = None
