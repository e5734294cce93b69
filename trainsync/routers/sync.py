"""Provider sync endpoints (cron and manual triggers)."""

from __future__ import annotations

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, HTTPException

from trainsync.dependencies import AppSettings, Config, CronAuth, Locks, Registry, Storage
from trainsync.models.sync import SyncRequest, SyncResponse, SyncStatusResponse
from trainsync.wearables.sync.orchestrator import SyncOptions, SyncOrchestrator

router = APIRouter(prefix="/sync", tags=["sync"], dependencies=[CronAuth])
logger = logging.getLogger("trainsync.sync")


def _resolve_user(requested: UUID | None, default: str | None) -> UUID:
    if requested is not None:
        return requested
    if not default:
        raise HTTPException(status_code=400, detail="user_id is required (SYNC_USER_ID not configured)")
    try:
        return UUID(default)
    except ValueError as exc:
        raise HTTPException(status_code=500, detail="SYNC_USER_ID is not a valid UUID") from exc


@router.post("/garmin", response_model=SyncResponse)
async def sync_garmin(
    body: SyncRequest,
    settings: AppSettings,
    registry: Registry,
    storage: Storage,
    locks: Locks,
    config: Config,
) -> Any:
    """Run a Garmin sync now and report counts and per-item errors."""
    user_id = _resolve_user(body.user_id, settings.sync_user_id)
    try:
        provider = registry.create(settings.garmin_provider)
    except KeyError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    orchestrator = SyncOrchestrator(provider, storage, config=config, locks=locks)
    logger.info("Sync requested: type=%s user=%s", body.type, user_id)

    if body.type == "morning":
        result = await orchestrator.sync_morning(user_id)
    elif body.type == "backfill":
        result = await orchestrator.backfill(user_id, body.days_back or 30)
    else:
        overrides: dict[str, Any] = {"sync_type": "scheduled"}
        if body.days_back is not None:
            overrides["days_back"] = body.days_back
        result = await orchestrator.sync(user_id, SyncOptions.from_config(config, **overrides))

    return SyncResponse.from_result(result, sync_type=body.type, user_id=user_id)


@router.get("/garmin/status", response_model=SyncStatusResponse)
async def sync_status(
    settings: AppSettings,
    storage: Storage,
    user_id: UUID | None = None,
) -> Any:
    """Most recent sync log entry for the user."""
    resolved = _resolve_user(user_id, settings.sync_user_id)
    return SyncStatusResponse(user_id=resolved, last_sync=await storage.last_sync(resolved))
