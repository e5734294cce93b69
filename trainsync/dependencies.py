"""Shared FastAPI dependencies injected into route handlers."""

from __future__ import annotations

import hmac
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, HTTPException

from trainsync.config import Settings, get_settings
from trainsync.services.database import pool_ready
from trainsync.wearables.adapters import ProviderRegistry, default_registry
from trainsync.wearables.config_loader import SyncConfig, get_sync_config, load_sync_config
from trainsync.wearables.sync.orchestrator import UserSyncLocks
from trainsync.wearables.sync.storage import (
    InMemorySyncStorage,
    PostgresSyncStorage,
    SyncStorage,
)


@lru_cache
def get_registry() -> ProviderRegistry:
    return default_registry(get_settings())


@lru_cache
def get_storage() -> SyncStorage:
    """Postgres when the pool is up, otherwise an in-process store."""
    if pool_ready():
        return PostgresSyncStorage()
    return InMemorySyncStorage()


@lru_cache
def get_locks() -> UserSyncLocks:
    return UserSyncLocks()


def get_config() -> SyncConfig:
    settings = get_settings()
    if settings.sync_config_path:
        return load_sync_config(settings.sync_config_path)
    return get_sync_config()


async def verify_cron_secret(
    settings: Annotated[Settings, Depends(get_settings)],
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    """Require ``Authorization: Bearer <cron_secret>`` when a secret is configured."""
    if not settings.cron_secret:
        return
    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


# Annotated shortcuts for route signatures
AppSettings = Annotated[Settings, Depends(get_settings)]
Registry = Annotated[ProviderRegistry, Depends(get_registry)]
Storage = Annotated[SyncStorage, Depends(get_storage)]
Locks = Annotated[UserSyncLocks, Depends(get_locks)]
Config = Annotated[SyncConfig, Depends(get_config)]
CronAuth = Depends(verify_cron_secret)
