"""trainsync provider sync core.

Pulls activities and physiological telemetry from a wearable provider,
normalizes them into canonical records, reconciles activities against the
user's training plan, and writes idempotent updates to storage.

Subpackages:
    mcp/        — Line-delimited JSON channel and JSON-RPC tool client
    adapters/   — Provider implementations and the provider registry
    normalizer/ — Pure payload → canonical record mapping
    sync/       — Orchestrator, storage, scheduler, dedup

Core modules:
    base          — ActivityProvider ABC and canonical data models
    errors        — Error taxonomy
    config_loader — Load/validate/hot-reload sync_config.yaml
"""

from trainsync.wearables.base import (
    ActivityProvider,
    BodyComposition,
    CanonicalActivity,
    CanonicalDailyHealth,
    CanonicalLap,
    HRVRecord,
    PlannedWorkout,
    SleepRecord,
    SyncResult,
)
from trainsync.wearables.config_loader import SyncConfig, get_sync_config

__all__ = [
    "ActivityProvider",
    "BodyComposition",
    "CanonicalActivity",
    "CanonicalDailyHealth",
    "CanonicalLap",
    "HRVRecord",
    "PlannedWorkout",
    "SleepRecord",
    "SyncConfig",
    "SyncResult",
    "get_sync_config",
]
