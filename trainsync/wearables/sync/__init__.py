"""Provider sync infrastructure.

Modules:
    orchestrator — Date-bounded sync: activities, health snapshots, body composition
    storage      — SyncStorage interface plus in-memory and PostgreSQL backends
    scheduler    — Concurrent job runner with per-provider intervals
    dedup        — Dedup keys, in-run cache, SQL upsert builders
"""

from trainsync.wearables.sync.orchestrator import (
    SyncOptions,
    SyncOrchestrator,
    UserSyncLocks,
)
from trainsync.wearables.sync.storage import (
    InMemorySyncStorage,
    PostgresSyncStorage,
    SyncStorage,
)

__all__ = [
    "InMemorySyncStorage",
    "PostgresSyncStorage",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncStorage",
    "UserSyncLocks",
]
