"""Storage collaborators for the sync orchestrator.

``SyncStorage`` is the interface the orchestrator writes through.  Two
implementations:

    InMemorySyncStorage  — dict-backed, enforces the same uniqueness rules
                           as the database constraints
    PostgresSyncStorage  — asyncpg against the workouts / health_snapshots /
                           body_compositions / garmin_sync_log tables

Records are plain dicts keyed by column name.
"""

from __future__ import annotations

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any
from uuid import UUID

import asyncpg

from trainsync.services import database
from trainsync.wearables.base import utc_now
from trainsync.wearables.errors import PersistenceError
from trainsync.wearables.sync.dedup import build_update_query, build_upsert_query

logger = logging.getLogger("trainsync.wearables.sync.storage")

WORKOUTS = "workouts"
HEALTH_SNAPSHOTS = "health_snapshots"
BODY_COMPOSITIONS = "body_compositions"
SYNC_LOG = "garmin_sync_log"

JSON_COLUMNS = frozenset({"device_data", "splits", "raw_payload", "metadata", "errors"})


class SyncStorage(ABC):
    """Persistence operations consumed by ``SyncOrchestrator``."""

    # --- workouts ---

    @abstractmethod
    async def find_by_provider_id(
        self, user_id: UUID, provider_activity_id: str
    ) -> dict[str, Any] | None:
        """Return the workout already linked to this provider activity, if any."""

    @abstractmethod
    async def find_planned(self, user_id: UUID, scheduled_date: date) -> dict[str, Any] | None:
        """Return the user's ``planned`` workout scheduled on a date, if any."""

    @abstractmethod
    async def insert_workout(self, record: dict[str, Any]) -> str:
        """Insert a workout and return its id.

        Raises:
            PersistenceError: On a duplicate provider activity id or a write failure.
        """

    @abstractmethod
    async def update_workout(self, workout_id: str, fields: dict[str, Any]) -> None:
        """Update a workout in place, keeping its id."""

    # --- health snapshots ---

    @abstractmethod
    async def find_health_snapshot(
        self, user_id: UUID, snapshot_date: date
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def insert_health_snapshot(self, record: dict[str, Any]) -> str: ...

    @abstractmethod
    async def update_health_snapshot(self, snapshot_id: str, fields: dict[str, Any]) -> None: ...

    # --- body composition ---

    @abstractmethod
    async def find_body_composition(
        self, user_id: UUID, measured_date: date
    ) -> dict[str, Any] | None: ...

    @abstractmethod
    async def insert_body_composition(self, record: dict[str, Any]) -> str: ...

    @abstractmethod
    async def update_body_composition(self, record_id: str, fields: dict[str, Any]) -> None: ...

    # --- sync log ---

    @abstractmethod
    async def log_sync(self, entry: dict[str, Any]) -> None:
        """Append one run summary to the sync log."""

    @abstractmethod
    async def last_sync(self, user_id: UUID) -> dict[str, Any] | None:
        """Most recent sync log entry for a user."""


# ---------------------------------------------------------------------------
# In-memory
# ---------------------------------------------------------------------------


class InMemorySyncStorage(SyncStorage):
    """Dict-backed storage for tests and dry runs.

    Usage::

        storage = InMemorySyncStorage()
        plan_id = storage.add_planned(user_id, date(2024, 5, 1), title="Easy 5")
    """

    def __init__(self) -> None:
        self.workouts: dict[str, dict[str, Any]] = {}
        self.health_snapshots: dict[str, dict[str, Any]] = {}
        self.body_compositions: dict[str, dict[str, Any]] = {}
        self.sync_log: list[dict[str, Any]] = []

    def add_planned(
        self,
        user_id: UUID,
        scheduled_date: date,
        title: str = "Planned workout",
        workout_type: str = "run",
        **extra: Any,
    ) -> str:
        workout_id = str(uuid.uuid4())
        self.workouts[workout_id] = {
            "id": workout_id,
            "user_id": user_id,
            "title": title,
            "workout_type": workout_type,
            "status": "planned",
            "scheduled_date": scheduled_date,
            "provider_activity_id": None,
            **extra,
        }
        return workout_id

    @staticmethod
    def _insert(table: dict[str, dict[str, Any]], record: dict[str, Any]) -> str:
        record_id = str(record.get("id") or uuid.uuid4())
        now = utc_now()
        table[record_id] = {**record, "id": record_id, "created_at": now, "updated_at": now}
        return record_id

    @staticmethod
    def _update(
        table: dict[str, dict[str, Any]], record_id: str, fields: dict[str, Any], name: str
    ) -> None:
        if record_id not in table:
            raise PersistenceError(f"No {name} row with id {record_id}", "update", name)
        table[record_id].update({**fields, "id": record_id, "updated_at": utc_now()})

    async def find_by_provider_id(self, user_id, provider_activity_id):
        for row in self.workouts.values():
            if row["user_id"] == user_id and row.get("provider_activity_id") == provider_activity_id:
                return dict(row)
        return None

    async def find_planned(self, user_id, scheduled_date):
        for row in self.workouts.values():
            if (
                row["user_id"] == user_id
                and row.get("scheduled_date") == scheduled_date
                and row.get("status") == "planned"
            ):
                return dict(row)
        return None

    async def insert_workout(self, record):
        provider_id = record.get("provider_activity_id")
        if provider_id and await self.find_by_provider_id(record["user_id"], provider_id):
            raise PersistenceError(
                f"Duplicate provider_activity_id {provider_id}", "insert", WORKOUTS
            )
        return self._insert(self.workouts, record)

    async def update_workout(self, workout_id, fields):
        provider_id = fields.get("provider_activity_id")
        if provider_id:
            owner = self.workouts.get(workout_id, {}).get("user_id")
            existing = await self.find_by_provider_id(owner, provider_id)
            if existing and existing["id"] != workout_id:
                raise PersistenceError(
                    f"Duplicate provider_activity_id {provider_id}", "update", WORKOUTS
                )
        self._update(self.workouts, workout_id, fields, WORKOUTS)

    async def find_health_snapshot(self, user_id, snapshot_date):
        for row in self.health_snapshots.values():
            if row["user_id"] == user_id and row["snapshot_date"] == snapshot_date:
                return dict(row)
        return None

    async def insert_health_snapshot(self, record):
        if await self.find_health_snapshot(record["user_id"], record["snapshot_date"]):
            raise PersistenceError(
                f"Duplicate health snapshot for {record['snapshot_date']}", "insert", HEALTH_SNAPSHOTS
            )
        return self._insert(self.health_snapshots, record)

    async def update_health_snapshot(self, snapshot_id, fields):
        self._update(self.health_snapshots, snapshot_id, fields, HEALTH_SNAPSHOTS)

    async def find_body_composition(self, user_id, measured_date):
        for row in self.body_compositions.values():
            if row["user_id"] == user_id and row["measured_date"] == measured_date:
                return dict(row)
        return None

    async def insert_body_composition(self, record):
        if await self.find_body_composition(record["user_id"], record["measured_date"]):
            raise PersistenceError(
                f"Duplicate body composition for {record['measured_date']}", "insert", BODY_COMPOSITIONS
            )
        return self._insert(self.body_compositions, record)

    async def update_body_composition(self, record_id, fields):
        self._update(self.body_compositions, record_id, fields, BODY_COMPOSITIONS)

    async def log_sync(self, entry):
        self.sync_log.append(dict(entry))

    async def last_sync(self, user_id):
        for entry in reversed(self.sync_log):
            if entry.get("user_id") == user_id:
                return dict(entry)
        return None


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------


def _encode(column: str, value: Any) -> Any:
    if column in JSON_COLUMNS and value is not None and not isinstance(value, str):
        return json.dumps(value, default=_json_default)
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _decode(record: asyncpg.Record | None) -> dict[str, Any] | None:
    if record is None:
        return None
    row = dict(record)
    for column in JSON_COLUMNS & row.keys():
        if isinstance(row[column], str):
            row[column] = json.loads(row[column])
    if "id" in row and row["id"] is not None:
        row["id"] = str(row["id"])
    return row


class PostgresSyncStorage(SyncStorage):
    """asyncpg-backed storage using the pool in ``trainsync.services.database``.

    JSONB columns are sent as JSON text; ``asyncpg.PostgresError`` is
    re-raised as ``PersistenceError``.
    """

    async def _fetchrow(self, operation: str, table: str, query: str, *args: Any):
        try:
            return _decode(await database.fetchrow(query, *args))
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"{operation} on {table} failed: {exc}", operation, table) from exc

    async def _execute(self, operation: str, table: str, query: str, *args: Any) -> str:
        try:
            return await database.execute(query, *args)
        except asyncpg.PostgresError as exc:
            raise PersistenceError(f"{operation} on {table} failed: {exc}", operation, table) from exc

    async def _insert(self, table: str, record: dict[str, Any], conflict: list[str] | None = None) -> str:
        columns = list(record)
        values = [_encode(column, record[column]) for column in columns]
        if conflict:
            query = build_upsert_query(table, columns, conflict, returning="id")
        else:
            placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
            query = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) RETURNING id"
        row = await self._fetchrow("insert", table, query, *values)
        return row["id"]

    async def _update(self, table: str, record_id: str, fields: dict[str, Any]) -> None:
        columns = [column for column in fields if column != "id"]
        if not columns:
            return
        values = [_encode(column, fields[column]) for column in columns]
        query = build_update_query(table, columns)
        await self._execute("update", table, query, *values, UUID(str(record_id)))

    async def find_by_provider_id(self, user_id, provider_activity_id):
        return await self._fetchrow(
            "select",
            WORKOUTS,
            f"SELECT * FROM {WORKOUTS} WHERE user_id = $1 AND provider_activity_id = $2",
            user_id,
            provider_activity_id,
        )

    async def find_planned(self, user_id, scheduled_date):
        return await self._fetchrow(
            "select",
            WORKOUTS,
            f"SELECT * FROM {WORKOUTS} WHERE user_id = $1 AND scheduled_date = $2 "
            "AND status = 'planned' ORDER BY created_at LIMIT 1",
            user_id,
            scheduled_date,
        )

    async def insert_workout(self, record):
        return await self._insert(WORKOUTS, record)

    async def update_workout(self, workout_id, fields):
        await self._update(WORKOUTS, workout_id, fields)

    async def find_health_snapshot(self, user_id, snapshot_date):
        return await self._fetchrow(
            "select",
            HEALTH_SNAPSHOTS,
            f"SELECT * FROM {HEALTH_SNAPSHOTS} WHERE user_id = $1 AND snapshot_date = $2",
            user_id,
            snapshot_date,
        )

    async def insert_health_snapshot(self, record):
        return await self._insert(HEALTH_SNAPSHOTS, record, conflict=["user_id", "snapshot_date"])

    async def update_health_snapshot(self, snapshot_id, fields):
        await self._update(HEALTH_SNAPSHOTS, snapshot_id, fields)

    async def find_body_composition(self, user_id, measured_date):
        return await self._fetchrow(
            "select",
            BODY_COMPOSITIONS,
            f"SELECT * FROM {BODY_COMPOSITIONS} WHERE user_id = $1 AND measured_date = $2",
            user_id,
            measured_date,
        )

    async def insert_body_composition(self, record):
        return await self._insert(BODY_COMPOSITIONS, record, conflict=["user_id", "measured_date"])

    async def update_body_composition(self, record_id, fields):
        await self._update(BODY_COMPOSITIONS, record_id, fields)

    async def log_sync(self, entry):
        columns = list(entry)
        placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
        await self._execute(
            "insert",
            SYNC_LOG,
            f"INSERT INTO {SYNC_LOG} ({', '.join(columns)}) VALUES ({placeholders})",
            *[_encode(column, entry[column]) for column in columns],
        )

    async def last_sync(self, user_id):
        return await self._fetchrow(
            "select",
            SYNC_LOG,
            f"SELECT * FROM {SYNC_LOG} WHERE user_id = $1 ORDER BY completed_at DESC LIMIT 1",
            user_id,
        )
