"""Deduplication keys and idempotent write helpers.

Dedup keys mirror the storage uniqueness constraints:
    - workouts:          (user_id, provider_activity_id)
    - health_snapshots:  (user_id, snapshot_date)
    - body_compositions: (user_id, measured_date)

The database constraints are authoritative; the in-memory cache only keeps
one run from processing the same provider record twice.
"""

from __future__ import annotations

import logging
from datetime import date
from uuid import UUID

logger = logging.getLogger("trainsync.wearables.sync.dedup")


def activity_key(user_id: UUID, source: str, provider_activity_id: str) -> str:
    """Dedup key for an executed activity."""
    return f"{user_id}:{source}:activity:{provider_activity_id}"


def daily_key(user_id: UUID, source: str, family: str, target_date: date) -> str:
    """Dedup key for a date-keyed record (snapshot, body composition)."""
    return f"{user_id}:{source}:{family}:{target_date.isoformat()}"


class InMemoryDedupCache:
    """In-process dedup cache for one sync run.

    Usage::

        cache = InMemoryDedupCache()
        if cache.is_seen(key):
            logger.debug("Skipping duplicate: %s", key)
        else:
            cache.mark_seen(key)
            # process the record
    """

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def is_seen(self, key: str) -> bool:
        return key in self._seen

    def mark_seen(self, key: str) -> None:
        self._seen.add(key)

    def check_and_mark(self, key: str) -> bool:
        """Mark ``key`` and return True if it had already been seen."""
        if key in self._seen:
            logger.debug("Duplicate within run: %s", key)
            return True
        self._seen.add(key)
        return False

    def clear(self) -> None:
        self._seen.clear()

    def __len__(self) -> int:
        return len(self._seen)


def build_upsert_query(
    table: str,
    columns: list[str],
    conflict_columns: list[str],
    update_columns: list[str] | None = None,
    returning: str | None = None,
) -> str:
    """Build a PostgreSQL INSERT ... ON CONFLICT DO UPDATE (upsert) query.

    Safe to run repeatedly with the same data.  On conflict the non-key
    columns are updated and ``updated_at`` is bumped.

    Args:
        table:            Target table name.
        columns:          All columns to insert.
        conflict_columns: Columns that define the UNIQUE constraint.
        update_columns:   Columns to update on conflict (defaults to non-key columns).
        returning:        Optional ``RETURNING`` column.

    Returns:
        Parameterized SQL string.
    """
    if update_columns is None:
        update_columns = [c for c in columns if c not in conflict_columns]

    placeholders = ", ".join(f"${i + 1}" for i in range(len(columns)))
    col_list = ", ".join(columns)
    conflict_target = ", ".join(conflict_columns)

    if update_columns:
        update_set = ", ".join(f"{col} = EXCLUDED.{col}" for col in update_columns)
        update_set += ", updated_at = NOW()"
        do_clause = f"DO UPDATE SET {update_set}"
    else:
        do_clause = "DO NOTHING"

    query = (
        f"INSERT INTO {table} ({col_list}) "
        f"VALUES ({placeholders}) "
        f"ON CONFLICT ({conflict_target}) {do_clause}"
    )
    if returning:
        query += f" RETURNING {returning}"
    return query


def build_update_query(table: str, columns: list[str], key_column: str = "id") -> str:
    """``UPDATE table SET a = $1, ... WHERE key = $n`` with ``updated_at`` bumped."""
    assignments = ", ".join(f"{col} = ${i + 1}" for i, col in enumerate(columns))
    return (
        f"UPDATE {table} SET {assignments}, updated_at = NOW() "
        f"WHERE {key_column} = ${len(columns) + 1}"
    )
