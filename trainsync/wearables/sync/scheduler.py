"""Background sync scheduler.

Runs queued sync jobs concurrently (bounded by ``scheduler.max_concurrent``).
Each job gets a fresh provider from the registry and its own orchestrator;
all jobs share one ``UserSyncLocks`` so two jobs for the same user run one
after the other.

Sync intervals come from ``sync_config.yaml`` (``scheduler.intervals``).
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable
from uuid import UUID

from trainsync.wearables.adapters import ProviderRegistry
from trainsync.wearables.base import SyncResult, utc_now
from trainsync.wearables.config_loader import SyncConfig, get_sync_config
from trainsync.wearables.sync.orchestrator import SyncOptions, SyncOrchestrator, UserSyncLocks
from trainsync.wearables.sync.storage import SyncStorage

logger = logging.getLogger("trainsync.wearables.sync.scheduler")


@dataclass
class SyncJob:
    """A scheduled sync job for one user + provider.

    Attributes:
        user_id:      Internal user UUID.
        provider:     Registry name of the provider (e.g. 'garmin_mcp').
        options:      Run options (None = config defaults).
        last_sync_at: UTC datetime of the last successful sync.
        priority:     Lower = higher priority. 1–10.
        created_at:   When the job was created.
    """

    user_id: UUID
    provider: str = "garmin_mcp"
    options: SyncOptions | None = None
    last_sync_at: datetime | None = None
    priority: int = 5
    created_at: datetime = field(default_factory=utc_now)


@dataclass
class SyncJobResult:
    """Outcome of one job.

    Attributes:
        user_id:  Internal user UUID.
        provider: Provider registry name.
        status:   'success', 'partial', 'error'.
        result:   The orchestrator's SyncResult (None if the job never ran).
        error:    Error message if status == 'error'.
    """

    user_id: UUID
    provider: str
    status: str = "success"
    result: SyncResult | None = None
    error: str | None = None


class SyncScheduler:
    """Schedule and execute sync jobs.

    Usage::

        scheduler = SyncScheduler(registry, storage)
        scheduler.enqueue(SyncJob(user_id=user_id))
        results = await scheduler.run_all()
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        storage: SyncStorage,
        *,
        config: SyncConfig | None = None,
        locks: UserSyncLocks | None = None,
        clock: Callable[[], date] = date.today,
        max_concurrent: int | None = None,
    ) -> None:
        self._registry = registry
        self._storage = storage
        self._config = config or get_sync_config()
        self._locks = locks or UserSyncLocks()
        self._clock = clock
        self._max_concurrent = max_concurrent or self._config.scheduler.max_concurrent
        self._queue: list[SyncJob] = []

    def enqueue(self, job: SyncJob) -> None:
        """Add a job; the queue stays sorted by priority (ascending)."""
        self._queue.append(job)
        self._queue.sort(key=lambda j: j.priority)
        logger.debug(
            "Enqueued sync job: %s/%s (priority=%d)", job.user_id, job.provider, job.priority
        )

    @property
    def pending(self) -> int:
        return len(self._queue)

    async def run_all(self) -> list[SyncJobResult]:
        """Execute every queued job with bounded parallelism."""
        if not self._queue:
            logger.debug("SyncScheduler: no jobs in queue")
            return []

        jobs, self._queue = self._queue, []
        logger.info("SyncScheduler: running %d jobs", len(jobs))
        semaphore = asyncio.Semaphore(self._max_concurrent)
        outcomes = await asyncio.gather(
            *(self._run_job(job, semaphore) for job in jobs), return_exceptions=True
        )

        results: list[SyncJobResult] = []
        for job, outcome in zip(jobs, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Sync job %s/%s failed with exception: %s", job.user_id, job.provider, outcome)
                results.append(
                    SyncJobResult(job.user_id, job.provider, status="error", error=str(outcome))
                )
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results.append(outcome)

        logger.info(
            "SyncScheduler: %d jobs complete, %d errors",
            len(results),
            sum(1 for r in results if r.status == "error"),
        )
        return results

    async def _run_job(self, job: SyncJob, semaphore: asyncio.Semaphore) -> SyncJobResult:
        async with semaphore:
            return await self._execute(job)

    async def _execute(self, job: SyncJob) -> SyncJobResult:
        try:
            provider = self._registry.create(job.provider)
        except KeyError:
            return SyncJobResult(
                job.user_id,
                job.provider,
                status="error",
                error=f"No provider registered for '{job.provider}'",
            )

        orchestrator = SyncOrchestrator(
            provider,
            self._storage,
            config=self._config,
            locks=self._locks,
            clock=self._clock,
        )
        options = job.options or SyncOptions.from_config(self._config, sync_type="scheduled")
        result = await orchestrator.sync(job.user_id, options)

        if result.aborted:
            status, error = "error", "; ".join(result.errors[:3])
        elif result.errors or result.cancelled:
            status, error = "partial", None
        else:
            status, error = "success", None
        return SyncJobResult(job.user_id, job.provider, status=status, result=result, error=error)

    def get_interval(self, provider: str) -> int:
        """Sync interval in seconds for a provider."""
        return self._config.interval(provider)

    def should_sync(self, provider: str, last_sync_at: datetime | None) -> bool:
        """Return True if a provider is due for a sync (never synced = due)."""
        if last_sync_at is None:
            return True
        elapsed = (utc_now() - last_sync_at).total_seconds()
        return elapsed >= self.get_interval(provider)
