"""Garmin Connect provider using the garth library (unofficial API).

Uses stored OAuth tokens (``~/.garth`` by default) for authentication; no
developer account or worker process needed.  garth is synchronous, so every
request runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date
from typing import Any

import garth
import requests
from garth.exc import GarthException, GarthHTTPError

from trainsync.wearables.base import ActivityProvider
from trainsync.wearables.errors import ProviderConnectionError

logger = logging.getLogger("trainsync.wearables.adapters.garmin_garth")

# Statuses meaning the stored tokens are no longer accepted
AUTH_FAILURE_STATUSES = frozenset({401, 403})


def _status_code(exc: GarthHTTPError) -> int | None:
    response = getattr(exc.error, "response", None)
    return getattr(response, "status_code", None)


class GarminGarthProvider(ActivityProvider):
    """Live Garmin provider using garth.

    Args:
        token_path: Directory holding the saved garth OAuth tokens.
        client:     garth ``Client``; the library's shared client by default.
    """

    PROVIDER_ID = "garmin_garth"
    SOURCE_ID = "garmin"

    def __init__(self, token_path: str = "~/.garth", client: Any = None) -> None:
        self.token_path = token_path
        self._client = client if client is not None else garth.client
        self._authenticated = False

    async def connect(self) -> None:
        if self._authenticated:
            return
        try:
            await asyncio.to_thread(self._client.load, self.token_path)
        except (GarthException, OSError) as exc:
            logger.error("Garmin garth auth failed: %s", exc)
            raise ProviderConnectionError(f"Garmin auth failed: {exc}") from exc
        self._authenticated = True
        logger.info("Garmin garth auth successful")

    async def disconnect(self) -> None:
        self._authenticated = False

    async def _get(self, path: str, **params: Any) -> Any:
        if not self._authenticated:
            raise ProviderConnectionError("Garmin garth provider not connected. Call connect() first.")
        try:
            result = await asyncio.to_thread(self._client.connectapi, path, params=params or None)
        except requests.ConnectionError as exc:
            raise ProviderConnectionError(f"Garmin Connect unreachable: {exc}") from exc
        except GarthHTTPError as exc:
            status = _status_code(exc)
            if status in AUTH_FAILURE_STATUSES:
                self._authenticated = False
                raise ProviderConnectionError(f"Garmin rejected stored tokens (HTTP {status})") from exc
            raise
        return result if result is not None else {}

    @property
    def _username(self) -> str:
        return self._client.username

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def list_activities(self, limit: int = 20) -> list[dict[str, Any]]:
        result = await self._get(
            "/activitylist-service/activities/search/activities", limit=limit, start=0
        )
        return result if isinstance(result, list) else []

    async def get_activity(self, activity_id: str) -> dict[str, Any]:
        return await self._get(f"/activity-service/activity/{activity_id}")

    async def get_activity_splits(self, activity_id: str) -> Any:
        return await self._get(f"/activity-service/activity/{activity_id}/splits")

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def get_daily_summary(self, target_date: date) -> dict[str, Any]:
        return await self._get(
            f"/usersummary-service/usersummary/daily/{self._username}",
            calendarDate=target_date.isoformat(),
        )

    async def get_sleep_data(self, target_date: date) -> dict[str, Any]:
        return await self._get(
            f"/wellness-service/wellness/dailySleepData/{self._username}",
            date=target_date.isoformat(),
            nonSleepBufferMinutes=60,
        )

    async def get_hrv_data(self, target_date: date) -> dict[str, Any]:
        return await self._get(f"/hrv-service/hrv/{target_date.isoformat()}")

    async def get_body_composition(
        self, start_date: date, end_date: date | None = None
    ) -> dict[str, Any]:
        return await self._get(
            "/weight-service/weight/dateRange",
            startDate=start_date.isoformat(),
            endDate=(end_date or start_date).isoformat(),
        )
