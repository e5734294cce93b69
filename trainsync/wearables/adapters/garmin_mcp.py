"""Garmin provider backed by the garmin-mcp tool server.

The server runs as a child process (``uvx ... garmin-mcp`` by default) and
authenticates with ``GARMIN_EMAIL`` / ``GARMIN_PASSWORD`` (or their
``*_FILE`` variants) from its environment.  Every method here is a single
``tools/call`` and returns the provider payload untouched apart from
reshaping sleep and HRV into the forms the normalizer accepts.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Sequence

from trainsync.wearables.base import ActivityProvider
from trainsync.wearables.mcp.client import DEFAULT_REQUEST_TIMEOUT_S, MCPClient

logger = logging.getLogger("trainsync.wearables.adapters.garmin_mcp")

DEFAULT_MCP_COMMAND = (
    "uvx",
    "--python",
    "3.12",
    "--from",
    "git+https://github.com/Taxuspt/garmin_mcp",
    "garmin-mcp",
)


def credential_env(
    email: str | None = None,
    password: str | None = None,
    email_file: str | None = None,
    password_file: str | None = None,
) -> dict[str, str]:
    """Environment variables handed to the tool server process."""
    env = {
        "GARMIN_EMAIL": email,
        "GARMIN_PASSWORD": password,
        "GARMIN_EMAIL_FILE": email_file,
        "GARMIN_PASSWORD_FILE": password_file,
    }
    return {key: value for key, value in env.items() if value}


def _as_list(payload: Any) -> list[dict[str, Any]]:
    if isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    if isinstance(payload, dict):
        for key in ("activities", "activityList", "items"):
            if isinstance(payload.get(key), list):
                return [item for item in payload[key] if isinstance(item, dict)]
    return []


def _as_dict(payload: Any) -> dict[str, Any]:
    return payload if isinstance(payload, dict) else {}


class GarminMCPProvider(ActivityProvider):
    """Garmin Connect through the garmin-mcp worker process.

    Args:
        command:          argv of the tool server.
        env:              Extra environment (credentials) for the worker.
        request_timeout:  Per-request deadline in seconds.
        client:           Pre-built ``MCPClient`` (tests inject fakes here).
    """

    PROVIDER_ID = "garmin_mcp"
    SOURCE_ID = "garmin"

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_MCP_COMMAND,
        env: dict[str, str] | None = None,
        *,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_S,
        client: MCPClient | None = None,
    ) -> None:
        self.client = client or MCPClient(command, env, request_timeout=request_timeout)

    async def connect(self) -> None:
        await self.client.connect()

    async def disconnect(self) -> None:
        await self.client.disconnect()

    # ------------------------------------------------------------------
    # Activities
    # ------------------------------------------------------------------

    async def list_activities(self, limit: int = 20) -> list[dict[str, Any]]:
        # The server applies its own page size; trim client-side.
        activities = _as_list(await self.client.call_tool("list_activities", {}))
        return activities[:limit]

    async def get_activities_for_date(self, target_date: date) -> list[dict[str, Any]]:
        result = await self.client.call_tool(
            "get_activities_fordate", {"date": target_date.isoformat()}
        )
        return _as_list(result)

    async def get_activities_by_date(
        self, start_date: date, end_date: date, activity_type: str | None = None
    ) -> list[dict[str, Any]]:
        arguments: dict[str, Any] = {
            "start_date": start_date.isoformat(),
            "end_date": end_date.isoformat(),
        }
        if activity_type:
            arguments["activity_type"] = activity_type
        return _as_list(await self.client.call_tool("get_activities_by_date", arguments))

    async def get_activity(self, activity_id: str) -> dict[str, Any]:
        return _as_dict(
            await self.client.call_tool("get_activity", {"activity_id": str(activity_id)})
        )

    async def get_activity_splits(self, activity_id: str) -> Any:
        return await self.client.call_tool("get_activity_splits", {"activity_id": str(activity_id)})

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    async def get_daily_summary(self, target_date: date) -> dict[str, Any]:
        return _as_dict(await self.client.call_tool("get_stats", {"date": target_date.isoformat()}))

    async def get_sleep_data(self, target_date: date) -> dict[str, Any]:
        raw = _as_dict(
            await self.client.call_tool("get_sleep_data", {"date": target_date.isoformat()})
        )
        nested = raw.get("dailySleepDTO")
        if isinstance(nested, dict):
            return {**nested, **raw}
        return raw

    async def get_hrv_data(self, target_date: date) -> dict[str, Any]:
        """HRV as reported with the night's sleep.

        The server has no standalone HRV tool; the overnight average and
        the raw samples both ride on ``get_sleep_data``.
        """
        raw = _as_dict(
            await self.client.call_tool("get_sleep_data", {"date": target_date.isoformat()})
        )
        hrv: dict[str, Any] = {
            "calendarDate": target_date.isoformat(),
            "lastNightAvg": raw.get("avgOvernightHrv"),
            "status": raw.get("hrvStatus"),
        }
        samples = raw.get("hrvData")
        if isinstance(samples, dict):
            hrv.update(samples)
        elif isinstance(samples, list):
            hrv["hrvReadings"] = samples
        return hrv

    async def get_body_composition(
        self, start_date: date, end_date: date | None = None
    ) -> dict[str, Any]:
        return _as_dict(
            await self.client.call_tool(
                "get_body_composition",
                {
                    "start_date": start_date.isoformat(),
                    "end_date": (end_date or start_date).isoformat(),
                },
            )
        )

    async def get_body_battery(self, start_date: date, end_date: date | None = None) -> Any:
        return await self.client.call_tool(
            "get_body_battery",
            {"start_date": start_date.isoformat(), "end_date": (end_date or start_date).isoformat()},
        )

    async def get_training_readiness(self, target_date: date) -> Any:
        return await self.client.call_tool(
            "get_training_readiness", {"date": target_date.isoformat()}
        )

    async def get_resting_heart_rate(self, target_date: date) -> dict[str, Any]:
        return _as_dict(
            await self.client.call_tool("get_rhr_day", {"date": target_date.isoformat()})
        )
