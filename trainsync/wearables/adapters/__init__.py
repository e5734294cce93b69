"""Activity providers for trainsync.

Each provider implements the ActivityProvider ABC and returns raw,
provider-shaped payloads for the normalizer.

Available providers:
    GarminMCPProvider   — Garmin Connect via the garmin-mcp tool server
    GarminGarthProvider — Garmin Connect via garth and stored OAuth tokens

Providers are created through a ``ProviderRegistry`` that the caller owns
and passes along; there is no module-level client cache.
"""

from __future__ import annotations

from typing import Any, Callable

from trainsync.wearables.adapters.garmin_garth import GarminGarthProvider
from trainsync.wearables.adapters.garmin_mcp import (
    DEFAULT_MCP_COMMAND,
    GarminMCPProvider,
    credential_env,
)
from trainsync.wearables.base import ActivityProvider

__all__ = [
    "DEFAULT_MCP_COMMAND",
    "GarminGarthProvider",
    "GarminMCPProvider",
    "ProviderFactory",
    "ProviderRegistry",
    "credential_env",
    "default_registry",
]

ProviderFactory = Callable[..., ActivityProvider]


class ProviderRegistry:
    """Name → provider factory map.

    Usage::

        registry = ProviderRegistry()
        registry.register("garmin_mcp", lambda: GarminMCPProvider(command))
        provider = registry.create("garmin_mcp")
    """

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        self._factories[name] = factory

    def create(self, name: str, **kwargs: Any) -> ActivityProvider:
        """Build a fresh provider instance.

        Raises:
            KeyError: If the name is not registered.
        """
        if name not in self._factories:
            raise KeyError(
                f"No provider registered for '{name}'. Available: {sorted(self._factories)}"
            )
        return self._factories[name](**kwargs)

    def names(self) -> list[str]:
        return sorted(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories


def default_registry(settings: Any) -> ProviderRegistry:
    """Registry with both Garmin providers configured from ``Settings``."""
    registry = ProviderRegistry()
    env = credential_env(
        email=settings.garmin_email,
        password=settings.garmin_password,
        email_file=settings.garmin_email_file,
        password_file=settings.garmin_password_file,
    )

    def _mcp(**kwargs: Any) -> ActivityProvider:
        return GarminMCPProvider(
            settings.mcp_command,
            env,
            request_timeout=settings.mcp_request_timeout_s,
            **kwargs,
        )

    def _garth(**kwargs: Any) -> ActivityProvider:
        return GarminGarthProvider(settings.garmin_token_path, **kwargs)

    registry.register(GarminMCPProvider.PROVIDER_ID, _mcp)
    registry.register(GarminGarthProvider.PROVIDER_ID, _garth)
    return registry
