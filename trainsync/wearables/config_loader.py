"""Load, validate, and hot-reload the sync configuration.

The defaults live in ``sync_config.yaml`` alongside this module.  The file
is loaded once and cached; ``reload_sync_config()`` re-reads it without a
restart.

Usage::

    from trainsync.wearables.config_loader import get_sync_config

    config = get_sync_config()
    config.window.days_back                  # 1
    config.family_enabled("hrv")             # True
    config.interval("garmin_mcp")            # 3600
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger("trainsync.wearables.config")

_CONFIG_PATH = Path(__file__).parent / "sync_config.yaml"

FAMILIES = ("activities", "daily_summary", "sleep", "hrv", "body_composition")

_DEFAULT_FAMILIES = {
    "activities": True,
    "daily_summary": True,
    "sleep": True,
    "hrv": True,
    "body_composition": False,
}


# ---------------------------------------------------------------------------
# Typed config sections
# ---------------------------------------------------------------------------


@dataclass
class WindowConfig:
    """Date window bounds."""

    days_back: int = 1
    backfill_max_days: int = 3650


@dataclass
class ActivitiesConfig:
    list_limit: int = 50


@dataclass
class ReconciliationConfig:
    """Planned-workout matching.

    ``match_window_days`` = 0 matches the same calendar date only; N > 0
    also tries +/-1..N days, nearest first.
    """

    match_window_days: int = 0


@dataclass
class SchedulerConfig:
    max_concurrent: int = 5
    intervals: dict[str, int] = field(default_factory=dict)
    default_interval: int = 3600


@dataclass
class SyncConfig:
    """Complete, validated sync configuration.

    Attributes:
        version:        Config schema version string.
        window:         Default and maximum sync windows.
        families:       Metric family -> enabled flag.
        activities:     Activity listing settings.
        reconciliation: Planned-workout matching settings.
        scheduler:      Background scheduler settings.
    """

    version: str = "1.0"
    window: WindowConfig = field(default_factory=WindowConfig)
    families: dict[str, bool] = field(default_factory=lambda: dict(_DEFAULT_FAMILIES))
    activities: ActivitiesConfig = field(default_factory=ActivitiesConfig)
    reconciliation: ReconciliationConfig = field(default_factory=ReconciliationConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    _raw: dict = field(default_factory=dict, repr=False)

    def family_enabled(self, family: str) -> bool:
        return self.families.get(family, False)

    def enabled_families(self) -> frozenset[str]:
        return frozenset(name for name, on in self.families.items() if on)

    def interval(self, provider: str) -> int:
        """Seconds between scheduled syncs for a provider."""
        return self.scheduler.intervals.get(provider, self.scheduler.default_interval)


# ---------------------------------------------------------------------------
# Loader / validation
# ---------------------------------------------------------------------------


class ConfigValidationError(ValueError):
    """Raised when sync_config.yaml fails validation."""


def _load_yaml(path: Path) -> dict:
    """Read and parse a YAML file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigValidationError: If the YAML is malformed.
    """
    if not path.exists():
        raise FileNotFoundError(f"Sync config not found: {path}")

    with path.open("r", encoding="utf-8") as fh:
        try:
            data = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigValidationError(f"YAML parse error in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigValidationError(f"{path} must contain a mapping at the top level")
    return data


def _validate_and_build(raw: dict) -> SyncConfig:
    """Validate the raw YAML dict and construct a SyncConfig.

    Collects every problem before failing so one run reports them all.

    Raises:
        ConfigValidationError: If any value is missing its expected type or range.
    """
    errors: list[str] = []

    def _int(section: dict, key: str, default: int, where: str, minimum: int = 0) -> int:
        value = section.get(key, default)
        try:
            number = int(value)
        except (TypeError, ValueError):
            errors.append(f"{where}.{key} must be an integer, got {value!r}")
            return default
        if number < minimum:
            errors.append(f"{where}.{key} = {number} must be >= {minimum}")
        return number

    def _section(name: str) -> dict:
        value = raw.get(name) or {}
        if not isinstance(value, dict):
            errors.append(f"'{name}' must be a mapping")
            return {}
        return value

    # ── Window ──
    window_raw = _section("window")
    window = WindowConfig(
        days_back=_int(window_raw, "days_back", 1, "window"),
        backfill_max_days=_int(window_raw, "backfill_max_days", 3650, "window", minimum=1),
    )
    if window.days_back > window.backfill_max_days:
        errors.append("window.days_back must not exceed window.backfill_max_days")

    # ── Families ──
    families = dict(_DEFAULT_FAMILIES)
    for name, enabled in _section("families").items():
        if name not in FAMILIES:
            errors.append(f"families.{name} is not a known family (expected one of {FAMILIES})")
            continue
        if not isinstance(enabled, bool):
            errors.append(f"families.{name} must be true or false, got {enabled!r}")
            continue
        families[name] = enabled

    # ── Activities / reconciliation ──
    activities = ActivitiesConfig(
        list_limit=_int(_section("activities"), "list_limit", 50, "activities", minimum=1)
    )
    reconciliation = ReconciliationConfig(
        match_window_days=_int(
            _section("reconciliation"), "match_window_days", 0, "reconciliation"
        )
    )

    # ── Scheduler ──
    sched_raw = _section("scheduler")
    intervals: dict[str, int] = {}
    intervals_raw = sched_raw.get("intervals") or {}
    if not isinstance(intervals_raw, dict):
        errors.append("scheduler.intervals must be a mapping of provider→seconds")
        intervals_raw = {}
    for provider in intervals_raw:
        intervals[provider] = _int(intervals_raw, provider, 3600, "scheduler.intervals", minimum=1)
    scheduler = SchedulerConfig(
        max_concurrent=_int(sched_raw, "max_concurrent", 5, "scheduler", minimum=1),
        intervals=intervals,
        default_interval=_int(sched_raw, "default_interval", 3600, "scheduler", minimum=1),
    )

    if errors:
        raise ConfigValidationError(
            f"sync_config.yaml has {len(errors)} validation error(s):\n"
            + "\n".join(f"  • {e}" for e in errors)
        )

    return SyncConfig(
        version=str(raw.get("version", "1.0")),
        window=window,
        families=families,
        activities=activities,
        reconciliation=reconciliation,
        scheduler=scheduler,
        _raw=raw,
    )


def load_sync_config(path: Path | str | None = None) -> SyncConfig:
    """Load and validate the sync config from disk.

    Args:
        path: Override path to YAML. Uses the bundled sync_config.yaml by default.
    """
    target = Path(path) if path else _CONFIG_PATH
    config = _validate_and_build(_load_yaml(target))
    logger.info("Loaded sync config v%s from %s", config.version, target)
    return config


# ---------------------------------------------------------------------------
# Global singleton with hot-reload support
# ---------------------------------------------------------------------------

_config: SyncConfig | None = None
_config_lock = threading.Lock()


def get_sync_config() -> SyncConfig:
    """Return the global SyncConfig, loading the bundled file on first call."""
    global _config
    if _config is None:
        with _config_lock:
            if _config is None:  # double-checked locking
                _config = load_sync_config()
    return _config


def reload_sync_config(path: Path | str | None = None) -> SyncConfig:
    """Re-read the config and replace the cached instance.

    If validation fails the old config is retained and the error re-raised.

    Raises:
        ConfigValidationError: If the new config is invalid.
        FileNotFoundError:     If the config file is missing.
    """
    global _config
    new_config = load_sync_config(path)  # validate before acquiring lock
    with _config_lock:
        old_version = _config.version if _config else "none"
        _config = new_config
    logger.info("Reloaded sync config: %s → %s", old_version, new_config.version)
    return new_config
