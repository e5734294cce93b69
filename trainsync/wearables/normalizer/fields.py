"""Ordered candidate-field lookup and safe coercion helpers.

Providers name the same concept several ways (``duration`` vs
``elapsedDuration`` vs ``movingDuration``).  Each concept gets an ordered
candidate list here and is resolved by ``first_present``.
"""

from __future__ import annotations

import logging
import math
from datetime import date, datetime, timezone
from typing import Any, Mapping, Sequence

logger = logging.getLogger("trainsync.wearables.normalizer")

# Lap/split concept -> provider field variants, most specific first
LAP_FIELDS: dict[str, tuple[str, ...]] = {
    "duration": ("duration", "elapsedDuration", "movingDuration"),
    "distance": ("distance", "totalDistance"),
    "avg_hr": ("averageHR", "avgHeartRate", "averageHeartRate"),
    "max_hr": ("maxHR", "maxHeartRate"),
    "cadence": (
        "averageRunCadence",
        "avgCadence",
        "averageCadence",
        "averageRunningCadenceInStepsPerMinute",
    ),
    "elevation_gain": ("elevationGain", "totalAscent"),
    "elevation_loss": ("elevationLoss", "totalDescent"),
}

SPLIT_CONTAINERS: tuple[str, ...] = ("lapDTOs", "splits", "laps", "splitSummaries")


def first_present(
    payload: Mapping[str, Any] | None,
    candidates: Sequence[str],
    default: Any = None,
) -> Any:
    """Return the value of the first candidate key whose value is not None."""
    if not isinstance(payload, Mapping):
        return default
    for key in candidates:
        value = payload.get(key)
        if value is not None:
            return value
    return default


def first_number(
    payload: Mapping[str, Any] | None,
    candidates: Sequence[str],
    default: float = 0.0,
) -> float:
    """Numeric ``first_present``.  Skips values that are not numbers; never raises."""
    if not isinstance(payload, Mapping):
        return default
    for key in candidates:
        number = to_float(payload.get(key))
        if number is not None:
            return number
    return default


def to_int(value: object) -> int | None:
    """Safely coerce a value to int, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(round(float(value)))
    except (TypeError, ValueError, OverflowError):
        return None


def to_float(value: object) -> float | None:
    """Safely coerce a value to float, returning None on failure."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return number


def parse_timestamp(value: object) -> datetime | None:
    """Parse an ISO-ish string or epoch milliseconds.

    Naive strings are kept naive (provider-local wall time); epoch values
    come back as UTC.  Returns None when unparseable.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str):
        return None
    text = value.strip().replace("Z", "+00:00")
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    try:
        # Garmin local timestamps: "2024-05-01 07:00:00" or with a 1-digit fraction
        return datetime.fromisoformat(text[:19].replace(" ", "T"))
    except ValueError:
        logger.warning("Could not parse timestamp: %r", value)
        return None


def parse_date(value: object) -> date | None:
    """Leading ``YYYY-MM-DD`` of a string, a date, or a datetime."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and len(value) >= 10:
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            return None
    return None
