"""Unit conversion and pace formatting.

Provider payloads are metric (meters, seconds, grams, m/s).  These helpers
are the only place canonical imperial units are produced.
"""

from __future__ import annotations

import math
import re

METERS_PER_MILE = 1609.344
FEET_PER_METER = 3.28084
GRAMS_PER_POUND = 453.59237
MPS_TO_MPH = 2.237

_PACE_RE = re.compile(r"(\d+):(\d+)")


def round_half_up(value: float, digits: int = 0) -> float:
    """Round with halves going up (2.5 -> 3), unlike Python's banker's rounding."""
    factor = 10 ** digits
    scaled = value * factor + 0.5
    if not math.isfinite(scaled):
        return value
    return math.floor(scaled) / factor


def meters_to_miles(meters: float) -> float:
    return round_half_up(meters / METERS_PER_MILE, 2)


def meters_to_feet(meters: float) -> int:
    return int(round_half_up(meters * FEET_PER_METER))


def seconds_to_minutes(seconds: float) -> int:
    return int(round_half_up(seconds / 60))


def grams_to_lbs(grams: float) -> float:
    return round_half_up(grams / GRAMS_PER_POUND, 1)


def mps_to_mph(mps: float) -> float:
    return round_half_up(mps * MPS_TO_MPH, 1)


def format_pace(minutes_per_mile: float) -> str:
    """Format decimal minutes per mile as ``M:SS``.

    >>> format_pace(8.0)
    '8:00'
    >>> format_pace(7.999)
    '8:00'
    """
    minutes = int(math.floor(minutes_per_mile))
    seconds = int(round_half_up((minutes_per_mile - minutes) * 60))
    if seconds == 60:
        minutes += 1
        seconds = 0
    return f"{minutes}:{seconds:02d}"


def derive_pace(duration_minutes: float, distance_miles: float | None) -> str | None:
    """Pace from duration and distance; None when there is no distance."""
    if not distance_miles or distance_miles <= 0 or duration_minutes <= 0:
        return None
    return format_pace(duration_minutes / distance_miles)


def parse_pace(pace: str | None) -> float:
    """Parse ``"8:30"`` or ``"8:30/mi"`` to decimal minutes; 0.0 when unparseable."""
    if not pace:
        return 0.0
    match = _PACE_RE.search(pace)
    if not match:
        return 0.0
    return int(match.group(1)) + int(match.group(2)) / 60
