"""Pure mapping from provider payloads to canonical records.

Nothing here performs I/O.  The only exception raised is
``NormalizationError`` for a missing activity id or calendar date.
"""

from trainsync.wearables.normalizer.activity import (
    extract_split_list,
    is_detail_shape,
    map_activity_type,
    normalize_activity,
    normalize_lap,
    normalize_laps,
)
from trainsync.wearables.normalizer.fields import LAP_FIELDS, first_number, first_present
from trainsync.wearables.normalizer.health import (
    build_health_snapshot,
    normalize_body_composition,
    normalize_daily_summary,
    normalize_hrv,
    normalize_sleep,
    scale_sleep_quality,
    scale_stress,
)
from trainsync.wearables.normalizer.units import (
    derive_pace,
    format_pace,
    grams_to_lbs,
    meters_to_feet,
    meters_to_miles,
    parse_pace,
    seconds_to_minutes,
)

__all__ = [
    "LAP_FIELDS",
    "build_health_snapshot",
    "derive_pace",
    "extract_split_list",
    "first_number",
    "first_present",
    "format_pace",
    "grams_to_lbs",
    "is_detail_shape",
    "map_activity_type",
    "meters_to_feet",
    "meters_to_miles",
    "normalize_activity",
    "normalize_body_composition",
    "normalize_daily_summary",
    "normalize_hrv",
    "normalize_lap",
    "normalize_laps",
    "normalize_sleep",
    "parse_pace",
    "scale_sleep_quality",
    "scale_stress",
    "seconds_to_minutes",
]
