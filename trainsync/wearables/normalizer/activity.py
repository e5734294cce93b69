"""Activity and lap normalization.

Two payload shapes are accepted for an activity:

* summary -- the flat list-endpoint shape (``activityType.typeKey``,
  ``duration``, ``distance``, ``averageHR`` ... at the top level)
* detail  -- the single-activity shape, metrics nested under ``summaryDTO``
  and the type under ``activityTypeDTO``

``summaryDTO`` presence is the discriminator.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Mapping

from trainsync.wearables.base import CanonicalActivity, CanonicalLap
from trainsync.wearables.errors import NormalizationError
from trainsync.wearables.normalizer.fields import (
    LAP_FIELDS,
    SPLIT_CONTAINERS,
    first_number,
    first_present,
    parse_date,
    parse_timestamp,
    to_float,
    to_int,
)
from trainsync.wearables.normalizer.units import (
    derive_pace,
    meters_to_feet,
    meters_to_miles,
    mps_to_mph,
    round_half_up,
)

ACTIVITY_TYPE_MAP: dict[str, str] = {
    "running": "run",
    "trail_running": "run",
    "treadmill_running": "run",
    "track_running": "run",
    "street_running": "run",
    "cycling": "cycle",
    "indoor_cycling": "cycle",
    "road_biking": "cycle",
    "mountain_biking": "cycle",
    "gravel_cycling": "cycle",
    "virtual_ride": "cycle",
    "swimming": "swim",
    "lap_swimming": "swim",
    "open_water_swimming": "swim",
    "walking": "walk",
    "hiking": "walk",
    "strength_training": "strength",
    "cardio": "cardio",
    "indoor_cardio": "cardio",
    "hiit": "hiit",
    "yoga": "yoga",
    "pilates": "mobility",
    "stretching": "mobility",
    "other": "other",
}


def map_activity_type(type_key: str | None) -> str:
    if not type_key:
        return "other"
    normalized = "_".join(type_key.lower().split())
    return ACTIVITY_TYPE_MAP.get(normalized, "other")


def is_detail_shape(payload: Mapping[str, Any]) -> bool:
    return isinstance(payload.get("summaryDTO"), Mapping)


def _type_key(payload: Mapping[str, Any]) -> str | None:
    for container in ("activityTypeDTO", "activityType"):
        value = payload.get(container)
        if isinstance(value, Mapping):
            return value.get("typeKey")
        if isinstance(value, str):
            return value
    return None


def normalize_activity(
    payload: Mapping[str, Any],
    splits: Any = None,
    *,
    source: str = "garmin",
) -> CanonicalActivity:
    """Map a summary- or detail-shaped activity payload to canonical form.

    Args:
        payload: Raw provider activity.
        splits:  Optional raw splits response (list or wrapper dict).
        source:  Value for the ``source`` field.

    Raises:
        NormalizationError: If the activity id or the start date is missing.
    """
    if not isinstance(payload, Mapping):
        raise NormalizationError("activity", "activityId")
    activity_id = payload.get("activityId")
    if activity_id is None or activity_id == "":
        raise NormalizationError("activity", "activityId")

    metrics: Mapping[str, Any] = payload["summaryDTO"] if is_detail_shape(payload) else payload

    start_raw = first_present(metrics, ("startTimeLocal",)) or payload.get("startTimeLocal")
    start_time = parse_timestamp(start_raw)
    activity_date = parse_date(start_raw) or parse_date(start_time)
    if activity_date is None:
        raise NormalizationError("activity", "startTimeLocal")

    duration_s = first_number(metrics, ("duration", "elapsedDuration", "movingDuration"))
    duration_minutes = round_half_up(duration_s / 60, 2)
    distance_m = first_number(metrics, ("distance",))
    distance_miles = meters_to_miles(distance_m) if distance_m > 0 else None

    elevation_gain = to_float(metrics.get("elevationGain"))
    elevation_loss = to_float(metrics.get("elevationLoss"))
    max_speed = to_float(metrics.get("maxSpeed"))

    activity = CanonicalActivity(
        provider_activity_id=str(activity_id),
        name=payload.get("activityName") or "Activity",
        activity_type=map_activity_type(_type_key(payload)),
        start_time=start_time,
        end_time=start_time + timedelta(seconds=duration_s) if start_time else None,
        activity_date=activity_date,
        duration_minutes=duration_minutes,
        distance_miles=distance_miles,
        avg_pace=derive_pace(duration_s / 60, distance_miles),
        avg_heart_rate=to_int(first_present(metrics, ("averageHR", "averageHeartRate"))),
        max_heart_rate=to_int(first_present(metrics, ("maxHR", "maxHeartRate"))),
        cadence_avg=to_int(
            first_present(metrics, ("averageRunningCadenceInStepsPerMinute", "averageRunCadence", "avgRunningCadence"))
        ),
        cadence_max=to_int(
            first_present(metrics, ("maxRunningCadenceInStepsPerMinute", "maxRunCadence", "maxRunningCadence"))
        ),
        avg_power_watts=to_int(first_present(metrics, ("averagePower", "avgPower"))),
        elevation_gain_ft=meters_to_feet(elevation_gain) if elevation_gain else None,
        elevation_loss_ft=meters_to_feet(elevation_loss) if elevation_loss else None,
        calories=to_int(metrics.get("calories")),
        training_load=to_float(first_present(metrics, ("activityTrainingLoad", "trainingLoad"))),
        training_effect_aerobic=to_float(
            first_present(metrics, ("trainingEffect", "aerobicTrainingEffect"))
        ),
        training_effect_anaerobic=to_float(
            first_present(metrics, ("anaerobicTrainingEffect",))
        ),
        ground_contact_time_ms=to_float(
            first_present(metrics, ("groundContactTime", "avgGroundContactTime"))
        ),
        vertical_oscillation_cm=to_float(
            first_present(metrics, ("verticalOscillation", "avgVerticalOscillation"))
        ),
        source=source,
        raw_payload=dict(payload),
    )
    activity.device_data = {
        "source": source,
        "activityId": activity_id,
        "activityType": _type_key(payload),
        "vO2Max": first_present(metrics, ("vO2MaxValue",)),
        "lactateThresholdHR": first_present(metrics, ("lactateThresholdHeartRate",)),
        "lactateThresholdSpeed": first_present(metrics, ("lactateThresholdSpeed",)),
        "avgStrideLength": first_present(metrics, ("strideLength", "avgStrideLength")),
        "avgVerticalRatio": first_present(metrics, ("verticalRatio", "avgVerticalRatio")),
        "maxSpeedMph": mps_to_mph(max_speed) if max_speed else None,
        "trainingLoadPeak": first_present(metrics, ("trainingLoadPeak",)),
    }

    if splits is None:
        splits = payload.get("splits") if isinstance(payload.get("splits"), list) else None
    if splits is not None:
        activity.laps = normalize_laps(splits)
    return activity


def extract_split_list(splits: Any) -> list[Any]:
    """Return the lap list from a bare list or the first known wrapper key."""
    if isinstance(splits, list):
        return splits
    if isinstance(splits, Mapping):
        for key in SPLIT_CONTAINERS:
            value = splits.get(key)
            if isinstance(value, list):
                return value
    return []


def normalize_lap(lap: Any, lap_number: int) -> CanonicalLap:
    """Map one lap.  Unknown shapes degrade to zeros; this never raises."""
    if not isinstance(lap, Mapping):
        lap = {}
    duration_s = first_number(lap, LAP_FIELDS["duration"])
    distance_m = first_number(lap, LAP_FIELDS["distance"])
    distance_miles = meters_to_miles(distance_m) if distance_m > 0 else 0.0
    gain = first_number(lap, LAP_FIELDS["elevation_gain"])
    loss = first_number(lap, LAP_FIELDS["elevation_loss"])

    return CanonicalLap(
        lap_number=lap_number,
        distance_miles=distance_miles,
        duration_minutes=round_half_up(duration_s / 60, 2),
        pace=derive_pace(duration_s / 60, distance_miles),
        avg_heart_rate=to_int(first_present(lap, LAP_FIELDS["avg_hr"])),
        max_heart_rate=to_int(first_present(lap, LAP_FIELDS["max_hr"])),
        avg_cadence=to_int(first_present(lap, LAP_FIELDS["cadence"])),
        elevation_gain_ft=meters_to_feet(gain) if gain else None,
        elevation_loss_ft=meters_to_feet(loss) if loss else None,
    )


def normalize_laps(splits: Any) -> list[CanonicalLap]:
    return [normalize_lap(lap, index) for index, lap in enumerate(extract_split_list(splits), start=1)]
