"""Daily health, sleep, HRV and body composition normalization."""

from __future__ import annotations

from datetime import date
from typing import Any, Mapping

from trainsync.wearables.base import (
    BodyComposition,
    CanonicalDailyHealth,
    HRVRecord,
    SleepRecord,
)
from trainsync.wearables.errors import NormalizationError
from trainsync.wearables.normalizer.fields import (
    first_present,
    parse_date,
    parse_timestamp,
    to_float,
    to_int,
)
from trainsync.wearables.normalizer.units import (
    grams_to_lbs,
    meters_to_miles,
    round_half_up,
    seconds_to_minutes,
)


def _resolve_date(payload: Mapping[str, Any], fallback: date | None, entity: str) -> date:
    resolved = parse_date(first_present(payload, ("calendarDate", "summaryDate", "date")))
    if resolved is None:
        resolved = fallback
    if resolved is None:
        raise NormalizationError(entity, "calendarDate")
    return resolved


def _minutes(value: object) -> int | None:
    seconds = to_float(value)
    if not seconds:
        return None
    return seconds_to_minutes(seconds)


# ---------------------------------------------------------------------------
# Daily summary
# ---------------------------------------------------------------------------


def normalize_daily_summary(
    payload: Mapping[str, Any], calendar_date: date | None = None
) -> CanonicalDailyHealth:
    """Map a daily stats payload.

    Accepts the flat ``get_stats`` shape or a wrapper holding a one-element
    ``dailies`` / ``userDailySummaries`` list.
    """
    for wrapper in ("dailies", "userDailySummaries"):
        items = payload.get(wrapper) if isinstance(payload, Mapping) else None
        if isinstance(items, list):
            payload = items[0] if items else {}
            break
    if not isinstance(payload, Mapping):
        payload = {}

    distance_m = to_float(payload.get("totalDistanceMeters"))
    return CanonicalDailyHealth(
        calendar_date=_resolve_date(payload, calendar_date, "daily_summary"),
        steps=to_int(payload.get("totalSteps")),
        step_goal=to_int(payload.get("dailyStepGoal")),
        total_calories=to_int(payload.get("totalKilocalories")),
        active_calories=to_int(payload.get("activeKilocalories")),
        distance_miles=meters_to_miles(distance_m) if distance_m else None,
        floors_ascended=to_int(payload.get("floorsAscended")),
        resting_heart_rate=to_int(payload.get("restingHeartRate")),
        min_heart_rate=to_int(payload.get("minHeartRate")),
        max_heart_rate=to_int(payload.get("maxHeartRate")),
        stress_avg=to_int(payload.get("averageStressLevel")),
        stress_max=to_int(payload.get("maxStressLevel")),
        body_battery_current=to_int(payload.get("bodyBatteryMostRecentValue")),
        body_battery_highest=to_int(payload.get("bodyBatteryHighestValue")),
        body_battery_lowest=to_int(payload.get("bodyBatteryLowestValue")),
        body_battery_charged=to_int(payload.get("bodyBatteryChargedValue")),
        body_battery_drained=to_int(payload.get("bodyBatteryDrainedValue")),
        spo2_avg=to_float(payload.get("averageSpo2")),
        spo2_lowest=to_float(payload.get("lowestSpo2")),
        spo2_latest=to_float(payload.get("latestSpo2")),
        moderate_intensity_minutes=to_int(payload.get("moderateIntensityMinutes")),
        vigorous_intensity_minutes=to_int(payload.get("vigorousIntensityMinutes")),
        raw_payload=dict(payload),
    )


# ---------------------------------------------------------------------------
# Sleep
# ---------------------------------------------------------------------------


def _sleep_score(payload: Mapping[str, Any]) -> int | None:
    scores = payload.get("sleepScores")
    if not isinstance(scores, Mapping):
        return to_int(payload.get("sleepScore"))
    overall = scores.get("overall")
    if isinstance(overall, Mapping):
        return to_int(overall.get("value"))
    return to_int(first_present(scores, ("totalScore", "overallScore")))


def normalize_sleep(payload: Mapping[str, Any], calendar_date: date | None = None) -> SleepRecord:
    """Map a sleep payload.

    The detail shape nests the night under ``dailySleepDTO``; its fields
    are lifted and top-level siblings (``avgOvernightHrv``, ``hrvStatus``,
    ``restingHeartRate``) are kept.
    """
    if not isinstance(payload, Mapping):
        payload = {}
    night: dict[str, Any] = dict(payload)
    nested = payload.get("dailySleepDTO")
    if isinstance(nested, Mapping):
        night = {**nested, **{k: v for k, v in payload.items() if k != "dailySleepDTO"}}

    scores = night.get("sleepScores")
    return SleepRecord(
        calendar_date=_resolve_date(night, calendar_date, "sleep"),
        total_sleep_minutes=_minutes(night.get("sleepTimeSeconds")),
        deep_minutes=_minutes(night.get("deepSleepSeconds")),
        light_minutes=_minutes(night.get("lightSleepSeconds")),
        rem_minutes=_minutes(night.get("remSleepSeconds")),
        awake_minutes=_minutes(night.get("awakeSleepSeconds")),
        sleep_score=_sleep_score(night),
        sleep_start=parse_timestamp(
            first_present(night, ("sleepStartTimestampLocal", "sleepStartTimestampGMT"))
        ),
        sleep_end=parse_timestamp(
            first_present(night, ("sleepEndTimestampLocal", "sleepEndTimestampGMT"))
        ),
        restless_moments=to_int(night.get("restlessMomentsCount")),
        avg_sleep_stress=to_float(night.get("avgSleepStress")),
        body_battery_change=to_int(night.get("bodyBatteryChange")),
        resting_heart_rate=to_int(night.get("restingHeartRate")),
        avg_overnight_hrv=to_float(night.get("avgOvernightHrv")),
        hrv_status=night.get("hrvStatus"),
        scores=dict(scores) if isinstance(scores, Mapping) else {},
        raw_payload=dict(payload),
    )


# ---------------------------------------------------------------------------
# HRV
# ---------------------------------------------------------------------------


def _sample_values(payload: Any) -> list[float]:
    """Numeric ``value``/``hrvValue`` entries from a samples list or id-keyed map."""
    if isinstance(payload, Mapping):
        entries = payload.values()
    elif isinstance(payload, list):
        entries = payload
    else:
        return []
    values = []
    for entry in entries:
        if not isinstance(entry, Mapping):
            continue
        number = to_float(first_present(entry, ("value", "hrvValue")))
        if number is not None:
            values.append(number)
    return values


def normalize_hrv(payload: Mapping[str, Any], calendar_date: date | None = None) -> HRVRecord:
    """Map an HRV payload.

    Summary shape: ``{"hrvSummary": {...}, "hrvReadings": [...]}``.
    Flat shape: ``lastNightAvg`` at the top level, or a map/list of
    timestamped ``{"value": ...}`` samples whose mean becomes the nightly
    average.
    """
    if not isinstance(payload, Mapping):
        payload = {}
    summary = payload.get("hrvSummary")
    if isinstance(summary, Mapping):
        fields: Mapping[str, Any] = {**payload, **summary}
        samples = _sample_values(payload.get("hrvReadings"))
    else:
        fields = payload
        readings = payload.get("hrvReadings")
        samples = _sample_values(readings if isinstance(readings, list) else payload)

    last_night = to_float(fields.get("lastNightAvg"))
    if last_night is None and samples:
        last_night = round_half_up(sum(samples) / len(samples), 1)

    baseline = fields.get("baseline")
    return HRVRecord(
        calendar_date=_resolve_date(fields, calendar_date, "hrv"),
        last_night_avg=last_night,
        weekly_avg=to_float(fields.get("weeklyAvg")),
        last_night_5min_high=to_float(fields.get("lastNight5MinHigh")),
        status=fields.get("status"),
        feedback=first_present(fields, ("feedbackPhrase", "feedback")),
        baseline=dict(baseline) if isinstance(baseline, Mapping) else {},
        sample_count=len(samples),
        raw_payload=dict(payload),
    )


# ---------------------------------------------------------------------------
# Body composition
# ---------------------------------------------------------------------------


def _mass_lbs(value: object) -> float | None:
    grams = to_float(value)
    return grams_to_lbs(grams) if grams else None


def _body_composition_entry(entry: Mapping[str, Any], fallback: date | None) -> BodyComposition:
    return BodyComposition(
        calendar_date=_resolve_date(entry, fallback, "body_composition"),
        weight_lbs=_mass_lbs(entry.get("weight")),
        bmi=to_float(entry.get("bmi")),
        body_fat_pct=to_float(entry.get("bodyFat")),
        body_water_pct=to_float(entry.get("bodyWater")),
        muscle_mass_lbs=_mass_lbs(entry.get("muscleMass")),
        bone_mass_lbs=_mass_lbs(entry.get("boneMass")),
        visceral_fat=to_float(entry.get("visceralFat")),
        metabolic_age=to_int(entry.get("metabolicAge")),
        physique_rating=to_int(entry.get("physiqueRating")),
        raw_payload=dict(entry),
    )


def normalize_body_composition(
    payload: Mapping[str, Any], calendar_date: date | None = None
) -> list[BodyComposition]:
    """Map body composition to one record per measured date.

    The range shape (``dateWeightList``) yields every entry with a weight;
    the flat single-measurement shape yields at most one record.  When a
    date has several weigh-ins the last one wins.
    """
    if not isinstance(payload, Mapping):
        return []
    entries = payload.get("dateWeightList")
    if isinstance(entries, list):
        by_date: dict[date, BodyComposition] = {}
        for entry in entries:
            if not isinstance(entry, Mapping) or entry.get("weight") is None:
                continue
            record = _body_composition_entry(entry, None)
            by_date[record.calendar_date] = record
        return [by_date[d] for d in sorted(by_date)]

    flat = payload.get("totalAverage") if isinstance(payload.get("totalAverage"), Mapping) else payload
    if flat.get("weight") is None:
        return []
    return [_body_composition_entry(flat, calendar_date)]


# ---------------------------------------------------------------------------
# Snapshot composition
# ---------------------------------------------------------------------------


def scale_stress(stress_avg: int | None) -> int | None:
    """0-100 stress to a 1-10 scale; non-positive values mean no data."""
    if not stress_avg or stress_avg <= 0:
        return None
    return max(1, int(round_half_up(stress_avg / 10)))


def scale_sleep_quality(sleep_score: int | None) -> int | None:
    if not sleep_score or sleep_score <= 0:
        return None
    return min(10, max(1, int(round_half_up(sleep_score / 10))))


def _without_none(values: dict[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


def build_health_snapshot(
    snapshot_date: date,
    daily: CanonicalDailyHealth | None = None,
    sleep: SleepRecord | None = None,
    hrv: HRVRecord | None = None,
    *,
    source: str = "garmin",
) -> dict[str, Any]:
    """Compose the stored health-snapshot columns for one date.

    The dedicated HRV record wins over the overnight HRV carried by sleep.
    Metadata sub-objects are only present for sources that returned data.
    """
    snapshot: dict[str, Any] = {
        "snapshot_date": snapshot_date,
        "provider_sync_id": f"{source}-{snapshot_date.isoformat()}",
        "source": source,
        "sleep_hours": None,
        "sleep_quality": None,
        "hrv": None,
        "resting_hr": None,
        "stress_level": None,
        "body_battery_morning": None,
        "sleep_deep_minutes": None,
        "sleep_light_minutes": None,
        "sleep_rem_minutes": None,
        "sleep_awake_minutes": None,
    }
    metadata: dict[str, Any] = {}

    if daily is not None:
        snapshot["resting_hr"] = daily.resting_heart_rate
        snapshot["stress_level"] = scale_stress(daily.stress_avg)
        snapshot["body_battery_morning"] = daily.body_battery_highest
        metadata["bodyBattery"] = _without_none({
            "current": daily.body_battery_current,
            "highest": daily.body_battery_highest,
            "lowest": daily.body_battery_lowest,
            "charged": daily.body_battery_charged,
            "drained": daily.body_battery_drained,
        })
        metadata["steps"] = _without_none({"total": daily.steps, "goal": daily.step_goal})
        metadata["intensity"] = _without_none({
            "moderate": daily.moderate_intensity_minutes,
            "vigorous": daily.vigorous_intensity_minutes,
        })
        metadata["spo2"] = _without_none({
            "average": daily.spo2_avg,
            "lowest": daily.spo2_lowest,
            "latest": daily.spo2_latest,
        })
        metadata["calories"] = _without_none({
            "total": daily.total_calories,
            "active": daily.active_calories,
        })

    if sleep is not None:
        snapshot["sleep_hours"] = sleep.sleep_hours
        snapshot["sleep_quality"] = scale_sleep_quality(sleep.sleep_score)
        if sleep.avg_overnight_hrv:
            snapshot["hrv"] = int(round_half_up(sleep.avg_overnight_hrv))
        if snapshot["resting_hr"] is None:
            snapshot["resting_hr"] = sleep.resting_heart_rate
        snapshot["sleep_deep_minutes"] = sleep.deep_minutes
        snapshot["sleep_light_minutes"] = sleep.light_minutes
        snapshot["sleep_rem_minutes"] = sleep.rem_minutes
        snapshot["sleep_awake_minutes"] = sleep.awake_minutes
        metadata["sleep"] = _without_none({
            "deepMinutes": sleep.deep_minutes,
            "lightMinutes": sleep.light_minutes,
            "remMinutes": sleep.rem_minutes,
            "awakeMinutes": sleep.awake_minutes,
            "scores": sleep.scores or None,
            "startTime": sleep.sleep_start.isoformat() if sleep.sleep_start else None,
            "endTime": sleep.sleep_end.isoformat() if sleep.sleep_end else None,
            "restlessMoments": sleep.restless_moments,
            "avgStress": sleep.avg_sleep_stress,
            "bodyBatteryChange": sleep.body_battery_change,
        })

    if hrv is not None:
        if hrv.last_night_avg:
            snapshot["hrv"] = int(round_half_up(hrv.last_night_avg))
        metadata["hrv"] = _without_none({
            "weeklyAvg": hrv.weekly_avg,
            "lastNightAvg": hrv.last_night_avg,
            "lastNight5MinHigh": hrv.last_night_5min_high,
            "baseline": hrv.baseline or None,
            "status": hrv.status,
            "feedback": hrv.feedback,
        })

    snapshot["metadata"] = metadata
    return snapshot
