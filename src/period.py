import logging
from datetime import date

from config.settings import DEFAULT_CYCLE_LENGTH, DEFAULT_PERIOD_LENGTH
from src.calendar_math import add_days, days_between, local_today, parse_iso_date
from src.cycle import (
    ENERGY_IDS,
    apply_active_override,
    calculate_phase,
    days_until,
    get_gym_advice,
    predict_dates,
)
from src.db import PERIOD, Database
from src.errors import ValidationError
from src.insights import NEW_CYCLE_GAP_DAYS, classify_regularity, generate_insights

logger = logging.getLogger(__name__)

MIN_CYCLE_LENGTH = 20
MAX_CYCLE_LENGTH = 45
MIN_PERIOD_LENGTH = 1
MAX_PERIOD_LENGTH = 20
MAX_PAIN_LEVEL = 10
MISSING_SCAN_DAYS = 40

FLOW_LEVELS = ("light", "medium", "heavy")

DEFAULT_PROFILE = {
    "anchor_date": "",
    "cycle_length": DEFAULT_CYCLE_LENGTH,
    "period_length": DEFAULT_PERIOD_LENGTH,
    "is_active": False,
    "daily_entries": {},
}


def get_profile(db: Database, user_id: str) -> dict:
    """Cycle profile with defaults filled in.

    Dates only present in the old ``symptoms_log`` map show up as bare
    daily entries carrying their symptoms.
    """
    profile = db.load_feature(user_id, PERIOD, DEFAULT_PROFILE)
    for key, value in DEFAULT_PROFILE.items():
        profile.setdefault(key, value if not isinstance(value, dict) else {})
    entries = profile["daily_entries"]
    for day, symptoms in (profile.get("symptoms_log") or {}).items():
        if day not in entries:
            entries[day] = {"date": day, "symptoms": list(symptoms)}
    return profile


def _check_not_future(value: date, today: date, what: str):
    if value > today:
        raise ValidationError(f"The {what} can't be in the future.")


def update_cycle_settings(db: Database, user_id: str, anchor_date=None, cycle_length: int | None = None,
                          period_length: int | None = None, today: date | None = None) -> dict:
    today = today or local_today()
    profile = get_profile(db, user_id)

    anchor = anchor_date if anchor_date is not None else profile["anchor_date"]
    if not anchor:
        raise ValidationError("Enter the first day of your last period.")
    anchor = parse_iso_date(anchor)
    _check_not_future(anchor, today, "cycle start date")

    cycle_length = profile["cycle_length"] if cycle_length is None else cycle_length
    period_length = profile["period_length"] if period_length is None else period_length
    if not isinstance(cycle_length, int) or not MIN_CYCLE_LENGTH <= cycle_length <= MAX_CYCLE_LENGTH:
        raise ValidationError(f"Cycle length must be between {MIN_CYCLE_LENGTH} and {MAX_CYCLE_LENGTH} days.")
    if not isinstance(period_length, int) or not MIN_PERIOD_LENGTH <= period_length <= MAX_PERIOD_LENGTH:
        raise ValidationError(f"Period length must be between {MIN_PERIOD_LENGTH} and {MAX_PERIOD_LENGTH} days.")
    if period_length > cycle_length:
        raise ValidationError("Period length can't exceed cycle length.")

    logger.info(f"User {user_id}: cycle settings {anchor} / {cycle_length} / {period_length}")
    return db.save_feature(user_id, PERIOD, {
        "anchor_date": anchor.isoformat(),
        "cycle_length": cycle_length,
        "period_length": period_length,
    })


def validate_daily_entry(entry_date, entry: dict, today: date | None = None) -> dict:
    """Normalized entry for ``entry_date``. Bleed-only fields are dropped when ``has_bled`` is False."""
    day = parse_iso_date(entry_date)
    _check_not_future(day, today or local_today(), "entry date")

    has_bled = entry.get("has_bled")
    if has_bled not in (True, False, None):
        raise ValidationError("has_bled must be true, false or unset.")

    normalized = {
        "date": day.isoformat(),
        "has_bled": has_bled,
        "mood_label": entry.get("mood_label", ""),
        "mood_emoji": entry.get("mood_emoji", ""),
        "symptoms": [],
        "pain_level": 0,
        "relief_methods": [],
    }
    if entry.get("notes"):
        normalized["notes"] = entry["notes"]
    if has_bled is False:
        return normalized

    flow = entry.get("flow")
    if flow is not None and flow not in FLOW_LEVELS:
        raise ValidationError(f"Flow must be one of {FLOW_LEVELS}.")
    energy = entry.get("energy")
    if energy is not None and energy not in ENERGY_IDS:
        raise ValidationError(f"Energy must be one of {ENERGY_IDS}.")
    pain = entry.get("pain_level") or 0
    if isinstance(pain, bool) or not isinstance(pain, int) or not 0 <= pain <= MAX_PAIN_LEVEL:
        raise ValidationError(f"Pain level must be a whole number from 0 to {MAX_PAIN_LEVEL}.")

    normalized["symptoms"] = sorted(set(entry.get("symptoms") or []))
    normalized["pain_level"] = pain
    normalized["relief_methods"] = sorted(set(entry.get("relief_methods") or []))
    if flow:
        normalized["flow"] = flow
    if energy:
        normalized["energy"] = energy
    return normalized


def save_daily_entry(db: Database, user_id: str, entry_date, entry: dict, today: date | None = None) -> dict:
    """Store the entry for one day, replacing any earlier one.

    A bleed with no bleed logged in the previous 15 days starts a new cycle
    and moves the anchor to that day.
    """
    entry = validate_daily_entry(entry_date, entry, today)
    day = entry["date"]
    profile = get_profile(db, user_id)
    entries = {**profile["daily_entries"], day: entry}

    anchor = profile["anchor_date"]
    if entry["has_bled"]:
        earlier = [d for d in sorted(entries) if d < day and entries[d].get("has_bled")]
        if not earlier or days_between(earlier[-1], day) > NEW_CYCLE_GAP_DAYS:
            logger.info(f"User {user_id}: new cycle detected starting {day}")
            anchor = day

    return db.save_feature(user_id, PERIOD, {"daily_entries": entries, "anchor_date": anchor})


def start_period(db: Database, user_id: str, start_date=None, today: date | None = None) -> dict:
    today = today or local_today()
    start = parse_iso_date(start_date or today)
    _check_not_future(start, today, "period start date")
    logger.info(f"User {user_id}: period started {start}")
    return db.save_feature(user_id, PERIOD, {"anchor_date": start.isoformat(), "is_active": True})


def end_period(db: Database, user_id: str, end_date=None, today: date | None = None) -> dict:
    """Close the active period, learning its length from how long it actually lasted."""
    today = today or local_today()
    profile = get_profile(db, user_id)
    if not profile["anchor_date"]:
        raise ValidationError("There's no period start to close.")
    end = parse_iso_date(end_date or today)
    _check_not_future(end, today, "period end date")

    observed = days_between(profile["anchor_date"], end) + 1
    if observed < 1:
        raise ValidationError("The period end date can't be before its start.")
    period_length = min(observed, MAX_PERIOD_LENGTH)
    logger.info(f"User {user_id}: period ended {end} after {observed} days")
    return db.save_feature(user_id, PERIOD, {"is_active": False, "period_length": period_length})


def find_missing_entry(profile: dict, today: date | None = None) -> str | None:
    """First day of the active period with no daily entry, if any."""
    if not profile.get("is_active") or not profile.get("anchor_date"):
        return None
    today = today or local_today()
    entries = profile.get("daily_entries") or {}
    for offset in range(MISSING_SCAN_DAYS):
        day = add_days(profile["anchor_date"], offset)
        if day > today:
            break
        if day.isoformat() not in entries:
            return day.isoformat()
    return None


def get_cycle_status(db: Database, user_id: str, today: date | None = None) -> dict:
    """Everything the home and cycle screens show, computed for ``today``."""
    today = today or local_today()
    profile = get_profile(db, user_id)
    if not profile["anchor_date"]:
        return {"configured": False}

    anchor = profile["anchor_date"]
    cycle_length = profile["cycle_length"]
    phase = calculate_phase(anchor, cycle_length, profile["period_length"], today)
    phase = apply_active_override(phase, profile["is_active"])

    today_entry = profile["daily_entries"].get(today.isoformat()) or {}
    predictions = predict_dates(anchor, cycle_length, today)
    next_period = predictions["next_period"]

    return {
        "configured": True,
        "is_active": profile["is_active"],
        "phase": phase,
        "gym_advice": get_gym_advice(phase, today_entry.get("energy")),
        "next_period": next_period,
        "fertile_window": predictions["fertile_window"],
        "days_until_next_period": max(0, days_until(next_period, today)),
        "regularity": classify_regularity(cycle_length),
        "missing_entry": find_missing_entry(profile, today),
        "insights": list(generate_insights(profile, profile["daily_entries"])),
    }
