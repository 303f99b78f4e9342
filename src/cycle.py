from datetime import date, timedelta

from src.calendar_math import days_between, local_today, parse_iso_date

FOLLICULAR_END_DAY = 11
OVULATION_END_DAY = 16
LUTEAL_LENGTH = 14

PHASE_LABELS = {
    "menstrual": "Menstrual",
    "follicular": "Follicular",
    "ovulation": "Ovulation",
    "luteal": "Luteal",
}

PHASE_ICONS = {
    "menstrual": "\U0001fa78",
    "follicular": "\U0001f331",
    "ovulation": "\U0001f338",
    "luteal": "\U0001f342",
}

PHASE_GYM_ADVICE = {
    "menstrual": "Restorative yoga or a light walk.",
    "follicular": "Cardio and progressive strength.",
    "ovulation": "Go all in! HIIT or max strength.",
    "luteal": "Moderate strength, lower intensity towards the end.",
}

ACTIVE_PERIOD_DESCRIPTION = "Period active. Rest and take care of yourself."
DEFAULT_GYM_ADVICE = "Listen to your body."

ENERGY_LEVELS = [
    {
        "id": "ahorro",
        "label": "Power Saving",
        "emoji": "\U0001faab",
        "description": "Exhaustion, brain fog or pain.",
        "gym": "Full rest or gentle stretching.",
    },
    {
        "id": "poco",
        "label": "Little by Little",
        "emoji": "\U0001f4c9",
        "description": "Heaviness, low motivation.",
        "gym": "Yoga, a walk or mobility work.",
    },
    {
        "id": "estable",
        "label": "Steady",
        "emoji": "\U0001f197",
        "description": "Functional, normal.",
        "gym": "Standard routine (without pushing too hard).",
    },
    {
        "id": "impulso",
        "label": "Driven",
        "emoji": "\U0001f4c8",
        "description": "Good energy, clear mind.",
        "gym": "Cardio or moderate strength.",
    },
    {
        "id": "tope",
        "label": "Full Power",
        "emoji": "⚡",
        "description": "Unstoppable, high confidence.",
        "gym": "Personal records or intense HIIT.",
    },
]

ENERGY_IDS = tuple(level["id"] for level in ENERGY_LEVELS)


def get_cycle_day(anchor: date, today: date, cycle_length: int = 28) -> int:
    """Return the 1-based day of the cycle ``today`` falls on. Wraps every ``cycle_length`` days."""
    return (days_between(anchor, today) % cycle_length) + 1


def get_phase(cycle_day: int, period_length: int) -> str:
    """Classify a cycle day. Ranges are checked in order, so a long period shadows follicular."""
    if cycle_day <= period_length:
        return "menstrual"
    elif cycle_day <= FOLLICULAR_END_DAY:
        return "follicular"
    elif cycle_day <= OVULATION_END_DAY:
        return "ovulation"
    return "luteal"


def _describe(phase: str, cycle_day: int, cycle_length: int) -> str:
    if phase == "menstrual":
        return f"Day {cycle_day}. Rest and pamper yourself."
    if phase == "follicular":
        return "Energy rising \U0001f680. Time to create!"
    if phase == "ovulation":
        return "You're radiant and magnetic ✨."
    days_left = cycle_length - cycle_day
    return f"Easy does it. Your period arrives in ~{days_left} days."


def calculate_phase(anchor, cycle_length: int, period_length: int, today: date | None = None) -> dict | None:
    """Return the phase record for ``today``, or None without a usable anchor.

    An anchor in the future yields None rather than a negative cycle day.
    """
    if not anchor:
        return None
    today = today or local_today()
    if days_between(anchor, today) < 0:
        return None

    cycle_day = get_cycle_day(parse_iso_date(anchor), today, cycle_length)
    phase = get_phase(cycle_day, period_length)
    return {
        "phase": phase,
        "label": PHASE_LABELS[phase],
        "day": cycle_day,
        "description": _describe(phase, cycle_day, cycle_length),
        "icon": PHASE_ICONS[phase],
        "gym_advice": PHASE_GYM_ADVICE[phase],
    }


def apply_active_override(phase_info: dict | None, is_active: bool) -> dict | None:
    """Force Menstrual when the user flagged an ongoing period the dates don't account for."""
    if not phase_info or not is_active or phase_info["phase"] == "menstrual":
        return phase_info
    return {
        **phase_info,
        "phase": "menstrual",
        "label": PHASE_LABELS["menstrual"],
        "description": ACTIVE_PERIOD_DESCRIPTION,
        "icon": PHASE_ICONS["menstrual"],
        "gym_advice": PHASE_GYM_ADVICE["menstrual"],
    }


def get_energy_level(energy: str | None) -> dict | None:
    for level in ENERGY_LEVELS:
        if level["id"] == energy:
            return level
    return None


def get_gym_advice(phase_info: dict | None, energy: str | None = None) -> str:
    """A logged energy level beats the phase default."""
    level = get_energy_level(energy)
    if level:
        return level["gym"]
    if phase_info:
        return phase_info["gym_advice"]
    return DEFAULT_GYM_ADVICE


def get_current_cycle_start(anchor, today: date, cycle_length: int = 28) -> date:
    """Start date of the cycle ``today`` belongs to."""
    anchor = parse_iso_date(anchor)
    delta = days_between(anchor, today)
    if delta < 0:
        return anchor
    return anchor + timedelta(days=(delta // cycle_length) * cycle_length)


def predict_dates(anchor, cycle_length: int, today: date | None = None) -> dict:
    """Predict the next period start and this cycle's fertile window.

    Luteal phase is taken as a fixed 14 days, so ovulation falls on cycle
    day ``cycle_length - 14`` and the window spans cycle days
    ovulation-4 through ovulation+1.
    """
    if not anchor:
        return {"next_period": None, "fertile_window": None}
    anchor = parse_iso_date(anchor)
    today = today or local_today()

    cycles_elapsed = days_between(anchor, today) // cycle_length
    next_period = anchor + timedelta(days=(cycles_elapsed + 1) * cycle_length)

    cycle_start = anchor + timedelta(days=cycles_elapsed * cycle_length)
    ovulation_day = cycle_length - LUTEAL_LENGTH
    return {
        "next_period": next_period,
        "fertile_window": {
            "start": _cycle_day_date(cycle_start, ovulation_day - 4),
            "end": _cycle_day_date(cycle_start, ovulation_day + 1),
        },
    }


def _cycle_day_date(cycle_start: date, cycle_day: int) -> date:
    # cycle day 1 is cycle_start itself
    return cycle_start + timedelta(days=cycle_day - 1)


def days_until(target: date, today: date | None = None) -> int:
    today = today or local_today()
    return days_between(today, target)
