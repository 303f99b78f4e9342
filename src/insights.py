from collections.abc import Iterator, Mapping

from src.calendar_math import days_between

NEW_CYCLE_GAP_DAYS = 15
CRAMP_PAIN_THRESHOLD = 5
CRAMP_SYMPTOMS = {"cramps", "cólicos", "colicos"}

# Order matters: on equal counts the earlier method wins.
RELIEF_METHODS = {
    "heat": {"heat", "calor"},
    "medication": {"medication", "medicina", "ibuprofen", "ibuprofeno"},
    "exercise": {"exercise", "ejercicio"},
}

RELIEF_ADVICE = {
    "heat": "Heat is what helps you most with cramps \U0001f525. Keep a heating pad close.",
    "medication": "Medication has been your most used relief \U0001f48a. Take it early, before the pain peaks.",
    "exercise": "Moving helps you the most \U0001f3c3. Gentle exercise can ease cramps.",
}

REGULARITY = {
    "regular": {
        "label": "Regular",
        "color": "emerald",
        "description": "Your cycle length sits in the typical 26-30 day range.",
    },
    "varying": {
        "label": "Varying",
        "color": "amber",
        "description": "Your cycle length is within 21-35 days but outside the most common range.",
    },
    "irregular": {
        "label": "Irregular",
        "color": "rose",
        "description": "Your cycle length falls outside 21-35 days. Consider mentioning it to a doctor.",
    },
}


def classify_regularity(cycle_length: int) -> dict:
    """Tri-state regularity signal for a cycle length."""
    if 26 <= cycle_length <= 30:
        status = "regular"
    elif 21 <= cycle_length <= 35:
        status = "varying"
    else:
        status = "irregular"
    return {"status": status, **REGULARITY[status]}


def detect_cycle_starts(daily_entries: Mapping[str, dict]) -> list[str]:
    """Dates that open a new cycle: a bleed with no bleed in the previous 15 days."""
    starts = []
    last_bleed = None
    for day in sorted(daily_entries):
        if not daily_entries[day].get("has_bled"):
            continue
        if last_bleed is None or days_between(last_bleed, day) > NEW_CYCLE_GAP_DAYS:
            starts.append(day)
        last_bleed = day
    return starts


def observed_cycle_lengths(daily_entries: Mapping[str, dict]) -> list[int]:
    starts = detect_cycle_starts(daily_entries)
    return [days_between(a, b) for a, b in zip(starts, starts[1:])]


def average_cycle_length(profile: Mapping, daily_entries: Mapping[str, dict]) -> int | None:
    """Average of observed cycles, falling back to the configured length."""
    lengths = observed_cycle_lengths(daily_entries)
    if lengths:
        return round(sum(lengths) / len(lengths))
    return profile.get("cycle_length")


def _has_cramps(entry: Mapping) -> bool:
    symptoms = {s.lower() for s in entry.get("symptoms") or []}
    pain = entry.get("pain_level") or 0
    return bool(symptoms & CRAMP_SYMPTOMS) or pain >= CRAMP_PAIN_THRESHOLD


def most_used_relief(daily_entries: Mapping[str, dict]) -> str | None:
    counts = dict.fromkeys(RELIEF_METHODS, 0)
    for entry in daily_entries.values():
        logged = {m.lower() for m in entry.get("relief_methods") or []}
        for method, aliases in RELIEF_METHODS.items():
            if logged & aliases:
                counts[method] += 1

    best = None
    for method, count in counts.items():
        if count > 0 and (best is None or count > counts[best]):
            best = method
    return best


def generate_insights(profile: Mapping, daily_entries: Mapping[str, dict]) -> Iterator[str]:
    """Yield short observations about the user's logged cycles."""
    average = average_cycle_length(profile, daily_entries)
    if average:
        yield f"Your average cycle lasts {average} days."

    cramp_days = sum(1 for entry in daily_entries.values() if _has_cramps(entry))
    if not cramp_days:
        yield "Keep logging your days to unlock personalised insights \U0001f4dd."
        return

    yield "Your cramps tend to show up in the first days of your period."
    relief = most_used_relief(daily_entries)
    if relief:
        yield RELIEF_ADVICE[relief]
