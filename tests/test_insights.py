import inspect

import pytest

from src.insights import (
    RELIEF_ADVICE,
    average_cycle_length,
    classify_regularity,
    detect_cycle_starts,
    generate_insights,
    most_used_relief,
    observed_cycle_lengths,
)

KEEP_LOGGING = "Keep logging"
CRAMPS_NOTE = "cramps tend to show up"


def _bleeds(*days):
    return {d: {"date": d, "has_bled": True} for d in days}


class TestClassifyRegularity:
    @pytest.mark.parametrize("length", [26, 28, 30])
    def test_regular(self, length):
        assert classify_regularity(length)["status"] == "regular"

    @pytest.mark.parametrize("length", [21, 25, 31, 35])
    def test_varying(self, length):
        assert classify_regularity(length)["status"] == "varying"

    @pytest.mark.parametrize("length", [0, 15, 20, 36, 60])
    def test_irregular(self, length):
        assert classify_regularity(length)["status"] == "irregular"

    def test_carries_display_fields(self):
        result = classify_regularity(28)
        assert result["label"] == "Regular"
        assert result["color"]
        assert result["description"]


class TestCycleStarts:
    def test_gap_starts_new_cycle(self):
        entries = _bleeds("2024-01-01", "2024-01-02", "2024-01-03", "2024-01-29", "2024-01-30", "2024-02-26")
        assert detect_cycle_starts(entries) == ["2024-01-01", "2024-01-29", "2024-02-26"]
        assert observed_cycle_lengths(entries) == [28, 28]

    def test_fifteen_day_gap_is_same_cycle(self):
        assert detect_cycle_starts(_bleeds("2024-01-01", "2024-01-16")) == ["2024-01-01"]

    def test_non_bleed_days_ignored(self):
        entries = {**_bleeds("2024-01-01"), "2024-01-20": {"has_bled": False}}
        assert detect_cycle_starts(entries) == ["2024-01-01"]

    def test_observed_average_beats_profile(self):
        entries = _bleeds("2024-01-01", "2024-01-27", "2024-02-26")
        assert average_cycle_length({"cycle_length": 35}, entries) == 28

    def test_profile_fallback(self):
        assert average_cycle_length({"cycle_length": 30}, {}) == 30


class TestMostUsedRelief:
    def test_single_method(self):
        entries = {"2024-01-01": {"relief_methods": ["ejercicio"]}}
        assert most_used_relief(entries) == "exercise"

    def test_most_frequent_wins(self):
        entries = {
            "2024-01-01": {"relief_methods": ["calor"]},
            "2024-01-02": {"relief_methods": ["medicina"]},
            "2024-01-03": {"relief_methods": ["ibuprofeno", "calor"]},
            "2024-01-04": {"relief_methods": ["medicina"]},
        }
        assert most_used_relief(entries) == "medication"

    def test_tie_prefers_heat(self):
        entries = {
            "2024-01-01": {"relief_methods": ["exercise"]},
            "2024-01-02": {"relief_methods": ["medication"]},
            "2024-01-03": {"relief_methods": ["heat"]},
        }
        assert most_used_relief(entries) == "heat"

    def test_tie_prefers_medication_over_exercise(self):
        entries = {
            "2024-01-01": {"relief_methods": ["ejercicio"]},
            "2024-01-02": {"relief_methods": ["medicina"]},
        }
        assert most_used_relief(entries) == "medication"

    def test_nothing_logged(self):
        assert most_used_relief({"2024-01-01": {"relief_methods": ["té"]}}) is None


class TestGenerateInsights:
    def test_is_a_generator(self):
        assert inspect.isgenerator(generate_insights({"cycle_length": 28}, {}))

    def test_no_entries(self):
        insights = list(generate_insights({"cycle_length": 28}, {}))
        assert insights[0] == "Your average cycle lasts 28 days."
        assert KEEP_LOGGING in insights[1]
        assert len(insights) == 2

    def test_cramps_by_symptom(self):
        entries = {"2024-01-01": {"symptoms": ["Cólicos"], "relief_methods": ["calor"]}}
        insights = list(generate_insights({"cycle_length": 28}, entries))
        assert any(CRAMPS_NOTE in i for i in insights)
        assert insights[-1] == RELIEF_ADVICE["heat"]
        assert not any(KEEP_LOGGING in i for i in insights)

    def test_cramps_by_pain_level(self):
        entries = {"2024-01-01": {"pain_level": 5, "relief_methods": ["medicina"]}}
        insights = list(generate_insights({"cycle_length": 28}, entries))
        assert any(CRAMPS_NOTE in i for i in insights)
        assert insights[-1] == RELIEF_ADVICE["medication"]

    def test_mild_pain_is_not_cramps(self):
        entries = {"2024-01-01": {"pain_level": 4, "symptoms": ["Acné"]}}
        insights = list(generate_insights({"cycle_length": 28}, entries))
        assert not any(CRAMPS_NOTE in i for i in insights)
        assert KEEP_LOGGING in insights[-1]

    def test_cramps_without_relief(self):
        entries = {"2024-01-01": {"symptoms": ["cramps"]}}
        insights = list(generate_insights({"cycle_length": 28}, entries))
        assert len(insights) == 2
        assert CRAMPS_NOTE in insights[1]

    def test_unknown_average(self):
        insights = list(generate_insights({}, {}))
        assert len(insights) == 1
        assert KEEP_LOGGING in insights[0]
