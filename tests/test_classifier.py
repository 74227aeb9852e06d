"""Tests for productivity classification."""

from datetime import timedelta

import pytest

from companion.classifier import (
    ClassifierSettings,
    app_breakdown,
    classify,
    count_context_switches,
    find_rapid_switches,
)
from companion.config import ClassificationConfig
from companion.models import Category, Event, ProductivityState

from conftest import T0, make_events


def lookup_from(table):
    def lookup(app_name):
        category, score = table.get(app_name, ("uncategorized", 50))
        return Category(app_name=app_name, category=category, productivity_score=score)
    return lookup


class TestClassify:

    def test_weighted_focus_score(self):
        """50 work minutes at 90 and 10 distraction minutes at 10 -> 76.67, productive."""
        events = make_events(T0, [("editor", 30), ("game", 10), ("editor", 20)])
        lookup = lookup_from({"editor": ("development", 90), "game": ("entertainment", 10)})

        result = classify(events, lookup, window_minutes=60)

        assert result.work_minutes == pytest.approx(50)
        assert result.distraction_minutes == pytest.approx(10)
        assert result.communication_minutes == 0
        assert result.focus_score == pytest.approx(76.67, abs=0.01)
        assert result.state is ProductivityState.PRODUCTIVE

    def test_no_events_is_afk(self):
        result = classify([], lookup_from({}), window_minutes=60)
        assert result.state is ProductivityState.AFK
        assert result.focus_score == 0
        assert result.active_minutes == 0

    def test_below_activity_floor_is_afk(self):
        """Under a minute active in a five minute window is afk."""
        events = make_events(T0, [("editor", 0.5)])
        result = classify(events, lookup_from({"editor": ("development", 90)}), window_minutes=5)
        assert result.state is ProductivityState.AFK
        assert result.focus_score == 90

    @pytest.mark.parametrize("active_minutes,window_minutes", [
        (11, 60),
        (180, 18 * 60),
    ])
    def test_floor_does_not_grow_with_window(self, active_minutes, window_minutes):
        """Hours of editing in a long daily window are still productive."""
        events = make_events(T0, [("editor", active_minutes)])
        result = classify(events, lookup_from({"editor": ("development", 90)}), window_minutes)
        assert result.state is ProductivityState.PRODUCTIVE

    def test_floor_is_configurable(self):
        settings = ClassifierSettings.from_config(ClassificationConfig(min_active_minutes=5))
        events = make_events(T0, [("editor", 3)])
        result = classify(events, lookup_from({"editor": ("development", 90)}), 60, settings)
        assert result.state is ProductivityState.AFK

    def test_state_uses_unrounded_score(self):
        """69.996 rounds to 70 for display but is still below the productive threshold."""
        events = [
            Event("window", T0, T0 + timedelta(seconds=9999), "a"),
            Event("window", T0 + timedelta(seconds=9999), T0 + timedelta(seconds=10000), "b"),
        ]
        result = classify(events, lookup_from({"a": ("other", 70), "b": ("other", 30)}), 200)
        assert result.focus_score == pytest.approx(70.0)
        assert result.state is ProductivityState.MODERATE

    @pytest.mark.parametrize("category,score,expected", [
        ("other", 70, ProductivityState.PRODUCTIVE),
        ("other", 69, ProductivityState.MODERATE),
        ("communication", 50, ProductivityState.MODERATE),
        ("communication", 49, ProductivityState.CHILLING),
        ("communication", 30, ProductivityState.CHILLING),
        ("communication", 29, ProductivityState.UNPRODUCTIVE),
        ("entertainment", 30, ProductivityState.UNPRODUCTIVE),
    ])
    def test_threshold_boundaries(self, category, score, expected):
        """Boundaries are inclusive; chilling requires distraction not to dominate."""
        events = make_events(T0, [("app", 30)])
        result = classify(events, lookup_from({"app": (category, score)}), window_minutes=30)
        assert result.state is expected

    def test_unknown_app_scores_default(self):
        events = make_events(T0, [("mystery", 30)])
        result = classify(events, lookup_from({}), window_minutes=30)
        assert result.focus_score == 50
        assert result.distraction_minutes == pytest.approx(30)
        assert result.state is ProductivityState.MODERATE

    def test_high_score_category_counts_as_work(self):
        events = make_events(T0, [("notes", 10)])
        result = classify(events, lookup_from({"notes": ("reference", 80)}), window_minutes=10)
        assert result.work_minutes == pytest.approx(10)

    def test_custom_thresholds(self):
        settings = ClassifierSettings.from_config(ClassificationConfig(high_threshold=80))
        events = make_events(T0, [("editor", 30)])
        result = classify(events, lookup_from({"editor": ("development", 75)}), 30, settings)
        assert result.state is ProductivityState.MODERATE

    def test_percentages(self):
        events = make_events(T0, [("editor", 30), ("chat", 10), ("game", 20)])
        lookup = lookup_from({
            "editor": ("development", 90),
            "chat": ("communication", 50),
            "game": ("entertainment", 10),
        })
        shares = classify(events, lookup, 60).percentages()
        assert shares == {"work": 50.0, "communication": 16.7, "distraction": 33.3}


class TestSwitching:

    def alternating(self, step_seconds, count=6):
        events = []
        for i in range(count):
            start = T0 + timedelta(seconds=i * step_seconds)
            events.append(Event("window", start, start + timedelta(seconds=step_seconds),
                                 "editor" if i % 2 == 0 else "chat"))
        return events

    def test_count_context_switches(self):
        assert count_context_switches(self.alternating(10)) == 5

    def test_rapid_burst_detected(self):
        bursts = find_rapid_switches(self.alternating(10), min_switches=5, window_seconds=120)
        assert len(bursts) == 1
        burst = bursts[0]
        assert burst.switches == 5
        assert burst.start == T0 + timedelta(seconds=10)
        assert burst.end == T0 + timedelta(seconds=50)
        assert burst.apps == ("editor", "chat")

    def test_slow_switching_is_not_a_burst(self):
        assert find_rapid_switches(self.alternating(60), min_switches=5, window_seconds=120) == []

    def test_overlapping_bursts_merged(self):
        bursts = find_rapid_switches(self.alternating(10, count=12), min_switches=5, window_seconds=120)
        assert len(bursts) == 1
        assert bursts[0].switches == 11


class TestAppBreakdown:

    def test_sorted_by_time(self):
        events = make_events(T0, [("chat", 5), ("editor", 20), ("chat", 5), ("game", 15)])
        lookup = lookup_from({"editor": ("development", 90), "game": ("entertainment", 10)})
        breakdown = app_breakdown(events, lookup)
        assert [b["app_name"] for b in breakdown] == ["editor", "game", "chat"]
        assert breakdown[2]["minutes"] == 10.0
        assert breakdown[2]["visits"] == 2
        assert breakdown[0]["category"] == "development"
