"""Productivity classification of collected activity.

Turns a list of active events plus category lookups into a work /
communication / distraction split, a duration-weighted focus score and a
state label. Classification is pure computation: no I/O, no shared state.

State derivation, first match wins:

1. afk           active time below the minimum-activity floor
2. productive    focus score >= high threshold
3. moderate      focus score >= mid threshold
4. chilling      focus score >= low threshold and distraction not dominant
5. unproductive  everything else

Thresholds are inclusive, so a score sitting exactly on a boundary gets the
more favorable state.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from .models import Category, ClassificationResult, Event, ProductivityState

@dataclass(frozen=True)
class ClassifierSettings:
    """Tunable thresholds, usually built from ClassificationConfig."""
    high_threshold: float = 70
    mid_threshold: float = 50
    low_threshold: float = 30
    work_score_threshold: float = 70
    min_active_minutes: float = 1.0
    work_categories: frozenset = frozenset({"work", "development", "productivity"})
    communication_categories: frozenset = frozenset({"communication"})
    rapid_switch_count: int = 5
    rapid_switch_window_seconds: int = 120

    @classmethod
    def from_config(cls, config) -> "ClassifierSettings":
        """Build settings from a ``ClassificationConfig`` section."""
        return cls(
            high_threshold=config.high_threshold,
            mid_threshold=config.mid_threshold,
            low_threshold=config.low_threshold,
            work_score_threshold=config.work_score_threshold,
            min_active_minutes=config.min_active_minutes,
            work_categories=frozenset(c.lower() for c in config.work_categories),
            communication_categories=frozenset(c.lower() for c in config.communication_categories),
            rapid_switch_count=config.rapid_switch_count,
            rapid_switch_window_seconds=config.rapid_switch_window_seconds,
        )

    def floor_minutes(self, window_minutes: Optional[float]) -> float:
        """Minimum active minutes for a window to count as not-AFK."""
        if window_minutes and window_minutes < self.min_active_minutes:
            return window_minutes
        return self.min_active_minutes


def bucket_for(category: Category, settings: ClassifierSettings) -> str:
    """Map a category to ``work``, ``communication`` or ``distraction``."""
    name = (category.category or "").lower()
    if name in settings.work_categories:
        return "work"
    if name in settings.communication_categories:
        return "communication"
    if category.productivity_score >= settings.work_score_threshold:
        return "work"
    return "distraction"


def derive_state(focus_score: float, active_minutes: float, distraction_minutes: float,
                 floor_minutes: float, settings: ClassifierSettings) -> ProductivityState:
    if active_minutes <= 0 or active_minutes < floor_minutes:
        return ProductivityState.AFK
    if focus_score >= settings.high_threshold:
        return ProductivityState.PRODUCTIVE
    if focus_score >= settings.mid_threshold:
        return ProductivityState.MODERATE
    distraction_dominant = distraction_minutes > active_minutes / 2
    if focus_score >= settings.low_threshold and not distraction_dominant:
        return ProductivityState.CHILLING
    return ProductivityState.UNPRODUCTIVE


def classify(events: Iterable[Event], category_lookup: Callable[[str], Category],
             window_minutes: Optional[float] = None,
             settings: Optional[ClassifierSettings] = None) -> ClassificationResult:
    """Classify a timeframe's events.

    Args:
        events: Active (AFK-filtered) events.
        category_lookup: Returns the Category for an app name; must never
            fail (unknown apps get a default).
        window_minutes: Length of the analysed timeframe. The activity floor
            never exceeds it.
        settings: Thresholds; defaults when omitted.

    Returns:
        A new ClassificationResult. With zero active time the focus score
        is 0 and the state is afk.
    """
    settings = settings or ClassifierSettings()
    buckets = {"work": 0.0, "communication": 0.0, "distraction": 0.0}
    weighted = 0.0

    for event in events:
        minutes = event.seconds / 60
        if minutes <= 0:
            continue
        category = category_lookup(event.app_name)
        buckets[bucket_for(category, settings)] += minutes
        weighted += category.productivity_score * minutes

    active = sum(buckets.values())
    if active > 0:
        raw_score = min(100.0, max(0.0, weighted / active))
    else:
        raw_score = 0.0

    # Thresholds see the exact score; only the stored value is rounded
    state = derive_state(
        raw_score, active, buckets["distraction"],
        settings.floor_minutes(window_minutes), settings,
    )

    return ClassificationResult(
        work_minutes=round(buckets["work"], 2),
        communication_minutes=round(buckets["communication"], 2),
        distraction_minutes=round(buckets["distraction"], 2),
        state=state,
        focus_score=round(raw_score, 2),
    )


@dataclass(frozen=True)
class SwitchBurst:
    """A stretch of rapid app switching."""
    start: datetime
    end: datetime
    switches: int
    apps: tuple = field(default_factory=tuple)


def count_context_switches(events: Sequence[Event]) -> int:
    """Number of times the focused app changed."""
    ordered = sorted(events, key=lambda e: e.start)
    return sum(1 for prev, cur in zip(ordered, ordered[1:]) if prev.app_name != cur.app_name)


def find_rapid_switches(events: Sequence[Event], min_switches: int = 5,
                        window_seconds: float = 120) -> List[SwitchBurst]:
    """Find bursts of at least ``min_switches`` app switches within a window.

    Overlapping bursts are merged into one, so the result is ordered and
    non-overlapping.
    """
    ordered = sorted(events, key=lambda e: e.start)
    switches = [
        (cur.start, prev.app_name, cur.app_name)
        for prev, cur in zip(ordered, ordered[1:])
        if prev.app_name != cur.app_name
    ]
    if min_switches <= 0 or len(switches) < min_switches:
        return []

    window = timedelta(seconds=window_seconds)
    spans = []
    j = 0
    for i in range(len(switches)):
        if j < i:
            j = i
        while j + 1 < len(switches) and switches[j + 1][0] - switches[i][0] <= window:
            j += 1
        if j - i + 1 >= min_switches:
            spans.append((i, j))

    bursts: List[SwitchBurst] = []
    merged_spans: List[list] = []
    for i, j in spans:
        if merged_spans and i <= merged_spans[-1][1]:
            merged_spans[-1][1] = max(merged_spans[-1][1], j)
        else:
            merged_spans.append([i, j])

    for i, j in merged_spans:
        apps = []
        for _, left, right in switches[i:j + 1]:
            for app in (left, right):
                if app not in apps:
                    apps.append(app)
        bursts.append(SwitchBurst(
            start=switches[i][0],
            end=switches[j][0],
            switches=j - i + 1,
            apps=tuple(apps),
        ))
    return bursts


def app_breakdown(events: Iterable[Event], category_lookup: Callable[[str], Category],
                  limit: int = 8) -> List[Dict]:
    """Per-app totals sorted by time spent, for prompts and status pages."""
    totals: Dict[str, Dict] = {}
    for event in events:
        entry = totals.get(event.app_name)
        if entry is None:
            category = category_lookup(event.app_name)
            entry = totals[event.app_name] = {
                "app_name": event.app_name,
                "minutes": 0.0,
                "visits": 0,
                "category": category.category,
                "productivity_score": category.productivity_score,
            }
        entry["minutes"] += event.seconds / 60
        entry["visits"] += 1

    ordered = sorted(totals.values(), key=lambda e: -e["minutes"])
    for entry in ordered:
        entry["minutes"] = round(entry["minutes"], 1)
    return ordered[:limit]


def category_statistics(events: Iterable[Event], category_lookup: Callable[[str], Category]) -> List[Dict]:
    """Minutes, share of active time and distinct apps per category."""
    totals: Dict[str, Dict] = {}
    for event in events:
        name = category_lookup(event.app_name).category
        entry = totals.setdefault(name, {"category": name, "minutes": 0.0, "apps": set()})
        entry["minutes"] += event.seconds / 60
        entry["apps"].add(event.app_name)

    active = sum(e["minutes"] for e in totals.values())
    stats = []
    for entry in sorted(totals.values(), key=lambda e: -e["minutes"]):
        stats.append({
            "category": entry["category"],
            "minutes": round(entry["minutes"], 1),
            "percentage": round(entry["minutes"] / active * 100, 1) if active else 0.0,
            "app_count": len(entry["apps"]),
        })
    return stats


def hourly_breakdown(events: Iterable[Event], category_lookup: Callable[[str], Category],
                     settings: Optional[ClassifierSettings] = None) -> List[Dict]:
    """Active minutes and focus score per clock hour (UTC), oldest first.

    Events spanning an hour boundary are split between the hours they touch.
    """
    per_hour: Dict[datetime, List[Event]] = {}
    for event in events:
        cursor = event.start
        while cursor < event.end:
            hour = cursor.replace(minute=0, second=0, microsecond=0)
            piece_end = min(event.end, hour + timedelta(hours=1))
            per_hour.setdefault(hour, []).append(
                Event(event.source_id, cursor, piece_end, event.app_name, event.title)
            )
            cursor = piece_end

    rows = []
    for hour in sorted(per_hour):
        result = classify(per_hour[hour], category_lookup, 60, settings)
        rows.append({
            "hour": hour.isoformat(),
            "active_minutes": round(result.active_minutes, 1),
            "focus_score": result.focus_score,
            "state": result.state.value,
        })
    return rows
