"""Data model shared by the collector, classifier, summarizer and scheduler.

Events and AFK periods are transient and rebuilt every cycle. Categories live
in the category store. Classification results and summaries are immutable;
a new cycle replaces them instead of editing them.

All datetimes are timezone-aware UTC.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Optional, Tuple


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


class Timeframe(str, Enum):
    """Lookback windows the collector understands, relative to "now"."""

    FIVE_MINUTES = "5_minutes"
    THIRTY_MINUTES = "30_minutes"
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"

    def window(self, now: datetime) -> Tuple[datetime, datetime]:
        """Return the (start, end) range this timeframe covers at ``now``.

        The daily timeframe starts at local midnight ("today"), but never
        covers less than one hour so that the first hour of the day still
        has some context.
        """
        if self is Timeframe.DAILY:
            local_now = now.astimezone()
            midnight = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
            start = min(midnight.astimezone(timezone.utc), now - timedelta(hours=1))
            return start, now
        return now - _FIXED_LENGTHS[self], now

    @property
    def label(self) -> str:
        return _LABELS[self]


_FIXED_LENGTHS = {
    Timeframe.FIVE_MINUTES: timedelta(minutes=5),
    Timeframe.THIRTY_MINUTES: timedelta(minutes=30),
    Timeframe.HOURLY: timedelta(hours=1),
    Timeframe.WEEKLY: timedelta(days=7),
}

_LABELS = {
    Timeframe.FIVE_MINUTES: "last 5 minutes",
    Timeframe.THIRTY_MINUTES: "last 30 minutes",
    Timeframe.HOURLY: "last hour",
    Timeframe.DAILY: "today",
    Timeframe.WEEKLY: "last 7 days",
}


@dataclass(frozen=True)
class Event:
    """A window-focus event, already clipped to active (non-AFK) time.

    Attributes:
        source_id: Bucket the event came from.
        start: When the window gained focus.
        end: When it lost focus (never before ``start``).
        app_name: Application identity used for categorization.
        title: Window title, may be empty.
    """
    source_id: str
    start: datetime
    end: datetime
    app_name: str
    title: str = ""

    def __post_init__(self):
        if self.end < self.start:
            raise ValueError(f"Event ends before it starts: {self.start} > {self.end}")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    @property
    def seconds(self) -> float:
        return self.duration.total_seconds()


@dataclass(frozen=True)
class AfkPeriod:
    """An idle interval reported by the AFK watcher."""
    start: datetime
    end: datetime


@dataclass(frozen=True)
class Category:
    """Categorization of one application.

    Attributes:
        app_name: Normalized application name (unique key).
        category: Category name, e.g. ``development`` or ``entertainment``.
        subcategory: Optional finer label, e.g. ``ide``.
        productivity_score: 0-100, higher is more productive.
    """
    app_name: str
    category: str = "uncategorized"
    subcategory: Optional[str] = None
    productivity_score: int = 50

    def to_dict(self) -> dict:
        return asdict(self)


class ProductivityState(str, Enum):
    PRODUCTIVE = "productive"
    MODERATE = "moderate"
    CHILLING = "chilling"
    UNPRODUCTIVE = "unproductive"
    AFK = "afk"


@dataclass(frozen=True)
class ClassificationResult:
    """Three-bucket split, state label and focus score for one timeframe."""
    work_minutes: float
    communication_minutes: float
    distraction_minutes: float
    state: ProductivityState
    focus_score: float

    @property
    def active_minutes(self) -> float:
        return self.work_minutes + self.communication_minutes + self.distraction_minutes

    def percentages(self) -> Dict[str, float]:
        """Share of active time per bucket, 0-100 (all zero when idle)."""
        total = self.active_minutes
        if total <= 0:
            return {"work": 0.0, "communication": 0.0, "distraction": 0.0}
        return {
            "work": round(self.work_minutes / total * 100, 1),
            "communication": round(self.communication_minutes / total * 100, 1),
            "distraction": round(self.distraction_minutes / total * 100, 1),
        }

    def to_dict(self) -> dict:
        data = asdict(self)
        data["state"] = self.state.value
        data["active_minutes"] = self.active_minutes
        return data


class Mode(str, Enum):
    """Behavior profiles selecting analysis cadence and aggressiveness."""

    GHOST = "ghost"
    CHILL = "chill"
    STUDY = "study"
    COACH = "coach"

    @classmethod
    def parse(cls, value) -> "Mode":
        """Parse a mode name, accepting the legacy ``study_buddy`` alias.

        Raises:
            ValueError: If the name is not a known mode.
        """
        if isinstance(value, Mode):
            return value
        name = str(value).strip().lower()
        if name == "study_buddy":
            name = "study"
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"Unknown mode: {value!r}") from None


@dataclass(frozen=True)
class ModeProfile:
    """Everything the scheduler needs to know about one mode.

    Attributes:
        mode: The mode this profile belongs to.
        interval: Minimum time between two scheduled cycles.
        immediate: Switching to this mode forces a cycle right away.
        reactive: Cycles are quick nudges and use the short LLM timeout.
        nudges: Whether this mode ever produces nudges.
        timeframe: Primary timeframe analysed each cycle.
        context_timeframes: Extra timeframes collected for prompt context.
    """
    mode: Mode
    interval: timedelta
    immediate: bool
    reactive: bool
    nudges: bool
    timeframe: Timeframe
    context_timeframes: Tuple[Timeframe, ...] = ()


class SummarySource(str, Enum):
    LLM = "llm"
    FALLBACK = "fallback"


class Cadence(str, Enum):
    """Which cached summary a cycle refreshes."""

    CURRENT = "current"
    DAILY = "daily"


@dataclass(frozen=True)
class Summary:
    """Latest published result for a cadence. Replaced, never edited."""
    text: str
    focus_score: float
    generated_at: datetime
    period_label: str
    source: SummarySource
    state: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "focus_score": self.focus_score,
            "generated_at": self.generated_at.isoformat(),
            "period_label": self.period_label,
            "source": self.source.value,
            "state": self.state,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Summary":
        return cls(
            text=data["text"],
            focus_score=float(data["focus_score"]),
            generated_at=datetime.fromisoformat(data["generated_at"]),
            period_label=data["period_label"],
            source=SummarySource(data["source"]),
            state=data.get("state"),
        )


@dataclass(frozen=True)
class Nudge:
    """An intervention produced after a cycle, handed to the notifier."""
    mode: Mode
    state: ProductivityState
    title: str
    message: str
    created_at: datetime

    def to_dict(self) -> dict:
        return {
            "mode": self.mode.value,
            "state": self.state.value,
            "title": self.title,
            "message": self.message,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ScheduleState:
    """Mutable scheduler bookkeeping, owned and guarded by the Scheduler.

    Attributes:
        current_mode: Mode used by the next cycle.
        last_run_at: When the last mode cycle completed.
        in_flight: A cycle is currently running.
        baseline_at: Interval baseline reset by a non-immediate mode switch.
        pending_force: An immediate-mode switch is waiting for its cycle.
        last_daily_at: When the daily summary was last refreshed.
        last_nudge_at: When the last nudge was delivered.
        nudge_hold_until: No cycle or nudge before this time (state cooldown).
        cycles_completed: Count of finished cycles, for status reporting.
        history: Recent (mode, forced, completed_at) tuples, newest last.
    """
    current_mode: Mode
    last_run_at: Optional[datetime] = None
    in_flight: bool = False
    baseline_at: Optional[datetime] = None
    pending_force: bool = False
    last_daily_at: Optional[datetime] = None
    last_nudge_at: Optional[datetime] = None
    nudge_hold_until: Optional[datetime] = None
    cycles_completed: int = 0
    history: list = field(default_factory=list)

    def snapshot(self) -> dict:
        """JSON-friendly copy for status endpoints."""
        def iso(value):
            return value.isoformat() if value else None

        return {
            "current_mode": self.current_mode.value,
            "last_run_at": iso(self.last_run_at),
            "in_flight": self.in_flight,
            "pending_force": self.pending_force,
            "last_daily_at": iso(self.last_daily_at),
            "last_nudge_at": iso(self.last_nudge_at),
            "nudge_hold_until": iso(self.nudge_hold_until),
            "cycles_completed": self.cycles_completed,
        }
