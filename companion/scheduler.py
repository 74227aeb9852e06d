"""Mode-aware scheduling of analysis cycles.

The Scheduler owns all mutable engine state (ScheduleState plus the published
summaries) behind one condition variable. Two input streams feed it: periodic
ticks from the worker thread and mode switches from callers. Both end up in
the same claim/execute/finish path, so at most one cycle runs at a time.

The lock is never held across network I/O. A cycle claims ``in_flight``
under the lock, runs collect -> classify -> summarize without it, then takes
the lock again to publish its Summary and clear the flag. Readers
(``get_current_state`` and friends) only take the lock long enough to copy a
reference, so they never wait for a cycle.

Mode switches never abort a running cycle. The cycle keeps the profile it
started with and the next tick picks up the new mode.
"""

import json
import logging
import queue
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .categories import CategorySnapshot, CategoryStore
from .classifier import ClassifierSettings, app_breakdown, classify, find_rapid_switches
from .collector import ActivityCollector
from .config import ModesConfig, NudgeConfig, UserConfig
from .errors import CollectorEmpty, CollectorUnavailable, ConcurrencyGuardViolation
from .models import (
    Cadence,
    ClassificationResult,
    Event,
    Mode,
    ModeProfile,
    Nudge,
    ProductivityState,
    ScheduleState,
    Summary,
    Timeframe,
    utcnow,
)
from .summarizer import (
    COLLECTOR_STATUS_EMPTY,
    COLLECTOR_STATUS_OK,
    COLLECTOR_STATUS_UNAVAILABLE,
    AnalysisContext,
    Summarizer,
    TimeframeContext,
)

logger = logging.getLogger(__name__)

MAX_HISTORY = 50
MAX_DAILY_DAYS = 30


def build_mode_profiles(config: Optional[ModesConfig] = None) -> Dict[Mode, ModeProfile]:
    """Build the Mode -> ModeProfile table from a ``ModesConfig`` section."""
    config = config or ModesConfig()
    return {
        Mode.GHOST: ModeProfile(
            mode=Mode.GHOST,
            interval=timedelta(minutes=config.ghost_interval_minutes),
            immediate=False,
            reactive=False,
            nudges=False,
            timeframe=Timeframe.HOURLY,
            context_timeframes=(Timeframe.DAILY,),
        ),
        Mode.CHILL: ModeProfile(
            mode=Mode.CHILL,
            interval=timedelta(minutes=config.chill_interval_minutes),
            immediate=False,
            reactive=False,
            nudges=True,
            timeframe=Timeframe.HOURLY,
            context_timeframes=(Timeframe.THIRTY_MINUTES,),
        ),
        Mode.STUDY: ModeProfile(
            mode=Mode.STUDY,
            interval=timedelta(minutes=config.study_interval_minutes),
            immediate=True,
            reactive=True,
            nudges=True,
            timeframe=Timeframe.FIVE_MINUTES,
            context_timeframes=(Timeframe.THIRTY_MINUTES,),
        ),
        Mode.COACH: ModeProfile(
            mode=Mode.COACH,
            interval=timedelta(minutes=config.coach_interval_minutes),
            immediate=True,
            reactive=False,
            nudges=True,
            timeframe=Timeframe.THIRTY_MINUTES,
            context_timeframes=(Timeframe.HOURLY,),
        ),
    }


class Scheduler:
    """Runs analysis cycles per mode and caches their results.

    Attributes:
        collector: Source of active events.
        store: Category store; each cycle works on one snapshot of it.
        summarizer: Turns a classification into a Summary.
        profiles: Mode -> ModeProfile table.
        tick_seconds: Worker resolution.
        daily_refresh: Minimum time between two daily summaries (None disables).
    """

    def __init__(self, collector: ActivityCollector, store: CategoryStore,
                 summarizer: Summarizer,
                 profiles: Optional[Dict[Mode, ModeProfile]] = None,
                 settings: Optional[ClassifierSettings] = None,
                 nudge_config: Optional[NudgeConfig] = None,
                 user_config: Optional[UserConfig] = None,
                 initial_mode: Mode = Mode.GHOST,
                 tick_seconds: float = 60,
                 daily_refresh: Optional[timedelta] = timedelta(minutes=120),
                 cache_path: Optional[Path] = None,
                 notifier: Optional[Callable[[Nudge], None]] = None,
                 categorizer: Optional[Callable[[List[str]], object]] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.collector = collector
        self.store = store
        self.summarizer = summarizer
        self.profiles = profiles or build_mode_profiles()
        self.settings = settings or ClassifierSettings()
        self.nudge_config = nudge_config or NudgeConfig()
        self.user_config = user_config
        self.tick_seconds = tick_seconds
        self.daily_refresh = daily_refresh
        self.cache_path = Path(cache_path).expanduser() if cache_path else None
        self.notifier = notifier
        self.categorizer = categorizer
        self._clock = clock

        self._cond = threading.Condition()
        self._state = ScheduleState(current_mode=Mode.parse(initial_mode))
        self._current: Optional[Summary] = None
        self._daily: Optional[Summary] = None
        # Local date -> last daily summary built on that day
        self._daily_by_date: Dict[date, Summary] = {}
        self._last_classification: Optional[ClassificationResult] = None
        self._last_nudge: Optional[Nudge] = None

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._queue: queue.Queue = queue.Queue()

        self._load_cache()

    # Cached reads

    def get_current_state(self) -> Optional[Summary]:
        """Latest summary for the current-mode cadence, or None. Never blocks on I/O."""
        with self._cond:
            return self._current

    def get_daily_summary(self, day: Optional[date] = None) -> Optional[Summary]:
        """Latest daily summary, or the one kept for local date ``day``."""
        with self._cond:
            if day is None:
                return self._daily
            return self._daily_by_date.get(day)

    def daily_summary_dates(self) -> List[date]:
        """Local dates with a stored daily summary, newest first."""
        with self._cond:
            return sorted(self._daily_by_date, reverse=True)

    def get_last_nudge(self) -> Optional[Nudge]:
        with self._cond:
            return self._last_nudge

    def get_last_classification(self) -> Optional[ClassificationResult]:
        with self._cond:
            return self._last_classification

    @property
    def current_mode(self) -> Mode:
        with self._cond:
            return self._state.current_mode

    def status(self) -> Dict:
        """Scheduler bookkeeping for status endpoints."""
        with self._cond:
            data = self._state.snapshot()
            data["history"] = list(self._state.history[-10:])
            profile = self.profiles[self._state.current_mode]
        data["interval_minutes"] = profile.interval.total_seconds() / 60
        data["running"] = self._running
        return data

    # Mode switches

    def set_mode(self, mode) -> Mode:
        """Switch the active mode.

        Immediate modes (study, coach) get a forced cycle on the next tick;
        other modes restart their interval from now. A cycle already running
        is left alone and finishes under its own mode.

        Raises:
            ValueError: If ``mode`` is not a known mode.
        """
        mode = Mode.parse(mode)
        now = self._clock()
        with self._cond:
            previous = self._state.current_mode
            if mode is previous:
                logger.debug(f"Already in {mode.value} mode")
                return mode
            self._state.current_mode = mode
            if self.profiles[mode].immediate:
                self._state.pending_force = True
            else:
                self._state.pending_force = False
                self._state.baseline_at = now
            in_flight = self._state.in_flight

        logger.info(
            f"Mode changed {previous.value} -> {mode.value}"
            + (" (cycle in flight, it keeps its mode)" if in_flight else "")
        )
        self._save_cache()
        self._wake()
        return mode

    # Cycle execution

    def tick(self, now: Optional[datetime] = None) -> Optional[Summary]:
        """Run one cycle if one is due. Returns its Summary, or None.

        Never waits: if a cycle is in flight this is a no-op.
        """
        now = now or self._clock()
        with self._cond:
            if self._state.in_flight:
                logger.debug("Tick skipped, cycle in flight")
                return None
            plan = self._due_cycle(now)
            if plan is None:
                return None
            profile, cadence, forced = plan
            self._begin_cycle()
            if forced:
                self._state.pending_force = False
        return self._execute(profile, cadence, forced, now)

    def request_cycle_now(self, mode=None) -> Summary:
        """Run a cycle immediately and wait for its Summary.

        Waits for an in-flight cycle to finish first. ``mode`` selects the
        profile used for this one cycle; the current mode is not changed.

        Raises:
            ValueError: If ``mode`` is not a known mode.
        """
        requested = Mode.parse(mode) if mode is not None else None
        with self._cond:
            while self._state.in_flight:
                self._cond.wait()
            now = self._clock()
            profile = self.profiles[requested or self._state.current_mode]
            self._begin_cycle()
            if profile.mode is self._state.current_mode:
                self._state.pending_force = False
        return self._execute(profile, Cadence.CURRENT, True, now)

    def refresh_daily_now(self) -> Summary:
        """Rebuild the daily summary now, waiting for any in-flight cycle."""
        with self._cond:
            while self._state.in_flight:
                self._cond.wait()
            now = self._clock()
            profile = self.profiles[self._state.current_mode]
            self._begin_cycle()
        return self._execute(profile, Cadence.DAILY, True, now)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no cycle is in flight. Returns False on timeout."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._state.in_flight, timeout=timeout)

    def _due_cycle(self, now: datetime) -> Optional[Tuple[ModeProfile, Cadence, bool]]:
        """Decide what (if anything) to run. Caller holds the lock."""
        state = self._state
        profile = self.profiles[state.current_mode]
        if state.pending_force:
            return profile, Cadence.CURRENT, True

        held = state.nudge_hold_until is not None and now < state.nudge_hold_until
        if not held:
            baselines = [t for t in (state.last_run_at, state.baseline_at) if t is not None]
            if not baselines or now - max(baselines) >= profile.interval:
                return profile, Cadence.CURRENT, False

        if self.daily_refresh is not None and (
            state.last_daily_at is None or now - state.last_daily_at >= self.daily_refresh
        ):
            return profile, Cadence.DAILY, False
        return None

    def _begin_cycle(self) -> None:
        """Mark a cycle in flight. Caller holds the lock."""
        if self._state.in_flight:
            raise ConcurrencyGuardViolation("A cycle is already in flight")
        self._state.in_flight = True

    def _execute(self, profile: ModeProfile, cadence: Cadence, forced: bool,
                 now: datetime) -> Summary:
        """Run a claimed cycle to completion and publish its result."""
        logger.info(
            f"Starting {cadence.value} cycle in {profile.mode.value} mode"
            + (" (forced)" if forced else "")
        )
        summary: Optional[Summary] = None
        classification: Optional[ClassificationResult] = None
        events: List[Event] = []
        nudge: Optional[Nudge] = None
        try:
            summary, classification, events = self._run_cycle(profile, cadence, now)
        finally:
            with self._cond:
                if not self._state.in_flight:
                    raise ConcurrencyGuardViolation("Cycle finished but none was in flight")
                self._state.in_flight = False
                if cadence is Cadence.DAILY:
                    self._state.last_daily_at = now
                else:
                    self._state.last_run_at = now
                if summary is not None:
                    self._publish(profile, cadence, forced, now, summary, classification)
                    if cadence is Cadence.CURRENT:
                        nudge = self._decide_nudge(profile, classification, summary, now)
                self._cond.notify_all()

        self._save_cache()
        if nudge is not None:
            self._deliver(nudge)
        if self.categorizer is not None and events:
            self._categorize_unknown(events)

        logger.info(
            f"Finished {cadence.value} cycle: state={summary.state}, "
            f"focus={summary.focus_score:.0f}, source={summary.source.value}"
        )
        return summary

    def _run_cycle(self, profile: ModeProfile, cadence: Cadence,
                   now: datetime) -> Tuple[Summary, ClassificationResult, List[Event]]:
        snapshot = self.store.snapshot()

        if cadence is Cadence.DAILY:
            timeframe, context_timeframes, reactive = Timeframe.DAILY, (), False
        else:
            timeframe, context_timeframes, reactive = profile.timeframe, profile.context_timeframes, profile.reactive

        primary = self._collect(timeframe, snapshot, now)
        others = []
        if primary.status == COLLECTOR_STATUS_OK:
            for extra in context_timeframes:
                other = self._collect(extra, snapshot, now)
                # Context is optional; a timeframe without data is left out
                if other.status == COLLECTOR_STATUS_OK:
                    others.append(other)

        context = AnalysisContext(
            mode=profile.mode,
            primary=primary,
            others=others,
            bursts=find_rapid_switches(
                primary.events,
                self.settings.rapid_switch_count,
                self.settings.rapid_switch_window_seconds,
            ),
            breakdown=app_breakdown(primary.events, snapshot.lookup),
            period_label=timeframe.label,
        )
        summary = self.summarizer.summarize(
            primary.classification, context, self._user_context(profile.mode), reactive=reactive,
        )
        return summary, primary.classification, primary.events

    def _collect(self, timeframe: Timeframe, snapshot: CategorySnapshot,
                 now: datetime) -> TimeframeContext:
        start, end = timeframe.window(now)
        window_minutes = (end - start).total_seconds() / 60
        try:
            events = self.collector.collect_range(start, end)
            status = COLLECTOR_STATUS_OK
        except CollectorUnavailable as e:
            logger.warning(f"Activity tracker unavailable for {timeframe.label}: {e}")
            events, status = [], COLLECTOR_STATUS_UNAVAILABLE
        except CollectorEmpty as e:
            logger.info(f"No activity for {timeframe.label}: {e}")
            events, status = [], COLLECTOR_STATUS_EMPTY

        classification = classify(events, snapshot.lookup, window_minutes, self.settings)
        return TimeframeContext(timeframe, events, classification, status)

    def _user_context(self, mode: Mode) -> str:
        user = self.user_config
        if user is None:
            return ""
        parts = [user.user_context] if user.user_context else []
        if mode is Mode.STUDY and user.study_focus:
            parts.append(f"Currently studying: {user.study_focus}")
        if mode is Mode.COACH and user.coach_task:
            parts.append(f"Current task: {user.coach_task}")
        return "\n".join(parts)

    def _publish(self, profile: ModeProfile, cadence: Cadence, forced: bool, now: datetime,
                 summary: Summary, classification: ClassificationResult) -> None:
        """Swap in the new Summary. Caller holds the lock."""
        if cadence is Cadence.DAILY:
            self._daily = summary
            self._daily_by_date[now.astimezone().date()] = summary
            for old in sorted(self._daily_by_date)[:-MAX_DAILY_DAYS]:
                del self._daily_by_date[old]
        else:
            self._current = summary
            self._last_classification = classification
        self._state.cycles_completed += 1
        self._state.history.append({
            "mode": profile.mode.value,
            "cadence": cadence.value,
            "forced": forced,
            "started_at": now.isoformat(),
            "source": summary.source.value,
        })
        del self._state.history[:-MAX_HISTORY]

    # Nudges

    def cooldown_for(self, state: ProductivityState) -> timedelta:
        """Hold-off after a nudge delivered in ``state``."""
        minutes = {
            ProductivityState.PRODUCTIVE: self.nudge_config.productive_cooldown_minutes,
            ProductivityState.MODERATE: self.nudge_config.moderate_cooldown_minutes,
            ProductivityState.CHILLING: self.nudge_config.chilling_cooldown_minutes,
            ProductivityState.UNPRODUCTIVE: self.nudge_config.unproductive_cooldown_minutes,
        }.get(state, 0)
        return timedelta(minutes=minutes)

    def _decide_nudge(self, profile: ModeProfile, classification: ClassificationResult,
                      summary: Summary, now: datetime) -> Optional[Nudge]:
        """Pick a nudge for this cycle and arm its cooldown. Caller holds the lock."""
        if not self.nudge_config.enabled or not profile.nudges or classification is None:
            return None
        state = classification.state
        if state is ProductivityState.AFK:
            return None
        hold = self._state.nudge_hold_until
        if hold is not None and now < hold:
            return None

        if profile.mode is Mode.COACH:
            title = "Progress check"
            message = f"{self.nudge_config.coach_message}\n\n{summary.text}"
        elif state is ProductivityState.UNPRODUCTIVE and profile.mode is Mode.STUDY:
            title = "Back to studying"
            message = self.nudge_config.study_message
        elif state is ProductivityState.UNPRODUCTIVE and profile.mode is Mode.CHILL:
            title = "Time for a break?"
            message = self.nudge_config.chill_message
        else:
            return None

        nudge = Nudge(mode=profile.mode, state=state, title=title, message=message, created_at=now)
        self._last_nudge = nudge
        self._state.last_nudge_at = now
        self._state.nudge_hold_until = now + self.cooldown_for(state)
        return nudge

    def _deliver(self, nudge: Nudge) -> None:
        logger.info(f"Nudge ({nudge.mode.value}/{nudge.state.value}): {nudge.title}")
        if self.notifier is None:
            return
        try:
            self.notifier(nudge)
        except Exception as e:
            logger.error(f"Nudge delivery failed: {e}", exc_info=True)

    def _categorize_unknown(self, events: Sequence[Event]) -> None:
        unknown = self.store.uncategorized_apps(e.app_name for e in events)
        if not unknown:
            return
        try:
            self.categorizer(unknown)
        except Exception as e:
            logger.warning(f"Auto-categorization of {len(unknown)} app(s) failed: {e}")

    # Persistence

    def _load_cache(self) -> None:
        if self.cache_path is None or not self.cache_path.exists():
            return
        try:
            with open(self.cache_path) as f:
                data = json.load(f) or {}
            if data.get("mode"):
                self._state.current_mode = Mode.parse(data["mode"])
            if data.get("current"):
                self._current = Summary.from_dict(data["current"])
            if data.get("daily"):
                self._daily = Summary.from_dict(data["daily"])
            for day, summary in (data.get("daily_history") or {}).items():
                self._daily_by_date[date.fromisoformat(day)] = Summary.from_dict(summary)
            logger.info(f"Restored {self._state.current_mode.value} mode from {self.cache_path}")
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to load summary cache from {self.cache_path}: {e}")

    def _save_cache(self) -> None:
        if self.cache_path is None:
            return
        with self._cond:
            data = {
                "mode": self._state.current_mode.value,
                "current": self._current.to_dict() if self._current else None,
                "daily": self._daily.to_dict() if self._daily else None,
                "daily_history": {
                    day.isoformat(): summary.to_dict() for day, summary in self._daily_by_date.items()
                },
            }
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.cache_path.with_suffix(self.cache_path.suffix + ".tmp")
            with open(tmp_path, "w") as f:
                json.dump(data, f, indent=2)
            tmp_path.replace(self.cache_path)
        except OSError as e:
            logger.error(f"Failed to save summary cache to {self.cache_path}: {e}")

    # Worker thread

    def start(self):
        """Start the background tick thread."""
        if self._running:
            logger.warning("Scheduler already running")
            return

        self._running = True
        # First tick right away rather than one tick_seconds later
        self._queue.put("tick")
        self._thread = threading.Thread(target=self._run_loop, name="companion-scheduler", daemon=True)
        self._thread.start()
        logger.info(f"Scheduler started in {self.current_mode.value} mode")

    def stop(self, timeout: float = 5):
        """Stop the tick thread. An in-flight cycle is not interrupted."""
        if not self._running:
            return

        self._running = False
        self._queue.put("stop")
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        logger.info("Scheduler stopped")

    def _wake(self):
        if self._running:
            self._queue.put("wake")

    def _run_loop(self):
        """Tick on every timeout and whenever a mode switch wakes the loop."""
        logger.info("Scheduler run loop started")

        while self._running:
            try:
                command = self._queue.get(timeout=self.tick_seconds)
            except queue.Empty:
                command = "tick"
            if command == "stop":
                break

            try:
                self.tick()
            except ConcurrencyGuardViolation:
                raise
            except Exception as e:
                logger.error(f"Scheduled cycle failed: {e}", exc_info=True)

        logger.info("Scheduler run loop stopped")
