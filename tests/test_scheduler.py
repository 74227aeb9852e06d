"""Tests for the mode-aware scheduler."""

import threading
import time
from datetime import timedelta

import pytest

from companion.collector import ActivityCollector
from companion.config import NudgeConfig, UserConfig
from companion.errors import CollectorEmpty, CollectorUnavailable
from companion.models import Mode, ProductivityState, SummarySource, Timeframe
from companion.scheduler import Scheduler, build_mode_profiles
from companion.summarizer import Summarizer

from conftest import (
    T0,
    FakeCollector,
    FakeResponse,
    FakeSession,
    FakeSummarizer,
    make_events,
    resources_with,
)


def productive_events():
    return make_events(T0, [("editor", 50), ("chat", 10)])


def unproductive_events():
    return make_events(T0, [("game", 50), ("editor", 10)])


@pytest.fixture
def collector():
    return FakeCollector(productive_events())


@pytest.fixture
def summarizer(clock):
    return FakeSummarizer(clock)


@pytest.fixture
def make_scheduler(collector, store, summarizer, clock):
    def factory(**kwargs):
        kwargs.setdefault("daily_refresh", None)
        return Scheduler(collector, store, summarizer, clock=clock, **kwargs)
    return factory


def run_in_thread(target, *args):
    result = {}

    def runner():
        result["value"] = target(*args)

    thread = threading.Thread(target=runner)
    thread.start()
    return thread, result


class TestModeProfiles:

    def test_defaults(self):
        profiles = build_mode_profiles()
        assert profiles[Mode.GHOST].interval == timedelta(minutes=60)
        assert profiles[Mode.CHILL].interval == timedelta(minutes=60)
        assert profiles[Mode.STUDY].interval == timedelta(minutes=5)
        assert profiles[Mode.COACH].interval == timedelta(minutes=15)
        assert {m for m, p in profiles.items() if p.immediate} == {Mode.STUDY, Mode.COACH}
        assert not profiles[Mode.GHOST].nudges
        assert profiles[Mode.STUDY].timeframe is Timeframe.FIVE_MINUTES


class TestTick:

    def test_first_tick_runs_and_publishes(self, make_scheduler, clock):
        scheduler = make_scheduler()
        assert scheduler.get_current_state() is None

        summary = scheduler.tick(clock())

        assert summary is not None
        assert scheduler.get_current_state() is summary
        assert summary.source is SummarySource.LLM
        assert summary.state == ProductivityState.PRODUCTIVE.value
        assert scheduler.status()["last_run_at"] == clock().isoformat()

    def test_interval_respected(self, make_scheduler, clock):
        scheduler = make_scheduler()
        assert scheduler.tick(clock()) is not None
        assert scheduler.tick(clock.advance(minutes=30)) is None
        assert scheduler.tick(clock.advance(minutes=29)) is None
        assert scheduler.tick(clock.advance(minutes=1)) is not None

    def test_cooldown_law(self, make_scheduler, clock):
        """Completed cycles in one mode are at least one interval apart."""
        scheduler = make_scheduler(initial_mode=Mode.STUDY)
        run_times = []
        for _ in range(60):
            if scheduler.tick(clock()) is not None:
                run_times.append(clock())
            clock.advance(minutes=1)

        assert len(run_times) == 12
        gaps = [b - a for a, b in zip(run_times, run_times[1:])]
        assert all(gap >= timedelta(minutes=5) for gap in gaps)

    def test_collector_unavailable_gives_afk_fallback(self, store, clock):
        """Tracker offline: AFK classification, fallback summary, cycle still counts."""
        collector = FakeCollector(error=CollectorUnavailable("connection refused"))
        llm = FakeSession()
        summarizer = Summarizer(resources_with({"http://ollama.test": llm}), host="http://ollama.test")
        scheduler = Scheduler(collector, store, summarizer, clock=clock, daily_refresh=None)

        summary = scheduler.tick(clock())

        assert summary.source is SummarySource.FALLBACK
        assert summary.state == "afk"
        assert summary.focus_score == 0
        assert scheduler.get_last_classification().state is ProductivityState.AFK
        assert scheduler.status()["last_run_at"] == clock().isoformat()
        assert llm.calls == []
        # Still a completed cycle: the interval applies
        assert scheduler.tick(clock.advance(minutes=1)) is None

    def test_empty_tracker_is_afk(self, make_scheduler, collector, clock):
        collector.error = CollectorEmpty("nothing recorded")
        summary = make_scheduler().tick(clock())
        assert summary.state == "afk"

    @pytest.mark.parametrize("query_result", [
        [{"window": [], "afk": ["not-an-object"]}],
        [{"window": [{"timestamp": "2026-10-18T13:50:00+00:00", "duration": 60, "data": "oops"}], "afk": []}],
        ["not-a-period"],
    ])
    def test_garbage_from_tracker_still_yields_summary(self, store, clock, query_result):
        aw = FakeSession({
            ("GET", "/api/0/buckets/"): FakeResponse({"aw-watcher-window_x": {}, "aw-watcher-afk_x": {}}),
            ("POST", "/api/0/query/"): FakeResponse(query_result),
        })
        collector = ActivityCollector(resources_with({"http://aw.test": aw}), "http://aw.test")
        llm = FakeSession()
        summarizer = Summarizer(resources_with({"http://ollama.test": llm}), host="http://ollama.test")
        scheduler = Scheduler(collector, store, summarizer, clock=clock, daily_refresh=None)

        summary = scheduler.request_cycle_now()

        assert summary.source is SummarySource.FALLBACK
        assert summary.state == "afk"
        assert scheduler.get_current_state() == summary

    def test_context_timeframes_collected(self, make_scheduler, summarizer, clock):
        scheduler = make_scheduler(initial_mode=Mode.COACH)
        scheduler.tick(clock())
        call = summarizer.calls[-1]
        assert call["timeframe"] is Timeframe.THIRTY_MINUTES
        assert call["others"] == [Timeframe.HOURLY]
        assert call["reactive"] is False

    def test_user_context_per_mode(self, make_scheduler, summarizer, clock):
        user = UserConfig(user_context="I write software.", study_focus="linear algebra", coach_task="ship v2")
        scheduler = make_scheduler(user_config=user, initial_mode=Mode.STUDY)
        scheduler.tick(clock())
        assert "linear algebra" in summarizer.calls[-1]["user_context"]
        assert "ship v2" not in summarizer.calls[-1]["user_context"]


class TestModeSwitch:

    def test_immediate_mode_forces_cycle(self, make_scheduler, summarizer, clock):
        scheduler = make_scheduler()
        scheduler.tick(clock())
        clock.advance(minutes=2)

        scheduler.set_mode("study")
        summary = scheduler.tick(clock())

        assert summary is not None
        assert summarizer.calls[-1]["mode"] is Mode.STUDY
        assert summarizer.calls[-1]["reactive"] is True
        assert scheduler.tick(clock.advance(minutes=4)) is None
        assert scheduler.tick(clock.advance(minutes=1)) is not None

    def test_non_immediate_mode_resets_baseline(self, make_scheduler, clock):
        scheduler = make_scheduler()
        scheduler.tick(clock())
        clock.advance(minutes=50)

        scheduler.set_mode(Mode.CHILL)

        assert scheduler.tick(clock.advance(minutes=11)) is None
        assert scheduler.tick(clock.advance(minutes=48)) is None
        assert scheduler.tick(clock.advance(minutes=1)) is not None

    def test_unknown_mode_rejected(self, make_scheduler):
        scheduler = make_scheduler()
        with pytest.raises(ValueError):
            scheduler.set_mode("turbo")
        assert scheduler.current_mode is Mode.GHOST

    def test_switch_during_cycle_does_not_abort_it(self, make_scheduler, collector, summarizer, clock):
        """Ghost cycle in flight, switch to study: ghost finishes, study runs next."""
        scheduler = make_scheduler()
        collector.block()
        thread, result = run_in_thread(scheduler.tick, clock())
        assert collector.started.wait(timeout=5)

        scheduler.set_mode("study")
        assert scheduler.current_mode is Mode.STUDY
        assert scheduler.status()["in_flight"] is True
        assert scheduler.tick(clock()) is None

        collector.release()
        thread.join(timeout=5)

        assert result["value"].text == "ghost summary"
        assert summarizer.calls[0]["mode"] is Mode.GHOST
        assert summarizer.calls[0]["timeframe"] is Timeframe.HOURLY

        follow_up = scheduler.tick(clock.advance(minutes=1))
        assert follow_up.text == "study summary"
        assert summarizer.calls[1]["timeframe"] is Timeframe.FIVE_MINUTES
        assert scheduler.tick(clock.advance(minutes=4)) is None
        assert scheduler.tick(clock.advance(minutes=1)) is not None


class TestConcurrency:

    def test_request_cycle_now_waits_for_in_flight_cycle(self, make_scheduler, collector, clock):
        scheduler = make_scheduler()
        collector.block()
        ticker, _ = run_in_thread(scheduler.tick, clock())
        assert collector.started.wait(timeout=5)

        requester, result = run_in_thread(scheduler.request_cycle_now, "coach")
        time.sleep(0.1)
        assert "value" not in result

        collector.release()
        ticker.join(timeout=5)
        requester.join(timeout=5)

        assert result["value"].text == "coach summary"
        assert scheduler.status()["cycles_completed"] == 2
        assert scheduler.current_mode is Mode.GHOST

    def test_wait_idle(self, make_scheduler, collector, clock):
        scheduler = make_scheduler()
        assert scheduler.wait_idle(timeout=0)

        collector.block()
        ticker, _ = run_in_thread(scheduler.tick, clock())
        assert collector.started.wait(timeout=5)
        assert scheduler.wait_idle(timeout=0.05) is False

        collector.release()
        assert scheduler.wait_idle(timeout=5) is True
        ticker.join(timeout=5)

    def test_never_two_cycles_at_once(self, make_scheduler, collector, clock):
        """Concurrent ticks, forced cycles and mode switches never overlap."""
        collector.delay = 0.005
        scheduler = make_scheduler(initial_mode=Mode.STUDY)
        errors = []

        def ticker():
            try:
                for _ in range(30):
                    scheduler.tick(clock())
            except Exception as e:
                errors.append(e)

        def forcer():
            try:
                for i in range(5):
                    scheduler.request_cycle_now()
                    scheduler.set_mode("coach" if i % 2 else "study")
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=ticker) for _ in range(3)]
        threads += [threading.Thread(target=forcer) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert errors == []
        assert collector.max_active == 1
        assert scheduler.status()["in_flight"] is False

    def test_readers_do_not_block_on_cycle(self, make_scheduler, collector, clock):
        scheduler = make_scheduler()
        scheduler.tick(clock())
        previous = scheduler.get_current_state()

        collector.block()
        thread, _ = run_in_thread(scheduler.request_cycle_now)
        assert collector.started.wait(timeout=5)

        started = time.monotonic()
        assert scheduler.get_current_state() is previous
        assert scheduler.status()["in_flight"] is True
        assert time.monotonic() - started < 1

        collector.release()
        thread.join(timeout=5)
        assert scheduler.get_current_state() is not previous


class TestNudges:

    def test_chill_nudges_when_unproductive(self, make_scheduler, collector, clock):
        collector.events = unproductive_events()
        delivered = []
        scheduler = make_scheduler(initial_mode=Mode.CHILL, notifier=delivered.append)

        scheduler.tick(clock())

        assert len(delivered) == 1
        nudge = delivered[0]
        assert nudge.mode is Mode.CHILL
        assert nudge.state is ProductivityState.UNPRODUCTIVE
        assert nudge.message == NudgeConfig().chill_message
        assert scheduler.get_last_nudge() is nudge
        assert scheduler.status()["nudge_hold_until"] == (clock() + timedelta(minutes=5)).isoformat()

    def test_no_nudge_when_productive_in_chill(self, make_scheduler, clock):
        delivered = []
        make_scheduler(initial_mode=Mode.CHILL, notifier=delivered.append).tick(clock())
        assert delivered == []

    def test_ghost_never_nudges(self, make_scheduler, collector, clock):
        collector.events = unproductive_events()
        delivered = []
        make_scheduler(notifier=delivered.append).tick(clock())
        assert delivered == []

    def test_afk_never_nudges(self, make_scheduler, collector, clock):
        collector.events = []
        delivered = []
        scheduler = make_scheduler(initial_mode=Mode.COACH, notifier=delivered.append)
        scheduler.tick(clock())
        assert delivered == []
        assert scheduler.get_current_state().state == "afk"

    def test_coach_checkin_holds_off_for_state_cooldown(self, make_scheduler, clock):
        """A productive check-in holds the next cycle for 45 minutes, not 15."""
        delivered = []
        scheduler = make_scheduler(initial_mode=Mode.COACH, notifier=delivered.append)

        scheduler.tick(clock())
        assert len(delivered) == 1
        assert delivered[0].title == "Progress check"

        assert scheduler.tick(clock.advance(minutes=15)) is None
        assert scheduler.tick(clock.advance(minutes=29)) is None
        assert scheduler.tick(clock.advance(minutes=1)) is not None
        assert len(delivered) == 2

    def test_study_nudge_short_cooldown(self, make_scheduler, collector, clock):
        collector.events = unproductive_events()
        delivered = []
        scheduler = make_scheduler(initial_mode=Mode.STUDY, notifier=delivered.append)
        for _ in range(11):
            scheduler.tick(clock())
            clock.advance(minutes=1)
        assert [n.created_at for n in delivered] == [T0, T0 + timedelta(minutes=5), T0 + timedelta(minutes=10)]

    def test_nudges_disabled(self, make_scheduler, collector, clock):
        collector.events = unproductive_events()
        delivered = []
        scheduler = make_scheduler(initial_mode=Mode.STUDY, notifier=delivered.append,
                                   nudge_config=NudgeConfig(enabled=False))
        scheduler.tick(clock())
        assert delivered == []

    def test_failing_notifier_does_not_break_cycle(self, make_scheduler, collector, clock):
        collector.events = unproductive_events()

        def broken(nudge):
            raise RuntimeError("display gone")

        scheduler = make_scheduler(initial_mode=Mode.STUDY, notifier=broken)
        assert scheduler.tick(clock()) is not None
        assert scheduler.status()["in_flight"] is False


class TestDailyCadence:

    def test_daily_summary_refreshed(self, make_scheduler, summarizer, clock):
        scheduler = make_scheduler(daily_refresh=timedelta(minutes=120))

        current = scheduler.tick(clock())
        daily = scheduler.tick(clock.advance(minutes=1))

        assert summarizer.calls[-1]["timeframe"] is Timeframe.DAILY
        assert daily.period_label == "today"
        assert scheduler.get_daily_summary() is daily
        assert scheduler.get_current_state() is current
        assert scheduler.tick(clock.advance(minutes=1)) is None

    def test_refresh_daily_now(self, make_scheduler):
        scheduler = make_scheduler()
        daily = scheduler.refresh_daily_now()
        assert scheduler.get_daily_summary() is daily
        assert scheduler.get_current_state() is None

    def test_daily_summaries_kept_per_date(self, make_scheduler, clock):
        scheduler = make_scheduler()
        first_day = clock().astimezone().date()
        first = scheduler.refresh_daily_now()
        clock.advance(minutes=24 * 60)
        second_day = clock().astimezone().date()
        second = scheduler.refresh_daily_now()

        assert scheduler.get_daily_summary() is second
        assert scheduler.get_daily_summary(first_day) is first
        assert scheduler.get_daily_summary(second_day) is second
        assert scheduler.daily_summary_dates() == [second_day, first_day]

    def test_daily_history_is_bounded(self, make_scheduler, clock):
        scheduler = make_scheduler()
        for _ in range(35):
            scheduler.refresh_daily_now()
            clock.advance(minutes=24 * 60)
        assert len(scheduler.daily_summary_dates()) == 30


class TestPersistence:

    def test_mode_and_summaries_survive_restart(self, make_scheduler, tmp_path, clock):
        path = tmp_path / "summaries.json"
        scheduler = make_scheduler(cache_path=path)
        scheduler.set_mode("coach")
        summary = scheduler.tick(clock())

        restored = make_scheduler(cache_path=path)

        assert restored.current_mode is Mode.COACH
        assert restored.get_current_state() == summary

    def test_daily_history_survives_restart(self, make_scheduler, tmp_path, clock):
        path = tmp_path / "summaries.json"
        scheduler = make_scheduler(cache_path=path)
        day = clock().astimezone().date()
        daily = scheduler.refresh_daily_now()

        restored = make_scheduler(cache_path=path)

        assert restored.daily_summary_dates() == [day]
        assert restored.get_daily_summary(day) == daily

    def test_corrupt_cache_ignored(self, make_scheduler, tmp_path):
        path = tmp_path / "summaries.json"
        path.write_text("{{{")
        scheduler = make_scheduler(cache_path=path)
        assert scheduler.current_mode is Mode.GHOST


class TestAutoCategorize:

    def test_unknown_apps_handed_to_categorizer(self, make_scheduler, collector, clock):
        collector.events = make_events(T0, [("editor", 30), ("blender", 20), ("krita", 10)])
        seen = []
        scheduler = make_scheduler(categorizer=seen.append)
        scheduler.tick(clock())
        assert seen == [["blender", "krita"]]


class TestWorkerThread:

    def test_start_runs_first_cycle_and_stops(self, make_scheduler):
        scheduler = make_scheduler(tick_seconds=60)
        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while scheduler.get_current_state() is None and time.monotonic() < deadline:
                time.sleep(0.01)
            assert scheduler.get_current_state() is not None
            assert scheduler.status()["running"] is True
        finally:
            scheduler.stop()
        assert scheduler.status()["running"] is False

    def test_mode_switch_wakes_worker(self, make_scheduler, summarizer):
        scheduler = make_scheduler(tick_seconds=60)
        scheduler.start()
        try:
            deadline = time.monotonic() + 5
            while not summarizer.calls and time.monotonic() < deadline:
                time.sleep(0.01)
            scheduler.set_mode("study")
            while len(summarizer.calls) < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert summarizer.calls[-1]["mode"] is Mode.STUDY
        finally:
            scheduler.stop()
