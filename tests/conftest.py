"""Shared fakes for the engine tests.

No test talks to a real ActivityWatch or Ollama server: HTTP goes through
FakeSession, which is planted in a ResourceManager in place of a pooled
requests.Session.
"""

import threading
import time
from datetime import datetime, timedelta, timezone

import pytest
import requests

from companion.categories import CategoryStore
from companion.models import Event, Summary, SummarySource
from companion.resources import ResourceManager

T0 = datetime(2026, 10, 18, 14, 0, 0, tzinfo=timezone.utc)


class FakeResponse:
    def __init__(self, json_data=None, status_code=200):
        self._json = json_data
        self.status_code = status_code

    def json(self):
        if isinstance(self._json, Exception):
            raise self._json
        return self._json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Stands in for requests.Session; routes by (method, path suffix).

    A route value may be a FakeResponse, an exception instance (raised) or a
    callable taking the call kwargs and returning either.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def _handle(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        for (route_method, suffix), result in self.routes.items():
            if route_method == method and url.endswith(suffix):
                if callable(result) and not isinstance(result, FakeResponse):
                    result = result(**kwargs)
                if isinstance(result, Exception):
                    raise result
                return result
        raise requests.exceptions.ConnectionError(f"No route for {method} {url}")

    def get(self, url, **kwargs):
        return self._handle("GET", url, **kwargs)

    def post(self, url, **kwargs):
        return self._handle("POST", url, **kwargs)

    def calls_to(self, method, suffix):
        return [c for c in self.calls if c[0] == method and c[1].endswith(suffix)]

    def close(self):
        pass


def resources_with(sessions, **kwargs) -> ResourceManager:
    """ResourceManager whose pooled sessions are the given fakes."""
    resources = ResourceManager(**kwargs)
    for endpoint, session in sessions.items():
        resources._sessions[endpoint.rstrip("/")] = session
    return resources


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, minutes=0, seconds=0):
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now


def make_events(end, spans, gap_seconds=0):
    """Back-to-back events ending at ``end``; spans are (app, minutes)."""
    total = sum(minutes for _, minutes in spans) * 60 + gap_seconds * max(len(spans) - 1, 0)
    cursor = end - timedelta(seconds=total)
    events = []
    for app, minutes in spans:
        stop = cursor + timedelta(minutes=minutes)
        events.append(Event("window", cursor, stop, app, f"{app} window"))
        cursor = stop + timedelta(seconds=gap_seconds)
    return events


class FakeCollector:
    """Collector returning canned events, optionally blocking mid-cycle."""

    def __init__(self, events=None, error=None, delay=0.0):
        self.events = list(events or [])
        self.error = error
        self.delay = delay
        self.gate = None
        self.started = threading.Event()
        self.calls = []
        self._lock = threading.Lock()
        self.active = 0
        self.max_active = 0

    def block(self):
        """Make the next collect wait until ``release`` is called."""
        self.gate = threading.Event()
        self.started.clear()

    def release(self):
        if self.gate is not None:
            self.gate.set()

    def collect_range(self, start, end):
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
            self.calls.append((start, end))
        try:
            self.started.set()
            if self.gate is not None:
                gate = self.gate
                assert gate.wait(timeout=5), "collector gate never released"
                self.gate = None
            if self.delay:
                time.sleep(self.delay)
            if self.error is not None:
                raise self.error
            return list(self.events)
        finally:
            with self._lock:
                self.active -= 1


class FakeSummarizer:
    """Summarizer returning an LLM-tagged summary naming the mode it ran under."""

    def __init__(self, clock=None):
        self.calls = []
        self._clock = clock

    def summarize(self, classification, context, user_context="", reactive=False):
        self.calls.append({
            "mode": context.mode,
            "timeframe": context.primary.timeframe,
            "reactive": reactive,
            "user_context": user_context,
            "others": [o.timeframe for o in context.others],
        })
        return Summary(
            text=f"{context.mode.value} summary",
            focus_score=classification.focus_score,
            generated_at=self._clock() if self._clock else T0,
            period_label=context.period_label,
            source=SummarySource.LLM,
            state=classification.state.value,
        )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    store = CategoryStore(None, seed_defaults=False)
    store.bulk_update([
        {"app_name": "editor", "category": "development", "productivity_score": 90},
        {"app_name": "chat", "category": "communication", "productivity_score": 50},
        {"app_name": "game", "category": "entertainment", "productivity_score": 10},
    ])
    return store
