"""Activity collection from the ActivityWatch REST API.

The collector fetches window-focus events and AFK events for a timeframe in a
single query call, keeps only the time the user was at the keyboard, and
merges consecutive events of the same app.

Filtering works on time, not on whole events: a window event that straddles
the start or end of an AFK period is clipped to its active part instead of
being dropped.

A tracker that cannot be reached raises CollectorUnavailable. A tracker that
answers with no events at all raises CollectorEmpty. An empty list means the
tracker had data but the user was AFK the whole time.

Example:
    >>> collector = ActivityCollector(ResourceManager(), "http://localhost:5600")
    >>> events = collector.collect(Timeframe.THIRTY_MINUTES)
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests
from dateutil import parser as dateutil_parser

from .errors import CollectorEmpty, CollectorUnavailable, DiscoveryError
from .models import AfkPeriod, Event, Timeframe, utcnow
from .resources import ResourceManager

logger = logging.getLogger(__name__)

WINDOW_BUCKET_PREFIX = "aw-watcher-window_"
AFK_BUCKET_PREFIX = "aw-watcher-afk_"


def parse_timestamp(value: str) -> datetime:
    """Parse an ActivityWatch ISO timestamp into an aware UTC datetime."""
    parsed = dateutil_parser.isoparse(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _parse_span(raw, kind: str) -> Optional[Tuple[datetime, datetime, dict]]:
    """Return (start, end, data) for a raw event, or None if malformed."""
    if not isinstance(raw, dict):
        logger.debug(f"Skipping non-object {kind} event {raw!r}")
        return None
    data = raw.get("data") or {}
    if not isinstance(data, dict):
        logger.debug(f"Skipping {kind} event with non-object data {raw!r}")
        return None
    try:
        start = parse_timestamp(raw["timestamp"])
        duration = float(raw.get("duration") or 0)
        if not math.isfinite(duration):
            raise ValueError(f"duration {duration}")
        end = start + timedelta(seconds=max(duration, 0))
    except (KeyError, TypeError, ValueError, AttributeError, OverflowError) as e:
        logger.debug(f"Skipping malformed {kind} event {raw!r}: {e}")
        return None
    return start, end, data


def parse_window_events(raw_events: Iterable[dict], source_id: str) -> List[Event]:
    """Convert raw window-watcher events into Events.

    Malformed events, events without an app name and events with a
    non-positive or non-finite duration are skipped.
    """
    events = []
    for raw in raw_events:
        span = _parse_span(raw, "window")
        if span is None:
            continue
        start, end, data = span
        app_name = data.get("app") or ""
        if not isinstance(app_name, str) or not app_name or end <= start:
            continue
        title = data.get("title") or ""
        events.append(Event(
            source_id=source_id,
            start=start,
            end=end,
            app_name=app_name,
            title=title if isinstance(title, str) else str(title),
        ))
    return events


def parse_afk_periods(raw_events: Iterable[dict]) -> List[AfkPeriod]:
    """Extract idle periods (``status == "afk"``) from AFK-watcher events."""
    periods = []
    for raw in raw_events:
        span = _parse_span(raw, "AFK")
        if span is None:
            continue
        start, end, data = span
        if data.get("status") == "afk" and end > start:
            periods.append(AfkPeriod(start=start, end=end))
    return periods


def merge_periods(periods: Iterable[AfkPeriod]) -> List[AfkPeriod]:
    """Sort AFK periods and merge the ones that touch or overlap."""
    merged: List[AfkPeriod] = []
    for period in sorted(periods, key=lambda p: p.start):
        if merged and period.start <= merged[-1].end:
            last = merged[-1]
            merged[-1] = AfkPeriod(start=last.start, end=max(last.end, period.end))
        else:
            merged.append(period)
    return merged


def clip_to_range(events: Iterable[Event], start: datetime, end: datetime) -> List[Event]:
    """Clip events to [start, end], dropping those fully outside it."""
    clipped = []
    for event in events:
        new_start = max(event.start, start)
        new_end = min(event.end, end)
        if new_start < new_end:
            clipped.append(Event(event.source_id, new_start, new_end, event.app_name, event.title))
    return clipped


def subtract_afk(events: Iterable[Event], afk_periods: Iterable[AfkPeriod]) -> List[Event]:
    """Keep only the parts of ``events`` that fall outside every AFK period.

    An event overlapping an AFK period is split into the pieces before and
    after it; pieces of zero length are dropped.
    """
    periods = merge_periods(afk_periods)
    active = []
    for event in sorted(events, key=lambda e: e.start):
        cursor = event.start
        for period in periods:
            if period.end <= cursor:
                continue
            if period.start >= event.end:
                break
            if period.start > cursor:
                active.append(Event(event.source_id, cursor, period.start, event.app_name, event.title))
            cursor = max(cursor, period.end)
            if cursor >= event.end:
                break
        if cursor < event.end:
            active.append(Event(event.source_id, cursor, event.end, event.app_name, event.title))
    return active


def remove_overlaps(events: Iterable[Event]) -> List[Event]:
    """Sort events and trim each one so it starts after the previous ends."""
    result: List[Event] = []
    for event in sorted(events, key=lambda e: (e.start, e.end)):
        start = event.start
        if result and start < result[-1].end:
            start = result[-1].end
        if start < event.end:
            result.append(Event(event.source_id, start, event.end, event.app_name, event.title))
    return result


def merge_events(events: Iterable[Event], max_gap_seconds: float = 5.0) -> List[Event]:
    """Merge consecutive events of the same app separated by a small gap.

    The merged event starts where the first one started and lasts for the
    sum of the merged durations, so the gap itself is not counted as
    activity. The most recent non-empty title is kept.
    """
    merged: List[Event] = []
    gap = timedelta(seconds=max_gap_seconds)
    # Gaps are measured from where the previous event really ended
    previous_end: Optional[datetime] = None
    for event in remove_overlaps(events):
        if merged and merged[-1].app_name == event.app_name and event.start - previous_end <= gap:
            last = merged[-1]
            merged[-1] = Event(
                source_id=last.source_id,
                start=last.start,
                end=last.end + event.duration,
                app_name=last.app_name,
                title=event.title or last.title,
            )
        else:
            merged.append(event)
        previous_end = event.end
    return merged


def active_seconds(events: Iterable[Event]) -> float:
    """Total duration of a list of events, in seconds."""
    return sum(e.seconds for e in events)


class ActivityCollector:
    """Queries ActivityWatch for AFK-filtered, merged window events.

    Each ``collect`` call causes at most one query request (plus a bucket
    discovery request when the cached bucket ids are missing or expired).
    Event data is never cached between calls.

    Attributes:
        host: ActivityWatch base URL.
        timeout: Request timeout in seconds.
        merge_gap_seconds: Maximum gap for merging same-app events.
        bucket_ttl: Seconds discovered bucket ids are reused.
    """

    def __init__(self, resources: ResourceManager, host: str = "http://localhost:5600",
                 timeout: float = 10, merge_gap_seconds: float = 5.0,
                 bucket_ttl: float = 300, clock: Callable[[], datetime] = utcnow):
        self.resources = resources
        self.host = host.rstrip("/")
        self.timeout = timeout
        self.merge_gap_seconds = merge_gap_seconds
        self.bucket_ttl = bucket_ttl
        self._clock = clock

    @property
    def _session(self) -> requests.Session:
        return self.resources.client_for(self.host)

    @property
    def _bucket_key(self) -> str:
        return f"aw_buckets:{self.host}"

    def _fetch_buckets(self) -> Dict[str, str]:
        """Discovery call: find the window and AFK bucket ids."""
        response = self._session.get(f"{self.host}/api/0/buckets/", timeout=self.timeout)
        response.raise_for_status()
        buckets = response.json()
        window_id = _pick_bucket(buckets, WINDOW_BUCKET_PREFIX)
        afk_id = _pick_bucket(buckets, AFK_BUCKET_PREFIX)
        if window_id is None or afk_id is None:
            raise DiscoveryError(
                f"ActivityWatch at {self.host} has no "
                f"{'window' if window_id is None else 'AFK'} watcher bucket"
            )
        logger.info(f"Discovered buckets: window={window_id}, afk={afk_id}")
        return {"window": window_id, "afk": afk_id}

    def discover_buckets(self) -> Dict[str, str]:
        """Return cached bucket ids, discovering them on miss or expiry.

        Raises:
            DiscoveryError: If discovery fails.
        """
        return self.resources.cached_metadata(self._bucket_key, self._fetch_buckets, ttl=self.bucket_ttl)

    def query(self, start: datetime, end: datetime) -> Tuple[List[dict], List[dict]]:
        """Run one ActivityWatch query returning raw window and AFK events.

        Raises:
            CollectorUnavailable: On discovery failure, transport error,
                HTTP error or an unparseable response.
        """
        try:
            buckets = self.discover_buckets()
        except DiscoveryError as e:
            raise CollectorUnavailable(str(e)) from e

        # ActivityWatch has trouble with sub-second precision
        period = f"{start.replace(microsecond=0).isoformat()}/{end.replace(microsecond=0).isoformat()}"
        payload = {
            "timeperiods": [period],
            "query": [
                f'window = query_bucket("{buckets["window"]}");',
                f'afk = query_bucket("{buckets["afk"]}");',
                'RETURN = {"window": window, "afk": afk};',
            ],
        }

        try:
            response = self._session.post(f"{self.host}/api/0/query/", json=payload, timeout=self.timeout)
            response.raise_for_status()
            result = response.json()
        except requests.exceptions.HTTPError as e:
            # Buckets may have been recreated; rediscover next time
            self.resources.invalidate(self._bucket_key)
            raise CollectorUnavailable(f"ActivityWatch query failed: {e}") from e
        except (requests.exceptions.RequestException, ValueError) as e:
            raise CollectorUnavailable(f"Cannot reach ActivityWatch at {self.host}: {e}") from e

        try:
            period_result = result[0]
            return list(period_result.get("window") or []), list(period_result.get("afk") or [])
        except (IndexError, KeyError, TypeError, AttributeError) as e:
            raise CollectorUnavailable(f"Unexpected ActivityWatch query response: {e}") from e

    def collect_range(self, start: datetime, end: datetime) -> List[Event]:
        """Collect active, merged events for an explicit time range.

        Raises:
            CollectorUnavailable: Tracker offline or answering garbage.
            CollectorEmpty: Tracker reachable but no events in the range.
        """
        raw_window, raw_afk = self.query(start, end)
        if not raw_window and not raw_afk:
            raise CollectorEmpty(f"No activity recorded between {start:%H:%M} and {end:%H:%M}")

        try:
            window_events = clip_to_range(parse_window_events(raw_window, "window"), start, end)
            afk_periods = parse_afk_periods(raw_afk)
            active = subtract_afk(window_events, afk_periods)
            events = merge_events(active, self.merge_gap_seconds)
        except (TypeError, ValueError, AttributeError, OverflowError) as e:
            raise CollectorUnavailable(f"Unexpected ActivityWatch event data: {e}") from e
        logger.debug(
            f"Collected {len(events)} events ({active_seconds(events) / 60:.1f} active min) "
            f"from {len(raw_window)} window / {len(afk_periods)} AFK events"
        )
        return events

    def collect(self, timeframe: Timeframe, now: Optional[datetime] = None) -> List[Event]:
        """Collect active, merged events for a timeframe ending now."""
        start, end = timeframe.window(now or self._clock())
        return self.collect_range(start, end)

    def is_available(self) -> bool:
        """Check whether the ActivityWatch server answers its info endpoint."""
        try:
            response = self._session.get(f"{self.host}/api/0/info", timeout=self.timeout)
            return response.status_code == 200
        except requests.exceptions.RequestException as e:
            logger.warning(f"Cannot connect to ActivityWatch at {self.host}: {e}")
            return False


def _pick_bucket(buckets: dict, prefix: str) -> Optional[str]:
    """Pick the most recently updated bucket whose id starts with ``prefix``."""
    candidates = [(bucket_id, info) for bucket_id, info in buckets.items() if bucket_id.startswith(prefix)]
    if not candidates:
        return None

    def updated(item):
        info = item[1] if isinstance(item[1], dict) else {}
        return info.get("last_updated") or info.get("created") or ""

    return sorted(candidates, key=updated, reverse=True)[0][0]
