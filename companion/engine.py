"""Engine facade wiring the components together from configuration.

The engine is the single object the daemon and the web API talk to. It owns
the shared ResourceManager, the CategoryStore and the Scheduler, and exposes
the caller-facing operations: cached state reads, forced cycles, mode
switches and category edits.
"""

import logging
from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from .categories import CategoryStore
from .classifier import ClassifierSettings, app_breakdown, category_statistics, classify, hourly_breakdown
from .collector import ActivityCollector
from .config import ConfigManager
from .errors import CollectorEmpty
from .models import Category, ClassificationResult, Mode, Nudge, Summary, Timeframe, utcnow
from .resources import ResourceManager
from .scheduler import Scheduler, build_mode_profiles
from .summarizer import Summarizer

logger = logging.getLogger(__name__)

CATEGORIES_FILE = "categories.json"
SUMMARIES_FILE = "summaries.json"

HISTORY_RANGES = {
    "hour": Timeframe.HOURLY,
    "day": Timeframe.DAILY,
    "week": Timeframe.WEEKLY,
}


class CompanionEngine:
    """Activity classification and intervention engine.

    Attributes:
        config: ConfigManager the components were built from.
        resources: Shared HTTP sessions and metadata cache.
        store: Application category store.
        collector: ActivityWatch collector.
        summarizer: Ollama summarizer.
        scheduler: Background cycle scheduler.

    Example:
        >>> engine = CompanionEngine(ConfigManager())
        >>> engine.start()
        >>> engine.set_mode("study")
        >>> engine.get_current_state()
    """

    def __init__(self, config: ConfigManager, notifier: Optional[Callable[[Nudge], None]] = None,
                 resources: Optional[ResourceManager] = None):
        self.config = config
        cfg = config.config
        data_dir = config.data_dir

        self.resources = resources or ResourceManager(
            max_retries=cfg.activitywatch.max_retries,
            backoff_factor=cfg.activitywatch.backoff_factor,
            default_ttl=cfg.activitywatch.bucket_cache_ttl_seconds,
        )
        self.store = CategoryStore(data_dir / CATEGORIES_FILE)
        self.collector = ActivityCollector(
            self.resources,
            host=cfg.activitywatch.host,
            timeout=cfg.activitywatch.request_timeout_seconds,
            merge_gap_seconds=cfg.activitywatch.merge_gap_seconds,
            bucket_ttl=cfg.activitywatch.bucket_cache_ttl_seconds,
        )
        self.summarizer = Summarizer.from_config(self.resources, cfg.ollama)

        daily_minutes = cfg.modes.daily_refresh_minutes
        self.scheduler = Scheduler(
            self.collector,
            self.store,
            self.summarizer,
            profiles=build_mode_profiles(cfg.modes),
            settings=ClassifierSettings.from_config(cfg.classification),
            nudge_config=cfg.nudges,
            user_config=cfg.user,
            initial_mode=Mode.parse(cfg.modes.initial_mode),
            tick_seconds=cfg.modes.tick_seconds,
            daily_refresh=_minutes(daily_minutes),
            cache_path=data_dir / SUMMARIES_FILE,
            notifier=notifier,
            categorizer=self.categorize_unknown_apps if cfg.storage.auto_categorize else None,
        )

    def start(self):
        self.scheduler.start()

    def stop(self):
        """Stop the scheduler, then close the pooled sessions once no cycle uses them."""
        grace = self.summarizer.analysis_timeout + 2 * self.collector.timeout + 5
        self.scheduler.stop(timeout=grace)
        if self.scheduler.wait_idle(timeout=grace):
            self.resources.close()
        else:
            logger.warning("A cycle is still running; leaving HTTP sessions open")

    # Summaries and modes

    def get_current_state(self) -> Optional[Summary]:
        """Latest summary, straight from the cache."""
        return self.scheduler.get_current_state()

    def get_daily_summary(self, day: Optional[date] = None) -> Optional[Summary]:
        return self.scheduler.get_daily_summary(day)

    def daily_summary_dates(self) -> List[date]:
        return self.scheduler.daily_summary_dates()

    def get_last_nudge(self) -> Optional[Nudge]:
        return self.scheduler.get_last_nudge()

    def get_last_classification(self) -> Optional[ClassificationResult]:
        return self.scheduler.get_last_classification()

    def request_cycle_now(self, mode=None) -> Summary:
        """Run a cycle and block until its Summary is available."""
        return self.scheduler.request_cycle_now(mode)

    def set_mode(self, mode) -> Mode:
        return self.scheduler.set_mode(mode)

    @property
    def current_mode(self) -> Mode:
        return self.scheduler.current_mode

    # History

    def activity_history(self, time_range: str = "day", top_apps: int = 10) -> Dict:
        """Category statistics, hourly breakdown and top apps for a range.

        Args:
            time_range: ``hour``, ``day`` (since local midnight) or ``week``.
            top_apps: Number of apps to list.

        Raises:
            ValueError: Unknown range.
            CollectorUnavailable: ActivityWatch cannot be queried.
        """
        timeframe = HISTORY_RANGES.get(time_range)
        if timeframe is None:
            raise ValueError(f"Invalid time range: {time_range!r} (expected one of {sorted(HISTORY_RANGES)})")

        start, end = timeframe.window(utcnow())
        try:
            events = self.collector.collect_range(start, end)
        except CollectorEmpty:
            events = []

        settings = self.scheduler.settings
        lookup = self.store.snapshot().lookup
        return {
            "time_range": time_range,
            "start": start.isoformat(),
            "end": end.isoformat(),
            "classification": classify(events, lookup, (end - start).total_seconds() / 60, settings).to_dict(),
            "category_statistics": category_statistics(events, lookup),
            "hourly_breakdown": hourly_breakdown(events, lookup, settings),
            "top_apps": app_breakdown(events, lookup, limit=top_apps),
        }

    # Categories

    def update_category(self, app_name: str, fields: Mapping) -> Category:
        return self.store.update(app_name, fields)

    def bulk_update_categories(self, records: Iterable[Mapping]) -> List[Category]:
        return self.store.bulk_update(records)

    def list_categories(self) -> List[Category]:
        return self.store.list_categories()

    def categorize_unknown_apps(self, app_names: Iterable[str]) -> List[Category]:
        """Ask the model to categorize apps the store does not know yet.

        Raises:
            SummarizerUnavailable: If the model cannot be reached.
            ValidationError: If the model proposed an invalid entry; nothing
                is stored in that case.
        """
        unknown = self.store.uncategorized_apps(app_names)
        if not unknown:
            return []
        records = self.summarizer.suggest_categories(unknown)
        if not records:
            return []
        categories = self.store.bulk_update(records)
        logger.info(f"Auto-categorized {len(categories)} app(s): {[c.app_name for c in categories]}")
        return categories

    # Services

    def list_models(self) -> List[str]:
        return self.summarizer.list_models()

    def check_connections(self) -> Dict[str, bool]:
        """Probe ActivityWatch and Ollama."""
        return {
            "activitywatch": self.collector.is_available(),
            "ollama": self.summarizer.is_available(),
        }

    def status(self) -> Dict:
        """Scheduler bookkeeping plus cached results, for the status endpoint."""
        current = self.get_current_state()
        daily = self.get_daily_summary()
        classification = self.get_last_classification()
        return {
            "scheduler": self.scheduler.status(),
            "current": current.to_dict() if current else None,
            "daily": daily.to_dict() if daily else None,
            "classification": classification.to_dict() if classification else None,
            "categories": len(self.store.list_categories()),
        }


def _minutes(value) -> Optional[timedelta]:
    if not value or value <= 0:
        return None
    return timedelta(minutes=value)


def create_engine(config_path: Optional[Path] = None,
                  notifier: Optional[Callable[[Nudge], None]] = None) -> CompanionEngine:
    """Build an engine from the config file at ``config_path`` (or the default)."""
    return CompanionEngine(ConfigManager(config_path), notifier=notifier)
