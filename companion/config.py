"""Configuration management for Companion Cube.

This module provides a hierarchical configuration system using YAML files and
Python dataclasses. Every tuning constant of the engine (state thresholds,
mode intervals, nudge cooldowns, service endpoints) lives here so that it can
be changed without touching code.

Configuration Sections:
- activitywatch: Activity tracker endpoint, retries and bucket cache
- ollama: Language model endpoint, model and timeouts
- classification: State thresholds and category buckets
- modes: Per-mode analysis intervals and scheduler resolution
- nudges: State-triggered cooldowns and notification texts
- user: Free-text context handed to the model
- storage: Where categories and cached summaries are kept
- web: JSON API server

Example:
    >>> from companion.config import ConfigManager
    >>> config_mgr = ConfigManager()
    >>> print(config_mgr.config.modes.study_interval_minutes)
    5
    >>> config_mgr.update('classification', 'high_threshold', 75)
"""

import dataclasses
import logging
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)


@dataclass
class ActivityWatchConfig:
    """Activity tracker (ActivityWatch) connection settings.

    Attributes:
        host: Base URL of the ActivityWatch server (default: http://localhost:5600)
        request_timeout_seconds: Per-request timeout (default: 10)
        max_retries: Transport retries for transient errors (default: 2)
        backoff_factor: Exponential backoff factor between retries (default: 0.5)
        bucket_cache_ttl_seconds: How long discovered bucket ids are reused (default: 300)
        merge_gap_seconds: Same-app events closer than this are merged (default: 5.0)
    """
    host: str = "http://localhost:5600"
    request_timeout_seconds: float = 10
    max_retries: int = 2
    backoff_factor: float = 0.5
    bucket_cache_ttl_seconds: int = 300
    merge_gap_seconds: float = 5.0


@dataclass
class OllamaConfig:
    """Language model settings.

    Attributes:
        host: Ollama API base URL (default: http://localhost:11434)
        model: Model name (default: mistral)
        temperature: Sampling temperature, kept low for reproducibility (default: 0.3)
        num_predict: Maximum tokens to generate (default: 300)
        nudge_timeout_seconds: Timeout for reactive nudge cycles (default: 10)
        analysis_timeout_seconds: Timeout for full analyses (default: 30)
        keep_alive: How long Ollama keeps the model loaded (default: 5m)
    """
    host: str = "http://localhost:11434"
    model: str = "mistral"
    temperature: float = 0.3
    num_predict: int = 300
    nudge_timeout_seconds: float = 10
    analysis_timeout_seconds: float = 30
    keep_alive: str = "5m"


@dataclass
class ClassificationConfig:
    """State derivation thresholds.

    Thresholds are inclusive on the upper state: a focus score equal to
    ``high_threshold`` is productive.

    Attributes:
        high_threshold: Focus score for "productive" (default: 70)
        mid_threshold: Focus score for "moderate" (default: 50)
        low_threshold: Focus score for "chilling" (default: 30)
        work_score_threshold: Apps scoring at least this count as work (default: 70)
        min_active_minutes: Below this many active minutes, state is afk (default: 1.0)
        work_categories: Categories counted as work
        communication_categories: Categories counted as communication
        rapid_switch_count: App switches that make a burst (default: 5)
        rapid_switch_window_seconds: Time window for a burst (default: 120)
    """
    high_threshold: float = 70
    mid_threshold: float = 50
    low_threshold: float = 30
    work_score_threshold: float = 70
    min_active_minutes: float = 1.0
    work_categories: list[str] = field(default_factory=lambda: [
        "work",
        "development",
        "productivity",
    ])
    communication_categories: list[str] = field(default_factory=lambda: [
        "communication",
    ])
    rapid_switch_count: int = 5
    rapid_switch_window_seconds: int = 120


@dataclass
class ModesConfig:
    """Scheduler cadence per mode.

    Attributes:
        initial_mode: Mode used when nothing was persisted (default: ghost)
        ghost_interval_minutes: Ghost mode analysis interval (default: 60)
        chill_interval_minutes: Chill mode analysis interval (default: 60)
        study_interval_minutes: Study mode analysis interval (default: 5)
        coach_interval_minutes: Coach mode analysis interval (default: 15)
        tick_seconds: Scheduler resolution (default: 60)
        daily_refresh_minutes: How often the daily summary is rebuilt (default: 120)
    """
    initial_mode: str = "ghost"
    ghost_interval_minutes: int = 60
    chill_interval_minutes: int = 60
    study_interval_minutes: int = 5
    coach_interval_minutes: int = 15
    tick_seconds: float = 60
    daily_refresh_minutes: int = 120


@dataclass
class NudgeConfig:
    """State-triggered intervention settings.

    Cooldowns are minutes that must pass after a nudge before the next one.
    AFK never triggers a nudge.

    Attributes:
        enabled: Deliver nudges at all (default: True)
        productive_cooldown_minutes: After a nudge in flow (default: 45)
        moderate_cooldown_minutes: After a nudge while working (default: 15)
        chilling_cooldown_minutes: After a nudge while chilling (default: 15)
        unproductive_cooldown_minutes: After a needs-nudge nudge (default: 5)
        chill_message, study_message, coach_message: Notification texts
    """
    enabled: bool = True
    productive_cooldown_minutes: int = 45
    moderate_cooldown_minutes: int = 15
    chilling_cooldown_minutes: int = 15
    unproductive_cooldown_minutes: int = 5
    chill_message: str = (
        "Hey! You've been having fun for a while now. Maybe it's time to take "
        "a break or switch to something productive?"
    )
    study_message: str = "Looks like you got distracted from studying. Let's get back on track!"
    coach_message: str = "Time to check your progress! Please review and update your todo list."


@dataclass
class UserConfig:
    """Free-text context given to the language model.

    Attributes:
        user_context: General description of the user and their goals
        study_focus: What the user is studying (study mode)
        coach_task: What the user wants to get done (coach mode)
    """
    user_context: str = "I am a person with ADHD looking to improve my productivity."
    study_focus: str = ""
    coach_task: str = ""


@dataclass
class StorageConfig:
    """Local data location.

    Attributes:
        data_dir: Directory for categories.json and summaries.json
        auto_categorize: Ask the model to categorize unknown apps after cycles (default: False)
    """
    data_dir: str = "~/.local/share/companion-cube"
    auto_categorize: bool = False


@dataclass
class WebConfig:
    """JSON API server configuration.

    Attributes:
        host: Host address to bind to (default: 127.0.0.1)
        port: Port number (default: 55556)
    """
    host: str = "127.0.0.1"
    port: int = 55556


@dataclass
class Config:
    """Top-level configuration container."""
    activitywatch: ActivityWatchConfig = field(default_factory=ActivityWatchConfig)
    ollama: OllamaConfig = field(default_factory=OllamaConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    modes: ModesConfig = field(default_factory=ModesConfig)
    nudges: NudgeConfig = field(default_factory=NudgeConfig)
    user: UserConfig = field(default_factory=UserConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    web: WebConfig = field(default_factory=WebConfig)


_SECTIONS = {f.name: f.type for f in dataclasses.fields(Config)}


class ConfigManager:
    """Manages configuration loading, saving, and updates.

    Handles YAML configuration file I/O with automatic creation of default
    configuration and merging of user settings with defaults.

    Attributes:
        DEFAULT_PATH: Default configuration file location
        path: Actual configuration file path being used
        config: Current configuration object

    Example:
        >>> config_mgr = ConfigManager()
        >>> config_mgr.update('modes', 'study_interval_minutes', 10)
    """

    DEFAULT_PATH = Path("~/.config/companion-cube/config.yaml").expanduser()

    def __init__(self, path: Optional[Path] = None):
        """Initialize ConfigManager.

        Args:
            path: Custom config file path (uses DEFAULT_PATH if None)
        """
        self.path = Path(path).expanduser() if path else self.DEFAULT_PATH
        self.config = self._load()

    def _load(self) -> Config:
        """Load configuration from YAML file.

        Returns:
            Config object with loaded or default values

        Note:
            Missing fields use defaults from dataclass definitions.
            Invalid YAML returns default Config.
        """
        if self.path.exists():
            try:
                with open(self.path) as f:
                    data = yaml.safe_load(f) or {}
                logger.info(f"Loaded configuration from {self.path}")
                return self._dict_to_config(data)
            except (yaml.YAMLError, OSError, TypeError) as e:
                logger.warning(f"Failed to load config from {self.path}: {e}")
                logger.info("Using default configuration")
                return Config()
        else:
            logger.info(f"No config file at {self.path}, using defaults")
            return Config()

    def _dict_to_config(self, data: dict) -> Config:
        """Construct Config from a dictionary, section by section.

        Missing keys use dataclass defaults. Unknown keys are dropped so that
        older or newer config files still load.
        """
        def filter_known_fields(data_dict, dataclass_type) -> dict:
            if not isinstance(data_dict, dict):
                return {}
            known_fields = {f.name for f in dataclasses.fields(dataclass_type)}
            filtered = {k: v for k, v in data_dict.items() if k in known_fields}
            unknown = set(data_dict.keys()) - known_fields
            if unknown:
                logger.debug(f"Ignoring unknown config fields: {unknown}")
            return filtered

        sections = {}
        for name, section_type in _SECTIONS.items():
            sections[name] = section_type(**filter_known_fields(data.get(name, {}), section_type))
        return Config(**sections)

    def save(self) -> None:
        """Save current configuration to YAML file.

        Raises:
            OSError: If file write fails
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                yaml.dump(
                    asdict(self.config),
                    f,
                    default_flow_style=False,
                    sort_keys=False,
                    indent=2
                )
            logger.info(f"Saved configuration to {self.path}")
        except OSError as e:
            logger.error(f"Failed to save config to {self.path}: {e}")
            raise

    def update(self, section: str, key: str, value) -> bool:
        """Update a single configuration value and save.

        Args:
            section: Config section name (e.g., 'modes', 'nudges')
            key: Setting name within section (e.g., 'study_interval_minutes')
            value: New value to set

        Returns:
            True if value was changed and saved, False if unchanged or invalid
        """
        section_obj = getattr(self.config, section, None)
        if section_obj is None or section not in _SECTIONS:
            logger.warning(f"Invalid config section: {section}")
            return False

        if not hasattr(section_obj, key):
            logger.warning(f"Invalid config key: {section}.{key}")
            return False

        old_value = getattr(section_obj, key)
        if old_value != value:
            setattr(section_obj, key, value)
            self.save()
            logger.info(f"Updated {section}.{key}: {old_value} -> {value}")
            return True

        logger.debug(f"No change for {section}.{key} (already {value})")
        return False

    def to_dict(self) -> dict:
        """Convert configuration to dictionary."""
        return asdict(self.config)

    def reload(self) -> None:
        """Reload configuration from file."""
        self.config = self._load()
        logger.info("Configuration reloaded")

    def create_default_file(self) -> None:
        """Create the config file with default values if it doesn't exist."""
        if not self.path.exists():
            self.save()
            logger.info(f"Created default configuration at {self.path}")
        else:
            logger.warning(f"Configuration file already exists at {self.path}")

    @property
    def data_dir(self) -> Path:
        """Expanded data directory path."""
        return Path(self.config.storage.data_dir).expanduser()


# Singleton instance for easy access throughout the application
_default_config_manager: Optional[ConfigManager] = None


def get_config_manager(path: Optional[Path] = None) -> ConfigManager:
    """Get or create the default ConfigManager instance.

    Args:
        path: Optional custom config path (only used on first call)

    Returns:
        ConfigManager singleton instance
    """
    global _default_config_manager
    if _default_config_manager is None:
        _default_config_manager = ConfigManager(path)
    return _default_config_manager
