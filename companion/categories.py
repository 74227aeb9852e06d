"""Application category store.

Maps normalized application names to a category and a 0-100 productivity
score. Lookups never fail: an unknown app gets a synthesized
``uncategorized`` entry with score 50 that is not stored.

The mapping is copy-on-write. Every update builds a new dict and swaps it in
under the lock, so a classification cycle holding a snapshot sees either the
whole old store or the whole new one.

Persistence is a JSON list of ``{app_name, category, subcategory,
productivity_score}`` records. When no file exists yet, the store starts from
a built-in table of common applications.
"""

import json
import logging
import threading
from pathlib import Path
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .errors import ValidationError
from .models import Category

logger = logging.getLogger(__name__)

UNCATEGORIZED = "uncategorized"
DEFAULT_SCORE = 50

UPDATABLE_FIELDS = {"category", "subcategory", "productivity_score"}

# (category, subcategory, productivity_score)
DEFAULT_CATEGORIES = {
    # Gaming
    "steamwebhelper": ("entertainment", "gaming", 10),
    "steam": ("entertainment", "gaming", 10),
    "cs2": ("entertainment", "gaming", 0),
    # Development
    "code": ("development", "ide", 95),
    "devenv": ("development", "ide", 95),
    "windowsterminal": ("development", "terminal", 85),
    "cmd": ("development", "terminal", 80),
    "powershell": ("development", "terminal", 80),
    # Browsers
    "brave": ("productivity", "browser", 60),
    "chrome": ("productivity", "browser", 60),
    "firefox": ("productivity", "browser", 60),
    "edge": ("productivity", "browser", 60),
    # Communication
    "discord": ("communication", "chat", 40),
    "slack": ("communication", "chat", 50),
    "teams": ("communication", "chat", 50),
    "zoom": ("communication", "video", 60),
    # System
    "explorer": ("system", "file_manager", 50),
    "taskmgr": ("system", "utility", 50),
    "settings": ("system", "settings", 50),
    # Notes and tasks
    "obsidian": ("productivity", "notes", 85),
    "notion": ("productivity", "notes", 85),
    "todoist": ("productivity", "tasks", 90),
    # Entertainment
    "spotify": ("entertainment", "music", 30),
    "vlc": ("entertainment", "video", 20),
    # Office
    "outlook": ("work", "email", 70),
    "excel": ("work", "office", 80),
    "word": ("work", "office", 80),
    "powerpoint": ("work", "office", 70),
}


def normalize_app_name(app_name: str) -> str:
    """Normalize an app identity for use as a store key.

    Strips directories and a trailing ``.exe`` and lower-cases the result,
    so ``C:\\Program Files\\Code.exe`` and ``code`` are the same app.
    """
    if app_name is None:
        return ""
    name = str(app_name).strip().replace("\\", "/").split("/")[-1]
    if name.lower().endswith(".exe"):
        name = name[:-4]
    return name.strip().lower()


def default_categories() -> Dict[str, Category]:
    """Build the built-in category table."""
    return {
        name: Category(app_name=name, category=cat, subcategory=sub, productivity_score=score)
        for name, (cat, sub, score) in DEFAULT_CATEGORIES.items()
    }


def _validate(app_name: str, fields: Mapping, existing: Optional[Category]) -> Category:
    """Merge ``fields`` into ``existing`` and validate the result.

    Raises:
        ValidationError: Empty key, unknown field, empty category or a score
            outside 0-100.
    """
    key = normalize_app_name(app_name)
    if not key:
        raise ValidationError("app_name must not be empty")

    if not isinstance(fields, Mapping):
        raise ValidationError(f"Fields for {key!r} must be a mapping")
    unknown = set(fields) - UPDATABLE_FIELDS - {"app_name"}
    if unknown:
        raise ValidationError(f"Unknown category fields for {key!r}: {sorted(unknown)}")

    base = existing or Category(app_name=key)
    category = fields.get("category", base.category)
    if not isinstance(category, str) or not category.strip():
        raise ValidationError(f"Category for {key!r} must be a non-empty string")

    subcategory = fields.get("subcategory", base.subcategory)
    if subcategory is not None and not isinstance(subcategory, str):
        raise ValidationError(f"Subcategory for {key!r} must be a string or null")

    score = fields.get("productivity_score", base.productivity_score)
    if isinstance(score, bool):
        raise ValidationError(f"productivity_score for {key!r} must be a number")
    try:
        numeric = float(score)
    except (TypeError, ValueError):
        raise ValidationError(f"productivity_score for {key!r} must be a number") from None
    if not 0 <= numeric <= 100 or numeric != int(numeric):
        raise ValidationError(
            f"productivity_score for {key!r} must be an integer in 0-100, got {score}"
        )

    return Category(
        app_name=key,
        category=category.strip().lower(),
        subcategory=subcategory or None,
        productivity_score=int(numeric),
    )


class CategorySnapshot:
    """Read-only, point-in-time view of the store used by one cycle."""

    def __init__(self, categories: Mapping[str, Category]):
        self._categories = categories

    def lookup(self, app_name: str) -> Category:
        key = normalize_app_name(app_name)
        found = self._categories.get(key)
        if found is not None:
            return found
        return Category(app_name=key, category=UNCATEGORIZED, productivity_score=DEFAULT_SCORE)

    def __contains__(self, app_name) -> bool:
        return normalize_app_name(app_name) in self._categories

    def __len__(self) -> int:
        return len(self._categories)


class CategoryStore:
    """Thread-safe app -> Category mapping with JSON persistence.

    Attributes:
        path: JSON file the store is saved to, or None for in-memory only.

    Example:
        >>> store = CategoryStore()
        >>> store.lookup("Code.exe").productivity_score
        95
        >>> store.update("blender", {"category": "work", "productivity_score": 80})
    """

    def __init__(self, path: Optional[Path] = None, seed_defaults: bool = True):
        """Initialize the store.

        Args:
            path: JSON file to load from and save to. If it does not exist,
                the store starts from the built-in defaults (when
                ``seed_defaults``) and is written on the first update.
            seed_defaults: Start from the built-in table when nothing is
                persisted yet.
        """
        self.path = Path(path).expanduser() if path else None
        self._lock = threading.Lock()
        self._categories: Mapping[str, Category] = MappingProxyType(
            self._load(seed_defaults)
        )

    def _load(self, seed_defaults: bool) -> Dict[str, Category]:
        if self.path is not None and self.path.exists():
            try:
                with open(self.path) as f:
                    records = json.load(f) or []
                categories = {}
                for index, record in enumerate(records):
                    if not isinstance(record, Mapping):
                        logger.warning(f"Skipping category record {index} in {self.path}: not an object")
                        continue
                    fields = {k: v for k, v in record.items() if k != "app_name"}
                    try:
                        category = _validate(record.get("app_name", ""), fields, None)
                    except ValidationError as e:
                        logger.warning(f"Skipping category record {index} in {self.path}: {e}")
                        continue
                    categories[category.app_name] = category
                logger.info(f"Loaded {len(categories)} categories from {self.path}")
                return categories
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.warning(f"Failed to load categories from {self.path}: {e}")
        return default_categories() if seed_defaults else {}

    def _save(self, categories: Mapping[str, Category]) -> None:
        if self.path is None:
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        records = [c.to_dict() for c in sorted(categories.values(), key=lambda c: c.app_name)]
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with open(tmp_path, "w") as f:
            json.dump(records, f, indent=2)
        tmp_path.replace(self.path)

    def snapshot(self) -> CategorySnapshot:
        """Consistent view for a whole classification cycle."""
        with self._lock:
            return CategorySnapshot(self._categories)

    def lookup(self, app_name: str) -> Category:
        """Return the stored Category, or a synthesized default on miss."""
        return self.snapshot().lookup(app_name)

    def list_categories(self) -> List[Category]:
        """All stored categories, sorted by app name."""
        with self._lock:
            categories = self._categories
        return sorted(categories.values(), key=lambda c: c.app_name)

    def uncategorized_apps(self, app_names: Iterable[str]) -> List[str]:
        """Normalized names from ``app_names`` that have no stored entry."""
        snapshot = self.snapshot()
        missing = []
        for name in app_names:
            key = normalize_app_name(name)
            if key and key not in snapshot and key not in missing:
                missing.append(key)
        return missing

    def update(self, app_name: str, fields: Mapping) -> Category:
        """Create or change one entry. Last writer wins.

        Raises:
            ValidationError: On an empty app name or invalid fields; the
                store is left unmodified.
        """
        return self.bulk_update([dict(fields, app_name=app_name)])[0]

    def bulk_update(self, records: Iterable[Mapping]) -> List[Category]:
        """Apply a batch of updates, all or nothing.

        Every record is validated against the current store before anything
        is written. If any record is invalid, the store is unchanged.

        Args:
            records: Mappings with ``app_name`` plus the fields to set.

        Returns:
            The resulting Category for each record, in order.

        Raises:
            ValidationError: If any record fails validation.
        """
        records = list(records)
        with self._lock:
            current = self._categories
            staged = dict(current)
            results = []
            for index, record in enumerate(records):
                if not isinstance(record, Mapping):
                    raise ValidationError(f"Record {index} is not a mapping")
                app_name = record.get("app_name", "")
                fields = {k: v for k, v in record.items() if k != "app_name"}
                key = normalize_app_name(app_name)
                try:
                    category = _validate(app_name, fields, staged.get(key))
                except ValidationError as e:
                    raise ValidationError(f"Record {index}: {e}") from None
                staged[category.app_name] = category
                results.append(category)

            self._save(staged)
            self._categories = MappingProxyType(staged)

        logger.info(f"Applied {len(results)} category update(s)")
        return results
