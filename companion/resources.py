"""Shared HTTP sessions and cached service metadata.

The collector and the summarizer never build their own HTTP clients. They ask
the ResourceManager for the pooled session of their endpoint, which is
created once and reused for the life of the process. Metadata that is costly
to discover (such as ActivityWatch bucket ids) is cached here with a TTL.

Retries for transient transport errors are configured on the session itself
through urllib3's ``Retry``. Sessions for the language model are created
with retries disabled because the summarizer has its own fallback.
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import DiscoveryError

logger = logging.getLogger(__name__)

RETRY_STATUSES = (502, 503, 504)


class ResourceManager:
    """Pooled HTTP sessions (one per endpoint) and a TTL metadata cache.

    Attributes:
        max_retries: Transport retries for sessions created with retries on.
        backoff_factor: Backoff factor passed to urllib3's Retry.
        default_ttl: Seconds a cached metadata value stays valid.
    """

    def __init__(self, max_retries: int = 2, backoff_factor: float = 0.5,
                 default_ttl: float = 300, clock: Callable[[], float] = time.monotonic):
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.default_ttl = default_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, requests.Session] = {}
        self._metadata: Dict[str, Tuple[Any, float]] = {}

    def client_for(self, endpoint: str, retries: bool = True) -> requests.Session:
        """Return the pooled session for ``endpoint``, creating it on first use.

        Args:
            endpoint: Base URL of the service, e.g. ``http://localhost:5600``.
            retries: Whether transient transport errors are retried. Only
                honoured when the session is first created.
        """
        key = endpoint.rstrip("/")
        with self._lock:
            session = self._sessions.get(key)
            if session is None:
                session = self._build_session(retries)
                self._sessions[key] = session
                logger.debug(f"Created HTTP session for {key} (retries={retries})")
            return session

    def _build_session(self, retries: bool) -> requests.Session:
        session = requests.Session()
        # Local services only; never route through a proxy
        session.trust_env = False
        if retries and self.max_retries > 0:
            retry = Retry(
                total=self.max_retries,
                connect=self.max_retries,
                read=self.max_retries,
                status=self.max_retries,
                backoff_factor=self.backoff_factor,
                status_forcelist=RETRY_STATUSES,
                allowed_methods=frozenset({"GET", "POST"}),
                raise_on_status=False,
            )
        else:
            retry = Retry(total=0, connect=0, read=0, status=0, redirect=0, raise_on_status=False)
        adapter = HTTPAdapter(max_retries=retry, pool_connections=2, pool_maxsize=2)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def cached_metadata(self, key: str, loader: Callable[[], Any],
                        ttl: Optional[float] = None) -> Any:
        """Return a cached value, calling ``loader`` once on miss or expiry.

        Args:
            key: Cache key, e.g. ``"aw_buckets:http://localhost:5600"``.
            loader: Discovery call producing the value.
            ttl: Seconds the value stays valid (``default_ttl`` if None).

        Raises:
            DiscoveryError: If the loader fails. Nothing is cached in that case.
        """
        now = self._clock()
        with self._lock:
            entry = self._metadata.get(key)
            if entry is not None and entry[1] > now:
                return entry[0]

        try:
            value = loader()
        except DiscoveryError:
            raise
        except Exception as e:
            raise DiscoveryError(f"Discovery of {key} failed: {e}") from e

        expires_at = now + (self.default_ttl if ttl is None else ttl)
        with self._lock:
            self._metadata[key] = (value, expires_at)
        logger.debug(f"Cached metadata {key}")
        return value

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one cached metadata value, or all of them when key is None."""
        with self._lock:
            if key is None:
                self._metadata.clear()
            else:
                self._metadata.pop(key, None)

    def close(self) -> None:
        """Close every pooled session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
