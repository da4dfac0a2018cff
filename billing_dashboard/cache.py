"""
billing_dashboard/cache.py - In-process TTL cache for dashboard statistics.

Lifecycle of an entry:
  fresh   - set() stored it and expires_at is still in the future
  stale   - expires_at has passed; get()/has() treat it as absent and drop it
  evicted - removed by delete(), clear(), a lazy read or the periodic sweep

size() and keys() report the raw store, so they may still count stale entries
that nobody has read and the sweep has not reached yet.

Every public method holds one re-entrant lock, so the cache can be shared by
request handlers on the event loop and by worker threads alike.  Nothing here
awaits: callers compute values outside the lock and only then call set().
"""
import fnmatch
import json
import logging
import math
import threading
import time
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Generic, Optional, TypeVar, overload

from pydantic import BaseModel

from billing_dashboard.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")
D = TypeVar("D")

_SIZE_UNITS = ("Bytes", "KB", "MB", "GB")


@dataclass
class CacheEntry(Generic[T]):
    data: T
    expires_at: float   # epoch seconds


def _check_key(key: Any) -> None:
    if not isinstance(key, str):
        raise TypeError(f"cache key must be str, got {type(key).__name__}")


def _json_default(obj: Any) -> Any:
    if isinstance(obj, BaseModel):
        return obj.model_dump(mode="json", by_alias=True)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, (set, frozenset)):
        return list(obj)
    return str(obj)


def format_bytes(num_bytes: int) -> str:
    """Render a byte count with 1024-based units, e.g. "12.34 KB"."""
    if num_bytes <= 0:
        return "0 Bytes"
    i = 0
    while num_bytes >= 1024 ** (i + 1) and i < len(_SIZE_UNITS) - 1:
        i += 1
    value = f"{num_bytes / 1024 ** i:.2f}".rstrip("0").rstrip(".")
    return f"{value} {_SIZE_UNITS[i]}"


class CacheService:
    """
    String-keyed TTL cache with lazy expiration and a background sweep.

    The sweep thread starts in the constructor and stops in destroy().  It only
    reclaims memory for keys that are written once and never read again; the
    expiry check in get()/has() is what guarantees callers never see a stale
    value.
    """

    def __init__(
        self,
        default_ttl: Optional[float] = None,
        cleanup_interval_ms: Optional[int] = None,
    ) -> None:
        self.default_ttl = (
            settings.dashboard_cache_default_ttl if default_ttl is None else default_ttl
        )
        interval_ms = (
            settings.dashboard_cache_cleanup_interval
            if cleanup_interval_ms is None else cleanup_interval_ms
        )
        if interval_ms <= 0:
            raise ValueError("cleanup_interval_ms must be positive")
        self.cleanup_interval = interval_ms / 1000

        self._store: dict[str, CacheEntry[Any]] = {}
        self._lock = threading.RLock()
        self._stopped = threading.Event()
        self._destroyed = False
        self._sweeper = threading.Thread(
            target=self._sweep_loop,
            name="dashboard-cache-sweep",
            daemon=True,
        )
        self._sweeper.start()

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    @overload
    def get(self, key: str) -> Optional[Any]: ...

    @overload
    def get(self, key: str, default: D) -> Any: ...

    def get(self, key, default=None):
        """Return the stored value, or `default` if missing or expired."""
        _check_key(key)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return default
            if time.time() >= entry.expires_at:
                del self._store[key]
                return default
            return entry.data

    def set(self, key: str, data: T, ttl_seconds: Optional[float] = None) -> None:
        """Store `data` under `key`, replacing any previous entry (last write wins)."""
        _check_key(key)
        ttl = self.default_ttl if ttl_seconds is None else ttl_seconds
        if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
            raise ValueError(f"ttl_seconds must be a number, got {type(ttl).__name__}")
        if not math.isfinite(ttl) or ttl < 0:
            raise ValueError("ttl_seconds must be a finite, non-negative number")
        entry = CacheEntry(data=data, expires_at=time.time() + ttl)
        with self._lock:
            self._store[key] = entry

    def delete(self, key: str) -> None:
        _check_key(key)
        with self._lock:
            self._store.pop(key, None)

    def delete_pattern(self, pattern: str) -> int:
        """Remove every key matching a shell-style glob; return how many went."""
        _check_key(pattern)
        with self._lock:
            matched = [k for k in self._store if fnmatch.fnmatchcase(k, pattern)]
            for k in matched:
                del self._store[k]
        return len(matched)

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    def has(self, key: str) -> bool:
        """Same expiry rules as get(), without returning the value."""
        _check_key(key)
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return False
            if time.time() >= entry.expires_at:
                del self._store[key]
                return False
            return True

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def size(self) -> int:
        with self._lock:
            return len(self._store)

    def keys(self) -> list[str]:
        with self._lock:
            return list(self._store)

    def stats(self) -> dict:
        """
        Snapshot for the admin console: entry count, keys and an estimated
        footprint taken from the JSON encoding of the whole store.
        """
        with self._lock:
            items = [
                [k, {"data": e.data, "expiresAt": int(e.expires_at * 1000)}]
                for k, e in self._store.items()
            ]
        encoded = json.dumps(items, default=_json_default, ensure_ascii=False)
        return {
            "size": len(items),
            "keys": [k for k, _ in items],
            "memoryUsage": format_bytes(len(encoded.encode("utf-8"))),
        }

    # ------------------------------------------------------------------
    # Sweep / teardown
    # ------------------------------------------------------------------

    def _evict_expired(self) -> int:
        now = time.time()
        with self._lock:
            expired = [k for k, e in self._store.items() if now >= e.expires_at]
            for k in expired:
                del self._store[k]
        if expired:
            logger.info("Evicted %d expired cache entries.", len(expired))
        return len(expired)

    def _sweep_loop(self) -> None:
        while not self._stopped.wait(self.cleanup_interval):
            try:
                self._evict_expired()
            except Exception:
                logger.exception("Cache sweep failed; retrying on next interval.")

    def destroy(self) -> None:
        """Stop the sweep thread and drop all entries. Safe to call twice."""
        if self._destroyed:
            return
        self._destroyed = True
        self._stopped.set()
        if self._sweeper is not threading.current_thread():
            self._sweeper.join(timeout=self.cleanup_interval + 1)
        self.clear()

    @property
    def destroyed(self) -> bool:
        return self._destroyed

    def __enter__(self) -> "CacheService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.destroy()

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: str) -> bool:
        return self.has(key)
