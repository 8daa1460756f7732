"""
auth/expiring_store.py -- Thread-safe in-memory map with per-entry expiry.

Backs both the token blacklist and the OAuth state registry (see
auth/store.py). Every entry carries an absolute expires_at; an entry past its
expiry is treated as absent by every reader immediately, whether or not the
background sweep has removed it yet. The sweep exists only to reclaim memory.

Usage:
    store = ExpiringStore(ttl=600)
    store.put("k", value)                 # expires in ttl seconds
    store.put("k", value, expires_at=dt)  # explicit expiry
    store.get("k")                        # value, or None once expired
    store.pop("k")                        # atomic read-then-delete
    store.close()                         # stop the sweeper thread

Locking:
    Readers (get, size) share the lock; writers (put, delete, pop) and the
    sweep take it exclusively. The sweep holds the exclusive lock only for one
    scan-and-delete pass over the map.

Layer rule: stdlib only.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Generic, Iterator, TypeVar

logger = logging.getLogger("gatekeeper.auth.store")

V = TypeVar("V")

DEFAULT_SWEEP_SECONDS = 60.0
MIN_SWEEP_SECONDS = 1.0


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _ReadWriteLock:
    """Reader-preferring read/write lock.

    Any number of readers may hold the lock together; a writer waits until no
    reader or writer holds it.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writing = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writing:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writing or self._readers:
                self._cond.wait()
            self._writing = True
        try:
            yield
        finally:
            with self._cond:
                self._writing = False
                self._cond.notify_all()


class ExpiringStore(Generic[V]):
    """Key -> value map where every entry expires.

    Args:
        ttl:            Default lifetime in seconds for put() calls that pass no
                        expires_at. 0 means callers always pass expires_at.
        sweep_interval: Seconds between background sweeps. Defaults to ttl/2
                        (at least MIN_SWEEP_SECONDS), or DEFAULT_SWEEP_SECONDS
                        when ttl is 0.
        name:           Label used in log lines.
        start_sweeper:  Set False to run without the background thread (call
                        purge_expired() yourself).
    """

    def __init__(
        self,
        ttl: float = 0,
        *,
        sweep_interval: float | None = None,
        name: str = "store",
        start_sweeper: bool = True,
    ) -> None:
        self.ttl = ttl
        self.name = name
        self._entries: dict[str, tuple[V, datetime]] = {}
        self._lock = _ReadWriteLock()
        self._stop = threading.Event()
        self._close_lock = threading.Lock()
        self._closed = False

        if sweep_interval and sweep_interval > 0:
            self.sweep_interval = float(sweep_interval)
        elif ttl > 0:
            self.sweep_interval = max(ttl / 2, MIN_SWEEP_SECONDS)
        else:
            self.sweep_interval = DEFAULT_SWEEP_SECONDS

        self._sweeper: threading.Thread | None = None
        if start_sweeper:
            self._sweeper = threading.Thread(
                target=self._sweep_loop,
                name=f"{name}-sweeper",
                daemon=True,
            )
            self._sweeper.start()

    # ------------------------------------------------------------------
    # Map operations
    # ------------------------------------------------------------------

    def put(self, key: str, value: V, expires_at: datetime | None = None) -> None:
        """Insert or overwrite key. Visible to every reader once this returns."""
        if expires_at is None:
            expires_at = _utcnow() + timedelta(seconds=self.ttl)
        with self._lock.write():
            self._entries[key] = (value, expires_at)

    def get(self, key: str, default: V | None = None) -> V | None:
        """Return the value for key, or default if absent or expired."""
        with self._lock.read():
            entry = self._entries.get(key)
        if entry is None:
            return default
        value, expires_at = entry
        if _utcnow() > expires_at:
            return default
        return value

    def __contains__(self, key: str) -> bool:
        with self._lock.read():
            entry = self._entries.get(key)
        return entry is not None and _utcnow() <= entry[1]

    def pop(self, key: str, default: V | None = None) -> V | None:
        """Remove key and return its value, atomically.

        Of several threads popping the same key concurrently, exactly one gets
        the value; the others see default. An expired entry is removed and
        reported as absent.
        """
        with self._lock.write():
            entry = self._entries.pop(key, None)
        if entry is None:
            return default
        value, expires_at = entry
        if _utcnow() > expires_at:
            return default
        return value

    def delete(self, key: str) -> None:
        """Remove key. Deleting a missing key is a no-op."""
        with self._lock.write():
            self._entries.pop(key, None)

    def size(self) -> int:
        """Number of stored entries, including expired ones not yet swept."""
        with self._lock.read():
            return len(self._entries)

    def __len__(self) -> int:
        return self.size()

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns the number removed."""
        now = _utcnow()
        with self._lock.write():
            expired = [k for k, (_, expires_at) in self._entries.items() if now > expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug("%s: purged %d expired entries", self.name, len(expired))
        return len(expired)

    def _sweep_loop(self) -> None:
        # Event.wait returns True once close() sets the event.
        while not self._stop.wait(self.sweep_interval):
            try:
                self.purge_expired()
            except Exception:
                logger.exception("%s: expiry sweep failed", self.name)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop the background sweep. Safe to call more than once.

        The store keeps working after close(); lookups still honor expiry,
        expired entries are just no longer reclaimed in the background.
        """
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        self._stop.set()
        sweeper = self._sweeper
        if sweeper is not None and sweeper is not threading.current_thread():
            sweeper.join(timeout=5)

    def __enter__(self) -> ExpiringStore[V]:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
