from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from stepgate.logging import get_logger
from stepgate.storage.common import utcnow
from stepgate.storage.models import IdentitySnapshot


@dataclass(frozen=True)
class _Entry:
    snapshot: IdentitySnapshot
    expires_at: datetime


class IdentityCache:
    """Bounded TTL cache of identity snapshots keyed by identity id.

    Expired entries are never returned. When an insert finds the cache full,
    the ``evict_fraction`` of entries nearest to expiry are dropped first. The
    sort runs outside the lock against a snapshot of ``(key, expires_at)``
    pairs; an entry is only removed if its expiry is still the one that was
    sorted, so a concurrent refresh survives the eviction.
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=10),
        capacity: int = 10_000,
        evict_fraction: float = 0.2,
        sweep_interval: Optional[float] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        if not 0 < evict_fraction <= 1:
            raise ValueError("evict_fraction must be in (0, 1]")
        self.ttl = ttl
        self.capacity = capacity
        self.evict_fraction = evict_fraction
        self.sweep_interval = sweep_interval
        self._clock = clock or utcnow
        self._entries: Dict[str, _Entry] = {}
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None
        self.logger = get_logger(__name__)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get(self, identity_id: str) -> Optional[IdentitySnapshot]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(identity_id)
            if entry is None:
                return None
            if now >= entry.expires_at:
                self._entries.pop(identity_id, None)
                return None
            return entry.snapshot

    def put(self, snapshot: IdentitySnapshot) -> IdentitySnapshot:
        key = snapshot.identity_id
        entry = _Entry(snapshot=snapshot, expires_at=self._clock() + self.ttl)
        while True:
            with self._lock:
                if key in self._entries or len(self._entries) < self.capacity:
                    self._entries[key] = entry
                    return snapshot
            self._evict()

    def invalidate(self, identity_id: str) -> None:
        with self._lock:
            self._entries.pop(identity_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in expired:
                del self._entries[key]
        if expired:
            self.logger.debug("identity_cache_purged", removed=len(expired))
        return len(expired)

    def _eviction_candidates(self) -> list[tuple[str, datetime]]:
        with self._lock:
            candidates = [(key, entry.expires_at) for key, entry in self._entries.items()]
        evict_count = max(1, int(self.capacity * self.evict_fraction))
        candidates.sort(key=lambda item: item[1])
        return candidates[:evict_count]

    def _remove_if_unchanged(self, candidates: list[tuple[str, datetime]]) -> int:
        removed = 0
        with self._lock:
            for key, expires_at in candidates:
                current = self._entries.get(key)
                if current is not None and current.expires_at == expires_at:
                    del self._entries[key]
                    removed += 1
        return removed

    def _evict(self) -> int:
        removed = self._remove_if_unchanged(self._eviction_candidates())
        self.logger.info("identity_cache_evicted", removed=removed, capacity=self.capacity)
        return removed

    # background sweeper
    def start(self) -> None:
        if not self.sweep_interval or self._sweeper is not None:
            return
        self._stop.clear()
        self._sweeper = threading.Thread(
            target=self._sweep_loop, name="identity-cache-sweeper", daemon=True
        )
        self._sweeper.start()

    def _sweep_loop(self) -> None:
        while not self._stop.wait(self.sweep_interval):
            self.purge_expired()

    def shutdown(self, timeout: float = 5.0) -> None:
        self._stop.set()
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is not None:
            sweeper.join(timeout)
