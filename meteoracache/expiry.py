"""Eager TTL expiry for dynamic-data cache entries.

Every write to the dynamic namespace arms a one-shot timer; when it fires
the entry is deleted whether or not it was ever read. Re-arming a key
cancels the earlier timer, so an older timer can never evict a newer write
before its own TTL has elapsed.
"""

import logging
import threading

from .network import mask_url
from .scheduler import ScheduledTask, Scheduler
from .store import CacheStore, CacheStoreError

logger = logging.getLogger(__name__)


class ExpiryScheduler:
    """Arms and tracks one expiry timer per dynamic cache key."""

    def __init__(
        self,
        store: CacheStore,
        namespace: str,
        ttl: float,
        scheduler: Scheduler,
    ) -> None:
        """Initialize the expiry scheduler.

        Args:
            store: Store holding the namespace to expire entries from.
            namespace: Dynamic-data namespace name.
            ttl: Lifetime of an entry in seconds.
            scheduler: Timer capability used to arm expiry callbacks.
        """
        self._store = store
        self._namespace = namespace
        self._ttl = ttl
        self._scheduler = scheduler
        self._lock = threading.Lock()
        self._generation = 0
        # key -> (generation, armed_at, task)
        self._tasks: dict[str, tuple[int, float, ScheduledTask]] = {}

    @property
    def ttl(self) -> float:
        return self._ttl

    @property
    def namespace(self) -> str:
        return self._namespace

    def arm(self, key: str, delay: float | None = None) -> None:
        """Schedule deletion of key, replacing any timer already armed for it.

        Args:
            key: Cache key in the dynamic namespace.
            delay: Seconds until deletion, defaults to the configured TTL.
        """
        delay = self._ttl if delay is None else delay
        with self._lock:
            previous = self._tasks.pop(key, None)
            if previous is not None:
                previous[2].cancel()

            self._generation += 1
            generation = self._generation
            armed_at = self._scheduler.now()
            task = self._scheduler.after(delay, lambda: self._expire(key, generation))
            self._tasks[key] = (generation, armed_at, task)

    def cancel(self, key: str) -> bool:
        """Cancel the timer for key without deleting the entry."""
        with self._lock:
            previous = self._tasks.pop(key, None)
        if previous is None:
            return False
        previous[2].cancel()
        return True

    def cancel_all(self) -> None:
        """Cancel every pending timer (used on shutdown)."""
        with self._lock:
            tasks = list(self._tasks.values())
            self._tasks.clear()
        for _, _, task in tasks:
            task.cancel()

    def pending(self) -> list[str]:
        """Keys with an armed timer."""
        with self._lock:
            return list(self._tasks)

    def restore(self) -> int:
        """Re-arm timers for entries already present in the namespace.

        Needed for persistent stores: entries written by a previous process
        have no live timer. Entries whose TTL already elapsed are deleted
        immediately.

        Returns:
            Number of entries deleted because they had already expired.
        """
        now = self._scheduler.now()
        expired = 0
        for key in self._store.keys(self._namespace):
            entry = self._store.get(self._namespace, key)
            if entry is None:
                continue
            ttl = entry.ttl if entry.ttl is not None else self._ttl
            remaining = entry.stored_at + ttl - now
            if remaining <= 0:
                self.cancel(key)
                if self._store.delete(self._namespace, key):
                    expired += 1
            else:
                self.arm(key, remaining)

        if expired:
            logger.info("Removed %d expired weather entries from %s", expired, self._namespace)
        return expired

    def _rearm(self, key: str, generation: int, delay: float) -> None:
        # A local write may have armed the key meanwhile; that timer wins.
        with self._lock:
            if key in self._tasks:
                return
        logger.debug("Re-arming expiry of %s in %.0fs (generation %d)", mask_url(key), delay, generation)
        self.arm(key, delay)

    def _expire(self, key: str, generation: int) -> None:
        with self._lock:
            current = self._tasks.get(key)
            if current is None or current[0] != generation:
                return
            del self._tasks[key]
            armed_at = current[1]

        try:
            entry = self._store.get(self._namespace, key)
            if entry is None:
                return
            if entry.stored_at > armed_at:
                # Rewritten after this timer was armed, possibly by another
                # process sharing the store; follow the newer entry's TTL.
                ttl = entry.ttl if entry.ttl is not None else self._ttl
                remaining = entry.stored_at + ttl - self._scheduler.now()
                if remaining > 0:
                    self._rearm(key, generation, remaining)
                    return
            if self._store.delete(self._namespace, key):
                logger.debug("Expired cached entry %s", mask_url(key))
        except CacheStoreError as e:
            logger.error("Failed to expire cached entry %s: %s", mask_url(key), e)
