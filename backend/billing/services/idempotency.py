"""Short-lived suppression of duplicate webhook deliveries."""
from __future__ import annotations

import abc
import logging
import threading
import time
from typing import Callable, Dict, Optional

from django.conf import settings
from django.core.cache import cache as default_cache

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 5 * 60


class IdempotencyGuard(abc.ABC):
    """TTL-keyed record of event ids in flight or recently seen.

    ``mark_processing`` is the atomic claim: of several concurrent callers
    with the same id exactly one gets True. After a successful run the
    claim is kept for the rest of the TTL via ``mark_completed`` so
    redeliveries are answered without re-running handlers; after a failure
    ``release`` drops it so the provider's retry is processed.
    """

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds

    @abc.abstractmethod
    def is_duplicate(self, event_id: str) -> bool:
        ...

    @abc.abstractmethod
    def mark_processing(self, event_id: str) -> bool:
        ...

    @abc.abstractmethod
    def mark_completed(self, event_id: str) -> None:
        ...

    @abc.abstractmethod
    def release(self, event_id: str) -> None:
        ...

    def cleanup(self) -> int:
        return 0

    def stats(self) -> Dict[str, int]:
        return {"ttl_seconds": self.ttl_seconds}


class InMemoryIdempotencyGuard(IdempotencyGuard):
    """Per-process guard for single-instance deployments and tests."""

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, clock: Callable[[], float] = time.monotonic):
        super().__init__(ttl_seconds)
        self._clock = clock
        self._entries: Dict[str, float] = {}
        self._lock = threading.Lock()

    def _expired(self, first_seen: float, now: float) -> bool:
        return now - first_seen >= self.ttl_seconds

    def is_duplicate(self, event_id: str) -> bool:
        with self._lock:
            first_seen = self._entries.get(event_id)
            if first_seen is None:
                return False
            if self._expired(first_seen, self._clock()):
                del self._entries[event_id]
                return False
            return True

    def mark_processing(self, event_id: str) -> bool:
        with self._lock:
            now = self._clock()
            first_seen = self._entries.get(event_id)
            if first_seen is not None and not self._expired(first_seen, now):
                return False
            self._entries[event_id] = now
            return True

    def mark_completed(self, event_id: str) -> None:
        with self._lock:
            self._entries[event_id] = self._clock()

    def release(self, event_id: str) -> None:
        with self._lock:
            self._entries.pop(event_id, None)

    def cleanup(self) -> int:
        with self._lock:
            now = self._clock()
            stale = [key for key, first_seen in self._entries.items() if self._expired(first_seen, now)]
            for key in stale:
                del self._entries[key]
            return len(stale)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"ttl_seconds": self.ttl_seconds, "entries": len(self._entries)}


class CacheIdempotencyGuard(IdempotencyGuard):
    """Guard backed by the Django cache, shared across processes with Redis."""

    key_prefix = "billing:webhook-event:"

    def __init__(self, ttl_seconds: int = DEFAULT_TTL_SECONDS, cache=None):
        super().__init__(ttl_seconds)
        self._cache = cache or default_cache

    def _key(self, event_id: str) -> str:
        return f"{self.key_prefix}{event_id}"

    def is_duplicate(self, event_id: str) -> bool:
        return self._cache.get(self._key(event_id)) is not None

    def mark_processing(self, event_id: str) -> bool:
        # cache.add only writes when the key is absent, which makes it the atomic claim.
        return bool(self._cache.add(self._key(event_id), time.time(), timeout=self.ttl_seconds))

    def mark_completed(self, event_id: str) -> None:
        self._cache.set(self._key(event_id), time.time(), timeout=self.ttl_seconds)

    def release(self, event_id: str) -> None:
        self._cache.delete(self._key(event_id))


GUARD_BACKENDS = {
    "memory": InMemoryIdempotencyGuard,
    "cache": CacheIdempotencyGuard,
}

_guard: Optional[IdempotencyGuard] = None
_guard_lock = threading.Lock()


def get_idempotency_guard() -> IdempotencyGuard:
    """Process-wide guard built from ``BILLING_IDEMPOTENCY_BACKEND``."""

    global _guard
    with _guard_lock:
        if _guard is None:
            backend = getattr(settings, "BILLING_IDEMPOTENCY_BACKEND", "memory")
            ttl = int(getattr(settings, "BILLING_IDEMPOTENCY_TTL_SECONDS", DEFAULT_TTL_SECONDS))
            guard_class = GUARD_BACKENDS.get(backend)
            if guard_class is None:
                logger.warning("Unknown idempotency backend '%s'; falling back to in-memory guard.", backend)
                guard_class = InMemoryIdempotencyGuard
            _guard = guard_class(ttl_seconds=ttl)
        return _guard


def reset_idempotency_guard() -> None:
    global _guard
    with _guard_lock:
        _guard = None
