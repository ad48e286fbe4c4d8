"""
Key Cache — Time-bounded holding area for derived keys.

This is not a performance cache: its job is to bound how long derived key
material stays in memory. Entries expire a fixed TTL after creation, and
every entry that leaves the cache (expiry, invalidation) has its buffer
overwritten before it is dropped.
"""
import logging
from threading import Lock
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from .crypto import KeyPurpose, secure_wipe

logger = logging.getLogger("securyflex.keys")

CacheKey = tuple[str, KeyPurpose]


@dataclass
class CacheEntry:
    key: bytearray
    version: int
    expires_at: datetime

    def wipe(self) -> None:
        secure_wipe(self.key)


class KeyCache:
    """(context, purpose) -> derived key, with TTL and secure eviction.

    ``generation`` increases on every ``invalidate_all``; a ``put`` carrying
    an older generation is discarded so a derivation started before a
    rotation can never repopulate the cache with a superseded key.
    """

    def __init__(
        self,
        ttl: int = 3600,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._ttl = timedelta(seconds=ttl)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: dict[CacheKey, CacheEntry] = {}
        self._lock = Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, context: str, purpose: KeyPurpose) -> Optional[bytes]:
        """Return a copy of the cached key, or None if missing or expired."""
        cache_key = (context, KeyPurpose(purpose))
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                return None
            if self._clock() < entry.expires_at:
                return bytes(entry.key)
            del self._entries[cache_key]
            entry.wipe()
        logger.debug("Cache entry expired: context=%s purpose=%s", context, purpose)
        return None

    def put(
        self,
        context: str,
        purpose: KeyPurpose,
        key: bytes,
        version: int,
        generation: Optional[int] = None,
    ) -> bool:
        """Store a key for the cache TTL.

        Returns:
            False when the put was discarded because the cache was
            invalidated after ``generation`` was read.
        """
        cache_key = (context, KeyPurpose(purpose))
        entry = CacheEntry(
            key=bytearray(key),
            version=version,
            expires_at=self._clock() + self._ttl,
        )
        with self._lock:
            if generation is not None and generation != self._generation:
                entry.wipe()
                return False
            previous = self._entries.pop(cache_key, None)
            self._entries[cache_key] = entry
        if previous is not None:
            previous.wipe()
        return True

    def purge_expired(self) -> int:
        """Wipe and drop every expired entry. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if now >= e.expires_at]
            entries = [self._entries.pop(k) for k in expired]
        for entry in entries:
            entry.wipe()
        return len(entries)

    def invalidate_all(self) -> int:
        """Wipe and drop every entry. Returns how many were removed."""
        with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            self._generation += 1
        for entry in entries:
            entry.wipe()
        if entries:
            logger.debug("Key cache invalidated: %d entr(ies) wiped", len(entries))
        return len(entries)
