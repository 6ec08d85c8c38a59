"""In-memory calendar cache with TTL expiry, a size bound and single-flight computation."""
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from processor.errors import ComputeError
from processor.models import CacheKey, CalendarDocument

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """Stored calendar document."""
    key: CacheKey
    document: CalendarDocument
    inserted_at: float
    size: int


@dataclass
class CacheStats:
    """Counters since the cache was created."""
    hits: int = 0
    misses: int = 0
    coalesced: int = 0
    evictions: int = 0
    expirations: int = 0


class _Flight:
    """Computation in progress for one key, shared by every caller that joins it."""

    def __init__(self):
        self.done = threading.Event()
        self.document: Optional[CalendarDocument] = None
        self.error: Optional[BaseException] = None


class CalendarCache:
    """
    Cache of encoded calendars keyed by normalized request.

    For any key at most one computation runs at a time; callers arriving
    while it runs wait for it and receive the same document or exception.
    Failed computations are never stored.
    """

    def __init__(
        self,
        ttl: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize an empty cache.

        Args:
            ttl: Seconds an entry stays valid after insertion
            max_size: Upper bound for the summed size of stored documents in
                bytes; 0 disables storage
            clock: Monotonic time source in seconds
        """
        if max_size < 0:
            raise ValueError(f"max_size must not be negative, got {max_size}")
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._in_flight: Dict[CacheKey, _Flight] = {}
        self._total_size = 0
        self.stats = CacheStats()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def total_size(self) -> int:
        with self._lock:
            return self._total_size

    def get_or_compute(
        self,
        key: CacheKey,
        compute_fn: Callable[[], CalendarDocument]
    ) -> CalendarDocument:
        """
        Return the cached document for a key, computing it on a miss.

        Args:
            key: Normalized request key
            compute_fn: Builds the document; called at most once per miss no
                matter how many callers are waiting

        Returns:
            CalendarDocument

        Raises:
            ComputeError: Whatever compute_fn raised, re-raised to every waiter
        """
        with self._lock:
            entry = self._live_entry(key)
            if entry is not None:
                self.stats.hits += 1
                logger.debug(f"Cache hit for {key}")
                return entry.document

            flight = self._in_flight.get(key)
            leader = flight is None
            if leader:
                flight = _Flight()
                self._in_flight[key] = flight
                self.stats.misses += 1
            else:
                self.stats.coalesced += 1

        if not leader:
            logger.debug(f"Joining in-flight computation for {key}")
            flight.done.wait()
            if flight.error is not None:
                # Each waiter raises the shared exception with a fresh traceback.
                raise flight.error.with_traceback(None)
            return flight.document

        logger.debug(f"Cache miss for {key}, computing")
        document = None
        try:
            document = compute_fn()
            return document
        except Exception as e:
            flight.error = e
            raise
        finally:
            with self._lock:
                if flight.error is None and document is not None:
                    self._store(key, document)
                del self._in_flight[key]
            if flight.error is None:
                if document is None:
                    flight.error = ComputeError('calendar computation was interrupted')
                flight.document = document
            flight.done.set()

    def peek(self, key: CacheKey) -> Optional[CalendarDocument]:
        """Return the live document for a key without computing or counting a hit."""
        with self._lock:
            entry = self._live_entry(key)
            return entry.document if entry else None

    def clear(self) -> None:
        """Drop every stored entry. In-flight computations are unaffected."""
        with self._lock:
            self._entries.clear()
            self._total_size = 0

    def _live_entry(self, key: CacheKey) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.inserted_at >= self.ttl:
            logger.debug(f"Cache entry for {key} expired")
            self._remove(key)
            self.stats.expirations += 1
            return None
        return entry

    def _store(self, key: CacheKey, document: CalendarDocument) -> None:
        if document.size > self.max_size:
            logger.debug(
                f"Not caching {key}: {document.size} bytes exceeds limit of {self.max_size}"
            )
            return

        if key in self._entries:
            self._remove(key)
        self._entries[key] = CacheEntry(
            key=key,
            document=document,
            inserted_at=self._clock(),
            size=document.size
        )
        self._total_size += document.size
        self._evict(keep=key)

    def _evict(self, keep: CacheKey) -> None:
        """Evict oldest entries, ties broken by key order, until within max_size."""
        while self._total_size > self.max_size:
            victim = min(
                (entry for entry in self._entries.values() if entry.key != keep),
                key=lambda entry: (entry.inserted_at, entry.key)
            )
            logger.debug(f"Evicting {victim.key} ({victim.size} bytes)")
            self._remove(victim.key)
            self.stats.evictions += 1

    def _remove(self, key: CacheKey) -> None:
        entry = self._entries.pop(key)
        self._total_size -= entry.size
