# src/skyalign/cache/store.py
"""In-process event cache with TTL, validity flag and JSON payloads."""
from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass, replace
from datetime import date
from enum import Enum
from typing import Callable, List, Optional, Sequence

from cachetools import TTLCache

from skyalign.core.errors import CacheCorruption
from skyalign.core.models import AlignmentEvent, SceneFilter, SearchMode

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheKey:
    """(year, month[, day], location, scene, mode). day=None keys a whole month."""
    year: int
    month: int
    day: Optional[int]
    location_id: str
    scene: SceneFilter
    mode: SearchMode
    version: str = "v1"

    def __post_init__(self) -> None:
        if not 1 <= self.month <= 12:
            raise ValueError(f"month out of range: {self.month}")
        if self.day is not None:
            date(self.year, self.month, self.day)  # raises ValueError on bad day
        if self.mode is SearchMode.AUTO:
            raise ValueError("cache keys need a resolved search mode")
        if not self.location_id:
            raise ValueError("location_id must be non-empty")

    @classmethod
    def for_day(cls, d: date, location_id: str, scene: SceneFilter, mode: SearchMode, *, version: str = "v1") -> "CacheKey":
        return cls(d.year, d.month, d.day, location_id, scene, mode, version)

    @classmethod
    def for_month(cls, year: int, month: int, location_id: str, scene: SceneFilter, mode: SearchMode, *, version: str = "v1") -> "CacheKey":
        return cls(year, month, None, location_id, scene, mode, version)

    @property
    def is_month(self) -> bool:
        return self.day is None

    def period(self) -> str:
        if self.day is None:
            return f"{self.year:04d}-{self.month:02d}"
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"

    def as_string(self) -> str:
        return f"events:{self.version}:{self.location_id}:{self.period()}:{self.scene.value}:{self.mode.value}"

    def __str__(self) -> str:
        return self.as_string()


class CacheStatus(str, Enum):
    HIT = "hit"
    STALE = "stale"   # present but expired or invalidated
    MISS = "miss"


@dataclass(frozen=True)
class CacheEntry:
    key: CacheKey
    payload: str            # JSON list of event dicts
    event_count: int
    created_at: float
    expires_at: float
    calculation_ms: Optional[float] = None
    valid: bool = True

    def is_fresh(self, now: float) -> bool:
        return self.valid and now < self.expires_at


@dataclass(frozen=True)
class CacheLookup:
    status: CacheStatus
    entry: Optional[CacheEntry] = None
    events: Optional[List[AlignmentEvent]] = None

    @property
    def hit(self) -> bool:
        return self.status is CacheStatus.HIT


@dataclass(frozen=True)
class CacheStats:
    entries: int
    fresh: int
    stale: int
    hits: int
    misses: int
    stale_reads: int
    corrupted: int


def encode_events(events: Sequence[AlignmentEvent]) -> str:
    return json.dumps([e.to_dict() for e in events], ensure_ascii=False, separators=(",", ":"))


def decode_events(payload: str) -> List[AlignmentEvent]:
    try:
        raw = json.loads(payload)
        if not isinstance(raw, list):
            raise TypeError(f"expected a list, got {type(raw).__name__}")
        return [AlignmentEvent.from_dict(d) for d in raw]
    except (ValueError, TypeError, KeyError) as e:
        raise CacheCorruption(f"cannot decode cached events: {e}") from e


class EventCacheStore:
    """
    Thread-safe store backed by a bounded `cachetools.TTLCache`.

    Freshness (HIT vs STALE) follows each entry's own `expires_at`; the
    TTLCache keeps entries for `ttl_seconds + stale_retention_seconds` so an
    expired entry can still be served while it is recomputed, and evicts the
    least recently used entry once `max_entries` is reached. Entries are built
    completely before being swapped in under the lock, so readers see either
    the old or the new entry.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = 30 * 24 * 3600,
        stale_retention_seconds: float = 7 * 24 * 3600,
        max_entries: int = 50_000,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if stale_retention_seconds < 0:
            raise ValueError("stale_retention_seconds must be >= 0")
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self.ttl_seconds = float(ttl_seconds)
        self.retention_seconds = self.ttl_seconds + float(stale_retention_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: TTLCache = TTLCache(maxsize=max_entries, ttl=self.retention_seconds, timer=clock)
        self._hits = 0
        self._misses = 0
        self._stale_reads = 0
        self._corrupted = 0

    def _ttl(self, ttl_seconds: Optional[float]) -> float:
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        if ttl <= 0:
            raise ValueError("ttl_seconds must be positive")
        if ttl > self.retention_seconds:
            raise ValueError(f"ttl_seconds {ttl} exceeds the store retention {self.retention_seconds}")
        return ttl

    def get(self, key: CacheKey) -> CacheLookup:
        k = key.as_string()
        with self._lock:
            entry = self._entries.get(k)
            now = self._clock()

        if entry is None:
            with self._lock:
                self._misses += 1
            return CacheLookup(CacheStatus.MISS)

        try:
            events = decode_events(entry.payload)
        except CacheCorruption as e:
            log.warning("dropping corrupted cache entry: key=%s err=%s", k, e)
            with self._lock:
                # only drop the entry we read; a concurrent put may have replaced it
                if self._entries.get(k) is entry:
                    del self._entries[k]
                self._corrupted += 1
                self._misses += 1
            return CacheLookup(CacheStatus.MISS)

        with self._lock:
            if entry.is_fresh(now):
                self._hits += 1
                status = CacheStatus.HIT
            else:
                self._stale_reads += 1
                status = CacheStatus.STALE
        return CacheLookup(status, entry, events)

    def put(
        self,
        key: CacheKey,
        events: Sequence[AlignmentEvent],
        *,
        ttl_seconds: Optional[float] = None,
        calculation_ms: Optional[float] = None,
    ) -> CacheEntry:
        ttl = self._ttl(ttl_seconds)

        payload = encode_events(events)
        now = self._clock()
        entry = CacheEntry(
            key=key,
            payload=payload,
            event_count=len(events),
            created_at=now,
            expires_at=now + ttl,
            calculation_ms=calculation_ms,
        )
        with self._lock:
            self._entries[key.as_string()] = entry
        log.debug("cache put: key=%s events=%d ttl=%.0fs", key, len(events), ttl)
        return entry

    def put_raw(self, key: CacheKey, payload: str, *, ttl_seconds: Optional[float] = None) -> None:
        """Store a payload as-is (imports / repair tooling). Not validated until read."""
        ttl = self._ttl(ttl_seconds)
        now = self._clock()
        entry = CacheEntry(key=key, payload=payload, event_count=-1, created_at=now, expires_at=now + ttl)
        with self._lock:
            self._entries[key.as_string()] = entry

    def invalidate(self, key: CacheKey) -> bool:
        """Keep the entry but mark it invalid; later reads report STALE."""
        k = key.as_string()
        with self._lock:
            entry = self._entries.get(k)
            if entry is None:
                return False
            self._entries[k] = replace(entry, valid=False)
        log.info("cache invalidated: key=%s", k)
        return True

    def invalidate_location(self, location_id: str) -> int:
        n = 0
        with self._lock:
            self._entries.expire()
            for k, entry in list(self._entries.items()):
                if entry.key.location_id == location_id and entry.valid:
                    self._entries[k] = replace(entry, valid=False)
                    n += 1
        log.info("cache invalidated for location: location=%s entries=%d", location_id, n)
        return n

    def delete(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key.as_string(), None) is not None

    def purge_expired(self) -> int:
        """
        Remove entries past their freshness expiry now instead of keeping them
        for stale reads. Invalidated but unexpired entries stay.
        """
        with self._lock:
            self._entries.expire()
            now = self._clock()
            dead = [k for k, e in self._entries.items() if now >= e.expires_at]
            for k in dead:
                del self._entries[k]
        if dead:
            log.info("cache purge: removed=%d", len(dead))
        return len(dead)

    def stats(self) -> CacheStats:
        with self._lock:
            self._entries.expire()
            now = self._clock()
            fresh = sum(1 for e in self._entries.values() if e.is_fresh(now))
            return CacheStats(
                entries=len(self._entries),
                fresh=fresh,
                stale=len(self._entries) - fresh,
                hits=self._hits,
                misses=self._misses,
                stale_reads=self._stale_reads,
                corrupted=self._corrupted,
            )

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)
