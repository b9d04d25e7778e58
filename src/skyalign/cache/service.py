# src/skyalign/cache/service.py
from __future__ import annotations

import calendar
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional

from skyalign.cache.singleflight import SingleFlight
from skyalign.cache.store import CacheKey, CacheStatus, EventCacheStore
from skyalign.core.config import AlignmentConfig
from skyalign.core.errors import ProviderError
from skyalign.core.models import AlignmentEvent, Observer, SceneFilter, SearchMode, SearchRequest, SearchResult
from skyalign.core.search import AlignmentSearchEngine, CancelToken, build_result, validate_request
from skyalign.core.timeutil import iter_dates
from skyalign.features.aggregation import upcoming_events

log = logging.getLogger(__name__)


@dataclass
class CachedEventService:
    """
    Read-through cache in front of the search engine.

    Day entries are the unit of computation; month entries are assembled from
    day entries. Misses and stale entries are recomputed once per key even
    under concurrent callers.
    """
    engine: AlignmentSearchEngine
    store: EventCacheStore
    flights: SingleFlight = field(default_factory=SingleFlight)

    computations: int = field(default=0, init=False)
    _count_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    @property
    def config(self) -> AlignmentConfig:
        return self.engine.config

    def _key_version(self) -> str:
        return self.config.cache.version

    # ---- core read-through ----
    def _read_through(
        self,
        key: CacheKey,
        compute: Callable[[], List[AlignmentEvent]],
        cancel: Optional[CancelToken] = None,
    ) -> List[AlignmentEvent]:
        found = self.store.get(key)
        if found.status is CacheStatus.HIT:
            return list(found.events or [])

        stale = found.events if found.status is CacheStatus.STALE else None

        def load() -> List[AlignmentEvent]:
            # a previous leader may have filled the entry while we queued
            again = self.store.get(key)
            if again.status is CacheStatus.HIT:
                return list(again.events or [])
            return self._compute_and_put(key, compute)

        try:
            events, _ = self.flights.do(key.as_string(), load, cancel=cancel)
        except ProviderError:
            if stale is None:
                raise
            log.warning("provider failed, serving stale cache entry: key=%s", key, exc_info=True)
            return list(stale)
        return list(events)

    def _compute_and_put(self, key: CacheKey, compute: Callable[[], List[AlignmentEvent]]) -> List[AlignmentEvent]:
        with self._count_lock:
            self.computations += 1
        t0 = time.perf_counter()
        events = compute()
        elapsed_ms = (time.perf_counter() - t0) * 1000.0
        self.store.put(key, events, calculation_ms=elapsed_ms)
        log.info("computed events: key=%s events=%d elapsed=%.1fms", key, len(events), elapsed_ms)
        return events

    # ---- public ----
    def events_for_day(
        self,
        observer: Observer,
        day: date,
        scene: SceneFilter,
        mode: SearchMode,
        *,
        location_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[AlignmentEvent]:
        loc = location_id or observer.cache_id()
        key = CacheKey.for_day(day, loc, scene, mode, version=self._key_version())
        return self._read_through(
            key,
            lambda: self.engine.search_day(observer, day, scene, mode, location_id=loc, cancel=cancel),
            cancel,
        )

    def events_for_month(
        self,
        observer: Observer,
        year: int,
        month: int,
        scene: SceneFilter,
        mode: SearchMode,
        *,
        location_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[AlignmentEvent]:
        loc = location_id or observer.cache_id()
        key = CacheKey.for_month(year, month, loc, scene, mode, version=self._key_version())
        last = calendar.monthrange(year, month)[1]

        def compute() -> List[AlignmentEvent]:
            out: List[AlignmentEvent] = []
            for d in iter_dates(date(year, month, 1), date(year, month, last)):
                if cancel is not None:
                    cancel.raise_if_cancelled()
                out.extend(
                    self.events_for_day(observer, d, scene, mode, location_id=location_id, cancel=cancel)
                )
            return out

        return self._read_through(key, compute, cancel)

    def search(self, request: SearchRequest, *, cancel: Optional[CancelToken] = None) -> SearchResult:
        """Same contract as AlignmentSearchEngine.search, served per day from the cache."""
        mode = validate_request(request, self.config)
        events: List[AlignmentEvent] = []
        for d in iter_dates(request.start, request.end):
            if cancel is not None:
                cancel.raise_if_cancelled()
            events.extend(
                self.events_for_day(
                    request.observer,
                    d,
                    request.scene,
                    mode,
                    location_id=request.cache_location_id(),
                    cancel=cancel,
                )
            )
        return build_result(events, mode, self.config)

    def refresh(self, key: CacheKey, compute: Callable[[], List[AlignmentEvent]]) -> List[AlignmentEvent]:
        """Recompute and replace an entry regardless of its freshness."""
        events, _ = self.flights.do(key.as_string(), lambda: self._compute_and_put(key, compute))
        return list(events)

    def refresh_day(
        self,
        observer: Observer,
        day: date,
        scene: SceneFilter,
        mode: SearchMode,
        *,
        location_id: Optional[str] = None,
    ) -> List[AlignmentEvent]:
        loc = location_id or observer.cache_id()
        key = CacheKey.for_day(day, loc, scene, mode, version=self._key_version())
        return self.refresh(
            key,
            lambda: self.engine.search_day(observer, day, scene, mode, location_id=loc),
        )

    def invalidate_months(
        self,
        location_id: str,
        start: date,
        end: date,
        scene: SceneFilter,
        mode: SearchMode,
    ) -> int:
        """
        Mark the month entries overlapping [start, end] stale so the next read
        rebuilds them from the (refreshed) day entries. Returns how many existed.
        """
        n = 0
        year, month = start.year, start.month
        while (year, month) <= (end.year, end.month):
            key = CacheKey.for_month(year, month, location_id, scene, mode, version=self._key_version())
            if self.store.invalidate(key):
                n += 1
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)
        return n

    def upcoming(
        self,
        observer: Observer,
        now: datetime,
        scene: SceneFilter,
        mode: SearchMode,
        *,
        limit: int = 50,
        horizon_days: int = 60,
        location_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[AlignmentEvent]:
        """
        The next `limit` events after `now`, walking cached days forward from
        now's local date. Stops early once enough events are collected.
        """
        if horizon_days < 1:
            raise ValueError("horizon_days must be >= 1")
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")
        first = now.astimezone(self.config.landmark.tzinfo).date()
        found: List[AlignmentEvent] = []
        for d in iter_dates(first, first + timedelta(days=horizon_days - 1)):
            if cancel is not None:
                cancel.raise_if_cancelled()
            found.extend(self.events_for_day(observer, d, scene, mode, location_id=location_id, cancel=cancel))
            if sum(1 for e in found if e.time > now) >= limit:
                break
        return upcoming_events(found, now, limit)
