# src/skyalign/features/recompute.py
from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date
from typing import Callable, Dict, Optional, Sequence, Tuple, TypeVar

from skyalign.cache.service import CachedEventService
from skyalign.core.models import Location, SceneFilter, SearchMode
from skyalign.core.timeutil import iter_dates

log = logging.getLogger(__name__)

T = TypeVar("T")

DateRange = Tuple[date, date]  # inclusive


@dataclass(frozen=True)
class RecomputeResult:
    recomputed: int = 0
    failed: int = 0

    def __add__(self, other: "RecomputeResult") -> "RecomputeResult":
        return RecomputeResult(self.recomputed + other.recomputed, self.failed + other.failed)


def _check_range(date_range: DateRange) -> DateRange:
    start, end = date_range
    if end < start:
        raise ValueError(f"date range end before start: {start}..{end}")
    return start, end


def _check_mode(mode: SearchMode) -> SearchMode:
    if mode is SearchMode.AUTO:
        raise ValueError("recompute needs a resolved search mode (fast, balanced or precise)")
    return mode


def recompute(
    service: CachedEventService,
    location: Location,
    date_range: DateRange,
    *,
    scenes: Sequence[SceneFilter] = (SceneFilter.ALL,),
    mode: SearchMode = SearchMode.BALANCED,
) -> RecomputeResult:
    """
    Refresh the cached day entries of one location, then mark the month
    entries built from them stale. A failing day is logged and counted; the
    remaining days still run.
    """
    start, end = _check_range(date_range)
    _check_mode(mode)
    ok = failed = 0
    t0 = time.perf_counter()

    for d in iter_dates(start, end):
        for scene in scenes:
            try:
                service.refresh_day(location.observer, d, scene, mode, location_id=location.id)
                ok += 1
            except Exception:
                failed += 1
                log.exception(
                    "recompute failed: location=%s date=%s scene=%s mode=%s",
                    location.id, d.isoformat(), scene.value, mode.value,
                )

    months = sum(service.invalidate_months(location.id, start, end, scene, mode) for scene in scenes)

    log.info(
        "recompute done: location=%s range=%s..%s recomputed=%d failed=%d months_invalidated=%d elapsed=%.3fs",
        location.id, start, end, ok, failed, months, time.perf_counter() - t0,
    )
    return RecomputeResult(recomputed=ok, failed=failed)


def recompute_many(
    service: CachedEventService,
    locations: Sequence[Location],
    date_range: DateRange,
    *,
    scenes: Sequence[SceneFilter] = (SceneFilter.ALL,),
    mode: SearchMode = SearchMode.BALANCED,
    max_workers: Optional[int] = None,
) -> Dict[str, RecomputeResult]:
    """
    Recompute several locations in parallel threads. Returns per-location results.
    """
    start, end = _check_range(date_range)
    _check_mode(mode)
    slots = len(scenes) * ((end - start).days + 1)
    workers = max_workers or service.config.jobs.max_workers
    results: Dict[str, RecomputeResult] = {}

    with ThreadPoolExecutor(max_workers=max(1, min(workers, len(locations) or 1))) as ex:
        futures = {
            ex.submit(recompute, service, loc, (start, end), scenes=scenes, mode=mode): loc
            for loc in locations
        }
        for fut in as_completed(futures):
            loc = futures[fut]
            try:
                results[loc.id] = fut.result()
            except Exception:
                log.exception("recompute crashed: location=%s range=%s..%s", loc.id, start, end)
                results[loc.id] = RecomputeResult(recomputed=0, failed=slots)

    total = sum(results.values(), RecomputeResult())
    log.info(
        "batch recompute done: locations=%d recomputed=%d failed=%d",
        len(locations), total.recomputed, total.failed,
    )
    return results


# ============================================================
# Single active instance per job
# ============================================================
@dataclass(frozen=True)
class Lease:
    job: str
    token: str
    acquired_at: float


class JobGuard:
    """
    At most one active run per job name. A lease older than lease_seconds is
    considered abandoned (crashed or stuck run) and may be taken over.
    """

    def __init__(self, *, lease_seconds: float = 6 * 3600, clock: Callable[[], float] = time.monotonic) -> None:
        if lease_seconds <= 0:
            raise ValueError("lease_seconds must be positive")
        self.lease_seconds = float(lease_seconds)
        self._clock = clock
        self._lock = threading.Lock()
        self._leases: Dict[str, Lease] = {}

    def acquire(self, job: str) -> Optional[Lease]:
        with self._lock:
            now = self._clock()
            held = self._leases.get(job)
            if held is not None:
                age = now - held.acquired_at
                if age < self.lease_seconds:
                    return None
                log.warning("taking over stale job lease: job=%s age=%.0fs", job, age)
            lease = Lease(job=job, token=uuid.uuid4().hex, acquired_at=now)
            self._leases[job] = lease
            return lease

    def release(self, lease: Lease) -> bool:
        """No-op (False) if the lease was taken over meanwhile."""
        with self._lock:
            held = self._leases.get(lease.job)
            if held is None or held.token != lease.token:
                return False
            del self._leases[lease.job]
            return True

    def is_running(self, job: str) -> bool:
        with self._lock:
            held = self._leases.get(job)
            return held is not None and self._clock() - held.acquired_at < self.lease_seconds

    def run_exclusive(self, job: str, fn: Callable[[], T]) -> Tuple[bool, Optional[T]]:
        """(False, None) when another run holds the job; otherwise (True, fn())."""
        lease = self.acquire(job)
        if lease is None:
            log.info("job already running, skipped: job=%s", job)
            return False, None
        try:
            return True, fn()
        finally:
            self.release(lease)


def recompute_year(
    service: CachedEventService,
    locations: Sequence[Location],
    year: int,
    guard: JobGuard,
    **kwargs,
) -> Optional[Dict[str, RecomputeResult]]:
    """Yearly maintenance run (usually for next year). None if a run is already active."""
    ran, results = guard.run_exclusive(
        f"recompute-year-{year}",
        lambda: recompute_many(service, locations, (date(year, 1, 1), date(year, 12, 31)), **kwargs),
    )
    return results if ran else None
