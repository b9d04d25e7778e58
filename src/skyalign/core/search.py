# src/skyalign/core/search.py
"""
Alignment search: when does the sun / moon stand in the observer -> landmark
direction?

Per (date, body) the search walks a small state machine:

    IDLE -> WINDOW_RESOLVED -> SCANNING -> REFINING -> CLASSIFIED

The body's azimuth has no closed-form inverse, so the window is sampled at the
mode's step, local minima of |azimuth - bearing| become candidates, and each
candidate is refined (bracketed root solve on the signed difference when it
changes sign, grid narrowing otherwise).

A local date covers every rise/set window overlapping it, clipped to the day:
a moon that rises in the evening and sets after midnight is searched on both
dates, each keeping the part that falls inside it.
"""
from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .astronomy import CelestialEngine
from .classify import accuracy_for, quality_score
from .config import AlignmentConfig, SearchModeConfig
from .errors import EmptyWindowError, GeometryError, RangeTooLarge, SearchCancelled, ToleranceNotMet
from .geometry import angdiff180, bearing, distance
from .models import (
    AlignmentEvent,
    Body,
    EventSubtype,
    EventType,
    HorizontalPosition,
    Observer,
    RiseSet,
    SceneFilter,
    SearchMetadata,
    SearchMode,
    SearchRequest,
    SearchResult,
)
from .rootfind import brentq_datetime, build_grid, local_minima, narrow_minimum
from .timeutil import iter_dates, local_day_bounds_utc

log = logging.getLogger(__name__)

# positions requested per provider batch; cancellation is checked between batches
SCAN_CHUNK = 720

# an observer closer than this to the landmark has no meaningful bearing
MIN_OBSERVER_DISTANCE_M = 1.0


class SearchPhase(str, Enum):
    IDLE = "idle"
    WINDOW_RESOLVED = "window_resolved"
    SCANNING = "scanning"
    REFINING = "refining"
    CLASSIFIED = "classified"


class CancelToken:
    """
    Cooperative cancellation: explicit cancel() or a deadline.
    The search checks it between scan batches and before each refinement.
    """

    def __init__(self, *, timeout_seconds: Optional[float] = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._event = threading.Event()
        self._clock = clock
        self._deadline = None if timeout_seconds is None else clock() + float(timeout_seconds)

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._deadline is not None and self._clock() >= self._deadline

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            reason = "cancelled" if self._event.is_set() else "deadline exceeded"
            raise SearchCancelled(f"search {reason}")


# ============================================================
# Validation / mode selection
# ============================================================
def resolve_mode(mode: SearchMode, span_days: int, config: AlignmentConfig) -> SearchMode:
    """
    auto: precise for short ranges, balanced for medium ones, fast beyond.
    Falls back to a coarser mode whenever the finer one's span cap would be exceeded.
    """
    if mode is not SearchMode.AUTO:
        return mode

    auto = config.search.auto
    if span_days <= auto.precise_max_days:
        picked = SearchMode.PRECISE
    elif span_days <= auto.balanced_max_days:
        picked = SearchMode.BALANCED
    else:
        picked = SearchMode.FAST

    for candidate in (picked, SearchMode.BALANCED, SearchMode.FAST):
        cap = config.search.mode(candidate).max_span_days
        if cap is None or span_days <= cap:
            return candidate
    return SearchMode.FAST


def validate_request(request: SearchRequest, config: AlignmentConfig) -> SearchMode:
    """
    Reject bad input before any provider call. Returns the resolved mode.
    """
    if request.end < request.start:
        raise ValueError("end must be >= start")

    if distance(request.observer, config.landmark) < MIN_OBSERVER_DISTANCE_M:
        raise GeometryError("observer coincides with the landmark")

    days = request.span_days
    if days > config.search.max_span_days:
        raise RangeTooLarge(days=days, limit=config.search.max_span_days, mode=request.mode.value)

    mode = resolve_mode(request.mode, days, config)
    cap = config.search.mode(mode).max_span_days
    if cap is not None and days > cap:
        raise RangeTooLarge(days=days, limit=cap, mode=mode.value)
    return mode


def build_result(
    events: List[AlignmentEvent],
    mode: SearchMode,
    config: AlignmentConfig,
) -> SearchResult:
    events = sorted(events, key=lambda e: (e.time, e.type.value))
    original_total = len(events)
    limit = config.search.max_results
    kept = events[:limit]
    return SearchResult(
        events=kept,
        metadata=SearchMetadata(
            total_events=len(kept),
            search_interval_seconds=config.search.mode(mode).step_seconds,
            is_limited=original_total > limit,
            original_total=original_total,
            mode=mode,
        ),
    )


# ============================================================
# Per (date, body) search
# ============================================================
@dataclass
class _Candidate:
    t: datetime
    deviation: float  # absolute
    position: HorizontalPosition


@dataclass
class _BodySearch:
    body: Body
    day: date
    mode: SearchMode
    phase: SearchPhase = SearchPhase.IDLE
    windows: List[RiseSet] = field(default_factory=list)
    samples: int = 0
    candidates: List[_Candidate] = field(default_factory=list)

    def advance(self, phase: SearchPhase) -> None:
        log.debug("search %s %s %s: %s -> %s", self.day, self.body.value, self.mode.value, self.phase.value, phase.value)
        self.phase = phase


@dataclass(frozen=True)
class AlignmentSearchEngine:
    engine: CelestialEngine
    config: AlignmentConfig = field(default_factory=AlignmentConfig)

    # ---- public ----
    def search(self, request: SearchRequest, *, cancel: Optional[CancelToken] = None) -> SearchResult:
        mode = validate_request(request, self.config)
        t0 = time.perf_counter()

        events: List[AlignmentEvent] = []
        for day in iter_dates(request.start, request.end):
            if cancel is not None:
                cancel.raise_if_cancelled()
            events.extend(
                self.search_day(
                    request.observer,
                    day,
                    request.scene,
                    mode,
                    location_id=request.cache_location_id(),
                    cancel=cancel,
                )
            )

        result = build_result(events, mode, self.config)
        log.info(
            "alignment search done: lat=%.6f lon=%.6f scene=%s mode=%s->%s days=%d events=%d limited=%s elapsed=%.3fs",
            request.observer.latitude,
            request.observer.longitude,
            request.scene.value,
            request.mode.value,
            mode.value,
            request.span_days,
            result.metadata.original_total,
            result.metadata.is_limited,
            time.perf_counter() - t0,
        )
        return result

    def search_day(
        self,
        observer: Observer,
        day: date,
        scene: SceneFilter,
        mode: SearchMode,
        *,
        location_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[AlignmentEvent]:
        """All events for one local date, chronological. `mode` must be resolved."""
        if mode is SearchMode.AUTO:
            raise ValueError("search_day needs a resolved mode (not auto)")

        out: List[AlignmentEvent] = []
        for body in scene.bodies():
            try:
                out.extend(
                    self.search_body(observer, day, body, mode, location_id=location_id, cancel=cancel)
                )
            except EmptyWindowError as e:
                log.debug("no window: day=%s body=%s: %s", day, body.value, e)
            except ToleranceNotMet as e:
                log.debug("no alignment: day=%s body=%s: %s", day, body.value, e)

        out.sort(key=lambda e: e.time)
        return out

    def search_body(
        self,
        observer: Observer,
        day: date,
        body: Body,
        mode: SearchMode,
        *,
        location_id: Optional[str] = None,
        cancel: Optional[CancelToken] = None,
    ) -> List[AlignmentEvent]:
        """
        Raises EmptyWindowError / ToleranceNotMet when there is nothing to report.
        """
        cfg = self.config
        mode_cfg = cfg.search.mode(mode)
        landmark = cfg.landmark
        target = bearing(observer, landmark)
        state = _BodySearch(body=body, day=day, mode=mode)

        day_start, day_end = local_day_bounds_utc(day, landmark.tzinfo)
        spans = self._day_windows(body, day, day_start, day_end)
        if not spans:
            raise EmptyWindowError(f"{body.value} has no rise/set window overlapping {day}")
        state.windows = [w for w, _ in spans]
        state.advance(SearchPhase.WINDOW_RESOLVED)

        state.advance(SearchPhase.SCANNING)
        step = timedelta(seconds=mode_cfg.step_seconds)
        alt_cap = cfg.search.max_body_altitude_deg.get(body, 90.0)
        best = math.inf
        scans = []
        for window, span in spans:
            ts, signed, positions = self._scan(body, observer, target, span, step, cancel)
            state.samples += len(ts)
            absdev = [
                abs(s) if p.altitude <= alt_cap else math.inf
                for s, p in zip(signed, positions)
            ]
            best = min([best] + absdev)
            idx = [i for i in local_minima(absdev) if absdev[i] <= mode_cfg.coarse_bound_deg]
            scans.append((window, span, ts, signed, positions, idx))

        if not any(idx for *_, idx in scans):
            raise ToleranceNotMet(
                f"{body.value} on {day}: closest sample {best:.3f} deg > coarse bound {mode_cfg.coarse_bound_deg}",
                deviation=best,
            )

        state.advance(SearchPhase.REFINING)
        found: List[Tuple[RiseSet, _Candidate]] = []
        for window, span, ts, signed, positions, idx in scans:
            for i in idx:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                c = self._refine(body, observer, target, span, ts[i], signed[i], positions[i], step, mode_cfg)
                state.candidates.append(c)
                found.append((window, c))

        tolerance = min(mode_cfg.tolerance_deg, cfg.accuracy.fair)
        events: List[AlignmentEvent] = []
        for window, c in found:
            if not (day_start <= c.t < day_end):
                continue
            if c.position.altitude > alt_cap:
                continue
            if c.deviation > tolerance:
                continue
            ev = self._classify(body, day, mode, window, c, location_id)
            if ev is not None:
                events.append(ev)

        state.advance(SearchPhase.CLASSIFIED)
        events = self._merge(events)
        if not events:
            best = min(c.deviation for c in state.candidates)
            raise ToleranceNotMet(
                f"{body.value} on {day}: refined deviation {best:.3f} deg > tolerance {tolerance}",
                deviation=best,
            )
        return events

    # ---- steps ----
    def _day_windows(
        self,
        body: Body,
        day: date,
        day_start: datetime,
        day_end: datetime,
    ) -> List[Tuple[RiseSet, RiseSet]]:
        """(full window, part inside the local day) for windows rising on day-1 or day."""
        landmark = self.config.landmark
        out: List[Tuple[RiseSet, RiseSet]] = []
        for d in (day - timedelta(days=1), day):
            window = self.engine.window(body, landmark.as_observer(), d, landmark.tzinfo)
            if window is None or any(window == w for w, _ in out):
                continue
            span = window.clipped(day_start, day_end)
            if span is not None:
                out.append((window, span))
        return out

    def _scan(
        self,
        body: Body,
        observer: Observer,
        target: float,
        window: RiseSet,
        step: timedelta,
        cancel: Optional[CancelToken],
    ) -> Tuple[List[datetime], List[float], List[HorizontalPosition]]:
        ts = build_grid(window.rise, window.set, step)
        positions: List[HorizontalPosition] = []
        for k in range(0, len(ts), SCAN_CHUNK):
            if cancel is not None:
                cancel.raise_if_cancelled()
            positions.extend(self.engine.positions(body, ts[k:k + SCAN_CHUNK], observer))
        signed = [angdiff180(p.azimuth - target) for p in positions]
        return ts, signed, positions

    def _refine(
        self,
        body: Body,
        observer: Observer,
        target: float,
        window: RiseSet,
        t0: datetime,
        s0: float,
        p0: HorizontalPosition,
        step: timedelta,
        mode_cfg: SearchModeConfig,
    ) -> _Candidate:
        coarse = _Candidate(t=t0, deviation=abs(s0), position=p0)
        if s0 == 0.0:
            return coarse

        def signed(t: datetime) -> float:
            return angdiff180(self.engine.position(body, t, observer).azimuth - target)

        lo = max(window.rise, t0 - step)
        hi = min(window.set, t0 + step)

        bracket: Optional[Tuple[datetime, datetime]] = None
        if lo < t0:
            s_lo = signed(lo)
            # a flip through +/-180 is the opposite direction, not a crossing
            if abs(s_lo) < 90.0 and s_lo * s0 <= 0.0:
                bracket = (lo, t0)
        if bracket is None and t0 < hi:
            s_hi = signed(hi)
            if abs(s_hi) < 90.0 and s0 * s_hi <= 0.0:
                bracket = (t0, hi)

        if bracket is not None:
            t = brentq_datetime(signed, bracket[0], bracket[1], tol_seconds=mode_cfg.refine_tol_seconds).t
        else:
            t = narrow_minimum(
                lambda x: abs(signed(x)),
                lo,
                hi,
                tol_seconds=mode_cfg.refine_tol_seconds,
                samples=self.config.search.narrow_samples,
            ).t

        pos = self.engine.position(body, t, observer)
        dev = abs(angdiff180(pos.azimuth - target))
        if dev > coarse.deviation:
            return coarse
        return _Candidate(t=t, deviation=dev, position=pos)

    def _classify(
        self,
        body: Body,
        day: date,
        mode: SearchMode,
        window: RiseSet,
        c: _Candidate,
        location_id: Optional[str],
    ) -> Optional[AlignmentEvent]:
        cfg = self.config
        event_type = EventType.for_body(body)
        accuracy = accuracy_for(c.deviation, cfg.accuracy)
        if accuracy is None:
            return None

        phase: Optional[float] = None
        illumination: Optional[float] = None
        if body is Body.MOON:
            mp = self.engine.moon_phase(c.t)
            if mp.illumination < cfg.search.min_moon_illumination:
                log.debug("moon too dark: day=%s t=%s illumination=%.3f", day, c.t.isoformat(), mp.illumination)
                return None
            phase, illumination = mp.phase, mp.illumination

        rising = window.fraction(c.t) < 0.5
        loc = location_id or "adhoc"
        return AlignmentEvent(
            id=f"{loc}-{day.isoformat()}-{event_type.value}-{int(c.t.timestamp() * 1000)}",
            type=event_type,
            subtype=EventSubtype.for_phase(body, rising),
            time=c.t,
            azimuth=c.position.azimuth,
            altitude=c.position.altitude,
            accuracy=accuracy,
            quality_score=quality_score(
                event_type,
                c.deviation,
                c.position.altitude,
                illumination=illumination,
                thresholds=cfg.accuracy,
                config=cfg.quality,
            ),
            deviation=round(c.deviation, 6),
            mode=mode,
            location_id=location_id,
            moon_phase=phase,
            moon_illumination=illumination,
        )

    def _merge(self, events: List[AlignmentEvent]) -> List[AlignmentEvent]:
        """Collapse events closer than merge_seconds, keeping the smaller deviation."""
        merged: List[AlignmentEvent] = []
        for ev in sorted(events, key=lambda e: e.time):
            if merged and (ev.time - merged[-1].time).total_seconds() <= self.config.search.merge_seconds:
                if ev.deviation < merged[-1].deviation:
                    merged[-1] = ev
                continue
            merged.append(ev)
        return merged
