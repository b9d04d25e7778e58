from __future__ import annotations

import calendar
import logging
import os
import time
from contextlib import contextmanager
from datetime import date, datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from skyalign.cache.service import CachedEventService
from skyalign.cache.store import EventCacheStore
from skyalign.core.astronomy import CelestialEngine
from skyalign.core.config import AlignmentConfig, config_from_env
from skyalign.core.elevation_points import elevation_points
from skyalign.core.errors import GeometryError, ProviderError, RangeTooLarge, SearchCancelled
from skyalign.core.models import (
    AlignmentEvent,
    Body,
    ElevationPoint,
    Location,
    Observer,
    SceneFilter,
    SearchMode,
    SearchRequest,
)
from skyalign.core.providers.skyfield_provider import SkyfieldProvider
from skyalign.core.search import AlignmentSearchEngine, CancelToken, resolve_mode
from skyalign.features.aggregation import CalendarDay, best_shot_days, filter_events_by_date, group_by_date
from skyalign.features.recompute import JobGuard, recompute_many

router = APIRouter(prefix="/api/v1", tags=["public"])

log = logging.getLogger("skyalign.api.public")

SKYALIGN_EPHEMERIS_ENV = "SKYALIGN_EPHEMERIS"
SKYALIGN_EPHEMERIS_PATH_ENV = "SKYALIGN_EPHEMERIS_PATH"


# ============================================================
# Request / Response Models
# ============================================================
class MapSearchRequest(BaseModel):
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    elevation: float = Field(0.0, description="observer elevation (m above sea level)")
    start_date: date
    end_date: date
    scene: SceneFilter = SceneFilter.ALL
    search_mode: SearchMode = SearchMode.AUTO
    location_id: Optional[str] = None
    timeout_seconds: Optional[float] = Field(None, gt=0.0, description="cancel the search after this many seconds")


class EventOut(BaseModel):
    id: str
    type: str
    subtype: str
    time: datetime
    azimuth: float
    altitude: float
    accuracy: str
    quality_score: float
    deviation: float
    mode: str
    location_id: Optional[str] = None
    moon_phase: Optional[float] = None
    moon_illumination: Optional[float] = None

    @classmethod
    def of(cls, e: AlignmentEvent) -> "EventOut":
        return cls(**e.to_dict())


class SearchMetadataOut(BaseModel):
    total_events: int
    search_interval_seconds: int
    is_limited: bool
    original_total: int
    mode: str


class MapSearchResponse(BaseModel):
    events: List[EventOut]
    metadata: SearchMetadataOut


class ElevationPointOut(BaseModel):
    elevation: float
    latitude: float
    longitude: float
    distance_km: float
    bearing: float
    time: datetime
    subtype: str

    @classmethod
    def of(cls, p: ElevationPoint) -> "ElevationPointOut":
        return cls(
            elevation=p.elevation,
            latitude=p.latitude,
            longitude=p.longitude,
            distance_km=round(p.distance_km, 4),
            bearing=round(p.bearing, 4),
            time=p.time,
            subtype=p.subtype.value,
        )


class ElevationPointsResponse(BaseModel):
    date: date
    body: str
    landmark: str
    points: List[ElevationPointOut]


class CalendarDayOut(BaseModel):
    date: date
    kind: str
    score: int = 0
    events: List[EventOut] = Field(default_factory=list)

    @classmethod
    def of(cls, d: CalendarDay) -> "CalendarDayOut":
        return cls(date=d.date, kind=d.kind.value, score=d.score, events=[EventOut.of(e) for e in d.events])


class CalendarMonthResponse(BaseModel):
    year: int
    month: int
    tz: str
    mode: str
    days: List[CalendarDayOut]
    best_days: List[CalendarDayOut]


class DayEventsResponse(BaseModel):
    date: date
    tz: str
    mode: str
    kind: Optional[str] = None
    events: List[EventOut]


class UpcomingEventsResponse(BaseModel):
    now: datetime
    limit: int
    mode: str
    events: List[EventOut]


class LocationIn(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    latitude: float = Field(..., ge=-90.0, le=90.0)
    longitude: float = Field(..., ge=-180.0, le=180.0)
    elevation: float = 0.0


class RecomputeRequest(BaseModel):
    locations: List[LocationIn] = Field(..., min_length=1)
    start_date: date
    end_date: date
    scene: SceneFilter = SceneFilter.ALL
    search_mode: SearchMode = SearchMode.BALANCED


class RecomputeCounts(BaseModel):
    recomputed: int
    failed: int


class RecomputeResponse(BaseModel):
    started: bool
    results: Dict[str, RecomputeCounts] = Field(default_factory=dict)
    recomputed: int = 0
    failed: int = 0


# ============================================================
# Service wiring (overridable in tests via dependency_overrides)
# ============================================================
def _resolve_ephemeris() -> Tuple[str, Optional[Path]]:
    ephem = os.environ.get(SKYALIGN_EPHEMERIS_ENV, "de440s.bsp").strip() or "de440s.bsp"
    path_raw = os.environ.get(SKYALIGN_EPHEMERIS_PATH_ENV, "").strip()
    if path_raw:
        p = Path(path_raw).expanduser()
        if not p.exists():
            raise HTTPException(status_code=503, detail=f"ephemeris_path not found: {p}")
        return ephem, p
    return ephem, None


@lru_cache(maxsize=1)
def _service_cached(ephemeris: str, ephemeris_path: str) -> CachedEventService:
    """
    SkyfieldProvider loads the ephemeris file; keep one per process.
    """
    config: AlignmentConfig = config_from_env()
    provider = SkyfieldProvider(
        ephemeris=ephemeris or None,
        ephemeris_path=Path(ephemeris_path) if ephemeris_path else None,
    )
    engine = AlignmentSearchEngine(CelestialEngine(provider=provider, retry=config.retry), config)
    store = EventCacheStore(
        ttl_seconds=config.cache.ttl_seconds,
        stale_retention_seconds=config.cache.stale_retention_seconds,
        max_entries=config.cache.max_entries,
    )
    log.info("alignment service ready: landmark=%s ephemeris=%s", config.landmark.name, provider.ephemeris_path)
    return CachedEventService(engine=engine, store=store)


def get_service() -> CachedEventService:
    ephem, path = _resolve_ephemeris()
    try:
        return _service_cached(ephem, str(path) if path else "")
    except FileNotFoundError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e


@lru_cache(maxsize=1)
def get_job_guard() -> JobGuard:
    return JobGuard(lease_seconds=config_from_env().jobs.lease_seconds)


def get_clock() -> Callable[[], datetime]:
    return lambda: datetime.now(timezone.utc)


@contextmanager
def _errors_to_http() -> Iterator[None]:
    try:
        yield
    except HTTPException:
        raise
    except RangeTooLarge as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except (GeometryError, ValueError) as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except ProviderError as e:
        log.error("provider failure: %s", e)
        raise HTTPException(status_code=503, detail="celestial provider unavailable") from e
    except SearchCancelled as e:
        raise HTTPException(status_code=504, detail=str(e)) from e


# ============================================================
# Endpoints
# ============================================================
@router.post("/map-search", response_model=MapSearchResponse)
def map_search(
    req: MapSearchRequest,
    timing: bool = Query(False, description="log timing (diagnostics)"),
    service: CachedEventService = Depends(get_service),
) -> MapSearchResponse:
    t0 = time.perf_counter()
    with _errors_to_http():
        observer = Observer(req.latitude, req.longitude, req.elevation)
        request = SearchRequest(
            observer=observer,
            start=req.start_date,
            end=req.end_date,
            scene=req.scene,
            mode=req.search_mode,
            location_id=req.location_id,
        )
        cancel = CancelToken(timeout_seconds=req.timeout_seconds) if req.timeout_seconds else None
        result = service.search(request, cancel=cancel)
    t1 = time.perf_counter()

    if timing:
        log.warning(
            "timing /map-search lat=%.6f lon=%.6f days=%d mode=%s events=%d total=%.3fs",
            req.latitude, req.longitude, request.span_days, result.metadata.mode.value,
            result.metadata.total_events, t1 - t0,
        )

    md = result.metadata
    return MapSearchResponse(
        events=[EventOut.of(e) for e in result.events],
        metadata=SearchMetadataOut(
            total_events=md.total_events,
            search_interval_seconds=md.search_interval_seconds,
            is_limited=md.is_limited,
            original_total=md.original_total,
            mode=md.mode.value,
        ),
    )


def _parse_elevations(raw: str) -> Optional[List[float]]:
    s = raw.strip()
    if not s:
        return None
    try:
        return [float(x) for x in s.split(",") if x.strip()]
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid elevations: {raw} (expected comma-separated degrees)") from e


@router.get("/elevation-points", response_model=ElevationPointsResponse)
def get_elevation_points(
    date_str: str = Query(..., alias="date", description="YYYY-MM-DD"),
    body: Body = Query(Body.SUN),
    elevations: str = Query("", description="comma-separated target elevations (deg)"),
    service: CachedEventService = Depends(get_service),
) -> ElevationPointsResponse:
    d = _parse_iso_date(date_str)
    targets = _parse_elevations(elevations)
    cfg = service.config
    with _errors_to_http():
        points = elevation_points(
            service.engine.engine,
            cfg.landmark,
            d,
            body,
            targets,
            cfg.elevation_points,
        )
    return ElevationPointsResponse(
        date=d,
        body=body.value,
        landmark=cfg.landmark.name,
        points=[ElevationPointOut.of(p) for p in points],
    )


@router.get("/calendar/{year}/{month}", response_model=CalendarMonthResponse)
def get_calendar_month(
    year: int,
    month: int,
    lat: float = Query(..., ge=-90.0, le=90.0, description="observer latitude (deg)"),
    lon: float = Query(..., ge=-180.0, le=180.0, description="observer longitude (deg)"),
    elevation: float = Query(0.0),
    scene: SceneFilter = Query(SceneFilter.ALL),
    mode: SearchMode = Query(SearchMode.BALANCED),
    location_id: Optional[str] = Query(None),
    best_limit: int = Query(10, ge=0, le=31),
    service: CachedEventService = Depends(get_service),
) -> CalendarMonthResponse:
    if not 1 <= month <= 12:
        raise HTTPException(status_code=422, detail=f"month out of range: {month}")
    if not 1 <= year <= 9999:
        raise HTTPException(status_code=422, detail=f"year out of range: {year}")

    cfg = service.config
    tzinfo = cfg.landmark.tzinfo
    t0 = time.perf_counter()
    with _errors_to_http():
        observer = Observer(lat, lon, elevation)
        resolved = resolve_mode(mode, calendar.monthrange(year, month)[1], cfg)
        events = service.events_for_month(observer, year, month, scene, resolved, location_id=location_id)
        days = group_by_date(events, tzinfo)
        best = best_shot_days(events, year, month, tzinfo, limit=best_limit)
    log.info(
        "calendar %04d-%02d lat=%.6f lon=%.6f mode=%s events=%d elapsed=%.3fs",
        year, month, lat, lon, resolved.value, len(events), time.perf_counter() - t0,
    )
    return CalendarMonthResponse(
        year=year,
        month=month,
        tz=cfg.landmark.tz,
        mode=resolved.value,
        days=[CalendarDayOut.of(d) for d in days],
        best_days=[CalendarDayOut.of(d) for d in best],
    )


@router.get("/events/upcoming", response_model=UpcomingEventsResponse)
def get_upcoming_events(
    lat: float = Query(..., ge=-90.0, le=90.0, description="observer latitude (deg)"),
    lon: float = Query(..., ge=-180.0, le=180.0, description="observer longitude (deg)"),
    elevation: float = Query(0.0),
    scene: SceneFilter = Query(SceneFilter.ALL),
    mode: SearchMode = Query(SearchMode.BALANCED),
    location_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    days: int = Query(60, ge=1, le=366, description="how far ahead to look"),
    service: CachedEventService = Depends(get_service),
    clock: Callable[[], datetime] = Depends(get_clock),
) -> UpcomingEventsResponse:
    now = clock()
    with _errors_to_http():
        observer = Observer(lat, lon, elevation)
        resolved = resolve_mode(mode, days, service.config)
        events = service.upcoming(
            observer, now, scene, resolved, limit=limit, horizon_days=days, location_id=location_id
        )
    return UpcomingEventsResponse(now=now, limit=limit, mode=resolved.value, events=[EventOut.of(e) for e in events])


@router.get("/events/{date_str}", response_model=DayEventsResponse)
def get_day_events(
    date_str: str,
    lat: float = Query(..., ge=-90.0, le=90.0, description="observer latitude (deg)"),
    lon: float = Query(..., ge=-180.0, le=180.0, description="observer longitude (deg)"),
    elevation: float = Query(0.0),
    scene: SceneFilter = Query(SceneFilter.ALL),
    mode: SearchMode = Query(SearchMode.BALANCED),
    location_id: Optional[str] = Query(None),
    service: CachedEventService = Depends(get_service),
) -> DayEventsResponse:
    d = _parse_iso_date(date_str)
    cfg = service.config
    tzinfo = cfg.landmark.tzinfo
    with _errors_to_http():
        observer = Observer(lat, lon, elevation)
        resolved = resolve_mode(mode, 1, cfg)
        events = service.events_for_day(observer, d, scene, resolved, location_id=location_id)
        events = filter_events_by_date(events, d, tzinfo)
    days = group_by_date(events, tzinfo)
    return DayEventsResponse(
        date=d,
        tz=cfg.landmark.tz,
        mode=resolved.value,
        kind=days[0].kind.value if days else None,
        events=[EventOut.of(e) for e in events],
    )


@router.post("/admin/recompute", response_model=RecomputeResponse)
def admin_recompute(
    req: RecomputeRequest,
    service: CachedEventService = Depends(get_service),
    guard: JobGuard = Depends(get_job_guard),
) -> RecomputeResponse:
    if req.end_date < req.start_date:
        raise HTTPException(status_code=422, detail="end_date must be >= start_date")
    if req.search_mode is SearchMode.AUTO:
        raise HTTPException(status_code=422, detail="search_mode must be fast, balanced or precise")

    with _errors_to_http():
        locations = [
            Location(id=x.id, name=x.name or x.id, observer=Observer(x.latitude, x.longitude, x.elevation))
            for x in req.locations
        ]
        started, results = guard.run_exclusive(
            "admin-recompute",
            lambda: recompute_many(
                service,
                locations,
                (req.start_date, req.end_date),
                scenes=(req.scene,),
                mode=req.search_mode,
            ),
        )

    if not started:
        return RecomputeResponse(started=False)

    counts = {k: RecomputeCounts(recomputed=v.recomputed, failed=v.failed) for k, v in (results or {}).items()}
    return RecomputeResponse(
        started=True,
        results=counts,
        recomputed=sum(c.recomputed for c in counts.values()),
        failed=sum(c.failed for c in counts.values()),
    )


# ============================================================
# Helpers: parsing
# ============================================================
def _parse_iso_date(s: str) -> date:
    try:
        return date.fromisoformat(s)
    except ValueError as e:
        raise HTTPException(status_code=422, detail=f"Invalid date format: {s} (expected YYYY-MM-DD)") from e
