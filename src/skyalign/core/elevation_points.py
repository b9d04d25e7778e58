# src/skyalign/core/elevation_points.py
from __future__ import annotations

import logging
import math
from datetime import date, timedelta
from typing import List, Optional, Sequence

from .astronomy import CelestialEngine
from .config import ElevationPointConfig
from .geometry import destination_point, norm360
from .models import Body, ElevationPoint, EventSubtype, Landmark
from .rootfind import build_grid

log = logging.getLogger(__name__)


def _max_target(engine: CelestialEngine, landmark: Landmark, day: date, body: Body, config: ElevationPointConfig) -> float:
    """
    Highest usable target: floor(culmination altitude) - margin, never above the
    body's configured maximum. No culmination found -> the configured maximum.
    """
    cap = config.max_elevation_deg.get(body, 90.0)
    cul = engine.culmination(body, landmark.as_observer(), day, landmark.tzinfo)
    if cul is None:
        log.debug("no culmination: body=%s day=%s", body.value, day)
        return cap
    return min(cap, math.floor(cul.altitude) - config.culmination_margin_deg)


def elevation_points(
    engine: CelestialEngine,
    landmark: Landmark,
    day: date,
    body: Body,
    elevations: Optional[Sequence[float]] = None,
    config: ElevationPointConfig = ElevationPointConfig(),
) -> List[ElevationPoint]:
    """
    Where must a photographer stand so that the landmark's apex appears at
    elevation E while the body is at the same altitude E?

    For each target E the landmark's rise->set window is scanned for the
    instant the body's altitude is closest to E. The standing point lies
    apex_height / tan(E) away from the landmark, opposite the body's azimuth.
    Targets without a close-enough instant, or with an impractical distance,
    are dropped.
    """
    targets = list(config.default_elevations[body] if elevations is None else elevations)
    top = _max_target(engine, landmark, day, body, config)
    targets = [e for e in targets if math.isfinite(e) and 0.0 <= e <= top]
    log.debug("elevation targets: body=%s day=%s max=%.1f targets=%s", body.value, day, top, targets)
    if not targets:
        return []

    site = landmark.as_observer()
    window = engine.window(body, site, day, landmark.tzinfo)
    if window is None:
        log.debug("no window for elevation points: body=%s day=%s", body.value, day)
        return []

    ts = build_grid(window.rise, window.set, timedelta(minutes=config.scan_step_minutes))
    positions = engine.positions(body, ts, site)

    out: List[ElevationPoint] = []
    for target in targets:
        i_best = min(range(len(ts)), key=lambda i: abs(positions[i].altitude - target))
        diff = abs(positions[i_best].altitude - target)
        if diff >= config.altitude_tolerance_deg:
            continue
        if target < config.min_elevation_deg:
            continue

        distance_km = landmark.apex_height / math.tan(math.radians(target)) / 1000.0
        if not (config.min_distance_km <= distance_km <= config.max_distance_km):
            log.debug("elevation point out of range: target=%.1f distance=%.1fkm", target, distance_km)
            continue

        t = ts[i_best]
        facing = norm360(positions[i_best].azimuth + 180.0)
        point = destination_point(landmark, facing, distance_km * 1000.0)
        out.append(
            ElevationPoint(
                elevation=float(target),
                latitude=point.latitude,
                longitude=point.longitude,
                distance_km=distance_km,
                bearing=facing,
                time=t,
                subtype=EventSubtype.for_phase(body, window.fraction(t) < 0.5),
            )
        )

    return out
