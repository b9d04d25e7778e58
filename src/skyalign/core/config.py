# src/skyalign/core/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Tuple

from .models import Body, Landmark, SearchMode


@dataclass(frozen=True)
class SearchModeConfig:
    """
    Resolution / range tradeoff of one search mode.
    All time units are explicit to avoid minute/second confusion.
    """
    step_seconds: int
    refine_tol_seconds: float
    coarse_bound_deg: float
    tolerance_deg: float
    max_span_days: Optional[int] = None


DEFAULT_MODES: Dict[SearchMode, SearchModeConfig] = {
    SearchMode.FAST: SearchModeConfig(
        step_seconds=300, refine_tol_seconds=5.0, coarse_bound_deg=3.0, tolerance_deg=0.6,
    ),
    SearchMode.BALANCED: SearchModeConfig(
        step_seconds=60, refine_tol_seconds=1.0, coarse_bound_deg=2.0, tolerance_deg=0.6,
    ),
    SearchMode.PRECISE: SearchModeConfig(
        step_seconds=10, refine_tol_seconds=0.2, coarse_bound_deg=1.0, tolerance_deg=0.4,
        max_span_days=90,
    ),
}


@dataclass(frozen=True)
class AutoModeConfig:
    # inclusive day counts
    precise_max_days: int = 31
    balanced_max_days: int = 730


@dataclass(frozen=True)
class SearchConfig:
    modes: Mapping[SearchMode, SearchModeConfig] = field(default_factory=lambda: dict(DEFAULT_MODES))
    auto: AutoModeConfig = field(default_factory=AutoModeConfig)

    # applies to every mode
    max_span_days: int = 1095
    max_results: int = 100

    # sun/moon higher than this cannot sit on the landmark in a photo
    max_body_altitude_deg: Mapping[Body, float] = field(
        default_factory=lambda: {Body.SUN: 35.0, Body.MOON: 65.0}
    )
    min_moon_illumination: float = 0.1

    merge_seconds: float = 60.0
    # narrowing search: samples per pass when no sign change brackets the match
    narrow_samples: int = 10

    def mode(self, mode: SearchMode) -> SearchModeConfig:
        if mode is SearchMode.AUTO:
            raise ValueError("auto must be resolved before looking up a mode config")
        return self.modes[mode]


@dataclass(frozen=True)
class AccuracyThresholds:
    """Upper deviation bound (degrees) of each tier; beyond `fair` is not an event."""
    perfect: float = 0.1
    excellent: float = 0.25
    good: float = 0.4
    fair: float = 0.6


@dataclass(frozen=True)
class QualityConfig:
    pleasing_altitude_deg: Tuple[float, float] = (1.0, 15.0)
    altitude_falloff_deg: float = 5.0

    diamond_weights: Tuple[float, float] = (0.6, 0.4)              # deviation, altitude
    pearl_weights: Tuple[float, float, float] = (0.5, 0.3, 0.2)    # deviation, altitude, illumination


@dataclass(frozen=True)
class ElevationPointConfig:
    default_elevations: Mapping[Body, Tuple[float, ...]] = field(
        default_factory=lambda: {
            Body.SUN: tuple(float(x) for x in range(0, 31, 5)),
            Body.MOON: tuple(float(x) for x in range(0, 61, 5)),
        }
    )
    max_elevation_deg: Mapping[Body, float] = field(
        default_factory=lambda: {Body.SUN: 30.0, Body.MOON: 60.0}
    )
    culmination_margin_deg: float = 1.0
    scan_step_minutes: int = 15
    altitude_tolerance_deg: float = 2.0
    min_elevation_deg: float = 0.1
    min_distance_km: float = 0.1
    max_distance_km: float = 500.0


@dataclass(frozen=True)
class RetryConfig:
    attempts: int = 3
    base_delay_seconds: float = 0.05
    max_delay_seconds: float = 1.0


@dataclass(frozen=True)
class CacheConfig:
    ttl_seconds: int = 30 * 24 * 3600
    # expired entries stay readable (STALE) this long past their TTL
    stale_retention_seconds: int = 7 * 24 * 3600
    max_entries: int = 50_000
    version: str = "v1"


@dataclass(frozen=True)
class JobConfig:
    lease_seconds: float = 6 * 3600
    max_workers: int = 5


@dataclass(frozen=True)
class AlignmentConfig:
    landmark: Landmark = field(default_factory=Landmark)
    search: SearchConfig = field(default_factory=SearchConfig)
    accuracy: AccuracyThresholds = field(default_factory=AccuracyThresholds)
    quality: QualityConfig = field(default_factory=QualityConfig)
    elevation_points: ElevationPointConfig = field(default_factory=ElevationPointConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    jobs: JobConfig = field(default_factory=JobConfig)


# ============================================================
# Environment overrides
# ============================================================
ENV_PREFIX = "SKYALIGN_"


def _env_float(env: Mapping[str, str], name: str) -> Optional[float]:
    raw = env.get(ENV_PREFIX + name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{ENV_PREFIX}{name} must be a number (got {raw!r})") from e


def config_from_env(
    env: Optional[Mapping[str, str]] = None,
    *,
    base: Optional[AlignmentConfig] = None,
) -> AlignmentConfig:
    """
    Apply SKYALIGN_* overrides on top of `base` (defaults if omitted).

      SKYALIGN_LANDMARK_NAME / _LAT / _LON / _APEX_HEIGHT / _TZ
      SKYALIGN_CACHE_TTL_SECONDS
    """
    env = os.environ if env is None else env
    cfg = base or AlignmentConfig()

    lm = cfg.landmark
    lat = _env_float(env, "LANDMARK_LAT")
    lon = _env_float(env, "LANDMARK_LON")
    apex = _env_float(env, "LANDMARK_APEX_HEIGHT")
    name = env.get(ENV_PREFIX + "LANDMARK_NAME", "").strip()
    tz = env.get(ENV_PREFIX + "LANDMARK_TZ", "").strip()
    lm = replace(
        lm,
        name=name or lm.name,
        latitude=lm.latitude if lat is None else lat,
        longitude=lm.longitude if lon is None else lon,
        apex_height=lm.apex_height if apex is None else apex,
        tz=tz or lm.tz,
    )

    ttl = _env_float(env, "CACHE_TTL_SECONDS")
    cache = cfg.cache if ttl is None else replace(cfg.cache, ttl_seconds=int(ttl))

    return replace(cfg, landmark=lm, cache=cache)
