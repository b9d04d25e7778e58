# src/skyalign/core/classify.py
from __future__ import annotations

from typing import Optional

from .config import AccuracyThresholds, QualityConfig
from .models import Accuracy, EventType


def accuracy_for(deviation_deg: float, thresholds: AccuracyThresholds = AccuracyThresholds()) -> Optional[Accuracy]:
    """
    Tier for an absolute azimuth deviation. None beyond the `fair` bound
    (such a match is not an event at all).
    """
    d = abs(deviation_deg)
    if d <= thresholds.perfect:
        return Accuracy.PERFECT
    if d <= thresholds.excellent:
        return Accuracy.EXCELLENT
    if d <= thresholds.good:
        return Accuracy.GOOD
    if d <= thresholds.fair:
        return Accuracy.FAIR
    return None


def _clamp01(x: float) -> float:
    return min(1.0, max(0.0, x))


def altitude_score(altitude_deg: float, config: QualityConfig = QualityConfig()) -> float:
    """1 inside the pleasing band, linear falloff to 0 outside it."""
    lo, hi = config.pleasing_altitude_deg
    if lo <= altitude_deg <= hi:
        return 1.0
    gap = lo - altitude_deg if altitude_deg < lo else altitude_deg - hi
    return _clamp01(1.0 - gap / config.altitude_falloff_deg)


def quality_score(
    event_type: EventType,
    deviation_deg: float,
    altitude_deg: float,
    *,
    illumination: Optional[float] = None,
    thresholds: AccuracyThresholds = AccuracyThresholds(),
    config: QualityConfig = QualityConfig(),
) -> float:
    dev = _clamp01(1.0 - abs(deviation_deg) / thresholds.fair)
    alt = altitude_score(altitude_deg, config)

    if event_type is EventType.DIAMOND:
        w_dev, w_alt = config.diamond_weights
        q = w_dev * dev + w_alt * alt
    else:
        w_dev, w_alt, w_ill = config.pearl_weights
        q = w_dev * dev + w_alt * alt + w_ill * _clamp01(illumination or 0.0)

    return round(_clamp01(q), 4)
