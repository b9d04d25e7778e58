# src/skyalign/core/geometry.py
"""
Spherical-earth geometry between two geographic points.

All functions use the mean earth radius (6,371,000 m). For the distances this
project deals with (< ~500 km) the spherical error is well below what the
alignment search can resolve.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Protocol

from .errors import GeometryError

EARTH_RADIUS_M = 6_371_000.0

# Eye level added to an observer's ground elevation.
EYE_LEVEL_M = 1.7

# Fraction of the curvature drop cancelled by standard atmospheric refraction.
REFRACTION_COEFFICIENT = 0.13


class LatLon(Protocol):
    latitude: float
    longitude: float


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


def norm360(deg: float) -> float:
    """Normalize to [0, 360)."""
    x = deg % 360.0
    x = x + 360.0 if x < 0 else x
    # -1e-17 % 360.0 == 360.0 in floating point
    return 0.0 if x >= 360.0 else x


def angdiff180(deg: float) -> float:
    """Map angle to (-180, 180]."""
    x = (deg + 180.0) % 360.0 - 180.0
    return 180.0 if x == -180.0 else x


def check_latlon(latitude: float, longitude: float) -> None:
    if not (math.isfinite(latitude) and math.isfinite(longitude)):
        raise GeometryError(f"non-finite coordinates: lat={latitude!r} lon={longitude!r}")
    if abs(latitude) > 90.0:
        raise GeometryError(f"latitude out of range: {latitude}")
    if abs(longitude) > 180.0:
        raise GeometryError(f"longitude out of range: {longitude}")


def _radians(p: LatLon) -> tuple[float, float]:
    check_latlon(p.latitude, p.longitude)
    return math.radians(p.latitude), math.radians(p.longitude)


def bearing(a: LatLon, b: LatLon) -> float:
    """Great-circle initial bearing from a to b, degrees in [0, 360)."""
    lat1, lon1 = _radians(a)
    lat2, lon2 = _radians(b)
    if lat1 == lat2 and lon1 == lon2:
        return 0.0

    dlon = lon2 - lon1
    y = math.sin(dlon) * math.cos(lat2)
    x = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(dlon)
    return norm360(math.degrees(math.atan2(y, x)))


def distance(a: LatLon, b: LatLon) -> float:
    """Haversine great-circle distance in metres."""
    lat1, lon1 = _radians(a)
    lat2, lon2 = _radians(b)

    dlat = lat2 - lat1
    dlon = lon2 - lon1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    h = min(1.0, max(0.0, h))
    return EARTH_RADIUS_M * 2 * math.atan2(math.sqrt(h), math.sqrt(1 - h))


def destination_point(origin: LatLon, bearing_deg: float, distance_m: float) -> GeoPoint:
    """
    Spherical direct problem: the point reached from origin after travelling
    distance_m along the initial bearing bearing_deg.
    """
    if not (math.isfinite(bearing_deg) and math.isfinite(distance_m)):
        raise GeometryError(f"non-finite bearing/distance: {bearing_deg!r}/{distance_m!r}")
    if distance_m < 0:
        raise GeometryError(f"distance must be >= 0: {distance_m}")

    lat1, lon1 = _radians(origin)
    theta = math.radians(bearing_deg)
    delta = distance_m / EARTH_RADIUS_M

    sin_lat2 = math.sin(lat1) * math.cos(delta) + math.cos(lat1) * math.sin(delta) * math.cos(theta)
    lat2 = math.asin(min(1.0, max(-1.0, sin_lat2)))
    lon2 = lon1 + math.atan2(
        math.sin(theta) * math.sin(delta) * math.cos(lat1),
        math.cos(delta) - math.sin(lat1) * math.sin(lat2),
    )

    lon_deg = (math.degrees(lon2) + 540.0) % 360.0 - 180.0
    return GeoPoint(latitude=math.degrees(lat2), longitude=lon_deg)


def elevation_angle(height_difference: float, distance_m: float) -> float:
    """atan(height_difference / distance) in degrees."""
    if not (math.isfinite(height_difference) and math.isfinite(distance_m)):
        raise GeometryError("non-finite height difference / distance")
    if distance_m <= 0:
        raise GeometryError(f"elevation angle needs a positive distance (got {distance_m})")
    return math.degrees(math.atan(height_difference / distance_m))


def apparent_elevation_to_apex(
    observer_elevation_m: float,
    apex_height_m: float,
    distance_m: float,
) -> float:
    """
    Elevation angle to a landmark apex as actually seen: eye level on top of the
    observer's ground elevation, earth-curvature drop d^2/2R, partly lifted back
    by refraction.
    """
    curvature_drop = distance_m ** 2 / (2 * EARTH_RADIUS_M)
    net_drop = curvature_drop * (1.0 - REFRACTION_COEFFICIENT)
    vertical = apex_height_m - (observer_elevation_m + EYE_LEVEL_M) - net_drop
    return elevation_angle(vertical, distance_m)
