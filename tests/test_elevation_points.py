from __future__ import annotations

import math
from datetime import date

import pytest

from skyalign.core.astronomy import CelestialEngine
from skyalign.core.config import ElevationPointConfig
from skyalign.core.elevation_points import elevation_points
from skyalign.core.geometry import angdiff180, bearing, distance, elevation_angle
from skyalign.core.models import Body, EventSubtype

from conftest import SUN_TRACK, TEST_LANDMARK, StubProvider

DAY = date(2025, 5, 1)


def test_default_sun_targets(celestial):
    pts = elevation_points(celestial, TEST_LANDMARK, DAY, Body.SUN)
    # 0 deg is dropped (no finite distance); 5..30 survive (peak 40 -> cap 30)
    assert [p.elevation for p in pts] == [5.0, 10.0, 15.0, 20.0, 25.0, 30.0]

    for p in pts:
        assert p.subtype in (EventSubtype.SUNRISE, EventSubtype.SUNSET)
        assert abs(SUN_TRACK.altitude(p.time) - p.elevation) < 2.0

        # standing point: apex seen at the target elevation, body behind the landmark
        d = distance(TEST_LANDMARK, p)
        assert d / 1000.0 == pytest.approx(p.distance_km, rel=1e-6)
        assert elevation_angle(TEST_LANDMARK.apex_height, d) == pytest.approx(p.elevation, abs=1e-6)
        assert angdiff180(bearing(TEST_LANDMARK, p) - p.bearing) == pytest.approx(0.0, abs=1e-6)
        assert angdiff180(p.bearing - SUN_TRACK.azimuth(p.time) - 180.0) == pytest.approx(0.0, abs=1e-9)


def test_distances_shrink_with_elevation(celestial):
    pts = elevation_points(celestial, TEST_LANDMARK, DAY, Body.SUN)
    ds = [p.distance_km for p in pts]
    assert ds == sorted(ds, reverse=True)
    assert ds[0] == pytest.approx(TEST_LANDMARK.apex_height / math.tan(math.radians(5.0)) / 1000.0)


def test_culmination_caps_targets(celestial, provider):
    # moon peaks at 50 deg -> targets above 49 are dropped
    pts = elevation_points(celestial, TEST_LANDMARK, DAY, Body.MOON)
    assert max(p.elevation for p in pts) == 45.0
    assert all(p.subtype in (EventSubtype.RISING, EventSubtype.SETTING) for p in pts)


def test_explicit_targets_and_filters(celestial):
    pts = elevation_points(celestial, TEST_LANDMARK, DAY, Body.SUN, elevations=[0.05, 2.5, 35.0, -1.0])
    assert [p.elevation for p in pts] == [2.5]


def test_distance_bounds():
    cfg = ElevationPointConfig(max_distance_km=10.0)
    eng = CelestialEngine(provider=StubProvider(), sleep=lambda s: None)
    pts = elevation_points(eng, TEST_LANDMARK, DAY, Body.SUN, elevations=[1.0, 5.0, 10.0], config=cfg)
    # 638 m apex: 1 deg -> 36.6 km (dropped), 5 deg -> 7.3 km, 10 deg -> 3.6 km
    assert [p.elevation for p in pts] == [5.0, 10.0]


def test_no_window_gives_no_points():
    eng = CelestialEngine(provider=StubProvider(no_window_days=[DAY]), sleep=lambda s: None)
    assert elevation_points(eng, TEST_LANDMARK, DAY, Body.SUN) == []
