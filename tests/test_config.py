from __future__ import annotations

import pytest

from skyalign.core.config import AlignmentConfig, config_from_env
from skyalign.core.errors import GeometryError
from skyalign.core.models import SearchMode


def test_defaults_without_env():
    cfg = config_from_env({})
    assert cfg == AlignmentConfig()
    assert cfg.landmark.name == "Tokyo Skytree"
    assert cfg.landmark.apex_height == 638.0


def test_landmark_and_ttl_overrides():
    cfg = config_from_env(
        {
            "SKYALIGN_LANDMARK_NAME": "Tower",
            "SKYALIGN_LANDMARK_LAT": "35.6586",
            "SKYALIGN_LANDMARK_LON": "139.7454",
            "SKYALIGN_LANDMARK_APEX_HEIGHT": "350",
            "SKYALIGN_LANDMARK_TZ": "UTC",
            "SKYALIGN_CACHE_TTL_SECONDS": "60",
        }
    )
    assert cfg.landmark.name == "Tower"
    assert (cfg.landmark.latitude, cfg.landmark.longitude) == (35.6586, 139.7454)
    assert cfg.landmark.apex_height == 350.0
    assert cfg.landmark.tz == "UTC"
    assert cfg.cache.ttl_seconds == 60
    # untouched sections keep their defaults
    assert cfg.search == AlignmentConfig().search


def test_bad_number_names_the_variable():
    with pytest.raises(ValueError, match="SKYALIGN_LANDMARK_LAT"):
        config_from_env({"SKYALIGN_LANDMARK_LAT": "north"})


def test_out_of_range_landmark_rejected():
    with pytest.raises(GeometryError):
        config_from_env({"SKYALIGN_LANDMARK_LAT": "91"})


def test_auto_has_no_mode_config():
    cfg = AlignmentConfig()
    with pytest.raises(ValueError):
        cfg.search.mode(SearchMode.AUTO)
    assert cfg.search.mode(SearchMode.PRECISE).step_seconds == 10
