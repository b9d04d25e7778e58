from __future__ import annotations

import math
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest

from skyalign.core.astronomy import CelestialEngine
from skyalign.core.config import AlignmentConfig, RetryConfig
from skyalign.core.errors import ProviderError
from skyalign.core.geometry import destination_point
from skyalign.core.models import Body, Culmination, HorizontalPosition, Landmark, MoonPhase, Observer, RiseSet
from skyalign.core.search import AlignmentSearchEngine

UTC = timezone.utc


@dataclass(frozen=True)
class Track:
    """Linear azimuth sweep over a fixed daily window, sinusoidal altitude."""
    rise_hour: float
    set_hour: float
    az_rise: float
    az_set: float
    peak_altitude: float

    def rise(self, day: date) -> datetime:
        return datetime(day.year, day.month, day.day, tzinfo=UTC) + timedelta(hours=self.rise_hour)

    def set(self, day: date) -> datetime:
        return datetime(day.year, day.month, day.day, tzinfo=UTC) + timedelta(hours=self.set_hour)

    @property
    def seconds(self) -> float:
        return (self.set_hour - self.rise_hour) * 3600.0

    @property
    def rate(self) -> float:
        return (self.az_set - self.az_rise) / self.seconds

    def frac(self, t: datetime) -> float:
        day = t.astimezone(UTC).date()
        return (t - self.rise(day)).total_seconds() / self.seconds

    def azimuth(self, t: datetime) -> float:
        return (self.az_rise + (self.az_set - self.az_rise) * self.frac(t)) % 360.0

    def altitude(self, t: datetime) -> float:
        return self.peak_altitude * math.sin(math.pi * self.frac(t))

    def time_at_azimuth(self, day: date, az: float) -> datetime:
        return self.rise(day) + timedelta(seconds=(az - self.az_rise) / self.rate)


SUN_TRACK = Track(rise_hour=6.0, set_hour=18.0, az_rise=60.0, az_set=300.0, peak_altitude=40.0)
MOON_TRACK = Track(rise_hour=12.0, set_hour=23.0, az_rise=70.0, az_set=290.0, peak_altitude=50.0)


@dataclass
class StubProvider:
    """
    Deterministic celestial provider for tests.

    - counts every call (thread-safe)
    - `fail_next` raises ProviderError for that many upcoming calls
    - `no_window_days` simulates polar days without rise/set
    """
    tracks: Dict[Body, Track] = field(default_factory=lambda: {Body.SUN: SUN_TRACK, Body.MOON: MOON_TRACK})
    illumination: float = 0.6
    fail_next: int = 0
    no_window_days: List[date] = field(default_factory=list)
    calls: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _tick(self) -> None:
        with self._lock:
            self.calls += 1
            if self.fail_next > 0:
                self.fail_next -= 1
                raise ProviderError("stub failure")

    def position_at(self, body: Body, t_utc: datetime, observer: Observer) -> HorizontalPosition:
        self._tick()
        tr = self.tracks[body]
        return HorizontalPosition(azimuth=tr.azimuth(t_utc), altitude=tr.altitude(t_utc))

    def rise_set(self, body: Body, observer: Observer, day: date, tzinfo_local) -> Optional[RiseSet]:
        self._tick()
        if day in self.no_window_days:
            return None
        tr = self.tracks[body]
        return RiseSet(rise=tr.rise(day), set=tr.set(day))

    def moon_phase(self, t_utc: datetime) -> MoonPhase:
        self._tick()
        return MoonPhase(phase=120.0, illumination=self.illumination)

    def culmination(self, body: Body, observer: Observer, day: date, tzinfo_local) -> Optional[Culmination]:
        self._tick()
        tr = self.tracks[body]
        mid = tr.rise(day) + timedelta(seconds=tr.seconds / 2)
        return Culmination(time=mid, altitude=tr.peak_altitude)


@dataclass
class VectorStubProvider(StubProvider):
    """Same tracks, with a vectorized batch method."""
    batches: int = 0

    def positions_many(self, body: Body, ts_utc, observer: Observer) -> List[HorizontalPosition]:
        self._tick()
        with self._lock:
            self.batches += 1
        tr = self.tracks[body]
        return [HorizontalPosition(azimuth=tr.azimuth(t), altitude=tr.altitude(t)) for t in ts_utc]


TEST_LANDMARK = Landmark(tz="UTC")


def observer_at(bearing_from_landmark: float, distance_m: float = 20_000.0) -> Observer:
    """Observer placed so that the landmark lies in the opposite direction."""
    p = destination_point(TEST_LANDMARK, bearing_from_landmark, distance_m)
    return Observer(p.latitude, p.longitude, 0.0)


@pytest.fixture
def config() -> AlignmentConfig:
    return AlignmentConfig(landmark=TEST_LANDMARK, retry=RetryConfig(attempts=3, base_delay_seconds=0.0))


@pytest.fixture
def provider() -> VectorStubProvider:
    return VectorStubProvider()


@pytest.fixture
def celestial(provider) -> CelestialEngine:
    return CelestialEngine(provider=provider, retry=RetryConfig(attempts=3, base_delay_seconds=0.0), sleep=lambda s: None)


@pytest.fixture
def search_engine(celestial, config) -> AlignmentSearchEngine:
    return AlignmentSearchEngine(celestial, config)


@pytest.fixture
def west_observer() -> Observer:
    # landmark due east -> bearing ~90 deg, crossed by both stub tracks
    return observer_at(270.0)
