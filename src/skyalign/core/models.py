# src/skyalign/core/models.py
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from .geometry import check_latlon, norm360


# ============================================================
# Closed variants
# ============================================================
class Body(str, Enum):
    SUN = "sun"
    MOON = "moon"


class SceneFilter(str, Enum):
    ALL = "all"
    DIAMOND = "diamond"
    PEARL = "pearl"

    def bodies(self) -> List[Body]:
        if self is SceneFilter.DIAMOND:
            return [Body.SUN]
        if self is SceneFilter.PEARL:
            return [Body.MOON]
        return [Body.SUN, Body.MOON]


class SearchMode(str, Enum):
    AUTO = "auto"
    FAST = "fast"
    BALANCED = "balanced"
    PRECISE = "precise"


class EventType(str, Enum):
    DIAMOND = "diamond"
    PEARL = "pearl"

    @classmethod
    def for_body(cls, body: Body) -> "EventType":
        return cls.DIAMOND if body is Body.SUN else cls.PEARL


class EventSubtype(str, Enum):
    SUNRISE = "sunrise"
    SUNSET = "sunset"
    RISING = "rising"
    SETTING = "setting"

    @classmethod
    def for_phase(cls, body: Body, rising: bool) -> "EventSubtype":
        if body is Body.SUN:
            return cls.SUNRISE if rising else cls.SUNSET
        return cls.RISING if rising else cls.SETTING


class Accuracy(str, Enum):
    PERFECT = "perfect"
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"

    @property
    def rank(self) -> int:
        """0 is best."""
        return _ACCURACY_ORDER.index(self)

    def is_better_than(self, other: "Accuracy") -> bool:
        return self.rank < other.rank


_ACCURACY_ORDER = [Accuracy.PERFECT, Accuracy.EXCELLENT, Accuracy.GOOD, Accuracy.FAIR]


class DayKind(str, Enum):
    DIAMOND = "diamond"
    PEARL = "pearl"
    BOTH = "both"


# ============================================================
# Places
# ============================================================
@dataclass(frozen=True)
class Observer:
    latitude: float
    longitude: float
    elevation: float = 0.0  # metres above sea level

    def __post_init__(self) -> None:
        check_latlon(self.latitude, self.longitude)

    def cache_id(self) -> str:
        """Stable identifier for ad-hoc (unsaved) observers."""
        return f"geo:{self.latitude:.5f},{self.longitude:.5f},{self.elevation:.0f}"


@dataclass(frozen=True)
class Landmark:
    """
    The alignment reference structure. Injected configuration, never mutated.
    Defaults to Tokyo Skytree.
    """
    name: str = "Tokyo Skytree"
    latitude: float = 35.7100069
    longitude: float = 139.8108103
    apex_height: float = 638.0      # apex, metres above sea level
    ground_elevation: float = 4.0
    tz: str = "Asia/Tokyo"          # local calendar dates are taken in this zone

    def __post_init__(self) -> None:
        check_latlon(self.latitude, self.longitude)
        if self.apex_height <= 0:
            raise ValueError(f"apex_height must be positive: {self.apex_height}")

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.tz)

    def as_observer(self) -> Observer:
        """Standing reference used to resolve rise/set windows."""
        return Observer(self.latitude, self.longitude, self.ground_elevation)


@dataclass(frozen=True)
class Location:
    """A saved photography spot."""
    id: str
    name: str
    observer: Observer


# ============================================================
# Provider value objects
# ============================================================
@dataclass(frozen=True)
class HorizontalPosition:
    azimuth: float
    altitude: float


@dataclass(frozen=True)
class RiseSet:
    rise: datetime
    set: datetime

    def fraction(self, t: datetime) -> float:
        total = (self.set - self.rise).total_seconds()
        if total <= 0:
            return 0.0
        return (t - self.rise).total_seconds() / total

    def clipped(self, start: datetime, end: datetime) -> Optional["RiseSet"]:
        """The part of the window inside [start, end), or None."""
        lo, hi = max(self.rise, start), min(self.set, end)
        if hi <= lo:
            return None
        return RiseSet(rise=lo, set=hi)


@dataclass(frozen=True)
class MoonPhase:
    phase: float          # degrees, 0 = new, 180 = full
    illumination: float   # 0..1


@dataclass(frozen=True)
class Culmination:
    time: datetime
    altitude: float


# ============================================================
# Events
# ============================================================
def _iso(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


@dataclass(frozen=True)
class AlignmentEvent:
    id: str
    type: EventType
    subtype: EventSubtype
    time: datetime          # UTC
    azimuth: float
    altitude: float
    accuracy: Accuracy
    quality_score: float
    deviation: float        # |azimuth - bearing| at the accepted moment
    mode: SearchMode
    location_id: Optional[str] = None
    moon_phase: Optional[float] = None
    moon_illumination: Optional[float] = None

    def __post_init__(self) -> None:
        if self.time.tzinfo is None:
            raise ValueError("event time must be timezone-aware")
        object.__setattr__(self, "azimuth", norm360(self.azimuth))

    def local_date(self, tzinfo) -> date:
        return self.time.astimezone(tzinfo).date()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "subtype": self.subtype.value,
            "time": _iso(self.time),
            "azimuth": self.azimuth,
            "altitude": self.altitude,
            "accuracy": self.accuracy.value,
            "quality_score": self.quality_score,
            "deviation": self.deviation,
            "mode": self.mode.value,
            "location_id": self.location_id,
            "moon_phase": self.moon_phase,
            "moon_illumination": self.moon_illumination,
        }

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "AlignmentEvent":
        return cls(
            id=str(d["id"]),
            type=EventType(d["type"]),
            subtype=EventSubtype(d["subtype"]),
            time=datetime.fromisoformat(d["time"]),
            azimuth=float(d["azimuth"]),
            altitude=float(d["altitude"]),
            accuracy=Accuracy(d["accuracy"]),
            quality_score=float(d["quality_score"]),
            deviation=float(d["deviation"]),
            mode=SearchMode(d["mode"]),
            location_id=d.get("location_id"),
            moon_phase=None if d.get("moon_phase") is None else float(d["moon_phase"]),
            moon_illumination=None if d.get("moon_illumination") is None else float(d["moon_illumination"]),
        )


@dataclass(frozen=True)
class ElevationPoint:
    elevation: float        # target elevation angle (deg)
    latitude: float
    longitude: float
    distance_km: float      # from the landmark
    bearing: float          # from the landmark towards the point
    time: datetime          # body reaches `elevation` at this instant
    subtype: EventSubtype


# ============================================================
# Requests / results
# ============================================================
@dataclass(frozen=True)
class SearchRequest:
    observer: Observer
    start: date
    end: date               # inclusive
    scene: SceneFilter = SceneFilter.ALL
    mode: SearchMode = SearchMode.AUTO
    location_id: Optional[str] = None

    @property
    def span_days(self) -> int:
        return (self.end - self.start).days + 1

    def cache_location_id(self) -> str:
        return self.location_id or self.observer.cache_id()


@dataclass(frozen=True)
class SearchMetadata:
    total_events: int
    search_interval_seconds: int
    is_limited: bool
    original_total: int
    mode: SearchMode


@dataclass(frozen=True)
class SearchResult:
    events: List[AlignmentEvent] = field(default_factory=list)
    metadata: Optional[SearchMetadata] = None
