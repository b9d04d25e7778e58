# src/skyalign/features/aggregation.py
from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from skyalign.core.models import Accuracy, AlignmentEvent, DayKind, EventType, Location

log = logging.getLogger(__name__)

# best-shot bonus per event on top of the raw count
BEST_SHOT_BONUS: Dict[Accuracy, int] = {
    Accuracy.PERFECT: 3,
    Accuracy.EXCELLENT: 2,
    Accuracy.GOOD: 1,
    Accuracy.FAIR: 0,
}


@dataclass(frozen=True)
class CalendarDay:
    """Events of one local date, chronological."""
    date: date
    kind: DayKind
    events: Tuple[AlignmentEvent, ...]
    score: int = 0

    def to_dict(self) -> Dict:
        return {
            "date": self.date.isoformat(),
            "kind": self.kind.value,
            "events": [e.to_dict() for e in self.events],
            "score": self.score,
        }


def _day_kind(events: Sequence[AlignmentEvent]) -> DayKind:
    types = {e.type for e in events}
    if types == {EventType.DIAMOND}:
        return DayKind.DIAMOND
    if types == {EventType.PEARL}:
        return DayKind.PEARL
    return DayKind.BOTH


def group_by_date(events: Iterable[AlignmentEvent], tz: tzinfo) -> List[CalendarDay]:
    """
    Partition by each event's local date in `tz`. Days and the events inside
    each day are chronological.
    """
    buckets: Dict[date, List[AlignmentEvent]] = {}
    n = 0
    for ev in events:
        buckets.setdefault(ev.local_date(tz), []).append(ev)
        n += 1

    days = [
        CalendarDay(date=d, kind=_day_kind(evs), events=tuple(sorted(evs, key=lambda e: e.time)))
        for d, evs in sorted(buckets.items())
    ]
    log.debug("grouped events by date: events=%d days=%d", n, len(days))
    return days


def filter_events_by_date(
    events: Iterable[AlignmentEvent],
    day: date,
    tz: tzinfo,
    location_id: Optional[str] = None,
) -> List[AlignmentEvent]:
    out = [
        e for e in events
        if e.local_date(tz) == day and (location_id is None or e.location_id == location_id)
    ]
    out.sort(key=lambda e: e.time)
    return out


def upcoming_events(
    events: Iterable[AlignmentEvent],
    now: datetime,
    limit: int = 50,
) -> List[AlignmentEvent]:
    """The first `limit` events strictly after `now`, chronological."""
    if limit < 0:
        raise ValueError("limit must be >= 0")
    if now.tzinfo is None:
        raise ValueError("now must be timezone-aware")
    later = sorted((e for e in events if e.time > now), key=lambda e: (e.time, e.type.value))
    return later[:limit]


def group_by_location(events: Iterable[AlignmentEvent]) -> "OrderedDict[Optional[str], List[AlignmentEvent]]":
    """Every event lands in exactly one group (events without a location under None)."""
    groups: "OrderedDict[Optional[str], List[AlignmentEvent]]" = OrderedDict()
    for ev in events:
        groups.setdefault(ev.location_id, []).append(ev)
    for evs in groups.values():
        evs.sort(key=lambda e: e.time)
    return groups


def best_shot_days(
    events: Iterable[AlignmentEvent],
    year: int,
    month: int,
    tz: tzinfo,
    limit: int = 10,
) -> List[CalendarDay]:
    """
    Rank the month's days by event count + accuracy bonus.
    Highest score first; equal scores keep date order.
    """
    if limit < 0:
        raise ValueError("limit must be >= 0")

    in_month = [e for e in events if e.local_date(tz).replace(day=1) == date(year, month, 1)]
    scored = [
        CalendarDay(
            date=day.date,
            kind=day.kind,
            events=day.events,
            score=len(day.events) + sum(BEST_SHOT_BONUS[e.accuracy] for e in day.events),
        )
        for day in group_by_date(in_month, tz)
    ]
    # stable sort: ties stay chronological
    scored.sort(key=lambda d: -d.score)
    best = scored[:limit]

    log.info(
        "best shot days: year=%d month=%d days=%d picked=%d",
        year, month, len(scored), len(best),
    )
    return best


@dataclass(frozen=True)
class LocationCount:
    id: str
    name: str
    event_count: int = 0


@dataclass(frozen=True)
class CalendarStats:
    year: int
    total_events: int = 0
    diamond_events: int = 0
    pearl_events: int = 0
    monthly_breakdown: Tuple[int, ...] = (0,) * 12
    quality_breakdown: Dict[Accuracy, int] = field(default_factory=lambda: {a: 0 for a in Accuracy})
    location_stats: Tuple[LocationCount, ...] = ()

    def __add__(self, other: "CalendarStats") -> "CalendarStats":
        if not isinstance(other, CalendarStats):
            return NotImplemented
        if other.year != self.year:
            raise ValueError(f"cannot add stats of different years: {self.year} != {other.year}")

        counts: "OrderedDict[str, LocationCount]" = OrderedDict()
        for lc in self.location_stats + other.location_stats:
            prev = counts.get(lc.id)
            counts[lc.id] = lc if prev is None else LocationCount(prev.id, prev.name, prev.event_count + lc.event_count)

        return CalendarStats(
            year=self.year,
            total_events=self.total_events + other.total_events,
            diamond_events=self.diamond_events + other.diamond_events,
            pearl_events=self.pearl_events + other.pearl_events,
            monthly_breakdown=tuple(a + b for a, b in zip(self.monthly_breakdown, other.monthly_breakdown)),
            quality_breakdown={a: self.quality_breakdown[a] + other.quality_breakdown[a] for a in Accuracy},
            location_stats=tuple(counts.values()),
        )

    def to_dict(self) -> Dict:
        return {
            "year": self.year,
            "total_events": self.total_events,
            "diamond_events": self.diamond_events,
            "pearl_events": self.pearl_events,
            "monthly_breakdown": list(self.monthly_breakdown),
            "quality_breakdown": {a.value: n for a, n in self.quality_breakdown.items()},
            "location_stats": [
                {"id": lc.id, "name": lc.name, "event_count": lc.event_count} for lc in self.location_stats
            ],
        }


def stats(
    events: Iterable[AlignmentEvent],
    year: int,
    locations: Sequence[Location],
    tz: tzinfo,
) -> CalendarStats:
    """
    Year roll-up. Events outside `year` are ignored; every listed location
    gets a row, even with zero events.
    """
    monthly = [0] * 12
    quality = {a: 0 for a in Accuracy}
    per_location = {loc.id: 0 for loc in locations}
    total = diamond = pearl = 0

    for ev in events:
        d = ev.local_date(tz)
        if d.year != year:
            continue
        total += 1
        monthly[d.month - 1] += 1
        if ev.type is EventType.DIAMOND:
            diamond += 1
        else:
            pearl += 1
        quality[ev.accuracy] += 1
        if ev.location_id in per_location:
            per_location[ev.location_id] += 1

    out = CalendarStats(
        year=year,
        total_events=total,
        diamond_events=diamond,
        pearl_events=pearl,
        monthly_breakdown=tuple(monthly),
        quality_breakdown=quality,
        location_stats=tuple(LocationCount(loc.id, loc.name, per_location[loc.id]) for loc in locations),
    )
    log.info("calendar stats: year=%d total=%d diamond=%d pearl=%d", year, total, diamond, pearl)
    return out
