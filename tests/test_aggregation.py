from __future__ import annotations

from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo

import pytest

from skyalign.core.models import (
    Accuracy,
    AlignmentEvent,
    DayKind,
    EventSubtype,
    EventType,
    Location,
    Observer,
    SearchMode,
)
from skyalign.features.aggregation import (
    best_shot_days,
    filter_events_by_date,
    group_by_date,
    group_by_location,
    stats,
    upcoming_events,
)

UTC = timezone.utc
JST = ZoneInfo("Asia/Tokyo")

LOCATIONS = [
    Location(id="kasai", name="Kasai Rinkai Park", observer=Observer(35.6396, 139.8613)),
    Location(id="arakawa", name="Arakawa riverbank", observer=Observer(35.7420, 139.8030)),
]


def _ev(when: datetime, type_: EventType = EventType.DIAMOND, accuracy: Accuracy = Accuracy.GOOD, loc: str = "kasai") -> AlignmentEvent:
    subtype = EventSubtype.SUNRISE if type_ is EventType.DIAMOND else EventSubtype.RISING
    return AlignmentEvent(
        id=f"{loc}-{when.isoformat()}-{type_.value}",
        type=type_,
        subtype=subtype,
        time=when,
        azimuth=100.0,
        altitude=3.0,
        accuracy=accuracy,
        quality_score=0.8,
        deviation=0.2,
        mode=SearchMode.BALANCED,
        location_id=loc,
    )


def _events():
    return [
        _ev(datetime(2025, 1, 5, 21, 30, tzinfo=UTC), EventType.PEARL, Accuracy.PERFECT),   # JST 01-06 06:30
        _ev(datetime(2025, 1, 5, 22, 0, tzinfo=UTC), EventType.DIAMOND, Accuracy.FAIR),     # JST 01-06 07:00
        _ev(datetime(2025, 1, 10, 8, 0, tzinfo=UTC), EventType.DIAMOND, Accuracy.EXCELLENT, "arakawa"),
        _ev(datetime(2025, 1, 3, 8, 0, tzinfo=UTC), EventType.PEARL, Accuracy.GOOD),
        _ev(datetime(2025, 2, 1, 8, 0, tzinfo=UTC), EventType.DIAMOND, Accuracy.PERFECT, "arakawa"),
        _ev(datetime(2025, 2, 14, 8, 0, tzinfo=UTC), EventType.PEARL, Accuracy.FAIR, "elsewhere"),
    ]


def test_group_by_date_uses_local_date_and_kind():
    days = group_by_date(_events(), JST)
    assert [d.date for d in days] == [
        date(2025, 1, 3), date(2025, 1, 6), date(2025, 1, 10), date(2025, 2, 1), date(2025, 2, 14),
    ]
    by_date = {d.date: d for d in days}
    assert by_date[date(2025, 1, 6)].kind is DayKind.BOTH
    assert by_date[date(2025, 1, 3)].kind is DayKind.PEARL
    assert by_date[date(2025, 1, 10)].kind is DayKind.DIAMOND

    both = by_date[date(2025, 1, 6)].events
    assert [e.time for e in both] == sorted(e.time for e in both)

    # same instants in UTC fall on 01-05 instead
    assert date(2025, 1, 5) in {d.date for d in group_by_date(_events(), UTC)}


def test_filter_events_by_date():
    evs = filter_events_by_date(_events(), date(2025, 1, 6), JST)
    assert [e.type for e in evs] == [EventType.PEARL, EventType.DIAMOND]
    assert filter_events_by_date(_events(), date(2025, 1, 10), JST, location_id="kasai") == []


def test_upcoming_events_are_strictly_after_now():
    now = datetime(2025, 1, 5, 21, 30, tzinfo=UTC)
    evs = upcoming_events(_events(), now, limit=2)
    assert [e.time for e in evs] == [datetime(2025, 1, 5, 22, 0, tzinfo=UTC), datetime(2025, 1, 10, 8, 0, tzinfo=UTC)]

    assert len(upcoming_events(_events(), now)) == 4
    assert upcoming_events(_events(), datetime(2026, 1, 1, tzinfo=UTC)) == []


def test_upcoming_events_rejects_bad_arguments():
    with pytest.raises(ValueError):
        upcoming_events(_events(), datetime(2025, 1, 1), limit=5)
    with pytest.raises(ValueError):
        upcoming_events(_events(), datetime(2025, 1, 1, tzinfo=UTC), limit=-1)


def test_group_by_location_is_exhaustive_and_disjoint():
    evs = _events()
    groups = group_by_location(evs)
    flat = [e.id for g in groups.values() for e in g]
    assert sorted(flat) == sorted(e.id for e in evs)
    assert len(flat) == len(set(flat))
    assert set(groups) == {"kasai", "arakawa", "elsewhere"}


def test_best_shot_days_ranking():
    best = best_shot_days(_events(), 2025, 1, JST, limit=10)
    # 01-06: 2 events + perfect(3) + fair(0) = 5 ; 01-10: 1 + 2 = 3 ; 01-03: 1 + 1 = 2
    assert [(d.date.day, d.score) for d in best] == [(6, 5), (10, 3), (3, 2)]
    assert len(best_shot_days(_events(), 2025, 1, JST, limit=1)) == 1
    assert best_shot_days(_events(), 2025, 3, JST) == []


def test_best_shot_ties_keep_date_order():
    evs = [
        _ev(datetime(2025, 4, 9, 0, 0, tzinfo=UTC), accuracy=Accuracy.GOOD),
        _ev(datetime(2025, 4, 2, 0, 0, tzinfo=UTC), accuracy=Accuracy.GOOD),
    ]
    assert [d.date.day for d in best_shot_days(evs, 2025, 4, UTC)] == [2, 9]


def test_stats_rollup():
    s = stats(_events(), 2025, LOCATIONS, JST)
    assert s.total_events == 6
    assert s.diamond_events == 3
    assert s.pearl_events == 3
    assert s.monthly_breakdown[0] == 4
    assert s.monthly_breakdown[1] == 2
    assert s.quality_breakdown[Accuracy.PERFECT] == 2
    assert s.quality_breakdown[Accuracy.FAIR] == 2
    assert {lc.id: lc.event_count for lc in s.location_stats} == {"kasai": 3, "arakawa": 2}
    assert stats(_events(), 2024, LOCATIONS, JST).total_events == 0


def test_stats_additive_over_months():
    evs = _events()
    jan = [e for e in evs if e.local_date(JST).month == 1]
    feb = [e for e in evs if e.local_date(JST).month == 2]
    combined = stats(evs, 2025, LOCATIONS, JST)
    summed = stats(jan, 2025, LOCATIONS, JST) + stats(feb, 2025, LOCATIONS, JST)
    assert summed == combined
    assert summed.to_dict() == combined.to_dict()


def test_stats_of_different_years_do_not_add():
    with pytest.raises(ValueError):
        stats([], 2025, LOCATIONS, JST) + stats([], 2026, LOCATIONS, JST)
