from __future__ import annotations

import logging
import threading
from datetime import date, timezone

import pytest

from skyalign.cache.service import CachedEventService
from skyalign.cache.store import CacheKey, CacheStatus, EventCacheStore
from skyalign.core.astronomy import CelestialEngine
from skyalign.core.config import RetryConfig
from skyalign.core.errors import ProviderError
from skyalign.core.models import Location, SceneFilter, SearchMode
from skyalign.core.search import AlignmentSearchEngine
from skyalign.features.recompute import JobGuard, RecomputeResult, recompute, recompute_many, recompute_year

from conftest import VectorStubProvider, observer_at

START = date(2025, 6, 1)
END = date(2025, 6, 5)


class FlakyProvider(VectorStubProvider):
    """Fails every position lookup at an instant on one of the listed (UTC) dates."""

    def __init__(self, bad_days, **kwargs):
        super().__init__(**kwargs)
        self.bad_days = set(bad_days)

    def _check(self, t):
        if t.astimezone(timezone.utc).date() in self.bad_days:
            raise ProviderError(f"no data for {t.date()}")

    def position_at(self, body, t_utc, observer):
        self._check(t_utc)
        return super().position_at(body, t_utc, observer)

    def positions_many(self, body, ts_utc, observer):
        for t in ts_utc:
            self._check(t)
        return super().positions_many(body, ts_utc, observer)


def _service(config, provider) -> CachedEventService:
    eng = CelestialEngine(provider=provider, retry=RetryConfig(attempts=2, base_delay_seconds=0.0), sleep=lambda s: None)
    return CachedEventService(engine=AlignmentSearchEngine(eng, config), store=EventCacheStore())


@pytest.fixture
def locations():
    return [
        Location(id="west", name="West bank", observer=observer_at(270.0)),
        Location(id="south", name="South pier", observer=observer_at(180.0)),
    ]


def test_recompute_fills_cache(config, locations):
    svc = _service(config, VectorStubProvider())
    res = recompute(svc, locations[0], (START, END))
    assert res == RecomputeResult(recomputed=5, failed=0)

    key = CacheKey.for_day(START, "west", SceneFilter.ALL, SearchMode.BALANCED)
    found = svc.store.get(key)
    assert found.status is CacheStatus.HIT
    assert len(found.events) == 2
    assert all(e.location_id == "west" for e in found.events)


def test_failures_are_isolated_and_logged(config, locations, caplog):
    svc = _service(config, FlakyProvider(bad_days=[date(2025, 6, 2), date(2025, 6, 4)]))
    with caplog.at_level(logging.ERROR, logger="skyalign.features.recompute"):
        res = recompute(svc, locations[0], (START, END))
    assert res == RecomputeResult(recomputed=3, failed=2)

    messages = [r.getMessage() for r in caplog.records]
    assert any("location=west" in m and "date=2025-06-02" in m for m in messages)
    assert any("date=2025-06-04" in m for m in messages)


def test_recompute_many_runs_every_location(config, locations):
    svc = _service(config, FlakyProvider(bad_days=[date(2025, 6, 3)]))
    results = recompute_many(svc, locations, (START, END), max_workers=2)
    assert set(results) == {"west", "south"}
    assert results["west"] == RecomputeResult(recomputed=4, failed=1)
    assert results["south"] == RecomputeResult(recomputed=4, failed=1)


def test_recompute_rejects_inverted_range(config, locations):
    svc = _service(config, VectorStubProvider())
    with pytest.raises(ValueError):
        recompute(svc, locations[0], (END, START))


def test_recompute_rebuilds_month_views(config, locations):
    provider = VectorStubProvider()
    svc = _service(config, provider)
    june = svc.events_for_month(locations[0].observer, 2025, 6, SceneFilter.ALL, SearchMode.BALANCED, location_id="west")
    assert len(june) == 60

    # the sky changed: no windows anywhere in June any more
    provider.no_window_days = [date(2025, 6, d) for d in range(1, 31)]
    res = recompute(svc, locations[0], (date(2025, 6, 1), date(2025, 6, 30)))
    assert res == RecomputeResult(recomputed=30, failed=0)

    month_key = CacheKey.for_month(2025, 6, "west", SceneFilter.ALL, SearchMode.BALANCED)
    assert svc.store.get(month_key).status is CacheStatus.STALE
    again = svc.events_for_month(locations[0].observer, 2025, 6, SceneFilter.ALL, SearchMode.BALANCED, location_id="west")
    assert again == []
    assert svc.store.get(month_key).status is CacheStatus.HIT


def test_recompute_leaves_other_months_alone(config, locations):
    svc = _service(config, VectorStubProvider())
    svc.events_for_month(locations[0].observer, 2025, 7, SceneFilter.DIAMOND, SearchMode.FAST, location_id="west")
    recompute(svc, locations[0], (START, END), scenes=(SceneFilter.DIAMOND,), mode=SearchMode.FAST)
    july = CacheKey.for_month(2025, 7, "west", SceneFilter.DIAMOND, SearchMode.FAST)
    assert svc.store.get(july).status is CacheStatus.HIT


def test_recompute_rejects_auto_mode(config, locations):
    provider = VectorStubProvider()
    svc = _service(config, provider)
    with pytest.raises(ValueError, match="resolved search mode"):
        recompute(svc, locations[0], (START, END), mode=SearchMode.AUTO)
    with pytest.raises(ValueError):
        recompute_many(svc, locations, (START, END), mode=SearchMode.AUTO)
    assert provider.calls == 0


# ---- job guard ----
class FakeClock:
    def __init__(self) -> None:
        self.t = 0.0

    def __call__(self) -> float:
        return self.t


def test_job_guard_single_active_instance():
    clock = FakeClock()
    guard = JobGuard(lease_seconds=60, clock=clock)

    lease = guard.acquire("yearly")
    assert lease is not None
    assert guard.acquire("yearly") is None
    assert guard.is_running("yearly")
    assert guard.acquire("other") is not None

    assert guard.release(lease)
    assert not guard.is_running("yearly")
    assert guard.acquire("yearly") is not None


def test_job_guard_takes_over_stale_lease():
    clock = FakeClock()
    guard = JobGuard(lease_seconds=60, clock=clock)
    old = guard.acquire("yearly")
    clock.t = 61.0
    new = guard.acquire("yearly")
    assert new is not None and new.token != old.token
    # the crashed run's late release must not drop the new lease
    assert not guard.release(old)
    assert guard.is_running("yearly")


def test_run_exclusive_skips_overlapping_run():
    guard = JobGuard(lease_seconds=60)
    entered = threading.Event()
    release = threading.Event()
    outcome = {}

    def long_job():
        entered.set()
        release.wait(5)
        return "done"

    t = threading.Thread(target=lambda: outcome.setdefault("first", guard.run_exclusive("job", long_job)))
    t.start()
    assert entered.wait(5)
    assert guard.run_exclusive("job", lambda: "second") == (False, None)
    release.set()
    t.join(5)
    assert outcome["first"] == (True, "done")
    assert guard.run_exclusive("job", lambda: "third") == (True, "third")


def test_recompute_year_respects_guard(config, locations):
    svc = _service(config, VectorStubProvider())
    guard = JobGuard(lease_seconds=60)
    lease = guard.acquire("recompute-year-2026")
    assert recompute_year(svc, locations, 2026, guard) is None
    guard.release(lease)
