# src/skyalign/core/astronomy.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Callable, List, Optional, Protocol, Sequence, TypeVar, runtime_checkable

from .config import RetryConfig
from .errors import ProviderError
from .geometry import norm360
from .models import Body, Culmination, HorizontalPosition, MoonPhase, Observer, RiseSet
from .timeutil import as_utc

log = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class CelestialProvider(Protocol):
    def position_at(self, body: Body, t_utc: datetime, observer: Observer) -> HorizontalPosition: ...

    # None when the body does not rise and set on that local day
    def rise_set(self, body: Body, observer: Observer, day: date, tzinfo_local: tzinfo) -> Optional[RiseSet]: ...

    def moon_phase(self, t_utc: datetime) -> MoonPhase: ...

    def culmination(self, body: Body, observer: Observer, day: date, tzinfo_local: tzinfo) -> Optional[Culmination]: ...

    # optional vectorized batch
    # def positions_many(self, body, ts_utc, observer) -> List[HorizontalPosition]


@dataclass
class CelestialEngine:
    """
    Thin wrapper over a provider:
    - UTC / azimuth normalization
    - vectorized path when the provider has one
    - bounded retry with exponential backoff on ProviderError / TimeoutError
    """
    provider: CelestialProvider
    retry: RetryConfig = field(default_factory=RetryConfig)
    sleep: Callable[[float], None] = time.sleep

    calls: int = field(default=0, init=False)
    _calls_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def _call(self, what: str, fn: Callable[[], T]) -> T:
        attempts = max(1, int(self.retry.attempts))
        last: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            with self._calls_lock:
                self.calls += 1
            try:
                return fn()
            except (ProviderError, TimeoutError) as e:
                last = e
                if attempt == attempts:
                    break
                delay = min(self.retry.max_delay_seconds, self.retry.base_delay_seconds * (2 ** (attempt - 1)))
                log.warning(
                    "provider call failed, retrying: what=%s attempt=%d/%d delay=%.3fs err=%s",
                    what, attempt, attempts, delay, e,
                )
                self.sleep(delay)

        raise ProviderError(f"provider call failed after {attempts} attempts: {what}") from last

    def position(self, body: Body, t_utc: datetime, observer: Observer) -> HorizontalPosition:
        t = as_utc(t_utc)
        p = self._call(f"position_at {body.value} {t.isoformat()}", lambda: self.provider.position_at(body, t, observer))
        return HorizontalPosition(azimuth=norm360(float(p.azimuth)), altitude=float(p.altitude))

    def positions(self, body: Body, ts_utc: Sequence[datetime], observer: Observer) -> List[HorizontalPosition]:
        """
        Vectorized positions if provider supports it; otherwise fall back to loop.
        """
        if not ts_utc:
            return []
        ts = [as_utc(t) for t in ts_utc]
        f = getattr(self.provider, "positions_many", None)
        if callable(f):
            xs = self._call(f"positions_many {body.value} n={len(ts)}", lambda: f(body, ts, observer))
            return [HorizontalPosition(azimuth=norm360(float(p.azimuth)), altitude=float(p.altitude)) for p in xs]
        return [self.position(body, t, observer) for t in ts]

    def window(self, body: Body, observer: Observer, day: date, tzinfo_local: tzinfo) -> Optional[RiseSet]:
        rs = self._call(
            f"rise_set {body.value} {day.isoformat()}",
            lambda: self.provider.rise_set(body, observer, day, tzinfo_local),
        )
        if rs is None:
            return None
        rise, set_ = as_utc(rs.rise), as_utc(rs.set)
        if set_ <= rise:
            log.warning("rise/set window not ordered: body=%s day=%s rise=%s set=%s", body.value, day, rise, set_)
            return None
        return RiseSet(rise=rise, set=set_)

    def moon_phase(self, t_utc: datetime) -> MoonPhase:
        t = as_utc(t_utc)
        mp = self._call(f"moon_phase {t.isoformat()}", lambda: self.provider.moon_phase(t))
        return MoonPhase(phase=norm360(float(mp.phase)), illumination=min(1.0, max(0.0, float(mp.illumination))))

    def culmination(self, body: Body, observer: Observer, day: date, tzinfo_local: tzinfo) -> Optional[Culmination]:
        return self._call(
            f"culmination {body.value} {day.isoformat()}",
            lambda: self.provider.culmination(body, observer, day, tzinfo_local),
        )
