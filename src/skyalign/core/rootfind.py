# src/skyalign/core/rootfind.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, List, Sequence
import math


@dataclass(frozen=True)
class RootResult:
    t: datetime
    iterations: int


def build_grid(start: datetime, end: datetime, step: timedelta) -> List[datetime]:
    """
    Inclusive grid: start, start+step, ..., <= end (end always included).
    """
    if step.total_seconds() <= 0:
        raise ValueError("step must be positive")
    ts: List[datetime] = []
    t = start
    while t < end:
        ts.append(t)
        t = t + step
    ts.append(end)
    return ts


def local_minima(values: Sequence[float]) -> List[int]:
    """
    Indices i where values[i] <= both neighbours (endpoints compare to one side).
    Plateaus report their first index only. NaN entries are never minima.
    """
    n = len(values)
    out: List[int] = []
    for i, v in enumerate(values):
        if not math.isfinite(v):
            continue
        left = values[i - 1] if i > 0 else math.inf
        right = values[i + 1] if i < n - 1 else math.inf
        if not math.isfinite(left):
            left = math.inf
        if not math.isfinite(right):
            right = math.inf
        if v < left and v <= right:
            out.append(i)
    return out


def brentq_datetime(
    f: Callable[[datetime], float],
    a: datetime,
    b: datetime,
    tol_seconds: float = 0.5,
    max_iter: int = 100,
) -> RootResult:
    """
    Robust root-finding on datetime bracket [a,b] where f(a)*f(b) <= 0.

    Conservative hybrid:
      - maintains a valid bracket at all times
      - uses bisection as the backbone (guaranteed convergence)
      - tries a secant step when it stays inside the bracket
    """
    if tol_seconds <= 0:
        raise ValueError("tol_seconds must be positive")
    if a > b:
        a, b = b, a

    fa = f(a)
    fb = f(b)

    if not (math.isfinite(fa) and math.isfinite(fb)):
        raise ValueError("Non-finite function value at bracket endpoints.")
    if fa == 0.0:
        return RootResult(a, 0)
    if fb == 0.0:
        return RootResult(b, 0)
    if fa * fb > 0.0:
        raise ValueError("Root is not bracketed (same sign).")

    # Work in seconds from a0 for numeric stability
    a0 = a

    def x(dt: datetime) -> float:
        return (dt - a0).total_seconds()

    def dt(sec: float) -> datetime:
        return a0 + timedelta(seconds=sec)

    xa = x(a)
    xb = x(b)
    prev_width = xb - xa
    force_bisect = False

    for it in range(1, max_iter + 1):
        if (xb - xa) <= tol_seconds:
            return RootResult(dt(0.5 * (xa + xb)), it)

        cand_sec = None
        if fb != fa and not force_bisect:
            xs = xb - fb * (xb - xa) / (fb - fa)
            if xa < xs < xb and math.isfinite(xs):
                cand_sec = xs

        xm = 0.5 * (xa + xb)
        xc = cand_sec if cand_sec is not None else xm
        tc = dt(xc)
        fc = f(tc)

        if not math.isfinite(fc):
            xc = xm
            tc = dt(xc)
            fc = f(tc)
            if not math.isfinite(fc):
                raise ValueError("Non-finite function value during root finding.")

        if fc == 0.0:
            return RootResult(tc, it)

        if fa * fc < 0.0:
            xb, fb = xc, fc
        else:
            xa, fa = xc, fc

        # false position can creep from one side; bisect next if the bracket did not halve
        width = xb - xa
        force_bisect = width > 0.5 * prev_width
        prev_width = width

    return RootResult(dt(0.5 * (xa + xb)), max_iter)


def narrow_minimum(
    g: Callable[[datetime], float],
    a: datetime,
    b: datetime,
    *,
    tol_seconds: float,
    samples: int = 10,
    max_passes: int = 40,
) -> RootResult:
    """
    Minimize g on [a,b] by repeated grid narrowing: sample `samples` sub-steps,
    keep the neighbourhood of the best sample, shrink until the sub-step is
    below tol_seconds. Used when no sign change brackets the minimum.
    """
    if tol_seconds <= 0:
        raise ValueError("tol_seconds must be positive")
    if samples < 2:
        raise ValueError("samples must be >= 2")
    if a > b:
        a, b = b, a

    best_t = a
    best_v = math.inf
    lo, hi = a, b
    for it in range(1, max_passes + 1):
        width = (hi - lo).total_seconds()
        sub = width / samples
        ts = [lo + timedelta(seconds=sub * i) for i in range(samples + 1)]
        vs = [g(t) for t in ts]

        i_best = min(range(len(vs)), key=lambda i: vs[i] if math.isfinite(vs[i]) else math.inf)
        if math.isfinite(vs[i_best]) and vs[i_best] < best_v:
            best_t, best_v = ts[i_best], vs[i_best]

        if sub <= tol_seconds:
            return RootResult(best_t, it)

        lo = ts[max(0, i_best - 1)]
        hi = ts[min(len(ts) - 1, i_best + 1)]

    return RootResult(best_t, max_passes)
