from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union
import logging

from skyfield.api import Loader, wgs84
from skyfield import almanac

from skyalign.core.errors import ProviderError
from skyalign.core.models import Body, Culmination, HorizontalPosition, MoonPhase, Observer, RiseSet
from skyalign.core.timeutil import as_utc, local_day_bounds_utc

log = logging.getLogger(__name__)


# ----------------------------
# Ephemeris path resolution
# ----------------------------
def _project_data_dir() -> Path:
    return Path(__file__).resolve().parents[4] / "data"


def _default_ephemeris_path() -> Path:
    """
    Prefer de440s (longer coverage) if present; otherwise fall back to de421.
    """
    data_dir = _project_data_dir()
    p440s = data_dir / "de440s.bsp"
    p421 = data_dir / "de421.bsp"
    return p440s if p440s.exists() else p421


def _resolve_ephemeris_path(
    *,
    ephemeris_path: Optional[Path],
    ephemeris: Optional[Union[str, Path]],
) -> Path:
    """
    Resolution priority:
      1) ephemeris_path (Path) if provided
      2) ephemeris (str|Path) if provided:
         - absolute path -> use as is
         - relative path / filename -> resolve under project data dir
      3) default: prefer de440s if present else de421
    """
    if ephemeris_path is not None:
        return ephemeris_path

    if ephemeris is not None:
        p = ephemeris if isinstance(ephemeris, Path) else Path(ephemeris)
        if p.is_absolute():
            return p
        return _project_data_dir() / p

    return _default_ephemeris_path()


@lru_cache(maxsize=256)
def _topos(lat: float, lon: float, elevation_m: float):
    return wgs84.latlon(latitude_degrees=lat, longitude_degrees=lon, elevation_m=elevation_m)


def _topos_for(observer: Observer):
    return _topos(observer.latitude, observer.longitude, observer.elevation)


@dataclass(frozen=True)
class SkyfieldProvider:
    """
    Skyfield-backed celestial provider:
    - default ephemeris auto-selection (de440s > de421)
    - apparent topocentric alt/az with standard refraction
    - rise/set, culmination and lunar phase via skyfield.almanac
    """

    ephemeris_path: Optional[Path] = None
    ephemeris: Optional[Union[str, Path]] = None
    refraction: bool = True

    def __post_init__(self) -> None:
        resolved = _resolve_ephemeris_path(
            ephemeris_path=self.ephemeris_path,
            ephemeris=self.ephemeris,
        )
        object.__setattr__(self, "ephemeris_path", resolved)

        if not self.ephemeris_path.exists():
            data_dir = _project_data_dir()
            candidates = [data_dir / "de440s.bsp", data_dir / "de421.bsp"]
            cand_str = "\n".join(f"  - {p}" for p in candidates)
            raise FileNotFoundError(
                f"Ephemeris not found: {self.ephemeris_path}\n"
                f"Place one of the following files under {data_dir}:\n"
                f"{cand_str}\n"
                "Or pass ephemeris='de440s.bsp' / ephemeris_path=Path(...)."
            )

        loader = Loader(str(self.ephemeris_path.parent))
        eph = loader(self.ephemeris_path.name)
        ts = loader.timescale()

        object.__setattr__(self, "_eph", eph)
        object.__setattr__(self, "_ts", ts)
        object.__setattr__(self, "_earth", eph["earth"])
        object.__setattr__(self, "_bodies", {Body.SUN: eph["sun"], Body.MOON: eph["moon"]})

        start_utc, end_utc = self._compute_ephemeris_utc_range()
        object.__setattr__(self, "_ephem_start_utc", start_utc)
        object.__setattr__(self, "_ephem_end_utc", end_utc)

    def _compute_ephemeris_utc_range(self) -> Tuple[datetime, datetime]:
        """
        Compute coverage from SPK segments.
        Skyfield throws EphemerisRangeError deep inside; we surface a clearer error earlier.
        """
        segments = getattr(self._eph, "spk", None)
        if segments is None or not getattr(segments, "segments", None):
            return (
                datetime.min.replace(tzinfo=timezone.utc),
                datetime.max.replace(tzinfo=timezone.utc),
            )

        segs = segments.segments
        start_jd = min(s.start_jd for s in segs)
        end_jd = max(s.end_jd for s in segs)

        start_utc = self._ts.tt_jd(start_jd).utc_datetime().replace(tzinfo=timezone.utc)
        end_utc = self._ts.tt_jd(end_jd).utc_datetime().replace(tzinfo=timezone.utc)
        return start_utc, end_utc

    # ---- time helpers ----
    def _check_ephemeris_range(self, dt_utc: datetime) -> None:
        dt = as_utc(dt_utc)
        start = self._ephem_start_utc
        end = self._ephem_end_utc

        if dt < start or dt > end:
            raise ValueError(
                "Requested datetime is outside ephemeris coverage.\n"
                f"  requested: {dt.isoformat()}\n"
                f"  ephemeris: {self.ephemeris_path}\n"
                f"  coverage : {start.isoformat()} .. {end.isoformat()}\n"
                "Hint: use de440s.bsp (place it under ./data or pass ephemeris='de440s.bsp')."
            )

    def _t(self, dt_utc: datetime):
        self._check_ephemeris_range(dt_utc)
        return self._ts.from_datetime(as_utc(dt_utc))

    def _t_many(self, dts_utc: Sequence[datetime]):
        xs = [as_utc(dt) for dt in dts_utc]
        # Fail fast using min/max (avoid checking every point)
        self._check_ephemeris_range(min(xs))
        self._check_ephemeris_range(max(xs))
        return self._ts.from_datetimes(xs)

    def _altaz(self, body: Body, t, observer: Observer):
        site = self._earth + _topos_for(observer)
        apparent = site.at(t).observe(self._bodies[body]).apparent()
        if self.refraction:
            alt, az, _ = apparent.altaz(temperature_C=15.0, pressure_mbar="standard")
        else:
            alt, az, _ = apparent.altaz()
        return alt, az

    def _local_day_range(self, day: date, tzinfo_local: tzinfo) -> Tuple[datetime, datetime]:
        if tzinfo_local is None:
            raise ValueError("tzinfo_local must be provided")
        return local_day_bounds_utc(day, tzinfo_local)

    # ---- positions ----
    def position_at(self, body: Body, t_utc: datetime, observer: Observer) -> HorizontalPosition:
        t = self._t(t_utc)
        try:
            alt, az = self._altaz(body, t, observer)
        except Exception as e:
            raise ProviderError(f"skyfield alt/az failed: body={body.value} t={t_utc.isoformat()}") from e
        return HorizontalPosition(azimuth=float(az.degrees % 360.0), altitude=float(alt.degrees))

    def positions_many(self, body: Body, ts_utc: Sequence[datetime], observer: Observer) -> List[HorizontalPosition]:
        if not ts_utc:
            return []
        t = self._t_many(ts_utc)
        try:
            alt, az = self._altaz(body, t, observer)
        except Exception as e:
            raise ProviderError(f"skyfield alt/az (vectorized) failed: body={body.value} n={len(ts_utc)}") from e
        return [
            HorizontalPosition(azimuth=float(a % 360.0), altitude=float(h))
            for a, h in zip(az.degrees, alt.degrees)
        ]

    # ---- rise / set ----
    def _find_events(self, fn, start_utc: datetime, end_utc: datetime) -> List[Tuple[datetime, int]]:
        self._check_ephemeris_range(start_utc)
        self._check_ephemeris_range(end_utc)
        t0 = self._ts.from_datetime(start_utc)
        t1 = self._ts.from_datetime(end_utc)
        try:
            times, events = almanac.find_discrete(t0, t1, fn)
        except Exception as e:
            raise ProviderError(f"skyfield find_discrete failed: {start_utc.isoformat()}..{end_utc.isoformat()}") from e

        out: List[Tuple[datetime, int]] = []
        for t, ev in zip(times, events):
            dt = t.utc_datetime()
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            out.append((dt, int(ev)))
        return out

    def rise_set(
        self,
        body: Body,
        observer: Observer,
        day: date,
        tzinfo_local: tzinfo,
    ) -> Optional[RiseSet]:
        """
        Rise on the local day, then the first set after it (within 24h).
        Returns None if either is missing (circumpolar / never rises).
        """
        start_utc, end_utc = self._local_day_range(day, tzinfo_local)
        fn = almanac.risings_and_settings(self._eph, self._bodies[body], _topos_for(observer))

        rise_utc: Optional[datetime] = None
        for dt, ev in self._find_events(fn, start_utc, end_utc):
            if ev == 1:
                rise_utc = dt
                break

        set_utc: Optional[datetime] = None
        if rise_utc is not None:
            for dt, ev in self._find_events(fn, rise_utc + timedelta(seconds=1), rise_utc + timedelta(days=1)):
                if ev == 0:
                    set_utc = dt
                    break

        if rise_utc is None or set_utc is None:
            log.warning(
                "rise/set not found: body=%s day=%s lat=%.6f lon=%.6f start_utc=%s end_utc=%s",
                body.value,
                day,
                observer.latitude,
                observer.longitude,
                start_utc.isoformat(),
                end_utc.isoformat(),
            )
            return None

        return RiseSet(rise=rise_utc, set=set_utc)

    # ---- culmination ----
    def culmination(
        self,
        body: Body,
        observer: Observer,
        day: date,
        tzinfo_local: tzinfo,
    ) -> Optional[Culmination]:
        start_utc, end_utc = self._local_day_range(day, tzinfo_local)
        fn = almanac.meridian_transits(self._eph, self._bodies[body], _topos_for(observer))

        for dt, ev in self._find_events(fn, start_utc, end_utc):
            # 1 = upper transit, 0 = antitransit
            if ev == 1:
                pos = self.position_at(body, dt, observer)
                return Culmination(time=dt, altitude=pos.altitude)
        return None

    # ---- moon ----
    def moon_phase(self, t_utc: datetime) -> MoonPhase:
        t = self._t(t_utc)
        try:
            phase = almanac.moon_phase(self._eph, t).degrees
            illum = almanac.fraction_illuminated(self._eph, "moon", t)
        except Exception as e:
            raise ProviderError(f"skyfield moon phase failed: t={t_utc.isoformat()}") from e
        return MoonPhase(phase=float(phase % 360.0), illumination=float(illum))
