"""
Elevation-point check: where to stand so the landmark apex and the sun/moon
share the same elevation angle.
"""
from __future__ import annotations

import argparse

from skyalign.core.elevation_points import elevation_points
from skyalign.core.models import Body
from skyalign.core.timeutil import iter_dates

from tools.common import add_common_args, build_engine, dump_json, resolve_date_range, resolve_ephemeris, setup_logging, skip


def main() -> None:
    parser = argparse.ArgumentParser(description="Elevation-point check")
    add_common_args(parser)
    parser.add_argument("--body", choices=[b.value for b in Body], default=Body.SUN.value)
    parser.add_argument("--elevations", default="", help="comma-separated target elevations (deg)")
    args = parser.parse_args()
    setup_logging(args.verbose)

    start, end = resolve_date_range(args)
    if start is None or end is None:
        parser.error("--date or --start/--end required")

    targets = [float(x) for x in args.elevations.split(",") if x.strip()] or None

    eph = resolve_ephemeris(args.ephemeris, args.ephemeris_path)
    if eph.skip_reason:
        skip(eph.skip_reason)

    eng, config = build_engine(eph)
    body = Body(args.body)
    tz = config.landmark.tzinfo

    rows = []
    for d in iter_dates(start, end):
        for p in elevation_points(eng, config.landmark, d, body, targets, config.elevation_points):
            rows.append(
                {
                    "date": d.isoformat(),
                    "elevation": p.elevation,
                    "lat": round(p.latitude, 6),
                    "lon": round(p.longitude, 6),
                    "distance_km": round(p.distance_km, 3),
                    "bearing": round(p.bearing, 3),
                    "time_local": p.time.astimezone(tz).isoformat(),
                    "subtype": p.subtype.value,
                }
            )

    if args.json:
        dump_json({"body": body.value, "landmark": config.landmark.name, "points": rows})
        return

    for r in rows:
        print(
            f"{r['date']}  elev={r['elevation']:4.1f}  {r['subtype']:8s} at={r['time_local']}  "
            f"dist={r['distance_km']:8.3f}km  bearing={r['bearing']:7.3f}  ({r['lat']}, {r['lon']})"
        )


if __name__ == "__main__":
    main()
