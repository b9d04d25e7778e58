"""
Diamond / pearl alignment check script.

  python -m tools.alignment_check --lat 35.6586 --lon 139.7454 --start 2025-01-01 --end 2025-01-31

Uses:
- skyalign.core.search.AlignmentSearchEngine
- skyalign.features.aggregation.group_by_date / best_shot_days
"""
from __future__ import annotations

import argparse

from skyalign.core.errors import AlignmentError
from skyalign.core.models import Observer, SceneFilter, SearchMode, SearchRequest
from skyalign.core.search import AlignmentSearchEngine
from skyalign.features.aggregation import best_shot_days, group_by_date

from tools.common import add_common_args, build_engine, dump_json, resolve_date_range, resolve_ephemeris, setup_logging, skip


def main() -> None:
    parser = argparse.ArgumentParser(description="Landmark alignment (diamond/pearl) check")
    add_common_args(parser)
    parser.add_argument("--lat", type=float, required=True, help="observer latitude (deg)")
    parser.add_argument("--lon", type=float, required=True, help="observer longitude (deg)")
    parser.add_argument("--elevation", type=float, default=0.0, help="observer elevation (m)")
    parser.add_argument("--scene", choices=[s.value for s in SceneFilter], default=SceneFilter.ALL.value)
    parser.add_argument("--mode", choices=[m.value for m in SearchMode], default=SearchMode.AUTO.value)
    parser.add_argument("--best", type=int, default=0, help="also list the N best days per month")
    args = parser.parse_args()
    setup_logging(args.verbose)

    start, end = resolve_date_range(args)
    if start is None or end is None:
        parser.error("--date or --start/--end required")

    eph = resolve_ephemeris(args.ephemeris, args.ephemeris_path)
    if eph.skip_reason:
        skip(eph.skip_reason)

    eng, config = build_engine(eph)
    search = AlignmentSearchEngine(eng, config)
    try:
        result = search.search(
            SearchRequest(
                observer=Observer(args.lat, args.lon, args.elevation),
                start=start,
                end=end,
                scene=SceneFilter(args.scene),
                mode=SearchMode(args.mode),
            )
        )
    except AlignmentError as e:
        parser.exit(2, f"error: {e}\n")

    tz = config.landmark.tzinfo
    md = result.metadata
    best = []
    if args.best > 0:
        months = sorted({(e.local_date(tz).year, e.local_date(tz).month) for e in result.events})
        for y, m in months:
            best.extend(best_shot_days(result.events, y, m, tz, limit=args.best))

    if args.json:
        dump_json(
            {
                "metadata": {
                    "total_events": md.total_events,
                    "search_interval_seconds": md.search_interval_seconds,
                    "is_limited": md.is_limited,
                    "original_total": md.original_total,
                    "mode": md.mode.value,
                },
                "days": [d.to_dict() for d in group_by_date(result.events, tz)],
                "best_days": [d.to_dict() for d in best],
            }
        )
        return

    print(f"# {config.landmark.name}  mode={md.mode.value} step={md.search_interval_seconds}s events={md.total_events}"
          + (f" (of {md.original_total})" if md.is_limited else ""))
    for day in group_by_date(result.events, tz):
        for e in day.events:
            local = e.time.astimezone(tz)
            print(
                f"{day.date}  {e.type.value:7s} {e.subtype.value:8s} {local.strftime('%H:%M:%S')}  "
                f"az={e.azimuth:7.3f} alt={e.altitude:6.3f} dev={e.deviation:.3f} "
                f"{e.accuracy.value:9s} q={e.quality_score:.3f}"
            )

    if best:
        print("\n# Best days")
        for d in best:
            print(f"{d.date}  {d.kind.value:7s} score={d.score} events={len(d.events)}")


if __name__ == "__main__":
    main()
