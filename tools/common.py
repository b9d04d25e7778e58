from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Optional, Tuple

from skyalign.core.astronomy import CelestialEngine
from skyalign.core.config import AlignmentConfig, config_from_env
from skyalign.core.providers.skyfield_provider import SkyfieldProvider

DEFAULT_EPHEMERIS = "de440s.bsp"

ENV_EPHEMERIS = "SKYALIGN_EPHEMERIS"
ENV_EPHEMERIS_PATH = "SKYALIGN_EPHEMERIS_PATH"


@dataclass(frozen=True)
class EphemerisConfig:
    name: str
    path: Optional[Path]
    skip_reason: Optional[str]


def add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--date", help="YYYY-MM-DD")
    parser.add_argument("--start", help="YYYY-MM-DD")
    parser.add_argument("--end", help="YYYY-MM-DD")
    parser.add_argument("--ephemeris", default="")
    parser.add_argument("--ephemeris-path", default="")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--verbose", action="store_true")


def setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def parse_date(s: str) -> date:
    return date.fromisoformat(s)


def resolve_ephemeris(name_arg: str, path_arg: str) -> EphemerisConfig:
    name = (name_arg or "").strip() or os.environ.get(ENV_EPHEMERIS, "").strip() or DEFAULT_EPHEMERIS

    path_raw = (path_arg or "").strip() or os.environ.get(ENV_EPHEMERIS_PATH, "").strip()
    if path_raw:
        p = Path(path_raw).expanduser()
        if p.exists():
            return EphemerisConfig(name=name, path=p, skip_reason=None)
        return EphemerisConfig(name=name, path=None, skip_reason=f"ephemeris_path not found: {p}")

    local = Path("data") / name
    if local.exists():
        return EphemerisConfig(name=name, path=local, skip_reason=None)

    return EphemerisConfig(
        name=name,
        path=None,
        skip_reason=(
            "ephemeris not found. set SKYALIGN_EPHEMERIS_PATH or provide --ephemeris-path, "
            "or place data/<ephemeris>."
        ),
    )


def build_engine(eph: EphemerisConfig) -> Tuple[CelestialEngine, AlignmentConfig]:
    config = config_from_env()
    provider = SkyfieldProvider(ephemeris=eph.name, ephemeris_path=eph.path)
    return CelestialEngine(provider=provider, retry=config.retry), config


def resolve_date_range(args: argparse.Namespace) -> Tuple[Optional[date], Optional[date]]:
    if args.start and args.end:
        return parse_date(args.start), parse_date(args.end)
    if args.date:
        d = parse_date(args.date)
        return d, d
    return None, None


def dump_json(obj: object) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def skip(msg: str) -> None:
    print(f"SKIP: {msg}")
    sys.exit(0)
