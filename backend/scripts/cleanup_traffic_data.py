from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any, Sequence

from traffictrack.aggregator import TrafficAggregator
from traffictrack.settings import settings
from traffictrack.stores import CredentialStore, ReadingStore


def run_cleanup(args: argparse.Namespace) -> dict[str, Any]:
    if args.out_dir:
        settings.out_dir = str(Path(args.out_dir).resolve())
    if args.retention_hours is not None:
        if int(args.retention_hours) < 1:
            raise ValueError("retention_hours must be >= 1")
        settings.traffic_retention_hours = int(args.retention_hours)

    readings = ReadingStore()
    aggregator = TrafficAggregator(CredentialStore(), readings, clients={})
    removed = aggregator.cleanup_old_data()
    return {
        "out_dir": settings.out_dir,
        "retention_hours": settings.traffic_retention_hours,
        "removed": removed,
        "remaining_readings": len(readings.list_readings()),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Purge traffic readings and incidents past the retention window.")
    parser.add_argument("--out-dir", default=None)
    parser.add_argument("--retention-hours", type=int, default=None)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(list(argv) if argv is not None else None)
    payload = run_cleanup(args)
    print(json.dumps(payload, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
