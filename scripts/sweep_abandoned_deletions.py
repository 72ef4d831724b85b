from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import timedelta

from purgegate.core.config import get_settings
from purgegate.core.logging import configure_logging
from purgegate.persistence.db import dispose_engine
from purgegate.services.deletion.runtime import build_runtime


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fail deletion jobs abandoned before confirmation")
    parser.add_argument(
        "--older-than-hours",
        type=int,
        default=None,
        help="Idle window; defaults to DELETION_ABANDONED_TTL_HOURS",
    )
    parser.add_argument("--limit", type=int, default=500, help="Maximum jobs to sweep in one run")
    parser.add_argument(
        "--redispatch-stalled",
        action="store_true",
        help="Also re-enqueue cleanup jobs idle longer than DELETION_STALLED_AFTER_S",
    )
    return parser


async def _sweep(args: argparse.Namespace) -> int:
    settings = get_settings()
    runtime = build_runtime()
    hours = args.older_than_hours or settings.deletion_abandoned_ttl_hours
    swept = await runtime.state_machine.sweep_abandoned_jobs(
        older_than=timedelta(hours=hours),
        limit=max(1, args.limit),
    )
    print(f"swept_abandoned_jobs={len(swept)}")
    for job_id in swept:
        print(f"  {job_id}")
    if args.redispatch_stalled:
        redispatched = await runtime.state_machine.redispatch_stalled_jobs(
            older_than=timedelta(seconds=settings.deletion_stalled_after_s),
            limit=max(1, args.limit),
        )
        print(f"redispatched_stalled_jobs={len(redispatched)}")
    await dispose_engine()
    return 0


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_sweep(args))
    except Exception as exc:  # noqa: BLE001 - surface sweep failures clearly
        print(f"sweep_abandoned_deletions failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
