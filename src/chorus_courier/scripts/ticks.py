"""Run one federation tick from a scheduler such as cron.

Usage:
    python -m chorus_courier.scripts.ticks delivery
    python -m chorus_courier.scripts.ticks inbox --batch-size 50
    python -m chorus_courier.scripts.ticks cleanup
"""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence

from chorus_courier.core.settings import settings
from chorus_courier.db.session import SessionLocal
from chorus_courier.services.ticks import TICK_NAMES, run_tick


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Run one federation queue tick")
    parser.add_argument("name", choices=TICK_NAMES, help="Tick to run")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=None,
        help="Override the configured batch size for delivery and inbox ticks",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable debug logging")
    return parser


async def _run(name: str, batch_size: int | None) -> dict[str, object]:
    with SessionLocal() as db:
        report = await run_tick(name, db, settings, batch_size=batch_size)
    return {"name": report.name, "ran": report.ran, "result": report.result}


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        summary = asyncio.run(_run(args.name, args.batch_size))
    except Exception as exc:
        print(f"[ticks] ERROR: {exc}", file=sys.stderr)
        return 1

    print(json.dumps(summary, default=str))
    return 0


if __name__ == "__main__":
    sys.exit(main())
