#!/usr/bin/env python3
"""
Run one review batch cycle in-process, without Celery.

Usage:
  python scripts/run_review_batch.py
  python scripts/run_review_batch.py --since 2026-01-01T00:00:00
  python scripts/run_review_batch.py --outlet-id <uuid> --since 2026-01-01T00:00:00
"""

import argparse
import asyncio
import json
import os
import sys
import uuid
from datetime import datetime

# Add backend to path so imports work
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="ReviewFlow review batch cycle")
    parser.add_argument(
        "--since",
        type=datetime.fromisoformat,
        default=None,
        help="ISO timestamp overriding every outlet's watermark (backfill)",
    )
    parser.add_argument(
        "--outlet-id",
        dest="outlet_ids",
        action="append",
        type=uuid.UUID,
        default=None,
        help="Limit the cycle to this outlet (repeatable)",
    )
    return parser.parse_args(argv)


async def _run(args):
    from core.config import get_settings
    from db.session import AsyncSessionLocal, engine
    from workers.review_automation import build_external_services
    from workflow.batch import run_batch_cycle

    try:
        return await run_batch_cycle(
            AsyncSessionLocal,
            build_external_services(get_settings()),
            since=args.since,
            outlet_ids=args.outlet_ids,
            trigger="manual",
        )
    finally:
        await engine.dispose()


def main(argv=None):
    args = parse_args(argv)
    summary = asyncio.run(_run(args))
    print(json.dumps(summary, default=str))
    return 0 if summary["status"] != "failed" else 1


if __name__ == "__main__":
    sys.exit(main())
