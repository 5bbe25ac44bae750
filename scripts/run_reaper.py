#!/usr/bin/env python3
"""Run one cleanup sweep and print what it removed.

Usage:
    DATABASE_URL=postgresql://... REDIS_URL=redis://... python scripts/run_reaper.py

    # Preview against a fixed point in time:
    python scripts/run_reaper.py --now 2026-01-01T00:00:00+00:00

    # Machine-readable output:
    python scripts/run_reaper.py --json

Exit status is 1 when any step failed.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


async def run_sweep(now: Optional[datetime] = None):
    # Import here so config is read after argument parsing
    from phonegate.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.reaper.run_once(now)
    finally:
        await runtime.close()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Run one PhoneGate cleanup sweep",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--now",
        default=None,
        help="ISO-8601 timestamp to sweep against (defaults to the current time)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the report as JSON",
    )
    args = parser.parse_args()

    try:
        now = _parse_now(args.now)
    except ValueError:
        print(f"Error: --now must be an ISO-8601 timestamp, got {args.now!r}")
        sys.exit(2)

    try:
        report = asyncio.run(run_sweep(now))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        payload = asdict(report)
        payload["started_at"] = report.started_at.isoformat()
        print(json.dumps(payload, indent=2, sort_keys=True))
    else:
        print(f"Sweep at {report.started_at.isoformat()}")
        print(f"  Expired codes purged:      {report.expired_otps}")
        print(f"  Used codes purged:         {report.verified_otps}")
        print(f"  Accounts deleted:          {report.deleted_users}")
        print(f"  Suspensions lifted:        {report.expired_suspensions}")
        print(f"  Sessions purged:           {report.purged_sessions}")
        for step, error in sorted(report.errors.items()):
            print(f"  FAILED {step}: {error}")

    if not report.ok:
        sys.exit(1)


if __name__ == "__main__":
    main()
