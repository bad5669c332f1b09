"""
Periodic maintenance for the presence service.

Marks sessions whose window has passed as inactive, deletes sessions past
the retention period and removes expired security log files. Every step is
idempotent, so overlapping runs are harmless.

Usage:
    python -m presence.sweep [--interval SECONDS] [--iterations N]

Options:
    --interval SECONDS    Keep running, sweeping every SECONDS
    --iterations N        Stop after N sweeps (only with --interval)
"""

import argparse
import logging
import time
from typing import List, Optional

from presence.config import settings
from presence.service import PresenceContext, build_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def sweep(ctx: PresenceContext) -> dict:
    """Run one maintenance pass and log its summary."""
    results = ctx.run_maintenance()
    logger.info(
        "Sweep complete: %d session(s) expired, %d purged, %d log file(s) removed",
        results["sessions_expired"],
        results["sessions_purged"],
        results["log_files_removed"],
    )
    return results


def run(ctx: PresenceContext, interval: Optional[float] = None,
        iterations: Optional[int] = None, sleep=time.sleep) -> List[dict]:
    runs = [sweep(ctx)]
    if not interval:
        return runs

    attempts = 1
    while iterations is None or attempts < iterations:
        sleep(interval)
        attempts += 1
        try:
            runs.append(sweep(ctx))
        except Exception:
            logger.exception("Sweep failed; retrying in %.0fs", interval)
    return runs


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments and run the sweep."""
    parser = argparse.ArgumentParser(
        description="Expire attendance sessions and purge retained data"
    )
    parser.add_argument(
        '--interval',
        type=float,
        help='Seconds between sweeps; omit to sweep once and exit'
    )
    parser.add_argument(
        '--iterations',
        type=int,
        help='Number of sweeps before exiting when --interval is set'
    )

    args = parser.parse_args(argv)
    if args.iterations is not None and args.iterations < 1:
        parser.error("--iterations must be at least 1")

    logger.info(f"Starting sweep against {settings.STORE_BACKEND} store")
    ctx = PresenceContext(build_store())
    try:
        run(ctx, args.interval, args.iterations)
    except KeyboardInterrupt:
        logger.info("Sweep interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
