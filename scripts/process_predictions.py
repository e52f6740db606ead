#!/usr/bin/env python

import argparse
import asyncio
import signal

from agrisense.database import db
from agrisense.logging_config import setup_logging
from agrisense.openai_client import openai_client
from agrisense.orchestrator import PredictionOrchestrator
from agrisense.scheduler import JobRunner, SweepScheduler
from agrisense.weather import weather_client


def build_sweeper(interval: float = None, jitter: float = None) -> SweepScheduler:
    """
    Sweep that processes fields one at a time in this process.
    Uses the same database and provider settings as the API.
    """
    orchestrator = PredictionOrchestrator(db, openai_client, weather_client)
    return SweepScheduler(db, JobRunner(orchestrator), interval=interval, jitter=jitter)


async def run_once(sweeper: SweepScheduler) -> int:
    report = await sweeper.sweep_once()
    print(f"[PREDICT] Found {report.found} field(s) without a prediction")
    print(f"[PREDICT] Processed: {report.completed}, failed: {report.failed}, skipped: {report.skipped}")
    if report.submissions_rolled_up:
        print(f"[PREDICT] Submissions finished: {report.submissions_rolled_up}")
    return 1 if report.failed else 0


async def run_continuous(sweeper: SweepScheduler) -> int:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, sweeper.stop)

    print(f"[PREDICT] Watching for new fields every {sweeper.interval:g}s (Ctrl+C to stop)")
    await sweeper.run_forever()
    print("[PREDICT] Stopped.")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Process pending field predictions")
    parser.add_argument("--once", action="store_true", help="run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=None, help="seconds between sweeps")
    parser.add_argument("--jitter", type=float, default=None, help="extra random seconds per sleep")
    args = parser.parse_args(argv)

    setup_logging()
    sweeper = build_sweeper(args.interval, args.jitter)

    if args.once:
        return asyncio.run(run_once(sweeper))
    return asyncio.run(run_continuous(sweeper))


if __name__ == "__main__":
    raise SystemExit(main())
