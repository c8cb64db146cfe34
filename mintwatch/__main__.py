"""Run the tracker until interrupted: ``python -m mintwatch --config mintwatch.toml``."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from .config import load_settings
from .logging_utils import configure_runtime_logging, serialize_for_log
from .runtime import TrackerRuntime
from .tracking.errors import ConfigurationError

log = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Track newly launched Solana mints")
    parser.add_argument("--config", default=None, help="Path to a TOML or YAML settings file")
    parser.add_argument("--log-level", default=None, help="Override the configured log level")
    parser.add_argument(
        "--maintenance-interval",
        type=float,
        default=3600.0,
        help="Seconds between alert-buffer maintenance passes",
    )
    return parser


async def _serve(runtime: TrackerRuntime, maintenance_interval: float) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)

    async with runtime:
        while not stop.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=maintenance_interval)
            if stop.is_set():
                break
            await runtime.service.perform_maintenance()
            log.info("poller %s", serialize_for_log(runtime.poller.metrics.snapshot()))


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings(args.config)
    except ConfigurationError as exc:
        print(f"configuration error: {exc}", file=sys.stderr)
        return 2
    configure_runtime_logging(
        level=args.log_level or settings.logging.level,
        console=settings.logging.console,
        logfile=settings.logging.logfile,
        json_logs=settings.logging.json_logs,
    )
    asyncio.run(_serve(TrackerRuntime(settings), args.maintenance_interval))
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
