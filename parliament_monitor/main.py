"""Command line entry point for the cluster monitor."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal

import structlog

from parliament_monitor.config import load_config
from parliament_monitor.service import MonitorService


logger = structlog.get_logger(__name__)


def configure_logging(level: str) -> None:
    numeric = getattr(logging, str(level).upper(), logging.INFO)
    logging.basicConfig(level=numeric, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # Avoid leaking secrets (Telegram token is embedded in the Telegram API URL).
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(max(numeric, logging.WARNING))


async def run_service(service: MonitorService, *, once: bool = False) -> int:
    service.load()

    if once:
        report = await service.run_once()
        logger.info("Single cycle finished", **report.to_dict())
        return 0

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers.
            pass

    await service.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        await service.stop()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Capture cluster health monitor")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $PARLIAMENT_CONFIG)")
    parser.add_argument("--once", action="store_true", help="Run one poll cycle, send its alerts and exit")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (INFO, WARNING, ...); overrides the config file",
    )
    args = parser.parse_args()

    config = load_config(args.config)
    log_level = args.log_level or os.getenv("LOG_LEVEL") or config.log_level
    configure_logging(log_level)

    service = MonitorService(config)
    return asyncio.run(run_service(service, once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
