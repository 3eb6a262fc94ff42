"""
Run the subscription scheduler without the API.

Run with:
    python -m storyscene.scheduler_main
"""

import asyncio
import signal

import structlog

from storyscene.bootstrap import build_services
from storyscene.config import get_settings
from storyscene.logging_config import setup_logging

logger = structlog.get_logger(__name__)


async def run() -> None:
    settings = get_settings()
    services = await build_services(settings)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    services.scheduler.start()
    logger.info("scheduler_process_started")
    try:
        await stop_event.wait()
    finally:
        await services.close()
        logger.info("scheduler_process_stopped")


def main() -> None:
    setup_logging(get_settings().debug)
    asyncio.run(run())


if __name__ == "__main__":
    main()
