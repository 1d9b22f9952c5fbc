"""Standalone alert consumer process.

Runs the inventory event consumer (and the expiry rescanner when enabled)
without the HTTP and WebSocket surface:

    python -m src.worker
"""

import asyncio
import signal

from src.core.config import Settings, settings
from src.core.logging import configure_logging, get_logger
from src.core.runtime import AlertingRuntime

logger = get_logger(__name__)


async def run_worker(worker_settings: Settings) -> None:
    runtime = AlertingRuntime(worker_settings)
    stop_requested = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await runtime.start(consume=True, serve_subscribers=False)
    logger.info(
        "Alert worker running",
        topic=worker_settings.inventory_topic,
        consumer_group=worker_settings.consumer_group,
    )
    try:
        await stop_requested.wait()
        logger.info("Shutdown requested, draining in-flight events")
    finally:
        await runtime.stop()


def main() -> None:
    configure_logging(settings.log_level, settings.log_json)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
