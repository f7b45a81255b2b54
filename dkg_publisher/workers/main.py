from __future__ import annotations

import asyncio
import logging
import signal

from dkg_publisher.core.config import get_settings
from dkg_publisher.core.telemetry import configure_logging, setup_worker_telemetry, shutdown_telemetry
from dkg_publisher.services.dispatcher import build_dispatcher
from dkg_publisher.services.publish_client import get_publish_client
from dkg_publisher.services.repository import get_repository

logger = logging.getLogger(__name__)


async def run_worker(stop_event: asyncio.Event | None = None) -> None:
    """Run a standalone dispatcher until SIGINT/SIGTERM (or ``stop_event``)."""
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_worker_telemetry(settings)

    client = get_publish_client()
    if client is None:
        shutdown_telemetry(telemetry_runtime)
        raise RuntimeError("DKGP_DKG_ENDPOINT is required to run the publish worker")

    repository = get_repository()
    dispatcher = build_dispatcher(settings, repository, client)
    stop = stop_event or asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):  # pragma: no cover - platform dependent
            logger.debug("signal handlers unavailable for %s", sig)

    try:
        await dispatcher.start()
        await stop.wait()
        logger.info("shutdown requested worker_name=%s", settings.worker_name)
    finally:
        await dispatcher.stop()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
