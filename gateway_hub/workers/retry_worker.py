"""
Retry scheduler background worker.

Runs the transaction retry sweep and the failed-webhook replay outside the
API process until SIGINT/SIGTERM.
"""
import asyncio
import signal

import structlog

from gateway_hub.config import get_settings
from gateway_hub.container import build_services
from gateway_hub.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_retry_worker() -> None:
    """
    Start the retry worker.

    Runs continuously until a shutdown signal arrives.
    """
    settings = get_settings()
    setup_logging(settings)
    logger.info("retry_worker_starting", app_env=settings.app_env)

    services = build_services(settings)
    scheduler = services.retry_scheduler
    stop_requested = asyncio.Event()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("retry_worker_shutdown_signal_received", signal=sig.name)
        stop_requested.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler, sig)

    try:
        await scheduler.start()
        await stop_requested.wait()
    except Exception as e:
        logger.error("retry_worker_error", error=str(e))
        raise
    finally:
        await services.close()
        logger.info("retry_worker_stopped")


def main() -> None:
    asyncio.run(start_retry_worker())


if __name__ == "__main__":
    main()
