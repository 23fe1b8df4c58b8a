"""
Standalone sweep worker.

Runs the cashout sweep scheduler outside the API process:
    python -m minetoearn.scheduler.main
"""

import asyncio
import signal

from minetoearn.core.database import init_database, close_database
from minetoearn.core.logging import setup_logging, get_logger
from minetoearn.services.cashout.payment_rail import shutdown_payment_rail
from minetoearn.services.purchases import shutdown_payment_verifier
from .sweep_scheduler import CashoutSweepScheduler

logger = get_logger(__name__)


async def main():
    """Run the sweep loop until SIGINT or SIGTERM."""
    setup_logging()
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    await init_database()
    try:
        async with CashoutSweepScheduler() as scheduler:
            logger.info("Sweep worker running", status=scheduler.get_status())
            await stop_event.wait()
            logger.info("Shutdown signal received")
    except Exception as e:
        logger.error("Sweep worker failed", error=str(e))
        raise
    finally:
        await shutdown_payment_rail()
        await shutdown_payment_verifier()
        await close_database()


if __name__ == "__main__":
    asyncio.run(main())
