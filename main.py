#!/usr/bin/env python3
"""
Escrow worker entry point

Creates the schema if needed and runs the release sweep and recovery jobs
until interrupted.
"""

import asyncio
import logging
import signal

from config import Config

logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

from database import async_engine, check_connection, create_tables  # noqa: E402
from jobs.escrow_scheduler import EscrowScheduler  # noqa: E402
from services.escrow_service import get_escrow_service  # noqa: E402


async def run_worker():
    Config.log_configuration()
    if not Config.validate_fee_configuration():
        raise SystemExit("Invalid fee configuration")

    if not await check_connection():
        raise SystemExit("Database unreachable")
    if not await create_tables():
        raise SystemExit("Schema creation failed")

    service = get_escrow_service()
    scheduler = EscrowScheduler()
    scheduler.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass

    logger.info("✅ Escrow worker running")
    try:
        await stop_event.wait()
    finally:
        logger.info("🛑 Shutting down escrow worker...")
        scheduler.shutdown()
        await service.shutdown()
        await async_engine.dispose()
        logger.info("✅ Escrow worker stopped")


def main():
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
