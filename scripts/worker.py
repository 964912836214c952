#!/usr/bin/env python3
"""Standalone transaction worker: consumes the main and retry queues and runs the
queue monitor, without the HTTP API.

Usage:
  CONTRACT_ADDRESS=0x... ADMIN_PRIVATE_KEY=0x... RELAYER_API_KEY=... \
  REDIS_URL=redis://localhost:6379/0 python scripts/worker.py

Run the API with RUN_WORKER_IN_PROCESS=false when this process is the consumer,
otherwise two workers would share one signer.
"""
import asyncio
import signal

import structlog

from relayer.config import get_settings
from relayer.logging_config import setup_logging
from relayer.services import build_services

logger = structlog.stdlib.get_logger("relayer.worker")


async def run_worker():
    settings = get_settings()
    setup_logging(settings.log_level)
    services = await build_services(settings)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    services.start(run_worker=True)
    logger.info("worker_process_started", signer=services.chain.address)
    try:
        await stop.wait()
    finally:
        await services.stop()
        logger.info("worker_process_exiting")


if __name__ == "__main__":
    asyncio.run(run_worker())
