#!/usr/bin/env python3
"""Run the relayer API with uvicorn. The worker and queue monitor start in the
same process unless RUN_WORKER_IN_PROCESS=false.

Usage:
  CONTRACT_ADDRESS=0x... ADMIN_PRIVATE_KEY=0x... RELAYER_API_KEY=... python scripts/serve.py
"""
import uvicorn

from relayer.config import get_settings
from relayer.logging_config import setup_logging


def main():
    settings = get_settings()
    setup_logging(settings.log_level)
    # a single process: the signer must have exactly one consumer
    uvicorn.run("relayer.main:app", host=settings.host, port=settings.port, workers=1, log_config=None)


if __name__ == "__main__":
    main()
