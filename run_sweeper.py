#!/usr/bin/env python3
"""
Scheduled expiry sweeper: removes expired presences and expires stale offers
"""
import asyncio
import sys
import logging

from buddymatch.config import SWEEP_INTERVAL_SECONDS
from buddymatch.db import get_default_store
from buddymatch.services.sweeper import run_sweeper

# Setup logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)

logger = logging.getLogger(__name__)

async def main():
    store = get_default_store()
    logger.info(f"Starting expiry sweeper every {SWEEP_INTERVAL_SECONDS}s on {type(store).__name__}")
    await run_sweeper(store, SWEEP_INTERVAL_SECONDS)

if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Sweeper stopped")
