#!/usr/bin/env python3
"""
Serve the matching API with uvicorn
"""
import os
import sys
import uvicorn
import logging

from buddymatch.config import STORE_BACKEND

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    stream=sys.stdout
)

logger = logging.getLogger(__name__)


def main():
    port = int(os.getenv("PORT", 8000))
    logger.info(f"Starting matching API on port {port}, store backend: {STORE_BACKEND}")
    if STORE_BACKEND == "memory":
        logger.warning("In-memory store: state is lost on restart and not shared between workers")
    uvicorn.run("buddymatch.api.routers:app", host="0.0.0.0", port=port, log_level="info")


if __name__ == "__main__":
    main()
