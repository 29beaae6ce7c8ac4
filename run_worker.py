#!/usr/bin/env python3
"""
Entrypoint for the UMKM Studio generation worker service.

This script starts the ARQ worker that processes image generation jobs
from the Redis queue.
"""

import logging
import sys

from arq import run_worker

from umkm_studio.workers.arq_tasks import WorkerSettings

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point for worker service."""
    logger.info("Starting UMKM Studio generation worker...")
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
