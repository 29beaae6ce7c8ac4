"""ARQ (Async Redis Queue) configuration for job processing.

Holds the Redis connection settings shared by the API (which enqueues
generation jobs) and the worker (which consumes them).
"""

import logging
import re
from datetime import timedelta
from typing import Any, Optional

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from umkm_studio.core.config import settings

logger = logging.getLogger(__name__)

# Queue consumed by umkm_studio.workers.arq_tasks.WorkerSettings
QUEUE_NAME = "umkm:jobs"

_REDIS_URL_PATTERN = re.compile(r"redis://(?::([^@]+)@)?([^:/]+):(\d+)(?:/(\d+))?")


def parse_redis_url(url: str) -> RedisSettings:
    """Parse Redis URL into ARQ RedisSettings.

    Args:
        url: Redis URL in format redis://:password@host:port/db

    Returns:
        RedisSettings configured for ARQ
    """
    match = _REDIS_URL_PATTERN.match(url)
    if not match:
        raise ValueError(f"Invalid Redis URL format: {url}")

    password = match.group(1)
    host = match.group(2)
    port = int(match.group(3))
    database = int(match.group(4)) if match.group(4) else 0

    return RedisSettings(
        host=host,
        port=port,
        password=password,
        database=database,
    )


def get_redis_settings() -> RedisSettings:
    """Get ARQ Redis settings from application config."""
    return parse_redis_url(settings.REDIS_URL)


# Global ARQ pool for enqueueing jobs
_arq_pool: Optional[ArqRedis] = None


async def get_arq_pool() -> ArqRedis:
    """Get or create the global ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is None:
        _arq_pool = await create_pool(get_redis_settings())
    return _arq_pool


async def close_arq_pool() -> None:
    """Close the global ARQ Redis pool."""
    global _arq_pool
    if _arq_pool is not None:
        await _arq_pool.aclose()
        _arq_pool = None


async def enqueue_job(
    function_name: str,
    *args: Any,
    _job_id: Optional[str] = None,
    _defer_by: Optional[timedelta] = None,
    **kwargs: Any,
) -> Optional[Job]:
    """Enqueue a job to the ARQ queue.

    Args:
        function_name: Name of the worker function to execute
        *args: Positional arguments for the function
        _job_id: Optional custom job ID (for deduplication)
        _defer_by: Timedelta to defer execution by
        **kwargs: Keyword arguments for the function

    Returns:
        Job object if enqueued, None if duplicate job ID exists
    """
    pool = await get_arq_pool()

    try:
        job = await pool.enqueue_job(
            function_name,
            *args,
            _job_id=_job_id,
            _queue_name=QUEUE_NAME,
            _defer_by=_defer_by,
            **kwargs,
        )

        if job is None:
            logger.warning(f"Job with ID {_job_id} already exists, skipping")
        else:
            logger.info(f"Enqueued job {function_name} with ID {job.job_id}")

        return job

    except Exception as e:
        logger.error(f"Failed to enqueue job {function_name}: {e}")
        raise
