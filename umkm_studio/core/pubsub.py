"""Redis pub/sub for realtime job status.

Workers publish a JobStatusUpdate on every state change to a job-specific
channel and keep the latest snapshot under a key, so WebSocket handlers in
any API process can forward updates and late subscribers can catch up.

Publishing is best-effort: the database row is the source of truth, and a
Redis outage never fails a job transition.
"""

import asyncio
import json
import logging
from typing import AsyncGenerator, Optional

import redis.asyncio as redis

from umkm_studio.core.config import settings
from umkm_studio.schemas.generation_job import JobStatusUpdate

logger = logging.getLogger(__name__)

# Snapshots outlive any realistic polling session
JOB_SNAPSHOT_TTL_SECONDS = 24 * 3600

# Shared client for status publishing, one pool per process
_redis_client: Optional[redis.Redis] = None


async def get_redis() -> redis.Redis:
    """Get or create the shared status Redis client."""
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.Redis.from_url(
            settings.REDIS_URL,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            decode_responses=True,
        )
    return _redis_client


async def close_redis() -> None:
    """Close the shared status Redis client and its pool."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def get_job_channel(job_id: int) -> str:
    """Get the Redis pub/sub channel name for a job."""
    return f"umkm:job:{job_id}"


def get_job_snapshot_key(job_id: int) -> str:
    return f"umkm:job:{job_id}:status"


async def publish_job_update(update: JobStatusUpdate) -> int:
    """Publish a status update and store it as the latest snapshot.

    Returns:
        Number of subscribers that received the message (0 on failure)
    """
    channel = get_job_channel(update.job_id)
    message = update.model_dump_json()
    try:
        client = await get_redis()
        await client.set(get_job_snapshot_key(update.job_id), message, ex=JOB_SNAPSHOT_TTL_SECONDS)
        received = await client.publish(channel, message)
        logger.debug(f"Published {update.status.value} to {channel}, {received} subscribers")
        return received
    except Exception as e:
        logger.warning(f"Failed to publish status for job {update.job_id}: {e}")
        return 0


async def get_job_snapshot(job_id: int) -> Optional[dict]:
    """Read the latest published snapshot for a job, if any."""
    try:
        client = await get_redis()
        data = await client.get(get_job_snapshot_key(job_id))
    except Exception as e:
        logger.warning(f"Failed to read snapshot for job {job_id}: {e}")
        return None
    return json.loads(data) if data else None


async def subscribe(job_id: int, timeout: float = 1.0) -> AsyncGenerator[Optional[dict], None]:
    """Subscribe to a job's status channel.

    Yields parsed messages as they arrive, and None whenever ``timeout``
    passes without one so the caller can check its connection.

    Example:
        async for message in subscribe(job_id):
            if message is not None:
                await websocket.send_json(message)
    """
    channel = get_job_channel(job_id)
    client = await get_redis()
    pubsub = client.pubsub()

    try:
        await pubsub.subscribe(channel)
        logger.info(f"Subscribed to channel: {channel}")

        while True:
            try:
                message = await asyncio.wait_for(
                    pubsub.get_message(ignore_subscribe_messages=True, timeout=timeout),
                    timeout=timeout + 1,
                )
            except asyncio.TimeoutError:
                message = None

            if message is not None and message["type"] == "message":
                data = message["data"]
                if isinstance(data, bytes):
                    data = data.decode("utf-8")
                yield json.loads(data)
            else:
                yield None

    finally:
        await pubsub.unsubscribe(channel)
        await pubsub.aclose()
        logger.info(f"Unsubscribed from channel: {channel}")
