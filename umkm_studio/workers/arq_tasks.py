"""ARQ worker tasks for processing generation jobs.

This module defines the async task functions that are executed by ARQ workers.
Tasks include:
- process_generation_job: Calls the image API for one job
- cleanup_stale_jobs: Maintenance task that fails jobs abandoned by crashed
  workers and refunds their credits

Usage:
    Start worker with: arq umkm_studio.workers.arq_tasks.WorkerSettings
"""

import logging
import os
import socket
import uuid

from arq import cron

from umkm_studio.core.arq_config import QUEUE_NAME, get_redis_settings
from umkm_studio.core.database import get_session_factory
from umkm_studio.core.pubsub import close_redis
from umkm_studio.services.image_client import UpstreamGenerationError, get_image_client
from umkm_studio.services.job_queue import JobQueueService
from umkm_studio.services.r2_storage import ImageStorageError, get_r2_service

logger = logging.getLogger(__name__)


def _worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:6]}"


async def process_generation_job(ctx: dict, job_id: int) -> dict:
    """Process one image generation job.

    Claims the job, calls the image API under its hard timeout, stores the
    image and completes the job. Any upstream failure fails the job, which
    refunds the reserved credit. A storage failure still completes the job.

    Args:
        ctx: ARQ context (worker_id, session_factory, image_client, storage)
        job_id: GenerationJob ID

    Returns:
        Dict with job result information
    """
    worker_id = ctx.get("worker_id") or _worker_id()
    session_factory = ctx.get("session_factory") or get_session_factory()
    image_client = ctx.get("image_client") or get_image_client()
    storage = ctx.get("storage") or get_r2_service()

    logger.info(f"Worker {worker_id} starting job {job_id}")

    async with session_factory() as db:
        job_service = JobQueueService(db)

        job = await job_service.claim_job(job_id, worker_id)
        if job is None:
            return {"status": "skipped", "job_id": job_id}

        account_id = job.account_id
        try:
            image_ref, _ = await image_client.generate(job.model, job.payload["messages"])
        except UpstreamGenerationError as e:
            failed = await job_service.fail_job(job_id, worker_id, str(e), e.error_code)
            return {
                "status": "failed",
                "job_id": job_id,
                "error_code": e.error_code,
                "credit_refunded": bool(failed and failed.credit_refunded),
            }
        except Exception as e:
            logger.error(f"Job {job_id} crashed: {e}", exc_info=True)
            failed = await job_service.fail_job(job_id, worker_id, str(e), "INTERNAL_ERROR")
            return {
                "status": "failed",
                "job_id": job_id,
                "error_code": "INTERNAL_ERROR",
                "credit_refunded": bool(failed and failed.credit_refunded),
            }

        image_path = None
        image_url = None if image_ref.startswith("data:") else image_ref
        if image_url is None:
            try:
                image_path, image_url = await storage.store_generated_image(account_id, image_ref)
            except ImageStorageError as e:
                # Generation succeeded, so the credit stays spent
                logger.warning(f"Storing image for job {job_id} failed: {e}")
            except Exception as e:
                logger.warning(f"Storage crashed for job {job_id}: {e}", exc_info=True)

        completed = await job_service.complete_job(
            job_id,
            worker_id,
            result={"image_url": image_url or image_ref, "image_path": image_path},
            image_path=image_path,
            image_url=image_url,
        )
        if completed is None:
            return {"status": "lost", "job_id": job_id}

        logger.info(f"Job {job_id} completed successfully")
        return {"status": "completed", "job_id": job_id, "image_path": image_path}


async def cleanup_stale_jobs(ctx: dict) -> dict:
    """Fail jobs stuck in PROCESSING state and refund their credits.

    Args:
        ctx: ARQ context

    Returns:
        Dict with cleanup results
    """
    session_factory = ctx.get("session_factory") or get_session_factory()

    async with session_factory() as db:
        failed = await JobQueueService(db).fail_stale_jobs()

    logger.info(f"Cleanup completed: {len(failed)} stale jobs failed")
    return {"status": "completed", "cleaned_count": len(failed), "job_ids": failed}


# Worker settings for ARQ
class WorkerSettings:
    """ARQ Worker configuration.

    Usage: arq umkm_studio.workers.arq_tasks.WorkerSettings
    """

    redis_settings = get_redis_settings()
    queue_name = QUEUE_NAME

    # Worker behavior
    max_jobs = 10
    job_timeout = 300  # image API timeout plus storage
    max_tries = 1  # Failures are terminal; the credit is refunded instead
    poll_delay = 0.5

    # Health check
    health_check_interval = 30

    # Registered task functions
    functions = [
        process_generation_job,
        cleanup_stale_jobs,
    ]

    # Cron jobs for maintenance (run cleanup every 15 minutes)
    cron_jobs = [
        cron(cleanup_stale_jobs, minute={0, 15, 30, 45}),
    ]

    # Startup hook
    @staticmethod
    async def on_startup(ctx: dict) -> None:
        """Called when worker starts."""
        logger.info("ARQ Worker starting up...")
        ctx["worker_id"] = _worker_id()
        ctx["session_factory"] = get_session_factory()
        ctx["image_client"] = get_image_client()
        ctx["storage"] = get_r2_service()
        logger.info(f"ARQ Worker {ctx['worker_id']} ready to process jobs")

    # Shutdown hook
    @staticmethod
    async def on_shutdown(ctx: dict) -> None:
        """Called when worker shuts down."""
        logger.info("ARQ Worker shutting down...")
        await close_redis()
        logger.info("ARQ Worker shutdown complete")
