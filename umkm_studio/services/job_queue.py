"""Job queue service for image generation jobs with ARQ.

This service provides the business logic for:
- Submitting jobs (admission control, then persist, then enqueue)
- The worker-side state machine: claim, complete, fail
- Refunding the reserved credit whenever a job fails
- Failing jobs abandoned by crashed workers
- Publishing status updates via Redis pub/sub

State transitions are conditional UPDATEs on the job row, so a job moves
forward at most once and only the worker that claimed it can finish it.
"""

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.core.arq_config import enqueue_job
from umkm_studio.core.config import settings
from umkm_studio.core.pubsub import publish_job_update
from umkm_studio.models.generation_job import GenerationJob, JobStatus
from umkm_studio.schemas.credits import AdmissionResult
from umkm_studio.schemas.generation_job import GenerationJobCreate, JobStatusUpdate
from umkm_studio.services.image_client import build_messages
from umkm_studio.services.ledger_service import LedgerService, utcnow
from umkm_studio.services.settings_service import LedgerConfig

logger = logging.getLogger(__name__)

# Jobs processing longer than this are considered abandoned
STALE_JOB_AFTER = timedelta(minutes=30)

MAX_ERROR_MSG_CHARS = 2000


class JobEnqueueError(Exception):
    """Raised when a submitted job could not be put on the queue."""

    def __init__(self, job_id: int, message: str):
        self.job_id = job_id
        super().__init__(message)


class JobQueueService:
    """Service for managing generation jobs via ARQ queue."""

    def __init__(self, db: AsyncSession):
        """Initialize the job queue service.

        Args:
            db: Database session for job persistence
        """
        self.db = db
        self.ledger = LedgerService(db)

    async def submit_job(
        self,
        account_id: int,
        job_data: GenerationJobCreate,
        config: Optional[LedgerConfig] = None,
    ) -> tuple[AdmissionResult, Optional[GenerationJob]]:
        """Reserve a credit, create a pending job and enqueue it.

        Args:
            account_id: Owner of the job
            job_data: Prompt, model and reference images
            config: Ledger config snapshot (loaded if omitted)

        Returns:
            Tuple of (admission result, job); job is None when admission
            was rejected

        Raises:
            AccountNotFoundError: If the account does not exist
            JobEnqueueError: If enqueueing failed (the job is failed and the
                credit refunded before this is raised)
        """
        admission = await self.ledger.reserve_generation_credit(account_id, config=config)
        if not admission.ok:
            return admission, None

        arq_job_id = f"gen-{uuid.uuid4().hex[:12]}"
        job = GenerationJob(
            arq_job_id=arq_job_id,
            account_id=account_id,
            reservation_id=admission.reservation_id,
            status=JobStatus.PENDING,
            prompt=job_data.prompt,
            model=job_data.model or settings.IMAGE_DEFAULT_MODEL,
            payload={"messages": build_messages(job_data.prompt, job_data.reference_images)},
        )
        self.db.add(job)
        await self.db.commit()
        await self.db.refresh(job)

        try:
            await enqueue_job("process_generation_job", job.id, _job_id=arq_job_id)
        except Exception as e:
            logger.error(f"Failed to enqueue job {job.id}: {e}")
            await self._fail_where(
                job.id,
                [GenerationJob.status == JobStatus.PENDING],
                f"Failed to enqueue job: {e}",
                "ENQUEUE_FAILED",
            )
            raise JobEnqueueError(job.id, f"Failed to enqueue job {job.id}: {e}")

        logger.info(f"Created and enqueued job {job.id} with ARQ ID {arq_job_id}")
        await self._publish(job)
        return admission, job

    async def get_job(self, job_id: int, account_id: Optional[int] = None) -> Optional[GenerationJob]:
        """Get a job by ID, optionally restricted to its owner.

        Args:
            job_id: Job ID to fetch
            account_id: Owner ID (for authorization)

        Returns:
            GenerationJob if found (and owned), None otherwise
        """
        stmt = select(GenerationJob).where(GenerationJob.id == job_id)
        if account_id is not None:
            stmt = stmt.where(GenerationJob.account_id == account_id)
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def list_jobs(
        self,
        account_id: int,
        status_filter: Optional[JobStatus] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> tuple[list[GenerationJob], int]:
        """List jobs for an account with optional status filter.

        Returns:
            Tuple of (jobs list, total count)
        """
        base_stmt = select(GenerationJob).where(GenerationJob.account_id == account_id)

        if status_filter:
            base_stmt = base_stmt.where(GenerationJob.status == status_filter)

        count_stmt = select(func.count()).select_from(base_stmt.subquery())
        total = await self.db.scalar(count_stmt) or 0

        stmt = (
            base_stmt
            .order_by(GenerationJob.created_at.desc(), GenerationJob.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(stmt)
        jobs = list(result.scalars().all())

        return jobs, total

    async def claim_job(self, job_id: int, worker_id: str) -> Optional[GenerationJob]:
        """Move a pending job to processing on behalf of a worker.

        Returns:
            The claimed job, or None if it was not pending
        """
        stmt = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id, GenerationJob.status == JobStatus.PENDING)
            .values(status=JobStatus.PROCESSING, worker_id=worker_id, started_at=utcnow())
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        if (await self.db.execute(stmt)).scalar_one_or_none() is None:
            await self.db.rollback()
            logger.warning(f"Job {job_id} is not pending, worker {worker_id} skips it")
            return None
        await self.db.commit()

        job = await self.get_job(job_id)
        await self._publish(job)
        return job

    async def complete_job(
        self,
        job_id: int,
        worker_id: str,
        result: dict[str, Any],
        image_path: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> Optional[GenerationJob]:
        """Attach the result to a processing job owned by ``worker_id``.

        Returns:
            The completed job, or None if the worker does not own a
            processing job with this ID
        """
        stmt = (
            update(GenerationJob)
            .where(
                GenerationJob.id == job_id,
                GenerationJob.status == JobStatus.PROCESSING,
                GenerationJob.worker_id == worker_id,
            )
            .values(
                status=JobStatus.COMPLETED,
                result=result,
                image_path=image_path,
                image_url=image_url,
                completed_at=utcnow(),
            )
            .returning(GenerationJob.id)
            .execution_options(synchronize_session=False)
        )
        if (await self.db.execute(stmt)).scalar_one_or_none() is None:
            await self.db.rollback()
            logger.warning(f"Worker {worker_id} cannot complete job {job_id}")
            return None
        await self.db.commit()

        job = await self.get_job(job_id)
        logger.info(f"Job {job_id} completed")
        await self._publish(job)
        return job

    async def fail_job(
        self,
        job_id: int,
        worker_id: str,
        error_msg: str,
        error_code: Optional[str] = None,
    ) -> Optional[GenerationJob]:
        """Fail a processing job owned by ``worker_id`` and refund its credit.

        Returns:
            The failed job, or None if the worker does not own a processing
            job with this ID
        """
        return await self._fail_where(
            job_id,
            [GenerationJob.status == JobStatus.PROCESSING, GenerationJob.worker_id == worker_id],
            error_msg,
            error_code,
        )

    async def fail_stale_jobs(
        self, older_than: timedelta = STALE_JOB_AFTER, now: Optional[datetime] = None
    ) -> list[int]:
        """Fail jobs stuck in processing (crashed worker) and refund them.

        Returns:
            IDs of the jobs that were failed
        """
        threshold = (now or utcnow()) - older_than
        conditions = [
            GenerationJob.status == JobStatus.PROCESSING,
            GenerationJob.started_at <= threshold,
        ]
        stale_ids = list((await self.db.scalars(select(GenerationJob.id).where(*conditions))).all())

        failed = []
        for job_id in stale_ids:
            job = await self._fail_where(
                job_id, conditions, "Job timed out (worker may have crashed)", "STALE"
            )
            if job is not None:
                failed.append(job_id)
                logger.warning(f"Failed stale job {job_id}")
        return failed

    async def _fail_where(
        self,
        job_id: int,
        conditions: list,
        error_msg: str,
        error_code: Optional[str],
    ) -> Optional[GenerationJob]:
        """Fail a job if ``conditions`` still hold, refunding in the same transaction."""
        stmt = (
            update(GenerationJob)
            .where(GenerationJob.id == job_id, *conditions)
            .values(
                status=JobStatus.FAILED,
                error_msg=error_msg[:MAX_ERROR_MSG_CHARS],
                error_code=error_code,
                completed_at=utcnow(),
            )
            .returning(GenerationJob.account_id, GenerationJob.reservation_id)
            .execution_options(synchronize_session=False)
        )
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            await self.db.rollback()
            logger.warning(f"Job {job_id} is not in a state that can fail")
            return None

        refunded = False
        if row.reservation_id is not None:
            refund = await self.ledger.refund_generation_credit(
                row.account_id, reservation_id=row.reservation_id, commit=False
            )
            refunded = refund.refunded
        if refunded:
            await self.db.execute(
                update(GenerationJob)
                .where(GenerationJob.id == job_id)
                .values(credit_refunded=True)
                .execution_options(synchronize_session=False)
            )
        await self.db.commit()

        logger.error(f"Job {job_id} failed ({error_code}): {error_msg}. Credit refunded: {refunded}")
        job = await self.get_job(job_id)
        await self._publish(job)
        return job

    async def _publish(self, job: Optional[GenerationJob]) -> None:
        if job is None:
            return
        result = None
        if job.status == JobStatus.COMPLETED:
            result = {"image_url": job.image_url, "image_path": job.image_path}
            if job.image_url is None and job.result:
                result["image_url"] = job.result.get("image_url")
        await publish_job_update(
            JobStatusUpdate(
                job_id=job.id,
                status=job.status,
                result=result,
                error=job.error_msg,
                error_code=job.error_code,
                credit_refunded=job.credit_refunded,
            )
        )


def get_job_queue_service(db: AsyncSession) -> JobQueueService:
    """Factory function to create JobQueueService.

    Args:
        db: Database session

    Returns:
        Configured JobQueueService instance
    """
    return JobQueueService(db)
