"""API routes for generation jobs.

This module provides REST endpoints for:
- Submitting generation jobs (POST /api/v1/jobs)
- Getting job status (GET /api/v1/jobs/{id})
- Listing account jobs (GET /api/v1/jobs)

Submitting a job runs admission control first: one credit is reserved
and refunded automatically if the job fails.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from umkm_studio.api.deps import (
    admission_rejected_exception,
    get_current_user,
    get_job_queue_service,
)
from umkm_studio.models.account import Account
from umkm_studio.models.generation_job import JobStatus
from umkm_studio.schemas.generation_job import (
    GenerationJobCreate,
    GenerationJobListResponse,
    GenerationJobResponse,
    GenerationJobSubmitted,
)
from umkm_studio.services.job_queue import JobEnqueueError, JobQueueService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post(
    "",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=GenerationJobSubmitted,
    summary="Submit generation job",
    description="Reserve a credit and queue an image generation job",
)
async def create_job(
    job_data: GenerationJobCreate,
    current_user: Account = Depends(get_current_user),
    job_service: JobQueueService = Depends(get_job_queue_service),
) -> GenerationJobSubmitted:
    """Submit an image generation job.

    Returns immediately with the job id; poll GET /jobs/{id} or subscribe to
    /ws/jobs/{id} for the result.

    Raises:
        HTTPException: 403/429/402 on admission rejection, 503 if the queue
            is unavailable (the credit is refunded)
    """
    try:
        admission, job = await job_service.submit_job(current_user.id, job_data)
    except JobEnqueueError as e:
        logger.error(f"Job submission failed for account {current_user.id}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error_code": "QUEUE_UNAVAILABLE", "job_id": e.job_id, "credit_refunded": True},
        )

    if not admission.ok:
        raise admission_rejected_exception(admission)

    return GenerationJobSubmitted(job_id=job.id, status=job.status, balance=admission.balance)


@router.get(
    "",
    response_model=GenerationJobListResponse,
    summary="List generation jobs",
)
async def list_jobs(
    status_filter: Optional[JobStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    current_user: Account = Depends(get_current_user),
    job_service: JobQueueService = Depends(get_job_queue_service),
) -> GenerationJobListResponse:
    jobs, total = await job_service.list_jobs(
        current_user.id, status_filter=status_filter, limit=limit, offset=offset
    )
    return GenerationJobListResponse(
        jobs=[GenerationJobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get(
    "/{job_id}",
    response_model=GenerationJobResponse,
    summary="Get job status",
)
async def get_job(
    job_id: int,
    current_user: Account = Depends(get_current_user),
    job_service: JobQueueService = Depends(get_job_queue_service),
) -> GenerationJobResponse:
    job = await job_service.get_job(job_id, current_user.id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return GenerationJobResponse.model_validate(job)
