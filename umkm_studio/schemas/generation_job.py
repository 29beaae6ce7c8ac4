"""Pydantic schemas for generation job operations.

This module defines the request/response schemas for the job queue API
and the status snapshots published to realtime subscribers.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator

from umkm_studio.models.generation_job import JobStatus

MAX_REFERENCE_IMAGES = 4


class GenerationJobCreate(BaseModel):
    """Schema for creating a new generation job.

    Request body for POST /api/v1/jobs endpoint.
    """

    prompt: str = Field(..., min_length=1, max_length=500, description="Image prompt")
    model: Optional[str] = Field(default=None, description="Image model (server default if omitted)")
    reference_images: list[str] = Field(
        default_factory=list, description="Reference images as URLs or data URLs"
    )

    @field_validator("prompt")
    @classmethod
    def strip_prompt(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("prompt must not be blank")
        return v

    @field_validator("reference_images")
    @classmethod
    def limit_reference_images(cls, v: list[str]) -> list[str]:
        if len(v) > MAX_REFERENCE_IMAGES:
            raise ValueError(f"at most {MAX_REFERENCE_IMAGES} reference images are allowed")
        return v


class GenerationJobSubmitted(BaseModel):
    """Response body for a submitted job."""

    job_id: int
    status: JobStatus
    balance: int = Field(description="Balance after the reserved credit")


class GenerationJobResponse(BaseModel):
    """Schema for generation job response.

    Response body for GET /api/v1/jobs/{id}.
    """

    id: int = Field(..., description="Job ID")
    status: JobStatus = Field(..., description="Current job status")
    prompt: str
    model: str

    result: Optional[dict[str, Any]] = Field(None, description="Generation result (if completed)")
    image_path: Optional[str] = Field(None, description="Stored object path (if completed)")
    image_url: Optional[str] = Field(None, description="Image URL (if completed)")

    # Error information
    error_msg: Optional[str] = Field(None, description="Error message (if failed)")
    error_code: Optional[str] = Field(None, description="Error classification code")
    credit_refunded: bool = Field(False, description="Whether the reserved credit was refunded")

    # Timestamps
    created_at: datetime = Field(..., description="Job creation timestamp")
    started_at: Optional[datetime] = Field(None, description="Job start timestamp")
    completed_at: Optional[datetime] = Field(None, description="Job completion timestamp")

    class Config:
        from_attributes = True


class GenerationJobListResponse(BaseModel):
    """Schema for listing generation jobs."""

    jobs: list[GenerationJobResponse]
    total: int
    limit: int
    offset: int


class JobStatusUpdate(BaseModel):
    """Snapshot published on every job state change."""

    job_id: int
    status: JobStatus
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    credit_refunded: bool = False
