"""Generation job model for async image generation tracking.

This module defines the GenerationJob model for tracking asynchronous
image generation jobs processed via ARQ (Async Redis Queue).
"""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, Boolean, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from umkm_studio.core.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class JobStatus(str, enum.Enum):
    """Generation job statuses.

    State transitions:
    - PENDING -> PROCESSING (worker claims job)
    - PROCESSING -> COMPLETED (image returned)
    - PROCESSING -> FAILED (upstream error, reserved credit refunded)
    - PENDING -> FAILED (job could not be enqueued)

    COMPLETED and FAILED are terminal.
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class GenerationJob(Base):
    """
    Async image generation job.

    Each job owns exactly one credit reservation. Only the worker recorded
    in ``worker_id`` may move a processing job to a terminal state.
    """

    __tablename__ = "generation_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)

    # ARQ job ID for tracking in Redis queue
    arq_job_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True, unique=True
    )

    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reservation_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("credit_reservations.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus), default=JobStatus.PENDING, nullable=False, index=True
    )
    worker_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Request
    prompt: Mapped[str] = mapped_column(String(500), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False)  # {"messages": [...]}

    # Outcome
    result: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    image_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    image_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_msg: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_code: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    credit_refunded: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    account: Mapped["Account"] = relationship("Account", back_populates="generation_jobs")

    def __repr__(self) -> str:
        return f"<GenerationJob(id={self.id}, status={self.status.value})>"

    @property
    def is_terminal(self) -> bool:
        """Check if the job is in a terminal state (no more processing)."""
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def is_active(self) -> bool:
        """Check if the job is currently active (pending or processing)."""
        return self.status in (JobStatus.PENDING, JobStatus.PROCESSING)
