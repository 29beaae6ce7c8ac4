"""Purchase transaction model."""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from umkm_studio.core.database import Base


class TransactionStatus(str, enum.Enum):
    """Purchase statuses.

    State transitions (forward only):
    - PENDING -> COMPLETED (payment confirmed, credits added)
    - PENDING -> CANCELLED
    - PENDING -> EXPIRED
    - CANCELLED or EXPIRED -> COMPLETED (payment verified after the order lapsed)
    """

    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class Transaction(Base):
    """
    Credit package purchase, one per payment order.

    ``completed`` is terminal; the webhook handler claims the row with a
    conditional UPDATE so a replayed webhook never credits twice.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    order_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    package_id: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # IDR
    credits: Mapped[int] = mapped_column(Integer, nullable=False)

    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus), default=TransactionStatus.PENDING, nullable=False, index=True
    )
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<Transaction(order_id={self.order_id}, status={self.status.value})>"
