"""Credit ledger audit log and generation credit reservations."""

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from umkm_studio.core.database import Base


class LedgerReason(str, enum.Enum):
    """Why an account balance changed."""

    SIGNUP_GRANT = "signup_grant"  # Free credits on first email verification
    DEDUCTION = "deduction"  # One credit reserved for a generation
    REFUND = "refund"  # Reserved credit returned after a failed generation
    COUPON = "coupon"  # Coupon redemption
    PURCHASE = "purchase"  # Completed payment
    REFERRAL_BONUS = "referral_bonus"  # Referrer bonus when a referral verifies
    REFERRAL_COMMISSION = "referral_commission"  # Referrer share of a purchase


class CreditLedgerEntry(Base):
    """
    Immutable audit log for all balance changes.

    Written in the same database transaction as the balance UPDATE it
    describes. This table is append-only. Never UPDATE or DELETE records.
    """

    __tablename__ = "credit_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    reason: Mapped[LedgerReason] = mapped_column(Enum(LedgerReason), nullable=False, index=True)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)  # Positive for add, negative for deduct
    balance_after: Mapped[int] = mapped_column(Integer, nullable=False)

    # order id, coupon code, reservation id, referral id...
    reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )

    def __repr__(self) -> str:
        return f"<CreditLedgerEntry(id={self.id}, reason={self.reason.value}, delta={self.delta})>"


class CreditReservation(Base):
    """
    One credit taken by admission control for one generation attempt.

    Refunding a reservation sets ``refunded_at``; a reservation can be
    refunded at most once.
    """

    __tablename__ = "credit_reservations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def is_refunded(self) -> bool:
        return self.refunded_at is not None

    def __repr__(self) -> str:
        return f"<CreditReservation(id={self.id}, account_id={self.account_id})>"
