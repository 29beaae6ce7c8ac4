"""Referral edges and purchase commissions."""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from umkm_studio.core.database import Base


class ReferralEdge(Base):
    """
    Durable link between a referrer and the account they referred.

    At most one edge exists per referred account. ``completed_at`` is set
    when the one-time signup bonus is paid to the referrer.
    """

    __tablename__ = "referrals"
    __table_args__ = (
        CheckConstraint(
            "completed_at IS NULL OR signup_bonus_awarded > 0",
            name="ck_referrals_completed_has_bonus",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    referrer_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    referred_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True
    )

    signup_bonus_awarded: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    referred: Mapped["Account"] = relationship("Account", foreign_keys=[referred_id])
    commissions: Mapped[list["ReferralCommission"]] = relationship(
        "ReferralCommission", back_populates="referral"
    )

    @property
    def is_completed(self) -> bool:
        return self.completed_at is not None

    def __repr__(self) -> str:
        return f"<ReferralEdge(referrer={self.referrer_id}, referred={self.referred_id})>"


class ReferralCommission(Base):
    """
    Commission paid to a referrer for one completed purchase.

    Append-only; the unique transaction id keeps a purchase from paying
    commission twice.
    """

    __tablename__ = "referral_commissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    referral_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("referrals.id", ondelete="CASCADE"), nullable=False, index=True
    )
    transaction_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    purchase_credits: Mapped[int] = mapped_column(Integer, nullable=False)
    commission_credits: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    referral: Mapped["ReferralEdge"] = relationship("ReferralEdge", back_populates="commissions")

    def __repr__(self) -> str:
        return f"<ReferralCommission(referral={self.referral_id}, credits={self.commission_credits})>"
