"""Coupon codes and their per-account redemptions."""

from datetime import datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from umkm_studio.core.database import Base


class Coupon(Base):
    """
    Redeemable coupon worth a fixed number of credits.

    Codes are matched case-insensitively. ``used_count`` never exceeds
    ``max_users``: it is only incremented by a conditional UPDATE.
    """

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("credits > 0", name="ck_coupons_credits_positive"),
        CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(64), nullable=False)

    credits: Mapped[int] = mapped_column(Integer, nullable=False)
    max_users: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    used_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    redemptions: Mapped[list["CouponRedemption"]] = relationship(
        "CouponRedemption", back_populates="coupon", cascade="all, delete-orphan"
    )

    @property
    def is_exhausted(self) -> bool:
        return self.used_count >= self.max_users

    def __repr__(self) -> str:
        return f"<Coupon(code={self.code}, used={self.used_count}/{self.max_users})>"


# Codes are unique regardless of case; lookups go through lower(code) too
Index("uq_coupons_code_lower", func.lower(Coupon.code), unique=True)


class CouponRedemption(Base):
    """
    Record that an account redeemed a coupon.

    The unique (coupon_id, account_id) pair is the double-redemption guard.
    """

    __tablename__ = "coupon_redemptions"
    __table_args__ = (
        UniqueConstraint("coupon_id", "account_id", name="uq_coupon_redemptions_coupon_account"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    coupon_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False, index=True
    )
    account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, index=True
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    coupon: Mapped["Coupon"] = relationship("Coupon", back_populates="redemptions")

    def __repr__(self) -> str:
        return f"<CouponRedemption(coupon={self.coupon_id}, account={self.account_id})>"
