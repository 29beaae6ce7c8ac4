"""Coupon redemption service.

A redemption inserts the (coupon, account) row first, then claims one use
of the coupon, then credits the account, all in one transaction. The
unique redemption row is the double-redemption guard; the conditional
``used_count`` increment keeps the count within ``max_users``.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.models.coupon import Coupon, CouponRedemption
from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.schemas.coupon import (
    CouponErrorCode,
    CouponRedeemed,
    CouponRedeemResult,
    CouponRejected,
)
from umkm_studio.services.ledger_service import LedgerService, as_utc, utcnow

logger = logging.getLogger(__name__)


class CouponService:
    """Service for redeeming coupon codes."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)

    def _reject(self, account_id: int, code: str, error_code: CouponErrorCode) -> CouponRejected:
        logger.info(f"Coupon {code!r} rejected for account {account_id}: {error_code.value}")
        return CouponRejected(error_code=error_code)

    async def redeem(
        self, account_id: int, code: str, now: Optional[datetime] = None
    ) -> CouponRedeemResult:
        """Redeem a coupon code for an account.

        Args:
            account_id: The redeeming account
            code: Coupon code (case-insensitive)
            now: Current instant for the expiry check (defaults to UTC now)

        Returns:
            CouponRedeemed with the credits added and new balance, or
            CouponRejected with the error code

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        now = now or utcnow()
        normalized = code.strip().lower()

        # Raises for unknown accounts before anything is written
        await self.ledger.get_balance(account_id)

        coupon = None
        if normalized:
            coupon = (
                await self.db.execute(
                    select(
                        Coupon.id,
                        Coupon.code,
                        Coupon.credits,
                        Coupon.max_users,
                        Coupon.used_count,
                        Coupon.is_active,
                        Coupon.expires_at,
                    ).where(func.lower(Coupon.code) == normalized)
                )
            ).one_or_none()
        if coupon is None:
            return self._reject(account_id, code, CouponErrorCode.INVALID_COUPON)
        if not coupon.is_active:
            return self._reject(account_id, code, CouponErrorCode.COUPON_INACTIVE)
        if coupon.expires_at is not None and as_utc(coupon.expires_at) < now:
            return self._reject(account_id, code, CouponErrorCode.COUPON_EXPIRED)

        already = await self.db.scalar(
            select(CouponRedemption.id).where(
                CouponRedemption.coupon_id == coupon.id,
                CouponRedemption.account_id == account_id,
            )
        )
        if already is not None:
            return self._reject(account_id, code, CouponErrorCode.ALREADY_REDEEMED)
        if coupon.used_count >= coupon.max_users:
            return self._reject(account_id, code, CouponErrorCode.COUPON_LIMIT_REACHED)

        self.db.add(CouponRedemption(coupon_id=coupon.id, account_id=account_id))
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            return self._reject(account_id, code, CouponErrorCode.ALREADY_REDEEMED)

        claim = (
            update(Coupon)
            .where(Coupon.id == coupon.id, Coupon.used_count < Coupon.max_users)
            .values(used_count=Coupon.used_count + 1)
            .returning(Coupon.used_count)
            .execution_options(synchronize_session=False)
        )
        if (await self.db.execute(claim)).scalar_one_or_none() is None:
            await self.db.rollback()
            return self._reject(account_id, code, CouponErrorCode.COUPON_LIMIT_REACHED)

        balance = await self.ledger.apply_credit(
            account_id,
            coupon.credits,
            LedgerReason.COUPON,
            reference=f"coupon:{coupon.code}",
            commit=False,
        )
        await self.db.commit()

        logger.info(f"Account {account_id} redeemed coupon {coupon.code} for {coupon.credits} credits")
        return CouponRedeemed(credits_added=coupon.credits, balance=balance)


def get_coupon_service(db: AsyncSession) -> CouponService:
    """Factory function to create CouponService."""
    return CouponService(db)
