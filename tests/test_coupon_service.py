"""Tests for coupon redemption.

This module tests:
- Successful redemption and the ledger entry it writes
- Rejections: unknown, inactive, expired, exhausted, already redeemed
- Case-insensitive code matching and uniqueness
- Concurrent redemptions against the use limit
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from umkm_studio.models.coupon import Coupon, CouponRedemption
from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.schemas.coupon import CouponErrorCode
from umkm_studio.services.coupon_service import CouponService
from umkm_studio.services.ledger_service import AccountNotFoundError, LedgerService

NOW = datetime(2025, 3, 1, 8, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def make_coupon(db_session):
    async def _make(code="WELCOME", credits=5, max_users=1, is_active=True, expires_at=None, used_count=0):
        coupon = Coupon(
            code=code,
            credits=credits,
            max_users=max_users,
            used_count=used_count,
            is_active=is_active,
            expires_at=expires_at,
        )
        db_session.add(coupon)
        await db_session.commit()
        await db_session.refresh(coupon)
        return coupon

    return _make


async def _used_count(db_session, coupon_id: int) -> int:
    return await db_session.scalar(select(Coupon.used_count).where(Coupon.id == coupon_id))


class TestRedeem:
    """Tests for CouponService.redeem."""

    async def test_redeem_adds_credits(self, db_session, make_account, make_coupon):
        account = await make_account(credits=2)
        coupon = await make_coupon(code="HEMAT5", credits=5)

        result = await CouponService(db_session).redeem(account.id, "HEMAT5", now=NOW)

        assert result.ok is True
        assert result.credits_added == 5
        assert result.balance == 7
        assert await _used_count(db_session, coupon.id) == 1

        entries, _ = await LedgerService(db_session).get_ledger_history(account.id)
        assert entries[0].reason == LedgerReason.COUPON
        assert entries[0].reference == "coupon:HEMAT5"

    async def test_code_is_case_insensitive(self, db_session, make_account, make_coupon):
        account = await make_account()
        await make_coupon(code="Ramadan24", credits=3)

        result = await CouponService(db_session).redeem(account.id, "  rAMADAN24 ", now=NOW)

        assert result.ok is True
        assert result.credits_added == 3

    async def test_unknown_code(self, db_session, make_account):
        account = await make_account()

        result = await CouponService(db_session).redeem(account.id, "NOPE", now=NOW)

        assert result.ok is False
        assert result.error_code == CouponErrorCode.INVALID_COUPON

    async def test_blank_code(self, db_session, make_account):
        account = await make_account()

        result = await CouponService(db_session).redeem(account.id, "   ", now=NOW)

        assert result.error_code == CouponErrorCode.INVALID_COUPON

    async def test_inactive_coupon(self, db_session, make_account, make_coupon):
        account = await make_account()
        await make_coupon(code="OFF", is_active=False)

        result = await CouponService(db_session).redeem(account.id, "OFF", now=NOW)

        assert result.error_code == CouponErrorCode.COUPON_INACTIVE

    async def test_expired_coupon(self, db_session, make_account, make_coupon):
        account = await make_account()
        await make_coupon(code="OLD", expires_at=NOW - timedelta(days=1))

        result = await CouponService(db_session).redeem(account.id, "OLD", now=NOW)

        assert result.error_code == CouponErrorCode.COUPON_EXPIRED
        assert await LedgerService(db_session).get_balance(account.id) == 0

    async def test_coupon_valid_before_expiry(self, db_session, make_account, make_coupon):
        account = await make_account()
        await make_coupon(code="SOON", expires_at=NOW + timedelta(hours=1))

        result = await CouponService(db_session).redeem(account.id, "SOON", now=NOW)

        assert result.ok is True

    async def test_coupon_valid_at_expiry_instant(self, db_session, make_account, make_coupon):
        account = await make_account()
        await make_coupon(code="TEPAT", expires_at=NOW)

        result = await CouponService(db_session).redeem(account.id, "TEPAT", now=NOW)

        assert result.ok is True

    async def test_case_variant_code_cannot_be_stored(self, db_session, make_account, make_coupon):
        account_id = (await make_account()).id
        await make_coupon(code="UMKM10", credits=10)

        with pytest.raises(IntegrityError):
            await make_coupon(code="umkm10", credits=99)
        await db_session.rollback()

        result = await CouponService(db_session).redeem(account_id, "UMKM10", now=NOW)

        assert result.ok is True
        assert result.credits_added == 10

    async def test_same_account_cannot_redeem_twice(self, db_session, make_account, make_coupon):
        account = await make_account()
        coupon = await make_coupon(code="MULTI", credits=5, max_users=10)
        service = CouponService(db_session)

        first = await service.redeem(account.id, "MULTI", now=NOW)
        second = await service.redeem(account.id, "multi", now=NOW)

        assert first.ok is True
        assert second.ok is False
        assert second.error_code == CouponErrorCode.ALREADY_REDEEMED
        assert await LedgerService(db_session).get_balance(account.id) == 5
        assert await _used_count(db_session, coupon.id) == 1

    async def test_single_use_coupon_second_account(self, db_session, make_account, make_coupon):
        """A max_users=1 coupon: A redeems, A again is ALREADY_REDEEMED, B is LIMIT_REACHED."""
        account_a = await make_account()
        account_b = await make_account()
        coupon = await make_coupon(code="ONCE", credits=5, max_users=1)
        service = CouponService(db_session)

        assert (await service.redeem(account_a.id, "ONCE", now=NOW)).ok is True

        again = await service.redeem(account_a.id, "ONCE", now=NOW)
        assert again.error_code == CouponErrorCode.ALREADY_REDEEMED

        other = await service.redeem(account_b.id, "ONCE", now=NOW)
        assert other.error_code == CouponErrorCode.COUPON_LIMIT_REACHED

        assert await _used_count(db_session, coupon.id) == 1
        assert await LedgerService(db_session).get_balance(account_b.id) == 0

    async def test_unknown_account(self, db_session, make_coupon):
        await make_coupon(code="ANY")

        with pytest.raises(AccountNotFoundError):
            await CouponService(db_session).redeem(9999, "ANY", now=NOW)


class TestConcurrentRedemptions:
    """Concurrent redemptions never exceed max_users."""

    async def test_limit_holds_under_concurrency(self, session_factory, db_session, make_account, make_coupon):
        accounts = [await make_account() for _ in range(5)]
        coupon = await make_coupon(code="RACE", credits=2, max_users=2)

        async def redeem(account_id):
            async with session_factory() as session:
                return await CouponService(session).redeem(account_id, "RACE", now=NOW)

        results = await asyncio.gather(*(redeem(a.id) for a in accounts))

        assert sum(1 for r in results if r.ok) == 2
        assert all(
            r.error_code == CouponErrorCode.COUPON_LIMIT_REACHED for r in results if not r.ok
        )
        assert await _used_count(db_session, coupon.id) == 2
        redemptions = await db_session.scalar(
            select(func.count()).select_from(CouponRedemption).where(
                CouponRedemption.coupon_id == coupon.id
            )
        )
        assert redemptions == 2

    async def test_same_account_concurrent_redeems_once(
        self, session_factory, make_account, make_coupon
    ):
        account = await make_account()
        await make_coupon(code="DUP", credits=4, max_users=10)

        async def redeem():
            async with session_factory() as session:
                return await CouponService(session).redeem(account.id, "DUP", now=NOW)

        results = await asyncio.gather(*(redeem() for _ in range(3)))

        assert sum(1 for r in results if r.ok) == 1
        async with session_factory() as session:
            assert await LedgerService(session).get_balance(account.id) == 4
