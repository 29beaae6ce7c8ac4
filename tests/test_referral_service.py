"""Tests for the referral ledger.

This module tests:
- Referral code generation and normalization
- Linking: self-referral, unknown codes, re-linking
- The one-time signup bonus
- Purchase commission rounding
- Referral statistics
"""

import pytest
from sqlalchemy import select

from umkm_studio.models.account import Account
from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.models.referral import ReferralEdge
from umkm_studio.schemas.referral import ReferralErrorCode
from umkm_studio.services.ledger_service import AccountNotFoundError, LedgerService
from umkm_studio.services.referral_service import (
    REFERRAL_CODE_ALPHABET,
    ReferralService,
    generate_referral_code,
    normalize_referral_code,
)
from umkm_studio.services.settings_service import LedgerConfig


class TestReferralCodes:
    """Tests for referral code helpers."""

    def test_generated_code_shape(self):
        code = generate_referral_code()
        assert len(code) == 8
        assert all(ch in REFERRAL_CODE_ALPHABET for ch in code)

    def test_normalize(self):
        assert normalize_referral_code("  abc123 ") == "ABC123"


class TestLinkReferral:
    """Tests for ReferralService.link_referral."""

    async def test_link_unverified_account(self, db_session, make_account, ledger_config):
        referrer = await make_account(referral_code="AAAA1111")
        referred = await make_account(email_verified=False, credits_granted=False)

        result = await ReferralService(db_session).link_referral(
            referred.id, "aaaa1111", config=ledger_config
        )

        assert result.ok is True
        assert result.already_referred is False
        assert result.bonus_awarded == 0
        referred_by = await db_session.scalar(
            select(Account.referred_by_id).where(Account.id == referred.id)
        )
        assert referred_by == referrer.id
        assert await LedgerService(db_session).get_balance(referrer.id) == 0

    async def test_link_verified_account_pays_bonus(self, db_session, make_account, ledger_config):
        referrer = await make_account(credits=1, referral_code="BBBB2222")
        referred = await make_account(email_verified=True)

        result = await ReferralService(db_session).link_referral(
            referred.id, "BBBB2222", config=ledger_config
        )

        assert result.bonus_awarded == 10
        assert await LedgerService(db_session).get_balance(referrer.id) == 11

    async def test_self_referral_rejected(self, db_session, make_account, ledger_config):
        account = await make_account(referral_code="SELF0001")

        result = await ReferralService(db_session).link_referral(
            account.id, "SELF0001", config=ledger_config
        )

        assert result.ok is False
        assert result.error_code == ReferralErrorCode.SELF_REFERRAL

    async def test_unknown_code_rejected(self, db_session, make_account, ledger_config):
        account = await make_account()

        result = await ReferralService(db_session).link_referral(
            account.id, "ZZZZ9999", config=ledger_config
        )

        assert result.ok is False
        assert result.error_code == ReferralErrorCode.INVALID_REFERRAL_CODE

    async def test_second_link_is_noop(self, db_session, make_account, ledger_config):
        first_referrer = await make_account(referral_code="FIRST001")
        await make_account(referral_code="SECOND01")
        referred = await make_account(email_verified=False)
        service = ReferralService(db_session)

        await service.link_referral(referred.id, "FIRST001", config=ledger_config)
        again = await service.link_referral(referred.id, "SECOND01", config=ledger_config)

        assert again.ok is True
        assert again.already_referred is True
        referred_by = await db_session.scalar(
            select(Account.referred_by_id).where(Account.id == referred.id)
        )
        assert referred_by == first_referrer.id

    async def test_unknown_account(self, db_session, make_account, ledger_config):
        await make_account(referral_code="CODE0001")

        with pytest.raises(AccountNotFoundError):
            await ReferralService(db_session).link_referral(9999, "CODE0001", config=ledger_config)


class TestSignupBonus:
    """Tests for award_signup_bonus."""

    async def test_bonus_paid_once(self, db_session, make_account, ledger_config):
        referrer = await make_account(referral_code="BONUS001")
        referred = await make_account(email_verified=False, credits_granted=False)
        service = ReferralService(db_session)
        await service.link_referral(referred.id, "BONUS001", config=ledger_config)

        first = await service.award_signup_bonus(referred.id, config=ledger_config)
        second = await service.award_signup_bonus(referred.id, config=ledger_config)

        assert first == 10
        assert second == 0
        ledger = LedgerService(db_session)
        assert await ledger.get_balance(referrer.id) == 10
        entries, total = await ledger.get_ledger_history(referrer.id)
        assert total == 1
        assert entries[0].reason == LedgerReason.REFERRAL_BONUS

        edge = await db_session.scalar(
            select(ReferralEdge).where(ReferralEdge.referred_id == referred.id)
        )
        assert edge.signup_bonus_awarded == 10
        assert edge.completed_at is not None

    async def test_no_edge_no_bonus(self, db_session, make_account, ledger_config):
        account = await make_account()

        assert await ReferralService(db_session).award_signup_bonus(
            account.id, config=ledger_config
        ) == 0

    async def test_zero_bonus_configured(self, db_session, make_account, ledger_config):
        referrer = await make_account(referral_code="ZERO0001")
        referred = await make_account(email_verified=False)
        service = ReferralService(db_session)
        await service.link_referral(referred.id, "ZERO0001", config=ledger_config)

        bonus = await service.award_signup_bonus(
            referred.id, config=LedgerConfig(referral_signup_bonus=0)
        )

        assert bonus == 0
        assert await LedgerService(db_session).get_balance(referrer.id) == 0


class TestCommission:
    """Tests for record_commission."""

    @pytest.mark.parametrize(
        "percent,purchase,expected",
        [(10, 50, 5), (10, 15, 1), (10, 9, 0), (25, 150, 37)],
    )
    async def test_commission_rounds_down(
        self, db_session, make_account, percent, purchase, expected
    ):
        referrer = await make_account(referral_code="COMM0001")
        buyer = await make_account()
        service = ReferralService(db_session)
        await service.link_referral(buyer.id, "COMM0001", config=LedgerConfig(referral_signup_bonus=0))

        commission = await service.record_commission(
            buyer.id,
            transaction_id=1,
            purchase_credits=purchase,
            config=LedgerConfig(referral_commission_percent=percent),
        )

        assert commission == expected
        assert await LedgerService(db_session).get_balance(referrer.id) == expected

    async def test_unreferred_buyer_pays_nothing(self, db_session, make_account, ledger_config):
        buyer = await make_account()

        commission = await ReferralService(db_session).record_commission(
            buyer.id, transaction_id=1, purchase_credits=50, config=ledger_config
        )

        assert commission == 0


class TestReferralStats:
    """Tests for get_referral_stats."""

    async def test_stats(self, db_session, make_account, ledger_config):
        referrer = await make_account(referral_code="STATS001")
        verified = await make_account(email="verified@example.com")
        pending = await make_account(email="pending@example.com", email_verified=False)
        service = ReferralService(db_session)

        await service.link_referral(verified.id, "STATS001", config=ledger_config)
        await service.link_referral(pending.id, "STATS001", config=ledger_config)
        await service.record_commission(
            verified.id, transaction_id=7, purchase_credits=50, config=ledger_config
        )

        stats = await service.get_referral_stats(referrer.id)

        assert stats.referral_code == "STATS001"
        assert stats.total_referrals == 2
        assert stats.verified_referrals == 1
        assert stats.total_signup_bonus == 10
        assert stats.total_commission == 5
        assert {r.email for r in stats.referrals} == {
            "verified@example.com",
            "pending@example.com",
        }

    async def test_stats_unknown_account(self, db_session):
        with pytest.raises(AccountNotFoundError):
            await ReferralService(db_session).get_referral_stats(9999)
