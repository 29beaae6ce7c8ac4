"""Referral ledger service.

This service provides business logic for:
- Linking a new account to its referrer (at most once, never to self)
- Paying the one-time signup bonus when the referred account verifies
- Paying commission to the referrer on every completed purchase
- Referral statistics
"""

import logging
import secrets
import string
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.models.account import Account
from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.models.referral import ReferralCommission, ReferralEdge
from umkm_studio.schemas.referral import (
    ReferralErrorCode,
    ReferralLinked,
    ReferralLinkResult,
    ReferralRejected,
    ReferralStatsResponse,
    ReferredAccount,
)
from umkm_studio.services.ledger_service import AccountNotFoundError, LedgerService, utcnow
from umkm_studio.services.settings_service import LedgerConfig, load_ledger_config

logger = logging.getLogger(__name__)

REFERRAL_CODE_ALPHABET = string.ascii_uppercase + string.digits
REFERRAL_CODE_LENGTH = 8


def generate_referral_code(length: int = REFERRAL_CODE_LENGTH) -> str:
    """Generate a random uppercase alphanumeric referral code."""
    return "".join(secrets.choice(REFERRAL_CODE_ALPHABET) for _ in range(length))


def normalize_referral_code(code: str) -> str:
    return code.strip().upper()


class ReferralService:
    """Service for referral edges, signup bonuses and commissions."""

    def __init__(self, db: AsyncSession):
        self.db = db
        self.ledger = LedgerService(db)

    async def _config(self, config: Optional[LedgerConfig]) -> LedgerConfig:
        if config is not None:
            return config
        return await load_ledger_config(self.db)

    async def link_referral(
        self,
        account_id: int,
        code: str,
        config: Optional[LedgerConfig] = None,
    ) -> ReferralLinkResult:
        """Record who referred an account.

        Linking twice is an idempotent no-op reported as ``already_referred``.
        If the account's email is already verified the signup bonus is paid
        in the same transaction.

        Args:
            account_id: The referred (new) account
            code: Referral code of the referrer
            config: Ledger config snapshot (loaded if omitted)

        Returns:
            ReferralLinked or ReferralRejected

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        cfg = await self._config(config)

        row = (
            await self.db.execute(
                select(Account.referred_by_id).where(Account.id == account_id)
            )
        ).one_or_none()
        if row is None:
            raise AccountNotFoundError(account_id)
        if row.referred_by_id is not None:
            return ReferralLinked(already_referred=True)

        referrer_id = await self.db.scalar(
            select(Account.id).where(Account.referral_code == normalize_referral_code(code))
        )
        if referrer_id is None:
            logger.info(f"Account {account_id} used unknown referral code {code!r}")
            return ReferralRejected(error_code=ReferralErrorCode.INVALID_REFERRAL_CODE)
        if referrer_id == account_id:
            logger.info(f"Account {account_id} tried to refer itself")
            return ReferralRejected(error_code=ReferralErrorCode.SELF_REFERRAL)

        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.referred_by_id.is_(None))
            .values(referred_by_id=referrer_id)
            .returning(Account.email_verified)
            .execution_options(synchronize_session=False)
        )
        email_verified = (await self.db.execute(stmt)).scalar_one_or_none()
        if email_verified is None:
            # A concurrent link won
            await self.db.rollback()
            return ReferralLinked(already_referred=True)

        self.db.add(ReferralEdge(referrer_id=referrer_id, referred_id=account_id))
        await self.db.flush()

        bonus = 0
        if email_verified:
            bonus = await self.award_signup_bonus(account_id, config=cfg, commit=False)

        await self.db.commit()
        logger.info(f"Account {account_id} linked to referrer {referrer_id} (bonus {bonus})")
        return ReferralLinked(bonus_awarded=bonus)

    async def award_signup_bonus(
        self,
        referred_id: int,
        config: Optional[LedgerConfig] = None,
        commit: bool = True,
    ) -> int:
        """Pay the referrer's one-time signup bonus.

        Safe to call on every verification event: the edge is completed by a
        conditional UPDATE, so only the first call pays.

        Args:
            referred_id: The account whose email was verified
            config: Ledger config snapshot (loaded if omitted)
            commit: Commit immediately; pass False to join the caller's
                unit of work

        Returns:
            Bonus credited to the referrer (0 if no edge, already paid, or
            the bonus is configured as 0)
        """
        cfg = await self._config(config)
        bonus = cfg.referral_signup_bonus
        if bonus <= 0:
            return 0

        stmt = (
            update(ReferralEdge)
            .where(ReferralEdge.referred_id == referred_id, ReferralEdge.completed_at.is_(None))
            .values(signup_bonus_awarded=bonus, completed_at=utcnow())
            .returning(ReferralEdge.id, ReferralEdge.referrer_id)
            .execution_options(synchronize_session=False)
        )
        edge = (await self.db.execute(stmt)).one_or_none()
        if edge is None:
            return 0

        await self.ledger.apply_credit(
            edge.referrer_id,
            bonus,
            LedgerReason.REFERRAL_BONUS,
            reference=f"referral:{edge.id}",
            commit=False,
        )
        if commit:
            await self.db.commit()

        logger.info(
            f"Paid signup bonus of {bonus} to account {edge.referrer_id} "
            f"for referral of account {referred_id}"
        )
        return bonus

    async def record_commission(
        self,
        referred_id: int,
        transaction_id: int,
        purchase_credits: int,
        config: Optional[LedgerConfig] = None,
        commit: bool = True,
    ) -> int:
        """Pay the referrer a share of a completed purchase.

        Must run once per completed transaction; the caller's claim on the
        transaction guarantees that, and the unique transaction id on the
        commission row backs it up.

        Args:
            referred_id: The purchasing account
            transaction_id: The completed transaction
            purchase_credits: Credits bought
            config: Ledger config snapshot (loaded if omitted)
            commit: Commit immediately; pass False to join the caller's
                unit of work

        Returns:
            Commission credited (0 if the buyer was not referred)
        """
        edge = (
            await self.db.execute(
                select(ReferralEdge.id, ReferralEdge.referrer_id).where(
                    ReferralEdge.referred_id == referred_id
                )
            )
        ).one_or_none()
        if edge is None:
            return 0

        cfg = await self._config(config)
        commission = purchase_credits * cfg.referral_commission_percent // 100
        if commission <= 0:
            return 0

        self.db.add(
            ReferralCommission(
                referral_id=edge.id,
                transaction_id=transaction_id,
                purchase_credits=purchase_credits,
                commission_credits=commission,
            )
        )
        await self.db.flush()

        await self.ledger.apply_credit(
            edge.referrer_id,
            commission,
            LedgerReason.REFERRAL_COMMISSION,
            reference=f"transaction:{transaction_id}",
            commit=False,
        )
        if commit:
            await self.db.commit()

        logger.info(
            f"Paid commission of {commission} to account {edge.referrer_id} "
            f"for transaction {transaction_id}"
        )
        return commission

    async def get_referral_stats(self, account_id: int) -> ReferralStatsResponse:
        """Summarize an account's referrals.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        code = await self.db.scalar(select(Account.referral_code).where(Account.id == account_id))
        if code is None:
            raise AccountNotFoundError(account_id)

        result = await self.db.execute(
            select(
                Account.email,
                Account.created_at,
                ReferralEdge.signup_bonus_awarded,
                ReferralEdge.completed_at,
            )
            .join(Account, Account.id == ReferralEdge.referred_id)
            .where(ReferralEdge.referrer_id == account_id)
            .order_by(ReferralEdge.created_at.desc(), ReferralEdge.id.desc())
        )
        referrals = [
            ReferredAccount(
                email=row.email,
                created_at=row.created_at,
                signup_bonus_awarded=row.signup_bonus_awarded,
                completed_at=row.completed_at,
            )
            for row in result.all()
        ]

        total_commission = await self.db.scalar(
            select(func.coalesce(func.sum(ReferralCommission.commission_credits), 0))
            .join(ReferralEdge, ReferralEdge.id == ReferralCommission.referral_id)
            .where(ReferralEdge.referrer_id == account_id)
        )

        return ReferralStatsResponse(
            referral_code=code,
            total_referrals=len(referrals),
            verified_referrals=sum(1 for r in referrals if r.completed_at is not None),
            total_signup_bonus=sum(r.signup_bonus_awarded for r in referrals),
            total_commission=total_commission or 0,
            referrals=referrals,
        )


def get_referral_service(db: AsyncSession) -> ReferralService:
    """Factory function to create ReferralService."""
    return ReferralService(db)
