"""Credit ledger service: balances, admission control and refunds.

This service provides business logic for:
- Reading account balances
- Admission control for generations (verify, cooldown, reserve one credit)
- Refunding reserved credits
- The one-time signup grant on email verification
- Ledger history

Every balance change is a single conditional UPDATE ... RETURNING on the
accounts row. The storage layer serializes concurrent changes to the same
account; no balance is ever read, modified in Python and written back.
"""

import logging
import math
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.models.account import Account
from umkm_studio.models.credit_ledger import CreditLedgerEntry, CreditReservation, LedgerReason
from umkm_studio.schemas.credits import (
    Admitted,
    AdmissionRejected,
    AdmissionRejectionReason,
    AdmissionResult,
    BalanceResponse,
    RefundResult,
)
from umkm_studio.services.settings_service import LedgerConfig, load_ledger_config

logger = logging.getLogger(__name__)

# Conditional updates that match nothing although every precondition holds on
# re-read lost a race with another writer; retry this many times in total.
RESERVE_MAX_ATTEMPTS = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes (SQLite drops the offset)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class LedgerError(Exception):
    """Base exception for ledger errors."""

    pass


class AccountNotFoundError(LedgerError):
    """Raised when an operation targets an account that does not exist."""

    def __init__(self, account_id: int):
        self.account_id = account_id
        super().__init__(f"Account {account_id} not found")


class LedgerService:
    """Service for atomic credit balance operations."""

    def __init__(self, db: AsyncSession):
        """Initialize the ledger service.

        Args:
            db: Database session for ledger operations
        """
        self.db = db

    async def _config(self, config: Optional[LedgerConfig]) -> LedgerConfig:
        if config is not None:
            return config
        return await load_ledger_config(self.db)

    async def get_account(self, account_id: int) -> Account:
        """Load an account.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        account = await self.db.get(Account, account_id, populate_existing=True)
        if account is None:
            raise AccountNotFoundError(account_id)
        return account

    async def get_balance(self, account_id: int) -> int:
        """Get the current credit balance straight from the database.

        Args:
            account_id: The account's ID

        Returns:
            Current balance

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        balance = await self.db.scalar(select(Account.credits).where(Account.id == account_id))
        if balance is None:
            raise AccountNotFoundError(account_id)
        return balance

    async def get_balance_details(self, account_id: int) -> BalanceResponse:
        """Get the balance together with the admission flags.

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        row = (
            await self.db.execute(
                select(
                    Account.credits,
                    Account.email_verified,
                    Account.credits_granted,
                    Account.last_generation_at,
                ).where(Account.id == account_id)
            )
        ).one_or_none()
        if row is None:
            raise AccountNotFoundError(account_id)
        return BalanceResponse(
            credits=row.credits,
            email_verified=row.email_verified,
            credits_granted=row.credits_granted,
            last_generation_at=(
                as_utc(row.last_generation_at) if row.last_generation_at else None
            ),
        )

    def _record(
        self,
        account_id: int,
        reason: LedgerReason,
        delta: int,
        balance_after: int,
        reference: Optional[str] = None,
    ) -> None:
        self.db.add(
            CreditLedgerEntry(
                account_id=account_id,
                reason=reason,
                delta=delta,
                balance_after=balance_after,
                reference=reference,
            )
        )

    async def apply_credit(
        self,
        account_id: int,
        amount: int,
        reason: LedgerReason,
        reference: Optional[str] = None,
        commit: bool = True,
    ) -> int:
        """Add credits to an account in one atomic statement.

        Args:
            account_id: The account's ID
            amount: Number of credits to add (must be positive)
            reason: Ledger reason recorded with the change
            reference: Optional reference (order id, coupon code, ...)
            commit: Commit immediately; pass False to join the caller's
                unit of work

        Returns:
            New balance

        Raises:
            ValueError: If amount is not positive
            AccountNotFoundError: If the account does not exist
        """
        if amount <= 0:
            raise ValueError("Amount must be positive")

        stmt = (
            update(Account)
            .where(Account.id == account_id)
            .values(credits=Account.credits + amount)
            .returning(Account.credits)
            .execution_options(synchronize_session=False)
        )
        balance = (await self.db.execute(stmt)).scalar_one_or_none()
        if balance is None:
            if commit:
                await self.db.rollback()
            raise AccountNotFoundError(account_id)

        self._record(account_id, reason, amount, balance, reference)
        if commit:
            await self.db.commit()

        logger.info(
            f"Added {amount} credits to account {account_id} ({reason.value}). "
            f"New balance: {balance}"
        )
        return balance

    async def reserve_generation_credit(
        self,
        account_id: int,
        config: Optional[LedgerConfig] = None,
        now: Optional[datetime] = None,
    ) -> AdmissionResult:
        """Decide whether an account may generate now and reserve one credit.

        Verification, cooldown and balance are checked and the deduction is
        applied by one conditional UPDATE. Only when that matches no row is
        the account re-read to name the rejection.

        Args:
            account_id: The account's ID
            config: Ledger config snapshot (loaded if omitted)
            now: Current instant (defaults to UTC now)

        Returns:
            Admitted with the new balance and a reservation id, or
            AdmissionRejected with the reason

        Raises:
            AccountNotFoundError: If the account does not exist
            LedgerError: If the reservation keeps losing races
        """
        cfg = await self._config(config)
        now = now or utcnow()
        threshold = now - timedelta(seconds=cfg.cooldown_seconds)

        for attempt in range(1, RESERVE_MAX_ATTEMPTS + 1):
            stmt = (
                update(Account)
                .where(
                    Account.id == account_id,
                    Account.email_verified.is_(True),
                    Account.credits >= 1,
                    or_(
                        Account.last_generation_at.is_(None),
                        Account.last_generation_at <= threshold,
                    ),
                )
                .values(credits=Account.credits - 1, last_generation_at=now)
                .returning(Account.credits)
                .execution_options(synchronize_session=False)
            )
            balance = (await self.db.execute(stmt)).scalar_one_or_none()

            if balance is not None:
                reservation = CreditReservation(
                    id=str(uuid4()), account_id=account_id, created_at=now
                )
                self.db.add(reservation)
                self._record(account_id, LedgerReason.DEDUCTION, -1, balance, reservation.id)
                await self.db.commit()

                logger.info(
                    f"Reserved 1 credit for account {account_id} "
                    f"(reservation {reservation.id}). New balance: {balance}"
                )
                return Admitted(balance=balance, reservation_id=reservation.id)

            await self.db.rollback()
            rejection = await self._rejection_for(account_id, cfg, now)
            if rejection is not None:
                logger.info(f"Admission rejected for account {account_id}: {rejection.reason.value}")
                return rejection

            logger.warning(
                f"Reservation for account {account_id} lost a race "
                f"(attempt {attempt}/{RESERVE_MAX_ATTEMPTS})"
            )

        raise LedgerError(f"Could not reserve a credit for account {account_id}")

    async def _rejection_for(
        self, account_id: int, cfg: LedgerConfig, now: datetime
    ) -> Optional[AdmissionRejected]:
        """Re-read the account and name the first failed precondition.

        Returns None when every precondition holds, i.e. the conditional
        update lost a race and may be retried.
        """
        row = (
            await self.db.execute(
                select(
                    Account.email_verified, Account.credits, Account.last_generation_at
                ).where(Account.id == account_id)
            )
        ).one_or_none()
        if row is None:
            raise AccountNotFoundError(account_id)

        if not row.email_verified:
            return AdmissionRejected(reason=AdmissionRejectionReason.EMAIL_NOT_VERIFIED)

        if row.last_generation_at is not None:
            retry_at = as_utc(row.last_generation_at) + timedelta(seconds=cfg.cooldown_seconds)
            if now < retry_at:
                wait_seconds = max(1, math.ceil((retry_at - now).total_seconds()))
                return AdmissionRejected(
                    reason=AdmissionRejectionReason.RATE_LIMITED,
                    wait_seconds=wait_seconds,
                    retry_at=retry_at,
                )

        if row.credits < 1:
            return AdmissionRejected(reason=AdmissionRejectionReason.INSUFFICIENT_CREDITS)

        return None

    async def refund_generation_credit(
        self,
        account_id: int,
        reservation_id: Optional[str] = None,
        commit: bool = True,
    ) -> RefundResult:
        """Return a reserved credit.

        With a reservation id the reservation is consumed atomically, so a
        retried refund of the same reservation adds nothing. Without one,
        exactly one credit is added per call.

        Args:
            account_id: The account's ID
            reservation_id: Reservation returned by admission control
            commit: Commit immediately; pass False to join the caller's
                unit of work

        Returns:
            RefundResult with the balance and whether a credit was added

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        if reservation_id is None:
            balance = await self.apply_credit(
                account_id, 1, LedgerReason.REFUND, commit=commit
            )
            return RefundResult(balance=balance, refunded=True)

        stmt = (
            update(CreditReservation)
            .where(
                CreditReservation.id == reservation_id,
                CreditReservation.account_id == account_id,
                CreditReservation.refunded_at.is_(None),
            )
            .values(refunded_at=utcnow())
            .returning(CreditReservation.id)
            .execution_options(synchronize_session=False)
        )
        claimed = (await self.db.execute(stmt)).scalar_one_or_none()
        if claimed is None:
            if commit:
                await self.db.rollback()
            logger.info(
                f"Reservation {reservation_id} for account {account_id} "
                f"is unknown or already refunded"
            )
            return RefundResult(balance=await self.get_balance(account_id), refunded=False)

        balance = await self.apply_credit(
            account_id, 1, LedgerReason.REFUND, reference=reservation_id, commit=commit
        )
        return RefundResult(balance=balance, refunded=True)

    async def grant_signup_credits(
        self, account_id: int, config: Optional[LedgerConfig] = None
    ) -> int:
        """Apply the one-time free credit grant and mark the email verified.

        Args:
            account_id: The account's ID
            config: Ledger config snapshot (loaded if omitted)

        Returns:
            Credits granted (0 if the grant was already applied)

        Raises:
            AccountNotFoundError: If the account does not exist
        """
        cfg = await self._config(config)

        stmt = (
            update(Account)
            .where(Account.id == account_id, Account.credits_granted.is_(False))
            .values(
                credits_granted=True,
                email_verified=True,
                credits=Account.credits + cfg.free_credits,
            )
            .returning(Account.credits)
            .execution_options(synchronize_session=False)
        )
        balance = (await self.db.execute(stmt)).scalar_one_or_none()

        if balance is None:
            mark = (
                update(Account)
                .where(Account.id == account_id)
                .values(email_verified=True)
                .returning(Account.id)
                .execution_options(synchronize_session=False)
            )
            if (await self.db.execute(mark)).scalar_one_or_none() is None:
                await self.db.rollback()
                raise AccountNotFoundError(account_id)
            await self.db.commit()
            return 0

        if cfg.free_credits > 0:
            self._record(account_id, LedgerReason.SIGNUP_GRANT, cfg.free_credits, balance)
        await self.db.commit()

        logger.info(
            f"Granted {cfg.free_credits} signup credits to account {account_id}. "
            f"New balance: {balance}"
        )
        return cfg.free_credits

    async def get_ledger_history(
        self,
        account_id: int,
        limit: int = 50,
        offset: int = 0,
        reason: Optional[LedgerReason] = None,
    ) -> tuple[list[CreditLedgerEntry], int]:
        """Get ledger history for an account.

        Args:
            account_id: The account's ID
            limit: Maximum number of entries to return
            offset: Offset for pagination
            reason: Optional filter by ledger reason

        Returns:
            Tuple of (list of entries, total count)
        """
        base_query = select(CreditLedgerEntry).where(CreditLedgerEntry.account_id == account_id)

        if reason:
            base_query = base_query.where(CreditLedgerEntry.reason == reason)

        count_query = select(func.count()).select_from(base_query.subquery())
        total = await self.db.scalar(count_query) or 0

        query = (
            base_query
            .order_by(CreditLedgerEntry.created_at.desc(), CreditLedgerEntry.id.desc())
            .offset(offset)
            .limit(limit)
        )
        result = await self.db.execute(query)
        entries = list(result.scalars().all())

        return entries, total


def get_ledger_service(db: AsyncSession) -> LedgerService:
    """Factory function to create LedgerService.

    Args:
        db: Database session

    Returns:
        Configured LedgerService instance
    """
    return LedgerService(db)
