"""Pakasir payment integration service.

This service provides:
- Credit package definitions
- Payment creation (pending transaction + hosted payment URL)
- Webhook processing with amount cross-check and provider verification
- Idempotent purchase completion and referral commission
"""

import logging
import secrets
import string
import time
from typing import Optional
from urllib.parse import urlencode

import httpx
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.core.config import settings
from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.models.transaction import Transaction, TransactionStatus
from umkm_studio.schemas.payment import (
    CreatePaymentResponse,
    CreditPackage,
    PakasirWebhookPayload,
    PurchaseResult,
)
from umkm_studio.services.ledger_service import LedgerService, utcnow
from umkm_studio.services.referral_service import ReferralService
from umkm_studio.services.settings_service import LedgerConfig, load_ledger_config

logger = logging.getLogger(__name__)

# Credit package definitions (prices in IDR)
CREDIT_PACKAGES: list[CreditPackage] = [
    CreditPackage(id="starter", name="Paket Starter", credits=10, price=15000),
    CreditPackage(id="usaha", name="Paket Usaha", credits=50, price=60000),
    CreditPackage(id="juragan", name="Paket Juragan", credits=150, price=150000),
]

# Create a lookup dictionary for fast access
PACKAGE_LOOKUP: dict[str, CreditPackage] = {pkg.id: pkg for pkg in CREDIT_PACKAGES}

ORDER_ID_ALPHABET = string.ascii_uppercase + string.digits
_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

TERMINAL_WEBHOOK_STATUSES = {
    "cancelled": TransactionStatus.CANCELLED,
    "canceled": TransactionStatus.CANCELLED,
    "expired": TransactionStatus.EXPIRED,
}

# Statuses a verified payment may still complete
CLAIMABLE_STATUSES = (
    TransactionStatus.PENDING,
    TransactionStatus.CANCELLED,
    TransactionStatus.EXPIRED,
)


def _base36(value: int) -> str:
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits)) or "0"


def generate_order_id(now_ms: Optional[int] = None) -> str:
    """Generate an order id: ``ORD`` + base36 millisecond timestamp + 6 random chars."""
    timestamp = _base36(now_ms if now_ms is not None else int(time.time() * 1000))
    suffix = "".join(secrets.choice(ORDER_ID_ALPHABET) for _ in range(6))
    return f"ORD{timestamp}{suffix}"


class PaymentServiceError(Exception):
    """Base exception for payment service errors."""

    pass


class InvalidPackageError(PaymentServiceError):
    """Raised when an invalid package ID is provided."""

    pass


class TransactionNotFoundError(PaymentServiceError):
    """Raised when a webhook references an unknown order."""

    pass


class PaymentAmountMismatchError(PaymentServiceError):
    """Raised when the webhook amount differs from the stored transaction."""

    pass


class PaymentProjectMismatchError(PaymentServiceError):
    """Raised when the webhook belongs to another Pakasir project."""

    pass


class PaymentVerificationError(PaymentServiceError):
    """Raised when Pakasir does not confirm the payment."""

    pass


class PakasirClient:
    """Minimal client for the Pakasir transaction API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        project: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or settings.PAKASIR_BASE_URL).rstrip("/")
        self.project = project or settings.PAKASIR_PROJECT
        self.api_key = api_key if api_key is not None else settings.PAKASIR_API_KEY
        self.timeout = timeout
        self._transport = transport

    def payment_url(self, amount: int, order_id: str, redirect_url: Optional[str] = None) -> str:
        """Build the hosted payment page URL for an order."""
        params = {"order_id": order_id}
        if redirect_url:
            params["redirect"] = redirect_url
        return f"{self.base_url}/pay/{self.project}/{amount}?{urlencode(params)}"

    async def verify_transaction(self, order_id: str, amount: int) -> bool:
        """Ask Pakasir whether the order was actually paid.

        Args:
            order_id: Order ID to look up
            amount: Expected amount in IDR

        Returns:
            True only if Pakasir reports the transaction as completed
        """
        params = {
            "project": self.project,
            "order_id": order_id,
            "amount": amount,
            "api_key": self.api_key,
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(f"{self.base_url}/api/transactiondetail", params=params)
                response.raise_for_status()
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Pakasir verification request failed for {order_id}: {e}")
            return False

        status = (data.get("transaction") or {}).get("status")
        if status != "completed":
            logger.warning(f"Pakasir reports order {order_id} as {status!r}")
            return False
        return True


class PaymentService:
    """Service for credit purchases."""

    def __init__(self, db: AsyncSession, client: Optional[PakasirClient] = None):
        """Initialize payment service.

        Args:
            db: Database session for ledger operations
            client: Pakasir client (defaults to one built from settings)
        """
        self.db = db
        self.client = client or PakasirClient()
        self.ledger = LedgerService(db)
        self.referrals = ReferralService(db)

    @staticmethod
    def get_packages() -> list[CreditPackage]:
        """Get all available credit packages."""
        return CREDIT_PACKAGES.copy()

    @staticmethod
    def get_package(package_id: str) -> CreditPackage:
        """Get a specific credit package by ID.

        Raises:
            InvalidPackageError: If package ID is not found
        """
        package = PACKAGE_LOOKUP.get(package_id)
        if not package:
            raise InvalidPackageError(
                f"Invalid package ID: {package_id}. "
                f"Valid packages: {', '.join(PACKAGE_LOOKUP.keys())}"
            )
        return package

    async def create_payment(
        self,
        account_id: int,
        package_id: str,
        redirect_url: Optional[str] = None,
    ) -> CreatePaymentResponse:
        """Create a pending transaction and its payment URL.

        Args:
            account_id: Buyer account ID
            package_id: Credit package to purchase
            redirect_url: Optional URL Pakasir redirects to after payment

        Returns:
            CreatePaymentResponse with order id and payment URL

        Raises:
            InvalidPackageError: If package ID is invalid
            AccountNotFoundError: If the account does not exist
        """
        package = self.get_package(package_id)
        await self.ledger.get_balance(account_id)

        transaction = Transaction(
            account_id=account_id,
            order_id=generate_order_id(),
            package_id=package.id,
            amount=package.price,
            credits=package.credits,
            status=TransactionStatus.PENDING,
        )
        self.db.add(transaction)
        await self.db.commit()

        logger.info(
            f"Created payment {transaction.order_id} for account {account_id}: "
            f"{package.credits} credits for Rp {package.price}"
        )

        return CreatePaymentResponse(
            order_id=transaction.order_id,
            payment_url=self.client.payment_url(package.price, transaction.order_id, redirect_url),
            amount=package.price,
            credits=package.credits,
        )

    async def process_webhook(
        self,
        payload: PakasirWebhookPayload,
        config: Optional[LedgerConfig] = None,
    ) -> PurchaseResult:
        """Process a Pakasir webhook.

        Replays of a completed order return success without crediting again.

        Args:
            payload: Parsed webhook body
            config: Ledger config snapshot for the commission (loaded if omitted)

        Returns:
            PurchaseResult

        Raises:
            PaymentProjectMismatchError: Webhook is for another project
            TransactionNotFoundError: Unknown order id
            PaymentAmountMismatchError: Amount differs from the stored order
            PaymentVerificationError: Pakasir did not confirm the payment
        """
        if payload.project != self.client.project:
            logger.error(
                f"Webhook for order {payload.order_id} has project {payload.project!r}, "
                f"expected {self.client.project!r}"
            )
            raise PaymentProjectMismatchError(f"Unexpected project {payload.project}")

        transaction = (
            await self.db.execute(
                select(Transaction)
                .where(Transaction.order_id == payload.order_id)
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()
        if transaction is None:
            logger.error(f"Webhook for unknown order {payload.order_id}")
            raise TransactionNotFoundError(f"Order {payload.order_id} not found")

        if transaction.status == TransactionStatus.COMPLETED:
            logger.info(f"Order {payload.order_id} already completed, skipping")
            return PurchaseResult(
                already_processed=True, status=TransactionStatus.COMPLETED.value
            )

        if payload.amount != transaction.amount:
            logger.error(
                f"Amount mismatch for order {payload.order_id}: "
                f"webhook {payload.amount}, stored {transaction.amount}"
            )
            raise PaymentAmountMismatchError(
                f"Amount {payload.amount} does not match order {payload.order_id}"
            )

        status = payload.status.lower()
        if status in TERMINAL_WEBHOOK_STATUSES:
            return await self._close_pending(transaction, TERMINAL_WEBHOOK_STATUSES[status])
        if status != "completed":
            logger.info(f"Ignoring webhook status {payload.status!r} for order {payload.order_id}")
            return PurchaseResult(ok=True, status=transaction.status.value)

        if not await self.client.verify_transaction(transaction.order_id, transaction.amount):
            raise PaymentVerificationError(f"Payment for order {payload.order_id} not verified")

        return await self._complete(transaction, payload.payment_method, config)

    async def _complete(
        self,
        transaction: Transaction,
        payment_method: Optional[str],
        config: Optional[LedgerConfig],
    ) -> PurchaseResult:
        """Claim an unpaid transaction, credit the buyer and pay commission.

        A verified payment wins over an earlier cancelled or expired webhook,
        since the provider has already taken the money.
        """
        cfg = config or await load_ledger_config(self.db)
        order_id = transaction.order_id
        transaction_id = transaction.id
        account_id = transaction.account_id
        credits = transaction.credits
        previous_status = transaction.status

        claim = (
            update(Transaction)
            .where(Transaction.id == transaction_id, Transaction.status.in_(CLAIMABLE_STATUSES))
            .values(
                status=TransactionStatus.COMPLETED,
                completed_at=utcnow(),
                payment_method=payment_method,
            )
            .returning(Transaction.id)
            .execution_options(synchronize_session=False)
        )
        if (await self.db.execute(claim)).scalar_one_or_none() is None:
            await self.db.rollback()
            current = await self.db.scalar(
                select(Transaction.status).where(Transaction.id == transaction_id)
            )
            if current == TransactionStatus.COMPLETED:
                logger.info(f"Order {order_id} was claimed by another webhook")
                return PurchaseResult(already_processed=True, status=current.value)
            status = current.value if current else None
            logger.error(f"Verified payment for order {order_id} could not be claimed from {status}")
            return PurchaseResult(ok=False, status=status)

        if previous_status != TransactionStatus.PENDING:
            logger.warning(
                f"Order {order_id} was {previous_status.value} but payment is verified, crediting"
            )

        balance = await self.ledger.apply_credit(
            account_id, credits, LedgerReason.PURCHASE, reference=order_id, commit=False
        )
        commission = await self.referrals.record_commission(
            account_id, transaction_id, credits, config=cfg, commit=False
        )
        await self.db.commit()

        logger.info(
            f"Order {order_id} completed: {credits} credits to account {account_id} "
            f"(balance {balance}, commission {commission})"
        )
        return PurchaseResult(credits_added=credits, status=TransactionStatus.COMPLETED.value)

    async def _close_pending(
        self, transaction: Transaction, status: TransactionStatus
    ) -> PurchaseResult:
        """Move a pending transaction to cancelled/expired."""
        order_id = transaction.order_id
        stmt = (
            update(Transaction)
            .where(Transaction.id == transaction.id, Transaction.status == TransactionStatus.PENDING)
            .values(status=status)
            .returning(Transaction.status)
            .execution_options(synchronize_session=False)
        )
        updated = (await self.db.execute(stmt)).scalar_one_or_none()
        await self.db.commit()

        if updated is None:
            logger.info(f"Order {order_id} is no longer pending, ignoring {status.value}")
            current = await self.db.scalar(
                select(Transaction.status).where(Transaction.order_id == order_id)
            )
            return PurchaseResult(status=current.value if current else None)

        logger.info(f"Order {order_id} marked {status.value}")
        return PurchaseResult(status=status.value)

    async def get_transactions(
        self, account_id: int, limit: int = 50, offset: int = 0
    ) -> list[Transaction]:
        """List an account's purchases, newest first."""
        result = await self.db.execute(
            select(Transaction)
            .where(Transaction.account_id == account_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())


def get_payment_service(db: AsyncSession) -> PaymentService:
    """Factory function to create PaymentService."""
    return PaymentService(db)
