"""Tests for Pakasir payment integration.

This module tests:
- Credit package catalogue and order ids
- Payment creation
- Pakasir verification client
- Webhook processing: idempotent completion, mismatches, cancellation
- Late verified payments on expired or cancelled orders
- Referral commission on completed purchases
"""

import asyncio
import re

import httpx
import pytest
from pydantic import ValidationError
from sqlalchemy import select

from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.models.transaction import Transaction, TransactionStatus
from umkm_studio.schemas.payment import PakasirWebhookPayload
from umkm_studio.services.ledger_service import AccountNotFoundError, LedgerService
from umkm_studio.services.payment_service import (
    CREDIT_PACKAGES,
    InvalidPackageError,
    PakasirClient,
    PaymentAmountMismatchError,
    PaymentProjectMismatchError,
    PaymentService,
    PaymentVerificationError,
    TransactionNotFoundError,
    generate_order_id,
)
from umkm_studio.services.referral_service import ReferralService
from umkm_studio.services.settings_service import LedgerConfig


def pakasir_transport(status: str = "completed", calls: list = None) -> httpx.MockTransport:
    """Mock Pakasir API answering transactiondetail with ``status``."""

    def handler(request: httpx.Request) -> httpx.Response:
        if calls is not None:
            calls.append(request)
        assert request.url.path == "/api/transactiondetail"
        return httpx.Response(
            200,
            json={
                "transaction": {
                    "order_id": request.url.params["order_id"],
                    "amount": int(request.url.params["amount"]),
                    "status": status,
                }
            },
        )

    return httpx.MockTransport(handler)


def make_client(status: str = "completed", calls: list = None) -> PakasirClient:
    return PakasirClient(
        base_url="https://pakasir.test",
        project="umkm",
        api_key="secret",
        transport=pakasir_transport(status, calls),
    )


@pytest.fixture
def payment_service(db_session):
    return PaymentService(db_session, client=make_client())


async def _transaction(db_session, order_id: str) -> Transaction:
    return (
        await db_session.execute(
            select(Transaction)
            .where(Transaction.order_id == order_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


# ============================================================================
# Packages and order ids
# ============================================================================


class TestPackages:
    """Tests for the credit package catalogue."""

    def test_package_definitions(self):
        assert [(p.id, p.credits, p.price) for p in CREDIT_PACKAGES] == [
            ("starter", 10, 15000),
            ("usaha", 50, 60000),
            ("juragan", 150, 150000),
        ]

    def test_get_package(self):
        assert PaymentService.get_package("usaha").credits == 50

    def test_get_invalid_package(self):
        with pytest.raises(InvalidPackageError):
            PaymentService.get_package("platinum")

    def test_order_id_format(self):
        order_id = generate_order_id(now_ms=1700000000000)
        assert re.fullmatch(r"ORD[0-9A-Z]+[0-9A-Z]{6}", order_id)
        assert order_id.startswith("ORDLOYW3V28")

    def test_order_ids_unique(self):
        assert len({generate_order_id() for _ in range(50)}) == 50


class TestCreatePayment:
    """Tests for PaymentService.create_payment."""

    async def test_creates_pending_transaction(self, db_session, payment_service, make_account):
        account = await make_account()

        response = await payment_service.create_payment(
            account.id, "starter", redirect_url="https://app.test/done"
        )

        assert response.amount == 15000
        assert response.credits == 10
        assert response.payment_url.startswith(
            f"https://pakasir.test/pay/umkm/15000?order_id={response.order_id}"
        )
        assert "redirect=https%3A%2F%2Fapp.test%2Fdone" in response.payment_url

        transaction = await _transaction(db_session, response.order_id)
        assert transaction.status == TransactionStatus.PENDING
        assert transaction.account_id == account.id
        assert await LedgerService(db_session).get_balance(account.id) == 0

    async def test_invalid_package(self, payment_service, make_account):
        account = await make_account()

        with pytest.raises(InvalidPackageError):
            await payment_service.create_payment(account.id, "platinum")

    async def test_unknown_account(self, payment_service):
        with pytest.raises(AccountNotFoundError):
            await payment_service.create_payment(9999, "starter")


# ============================================================================
# Pakasir client
# ============================================================================


class TestPakasirClient:
    """Tests for PakasirClient.verify_transaction."""

    async def test_verified_when_completed(self):
        calls = []
        client = make_client("completed", calls)

        assert await client.verify_transaction("ORD1", 15000) is True
        params = calls[0].url.params
        assert params["project"] == "umkm"
        assert params["order_id"] == "ORD1"
        assert params["amount"] == "15000"
        assert params["api_key"] == "secret"

    async def test_not_verified_when_pending(self):
        assert await make_client("pending").verify_transaction("ORD1", 15000) is False

    async def test_not_verified_on_http_error(self):
        client = PakasirClient(
            base_url="https://pakasir.test",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )
        assert await client.verify_transaction("ORD1", 15000) is False

    async def test_not_verified_on_network_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable")

        client = PakasirClient(base_url="https://pakasir.test", transport=httpx.MockTransport(handler))
        assert await client.verify_transaction("ORD1", 15000) is False


# ============================================================================
# Webhook processing
# ============================================================================


class TestWebhook:
    """Tests for PaymentService.process_webhook."""

    async def _pending(self, payment_service, make_account, package_id="usaha"):
        account = await make_account(credits=1)
        payment = await payment_service.create_payment(account.id, package_id)
        return account, payment

    async def test_completion_credits_buyer(self, db_session, payment_service, make_account, ledger_config):
        account, payment = await self._pending(payment_service, make_account)

        result = await payment_service.process_webhook(
            PakasirWebhookPayload(
                order_id=payment.order_id,
                amount=payment.amount,
                status="completed",
                project="umkm",
                payment_method="qris",
            ),
            config=ledger_config,
        )

        assert result.ok is True
        assert result.credits_added == 50
        assert result.already_processed is False
        assert result.status == "completed"

        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert transaction.payment_method == "qris"
        assert transaction.completed_at is not None

        ledger = LedgerService(db_session)
        assert await ledger.get_balance(account.id) == 51
        entries, _ = await ledger.get_ledger_history(account.id)
        assert entries[0].reason == LedgerReason.PURCHASE
        assert entries[0].reference == payment.order_id

    async def test_replayed_webhook_credits_once(self, db_session, payment_service, make_account, ledger_config):
        account, payment = await self._pending(payment_service, make_account)
        payload = PakasirWebhookPayload(
            order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"
        )

        first = await payment_service.process_webhook(payload, config=ledger_config)
        second = await payment_service.process_webhook(payload, config=ledger_config)

        assert first.credits_added == 50
        assert second.ok is True
        assert second.already_processed is True
        assert second.credits_added == 0
        assert await LedgerService(db_session).get_balance(account.id) == 51

    async def test_concurrent_webhooks_credit_once(
        self, session_factory, payment_service, make_account, ledger_config
    ):
        account, payment = await self._pending(payment_service, make_account)
        payload = PakasirWebhookPayload(
            order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"
        )

        async def deliver():
            async with session_factory() as session:
                return await PaymentService(session, client=make_client()).process_webhook(
                    payload, config=ledger_config
                )

        results = await asyncio.gather(*(deliver() for _ in range(3)))

        assert sum(r.credits_added for r in results) == 50
        assert sum(1 for r in results if r.already_processed) == 2
        async with session_factory() as session:
            assert await LedgerService(session).get_balance(account.id) == 51

    async def test_amount_mismatch(self, db_session, payment_service, make_account):
        account, payment = await self._pending(payment_service, make_account)

        with pytest.raises(PaymentAmountMismatchError):
            await payment_service.process_webhook(
                PakasirWebhookPayload(order_id=payment.order_id, amount=1000, status="completed", project="umkm")
            )

        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == TransactionStatus.PENDING
        assert await LedgerService(db_session).get_balance(account.id) == 1

    async def test_project_mismatch(self, payment_service, make_account):
        _, payment = await self._pending(payment_service, make_account)

        with pytest.raises(PaymentProjectMismatchError):
            await payment_service.process_webhook(
                PakasirWebhookPayload(
                    order_id=payment.order_id,
                    amount=payment.amount,
                    status="completed",
                    project="someone-else",
                )
            )

    async def test_unknown_order(self, payment_service):
        with pytest.raises(TransactionNotFoundError):
            await payment_service.process_webhook(
                PakasirWebhookPayload(order_id="ORDMISSING", amount=15000, status="completed", project="umkm")
            )

    async def test_unverified_payment(self, db_session, make_account):
        service = PaymentService(db_session, client=make_client("pending"))
        account, payment = await self._pending(service, make_account)

        with pytest.raises(PaymentVerificationError):
            await service.process_webhook(
                PakasirWebhookPayload(
                    order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"
                )
            )

        assert await LedgerService(db_session).get_balance(account.id) == 1

    @pytest.mark.parametrize(
        "webhook_status,expected",
        [
            ("cancelled", TransactionStatus.CANCELLED),
            ("canceled", TransactionStatus.CANCELLED),
            ("EXPIRED", TransactionStatus.EXPIRED),
        ],
    )
    async def test_terminal_statuses_close_order(
        self, db_session, payment_service, make_account, webhook_status, expected
    ):
        account, payment = await self._pending(payment_service, make_account)

        result = await payment_service.process_webhook(
            PakasirWebhookPayload(
                order_id=payment.order_id, amount=payment.amount, status=webhook_status, project="umkm"
            )
        )

        assert result.status == expected.value
        assert result.credits_added == 0
        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == expected
        assert await LedgerService(db_session).get_balance(account.id) == 1

    @pytest.mark.parametrize("closing_status", ["expired", "cancelled"])
    async def test_verified_payment_after_order_closed(
        self, db_session, payment_service, make_account, ledger_config, closing_status
    ):
        account, payment = await self._pending(payment_service, make_account)
        await payment_service.process_webhook(
            PakasirWebhookPayload(
                order_id=payment.order_id, amount=payment.amount, status=closing_status, project="umkm"
            )
        )

        result = await payment_service.process_webhook(
            PakasirWebhookPayload(
                order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"
            ),
            config=ledger_config,
        )

        assert result.ok is True
        assert result.already_processed is False
        assert result.credits_added == 50
        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == TransactionStatus.COMPLETED
        assert await LedgerService(db_session).get_balance(account.id) == 51

    async def test_closed_order_stays_closed_without_verification(self, db_session, make_account):
        service = PaymentService(db_session, client=make_client("expired"))
        account, payment = await self._pending(service, make_account)
        await service.process_webhook(
            PakasirWebhookPayload(
                order_id=payment.order_id, amount=payment.amount, status="expired", project="umkm"
            )
        )

        with pytest.raises(PaymentVerificationError):
            await service.process_webhook(
                PakasirWebhookPayload(
                    order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"
                )
            )

        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == TransactionStatus.EXPIRED
        assert await LedgerService(db_session).get_balance(account.id) == 1

    def test_project_is_required(self):
        with pytest.raises(ValidationError):
            PakasirWebhookPayload(order_id="ORD1", amount=15000, status="completed")

    async def test_completed_order_not_cancelled(self, db_session, payment_service, make_account, ledger_config):
        _, payment = await self._pending(payment_service, make_account)
        await payment_service.process_webhook(
            PakasirWebhookPayload(order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"),
            config=ledger_config,
        )

        result = await payment_service.process_webhook(
            PakasirWebhookPayload(order_id=payment.order_id, amount=payment.amount, status="expired", project="umkm")
        )

        assert result.already_processed is True
        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == TransactionStatus.COMPLETED

    async def test_other_statuses_ignored(self, db_session, payment_service, make_account):
        _, payment = await self._pending(payment_service, make_account)

        result = await payment_service.process_webhook(
            PakasirWebhookPayload(order_id=payment.order_id, amount=payment.amount, status="pending", project="umkm")
        )

        assert result.status == "pending"
        transaction = await _transaction(db_session, payment.order_id)
        assert transaction.status == TransactionStatus.PENDING

    async def test_purchase_pays_referrer_commission(self, db_session, payment_service, make_account):
        referrer = await make_account(referral_code="REFPAY01")
        buyer = await make_account(email_verified=False)
        config = LedgerConfig(referral_signup_bonus=0, referral_commission_percent=10)
        await ReferralService(db_session).link_referral(buyer.id, "REFPAY01", config=config)

        payment = await payment_service.create_payment(buyer.id, "juragan")
        await payment_service.process_webhook(
            PakasirWebhookPayload(order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"),
            config=config,
        )
        # Replay pays no second commission
        await payment_service.process_webhook(
            PakasirWebhookPayload(order_id=payment.order_id, amount=payment.amount, status="completed", project="umkm"),
            config=config,
        )

        ledger = LedgerService(db_session)
        assert await ledger.get_balance(buyer.id) == 150
        assert await ledger.get_balance(referrer.id) == 15
        entries, total = await ledger.get_ledger_history(referrer.id)
        assert total == 1
        assert entries[0].reason == LedgerReason.REFERRAL_COMMISSION

    async def test_get_transactions(self, payment_service, make_account):
        account = await make_account()
        await payment_service.create_payment(account.id, "starter")
        await payment_service.create_payment(account.id, "usaha")

        transactions = await payment_service.get_transactions(account.id)

        assert [t.package_id for t in transactions] == ["usaha", "starter"]
