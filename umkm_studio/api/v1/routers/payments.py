"""Pakasir payment API endpoints.

This module provides REST API endpoints for:
- Listing available credit packages
- Creating payments for package purchases
- Handling Pakasir webhooks
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.api.deps import get_current_user, get_db
from umkm_studio.models.account import Account
from umkm_studio.schemas.payment import (
    CreatePaymentRequest,
    CreatePaymentResponse,
    CreditPackagesResponse,
    PakasirWebhookPayload,
    PurchaseResult,
)
from umkm_studio.services.payment_service import (
    InvalidPackageError,
    PaymentAmountMismatchError,
    PaymentProjectMismatchError,
    PaymentService,
    PaymentVerificationError,
    TransactionNotFoundError,
    get_payment_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.get(
    "/packages",
    response_model=CreditPackagesResponse,
    summary="List credit packages",
)
async def list_packages() -> CreditPackagesResponse:
    return CreditPackagesResponse(packages=PaymentService.get_packages())


@router.post(
    "",
    response_model=CreatePaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create payment",
    description="Create a pending transaction and return the Pakasir payment URL",
)
async def create_payment(
    request: CreatePaymentRequest,
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CreatePaymentResponse:
    """Start a credit package purchase.

    Raises:
        HTTPException(400): If package_id is invalid
    """
    try:
        return await get_payment_service(db).create_payment(
            current_user.id, request.package_id, request.redirect_url
        )
    except InvalidPackageError as e:
        logger.warning(f"Invalid package requested: {request.package_id}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )


@router.post(
    "/webhook",
    response_model=PurchaseResult,
    status_code=status.HTTP_200_OK,
    summary="Pakasir webhook handler",
)
async def pakasir_webhook(
    payload: PakasirWebhookPayload,
    db: AsyncSession = Depends(get_db),
) -> PurchaseResult:
    """Handle a Pakasir payment notification.

    The payload is cross-checked against the stored order and confirmed
    with Pakasir before any credit is added. Replays are acknowledged
    without crediting again.

    Raises:
        HTTPException(400): Project or amount mismatch, or unverified payment
        HTTPException(404): Unknown order
        HTTPException(409): Verified payment could not be recorded
    """
    service = get_payment_service(db)

    try:
        result = await service.process_webhook(payload)
    except TransactionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except (PaymentProjectMismatchError, PaymentAmountMismatchError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except PaymentVerificationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    if not result.ok:
        # Not acknowledged, so Pakasir retries the notification
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Order {payload.order_id} could not be completed (status {result.status})",
        )
    return result
