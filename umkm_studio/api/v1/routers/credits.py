"""API routes for the credit ledger.

This module provides REST endpoints for:
- GET /api/v1/credits/balance - Current balance and admission flags
- GET /api/v1/credits/history - Ledger history
- POST /api/v1/credits/reserve - Admission check, reserves one credit
- POST /api/v1/credits/refund - Refund a reserved credit
- POST /api/v1/credits/email-verified - Internal signup grant callback
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.api.deps import (
    admission_rejected_exception,
    get_current_user,
    get_db,
    require_internal_key,
)
from umkm_studio.models.account import Account
from umkm_studio.models.credit_ledger import LedgerReason
from umkm_studio.schemas.credits import (
    Admitted,
    BalanceResponse,
    EmailVerifiedRequest,
    EmailVerifiedResponse,
    LedgerEntryResponse,
    LedgerHistoryResponse,
    RefundRequest,
    RefundResult,
)
from umkm_studio.services.ledger_service import AccountNotFoundError, get_ledger_service
from umkm_studio.services.referral_service import get_referral_service
from umkm_studio.services.settings_service import load_ledger_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get(
    "/balance",
    response_model=BalanceResponse,
    summary="Get credit balance",
)
async def get_balance(
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> BalanceResponse:
    return await get_ledger_service(db).get_balance_details(current_user.id)


@router.get(
    "/history",
    response_model=LedgerHistoryResponse,
    summary="Get ledger history",
    description="Get paginated credit ledger entries for the authenticated user",
)
async def get_history(
    reason: Optional[LedgerReason] = Query(default=None, description="Filter by reason"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> LedgerHistoryResponse:
    entries, total = await get_ledger_service(db).get_ledger_history(
        current_user.id, limit=limit, offset=offset, reason=reason
    )
    return LedgerHistoryResponse(
        entries=[LedgerEntryResponse.model_validate(entry) for entry in entries],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post(
    "/reserve",
    response_model=Admitted,
    summary="Reserve a generation credit",
    description="Check verification, cooldown and balance, and deduct one credit atomically",
)
async def reserve_credit(
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> Admitted:
    """Admission check for a client-driven generation.

    Returns the new balance and a reservation id to pass to /refund if the
    generation fails.

    Raises:
        HTTPException: 403 EMAIL_NOT_VERIFIED, 429 RATE_LIMITED or
            402 INSUFFICIENT_CREDITS
    """
    result = await get_ledger_service(db).reserve_generation_credit(current_user.id)
    if not result.ok:
        raise admission_rejected_exception(result)
    return result


@router.post("/refund", response_model=RefundResult, summary="Refund a reserved credit")
async def refund_credit(
    request: RefundRequest,
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> RefundResult:
    """Refund the credit taken by a reservation. Repeated calls add nothing."""
    return await get_ledger_service(db).refund_generation_credit(
        current_user.id, reservation_id=request.reservation_id
    )


@router.post(
    "/email-verified",
    response_model=EmailVerifiedResponse,
    summary="Email verified callback",
    dependencies=[Depends(require_internal_key)],
)
async def email_verified(
    request: EmailVerifiedRequest,
    db: AsyncSession = Depends(get_db),
) -> EmailVerifiedResponse:
    """Apply the one-time signup grant and pay the referrer's signup bonus.

    Safe to call repeatedly; only the first call credits anything.
    """
    config = await load_ledger_config(db)
    ledger = get_ledger_service(db)

    try:
        granted = await ledger.grant_signup_credits(request.account_id, config=config)
    except AccountNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")

    bonus = await get_referral_service(db).award_signup_bonus(request.account_id, config=config)

    return EmailVerifiedResponse(
        credits_granted=granted,
        referral_bonus_awarded=bonus,
        balance=await ledger.get_balance(request.account_id),
    )
