"""API routes for referrals."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.api.deps import get_current_user, get_db
from umkm_studio.models.account import Account
from umkm_studio.schemas.referral import (
    ReferralErrorCode,
    ReferralLinked,
    ReferralLinkRequest,
    ReferralStatsResponse,
)
from umkm_studio.services.referral_service import get_referral_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/referrals", tags=["referrals"])

REFERRAL_ERROR_STATUS = {
    ReferralErrorCode.INVALID_REFERRAL_CODE: status.HTTP_404_NOT_FOUND,
    ReferralErrorCode.SELF_REFERRAL: status.HTTP_400_BAD_REQUEST,
}


@router.post("/link", response_model=ReferralLinked, summary="Link a referral code")
async def link_referral(
    request: ReferralLinkRequest,
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ReferralLinked:
    """Record the referrer of the current account.

    Linking again is a no-op reported as ``already_referred``.
    """
    result = await get_referral_service(db).link_referral(current_user.id, request.referral_code)
    if not result.ok:
        raise HTTPException(
            status_code=REFERRAL_ERROR_STATUS[result.error_code],
            detail={"error_code": result.error_code.value},
        )
    return result


@router.get("/stats", response_model=ReferralStatsResponse, summary="Get referral statistics")
async def get_stats(
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> ReferralStatsResponse:
    return await get_referral_service(db).get_referral_stats(current_user.id)
