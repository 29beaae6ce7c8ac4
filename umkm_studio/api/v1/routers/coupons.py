"""API routes for coupon redemption."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.api.deps import get_current_user, get_db
from umkm_studio.models.account import Account
from umkm_studio.schemas.coupon import CouponErrorCode, CouponRedeemed, CouponRedeemRequest
from umkm_studio.services.coupon_service import get_coupon_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coupons", tags=["coupons"])

COUPON_ERROR_STATUS = {
    CouponErrorCode.INVALID_COUPON: status.HTTP_404_NOT_FOUND,
    CouponErrorCode.COUPON_INACTIVE: status.HTTP_400_BAD_REQUEST,
    CouponErrorCode.COUPON_EXPIRED: status.HTTP_400_BAD_REQUEST,
    CouponErrorCode.COUPON_LIMIT_REACHED: status.HTTP_400_BAD_REQUEST,
    CouponErrorCode.ALREADY_REDEEMED: status.HTTP_400_BAD_REQUEST,
}


@router.post("/redeem", response_model=CouponRedeemed, summary="Redeem a coupon code")
async def redeem_coupon(
    request: CouponRedeemRequest,
    current_user: Account = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> CouponRedeemed:
    result = await get_coupon_service(db).redeem(current_user.id, request.code)
    if not result.ok:
        raise HTTPException(
            status_code=COUPON_ERROR_STATUS[result.error_code],
            detail={"error_code": result.error_code.value},
        )
    return result
