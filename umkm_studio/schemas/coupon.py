"""Pydantic schemas for coupon redemption."""

import enum
from typing import Literal, Union

from pydantic import BaseModel, Field


class CouponErrorCode(str, enum.Enum):
    INVALID_COUPON = "INVALID_COUPON"
    COUPON_INACTIVE = "COUPON_INACTIVE"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_LIMIT_REACHED = "COUPON_LIMIT_REACHED"
    ALREADY_REDEEMED = "ALREADY_REDEEMED"


class CouponRedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=64)


class CouponRedeemed(BaseModel):
    ok: Literal[True] = True
    credits_added: int
    balance: int


class CouponRejected(BaseModel):
    ok: Literal[False] = False
    error_code: CouponErrorCode


CouponRedeemResult = Union[CouponRedeemed, CouponRejected]
