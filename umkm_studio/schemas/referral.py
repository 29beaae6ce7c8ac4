"""Pydantic schemas for the referral ledger."""

import enum
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field


class ReferralErrorCode(str, enum.Enum):
    INVALID_REFERRAL_CODE = "INVALID_REFERRAL_CODE"
    SELF_REFERRAL = "SELF_REFERRAL"


class ReferralLinkRequest(BaseModel):
    referral_code: str = Field(..., min_length=1, max_length=16)


class ReferralLinked(BaseModel):
    """Link succeeded, or the account was already referred (idempotent no-op)."""

    ok: Literal[True] = True
    already_referred: bool = False
    bonus_awarded: int = Field(
        default=0, description="Signup bonus paid immediately for pre-verified accounts"
    )


class ReferralRejected(BaseModel):
    ok: Literal[False] = False
    error_code: ReferralErrorCode


ReferralLinkResult = Union[ReferralLinked, ReferralRejected]


class ReferredAccount(BaseModel):
    email: str
    created_at: datetime
    signup_bonus_awarded: int
    completed_at: Optional[datetime] = None


class ReferralStatsResponse(BaseModel):
    """Response model for referral statistics."""

    referral_code: str
    total_referrals: int
    verified_referrals: int = Field(description="Referrals whose signup bonus was paid")
    total_signup_bonus: int
    total_commission: int
    referrals: list[ReferredAccount] = Field(default_factory=list)
