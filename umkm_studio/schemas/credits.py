"""Pydantic schemas for the credit ledger.

This module defines:
- Admission results (Admitted / AdmissionRejected)
- Refund results
- Balance and ledger history responses
"""

import enum
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from umkm_studio.models.credit_ledger import LedgerReason


class AdmissionRejectionReason(str, enum.Enum):
    """Why admission control refused a generation attempt."""

    EMAIL_NOT_VERIFIED = "EMAIL_NOT_VERIFIED"
    RATE_LIMITED = "RATE_LIMITED"
    INSUFFICIENT_CREDITS = "INSUFFICIENT_CREDITS"


class Admitted(BaseModel):
    """One credit was reserved for a generation attempt."""

    ok: Literal[True] = True
    balance: int = Field(description="Balance after the deduction")
    reservation_id: str = Field(description="Token that refunds this reservation once")


class AdmissionRejected(BaseModel):
    """The attempt was refused and nothing was mutated."""

    ok: Literal[False] = False
    reason: AdmissionRejectionReason
    wait_seconds: Optional[int] = Field(
        default=None, description="Seconds until the cooldown ends (RATE_LIMITED only)"
    )
    retry_at: Optional[datetime] = Field(
        default=None, description="Instant the cooldown ends (RATE_LIMITED only)"
    )


AdmissionResult = Union[Admitted, AdmissionRejected]


class RefundRequest(BaseModel):
    """Request body for refunding a reserved credit."""

    reservation_id: str = Field(..., min_length=1, max_length=36)


class RefundResult(BaseModel):
    """Outcome of a refund call."""

    balance: int = Field(description="Balance after the refund")
    refunded: bool = Field(
        default=True, description="False when the reservation had already been refunded"
    )


class BalanceResponse(BaseModel):
    """Response model for balance queries."""

    credits: int
    email_verified: bool
    credits_granted: bool
    last_generation_at: Optional[datetime] = None


class LedgerEntryResponse(BaseModel):
    """Response model for a single ledger entry."""

    id: int
    reason: LedgerReason
    delta: int = Field(description="Credit change (positive=add, negative=deduct)")
    balance_after: int
    reference: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True


class LedgerHistoryResponse(BaseModel):
    """Response model for ledger history queries."""

    entries: list[LedgerEntryResponse]
    total: int
    limit: int
    offset: int


class EmailVerifiedRequest(BaseModel):
    """Internal callback fired when an account verifies its email."""

    account_id: int = Field(..., gt=0)


class EmailVerifiedResponse(BaseModel):
    """Credits applied by the email-verified event."""

    credits_granted: int = Field(description="Free credits added (0 on repeat events)")
    referral_bonus_awarded: int = Field(description="Bonus paid to the referrer (0 if none)")
    balance: int
