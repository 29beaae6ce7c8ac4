"""Authentication schemas for request/response validation."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, EmailStr, Field


class RegisterRequest(BaseModel):
    """User registration request."""

    email: EmailStr
    password: str = Field(..., min_length=8, max_length=100)
    referral_code: Optional[str] = Field(default=None, max_length=16)


class LoginRequest(BaseModel):
    """User login request."""

    email: EmailStr
    password: str


class TokenResponse(BaseModel):
    """JWT token response."""

    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class AccountResponse(BaseModel):
    """Account data response."""

    id: int
    email: str
    credits: int
    email_verified: bool
    referral_code: str
    referred_by_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class AuthResponse(BaseModel):
    """Complete authentication response with account and token."""

    account: AccountResponse
    token: TokenResponse


class TokenPayload(BaseModel):
    """Decoded JWT claims."""

    sub: str
    type: str
    exp: int
    iat: int
