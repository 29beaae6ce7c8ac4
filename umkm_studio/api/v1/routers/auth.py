"""Authentication API endpoints.

This module provides REST API endpoints for:
- Account registration (with optional referral code)
- Login
- Current account
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.api.deps import get_current_user, get_db
from umkm_studio.models.account import Account
from umkm_studio.schemas.auth import (
    AccountResponse,
    AuthResponse,
    LoginRequest,
    RegisterRequest,
    TokenResponse,
)
from umkm_studio.services.auth_service import (
    AuthService,
    AuthServiceError,
    InvalidCredentialsError,
    UserAlreadyExistsError,
    get_auth_service,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["Authentication"])


def _auth_response(account: Account) -> AuthResponse:
    access_token, expires_in = AuthService.create_access_token(account.id)
    return AuthResponse(
        account=AccountResponse.model_validate(account),
        token=TokenResponse(access_token=access_token, expires_in=expires_in),
    )


@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a new account",
)
async def register(
    request: RegisterRequest,
    db: AsyncSession = Depends(get_db),
) -> AuthResponse:
    """Register a new account with zero credits.

    Free credits are granted when the email is verified. An invalid
    referral code does not block registration.
    """
    auth_service = get_auth_service(db)

    try:
        account, link_result = await auth_service.register_user(
            email=request.email,
            password=request.password,
            referral_code=request.referral_code,
        )
    except UserAlreadyExistsError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Email already registered",
        )
    except AuthServiceError as e:
        logger.error(f"Registration failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Registration failed",
        )

    if link_result is not None and not link_result.ok:
        logger.info(f"Account {account.id} registered without referral: {link_result.error_code.value}")

    account = await auth_service.get_account_by_id(account.id)
    return _auth_response(account)


@router.post("/login", response_model=AuthResponse, summary="Login with email and password")
async def login(
    request: LoginRequest,
    db: AsyncSession = Depends(get_db),
) -> AuthResponse:
    """Authenticate and return an access token."""
    try:
        account = await get_auth_service(db).authenticate_user(request.email, request.password)
    except InvalidCredentialsError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _auth_response(account)


@router.get("/me", response_model=AccountResponse, summary="Get current account")
async def get_me(current_user: Account = Depends(get_current_user)) -> AccountResponse:
    return AccountResponse.model_validate(current_user)
