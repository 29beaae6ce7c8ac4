"""API dependencies for FastAPI route handlers.

This module provides dependency injection functions for:
- Database sessions
- Authentication (JWT bearer tokens, internal callback key)
- Mapping admission rejections to HTTP errors
"""

import secrets
from typing import AsyncGenerator, Optional

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.core.config import settings
from umkm_studio.core.database import get_db as get_db_session
from umkm_studio.models.account import Account
from umkm_studio.schemas.credits import AdmissionRejected, AdmissionRejectionReason
from umkm_studio.services.auth_service import InvalidTokenError, get_auth_service
from umkm_studio.services.job_queue import JobQueueService

# HTTP Bearer token scheme for JWT authentication
security = HTTPBearer(auto_error=False)

ADMISSION_STATUS_CODES = {
    AdmissionRejectionReason.EMAIL_NOT_VERIFIED: status.HTTP_403_FORBIDDEN,
    AdmissionRejectionReason.RATE_LIMITED: status.HTTP_429_TOO_MANY_REQUESTS,
    AdmissionRejectionReason.INSUFFICIENT_CREDITS: status.HTTP_402_PAYMENT_REQUIRED,
}

ADMISSION_MESSAGES = {
    AdmissionRejectionReason.EMAIL_NOT_VERIFIED: "Verify your email before generating images",
    AdmissionRejectionReason.RATE_LIMITED: "Please wait before generating another image",
    AdmissionRejectionReason.INSUFFICIENT_CREDITS: "Not enough credits, top up to continue",
}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session.

    Yields:
        AsyncSession for database operations
    """
    async for session in get_db_session():
        yield session


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Account:
    """Dependency to get the current authenticated account from JWT token.

    Raises:
        HTTPException: 401 if token is missing, invalid, or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        return await get_auth_service(db).validate_access_token(credentials.credentials)
    except InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_internal_key(
    x_internal_key: Optional[str] = Header(default=None, alias="X-Internal-Key"),
) -> None:
    """Dependency guarding internal callbacks with the shared secret.

    Raises:
        HTTPException: 401 if the key is missing or wrong
    """
    expected = settings.INTERNAL_API_KEY
    if not expected or not x_internal_key or not secrets.compare_digest(x_internal_key, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid internal key",
        )


def admission_rejected_exception(rejection: AdmissionRejected) -> HTTPException:
    """Build the HTTP error for an admission rejection."""
    detail = {
        "error_code": rejection.reason.value,
        "message": ADMISSION_MESSAGES[rejection.reason],
    }
    headers = None
    if rejection.reason == AdmissionRejectionReason.RATE_LIMITED:
        detail["wait_seconds"] = rejection.wait_seconds
        detail["retry_at"] = rejection.retry_at.isoformat() if rejection.retry_at else None
        headers = {"Retry-After": str(rejection.wait_seconds)}
    return HTTPException(
        status_code=ADMISSION_STATUS_CODES[rejection.reason],
        detail=detail,
        headers=headers,
    )


def get_job_queue_service(db: AsyncSession = Depends(get_db)) -> JobQueueService:
    """Dependency to get the job queue service."""
    return JobQueueService(db)
