"""Authentication service for account registration, login, and tokens.

This module provides:
- Password hashing with bcrypt
- JWT access token generation and validation
- Account registration with a unique referral code and optional referrer
"""

import logging
from datetime import UTC, datetime, timedelta
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.core.config import settings
from umkm_studio.models.account import Account
from umkm_studio.schemas.auth import TokenPayload
from umkm_studio.schemas.referral import ReferralLinkResult
from umkm_studio.services.referral_service import ReferralService, generate_referral_code

logger = logging.getLogger(__name__)

# Password hashing context using bcrypt
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

REFERRAL_CODE_ATTEMPTS = 5


class AuthServiceError(Exception):
    """Base exception for authentication service errors."""

    pass


class InvalidCredentialsError(AuthServiceError):
    """Raised when login credentials are invalid."""

    pass


class UserAlreadyExistsError(AuthServiceError):
    """Raised when attempting to register with an existing email."""

    pass


class InvalidTokenError(AuthServiceError):
    """Raised when a token is invalid or expired."""

    pass


class AuthService:
    """Service class for authentication operations."""

    def __init__(self, db: AsyncSession):
        """Initialize auth service with database session.

        Args:
            db: Async SQLAlchemy session
        """
        self.db = db

    # -------------------------------------------------------------------------
    # Password Hashing
    # -------------------------------------------------------------------------

    @staticmethod
    def hash_password(password: str) -> str:
        """Hash a password using bcrypt."""
        return pwd_context.hash(password)

    @staticmethod
    def verify_password(plain_password: str, hashed_password: str) -> bool:
        """Verify a password against its hash."""
        return pwd_context.verify(plain_password, hashed_password)

    # -------------------------------------------------------------------------
    # JWT Token Management
    # -------------------------------------------------------------------------

    @staticmethod
    def create_access_token(account_id: int) -> tuple[str, int]:
        """Create a JWT access token for an account.

        Args:
            account_id: Account's database ID

        Returns:
            Tuple of (token string, lifetime in seconds)
        """
        now = datetime.now(UTC)
        expire = now + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

        payload = {
            "sub": str(account_id),
            "type": "access",
            "exp": int(expire.timestamp()),
            "iat": int(now.timestamp()),
        }

        token = jwt.encode(
            payload,
            settings.JWT_SECRET_KEY,
            algorithm=settings.JWT_ALGORITHM,
        )
        return token, settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60

    @staticmethod
    def decode_token(token: str) -> TokenPayload:
        """Decode and validate a JWT token.

        Raises:
            InvalidTokenError: If token is invalid or expired
        """
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
            return TokenPayload(
                sub=payload["sub"],
                type=payload["type"],
                exp=payload["exp"],
                iat=payload["iat"],
            )
        except (JWTError, KeyError) as e:
            logger.warning(f"Token decode error: {e}")
            raise InvalidTokenError("Invalid or expired token")

    # -------------------------------------------------------------------------
    # Account Operations
    # -------------------------------------------------------------------------

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        query = select(Account).where(Account.email == email.lower())
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def get_account_by_id(self, account_id: int) -> Optional[Account]:
        query = (
            select(Account)
            .where(Account.id == account_id)
            .execution_options(populate_existing=True)
        )
        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def _unused_referral_code(self) -> str:
        for _ in range(REFERRAL_CODE_ATTEMPTS):
            code = generate_referral_code()
            taken = await self.db.scalar(select(Account.id).where(Account.referral_code == code))
            if taken is None:
                return code
        raise AuthServiceError("Could not allocate a unique referral code")

    async def register_user(
        self,
        email: str,
        password: str,
        referral_code: Optional[str] = None,
    ) -> tuple[Account, Optional[ReferralLinkResult]]:
        """Register a new account with a zero balance.

        Args:
            email: Account email address
            password: Plain text password
            referral_code: Optional referral code of the referrer

        Returns:
            Tuple of (new Account, referral link result or None)

        Raises:
            UserAlreadyExistsError: If email is already registered
        """
        email = email.lower()

        if await self.get_account_by_email(email):
            raise UserAlreadyExistsError(f"User with email {email} already exists")

        account = Account(
            email=email,
            password_hash=self.hash_password(password),
            credits=0,
            email_verified=False,
            credits_granted=False,
            referral_code=await self._unused_referral_code(),
        )
        self.db.add(account)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            raise UserAlreadyExistsError(f"User with email {email} already exists")
        await self.db.refresh(account)

        logger.info(f"New account registered: {email} (ID: {account.id})")

        link_result = None
        if referral_code:
            link_result = await ReferralService(self.db).link_referral(account.id, referral_code)

        return account, link_result

    async def authenticate_user(self, email: str, password: str) -> Account:
        """Authenticate an account with email and password.

        Raises:
            InvalidCredentialsError: If credentials are invalid
        """
        account = await self.get_account_by_email(email)

        if not account or not account.password_hash:
            logger.warning(f"Login attempt for unknown account: {email}")
            raise InvalidCredentialsError("Invalid email or password")

        if not self.verify_password(password, account.password_hash):
            logger.warning(f"Invalid password for account: {email}")
            raise InvalidCredentialsError("Invalid email or password")

        logger.info(f"Account authenticated: {email}")
        return account

    async def validate_access_token(self, token: str) -> Account:
        """Validate an access token and return the associated account.

        Raises:
            InvalidTokenError: If token is invalid or the account is gone
        """
        payload = self.decode_token(token)

        if payload.type != "access":
            raise InvalidTokenError("Invalid token type")

        try:
            account_id = int(payload.sub)
        except ValueError:
            raise InvalidTokenError("Invalid token subject")

        account = await self.get_account_by_id(account_id)
        if not account:
            raise InvalidTokenError("User not found")

        return account


def get_auth_service(db: AsyncSession) -> AuthService:
    """Factory function to create AuthService."""
    return AuthService(db)
