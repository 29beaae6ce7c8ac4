"""Tests for authentication service.

This module tests:
- Password hashing
- JWT token creation and validation
- Registration with and without a referral code
- Login
"""

import pytest
from jose import jwt

from umkm_studio.core.config import settings
from umkm_studio.schemas.referral import ReferralErrorCode
from umkm_studio.services.auth_service import (
    AuthService,
    InvalidCredentialsError,
    InvalidTokenError,
    UserAlreadyExistsError,
)
from umkm_studio.services.ledger_service import LedgerService


class TestPasswordHashing:
    """Tests for password hashing."""

    def test_hash_and_verify(self):
        hashed = AuthService.hash_password("rahasia123")

        assert hashed != "rahasia123"
        assert AuthService.verify_password("rahasia123", hashed) is True
        assert AuthService.verify_password("salah", hashed) is False


class TestTokens:
    """Tests for JWT tokens."""

    def test_create_and_decode(self):
        token, expires_in = AuthService.create_access_token(42)

        payload = AuthService.decode_token(token)
        assert payload.sub == "42"
        assert payload.type == "access"
        assert expires_in == settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES * 60

    def test_invalid_token(self):
        with pytest.raises(InvalidTokenError):
            AuthService.decode_token("not-a-token")

    def test_wrong_secret(self):
        token = jwt.encode(
            {"sub": "1", "type": "access", "exp": 9999999999, "iat": 0},
            "another-secret",
            algorithm=settings.JWT_ALGORITHM,
        )
        with pytest.raises(InvalidTokenError):
            AuthService.decode_token(token)

    async def test_validate_rejects_missing_account(self, db_session):
        token, _ = AuthService.create_access_token(9999)

        with pytest.raises(InvalidTokenError):
            await AuthService(db_session).validate_access_token(token)

    async def test_validate_returns_account(self, db_session, make_account):
        account = await make_account()
        token, _ = AuthService.create_access_token(account.id)

        found = await AuthService(db_session).validate_access_token(token)

        assert found.id == account.id


class TestRegistration:
    """Tests for register_user and authenticate_user."""

    async def test_register_starts_with_zero_credits(self, db_session):
        account, link = await AuthService(db_session).register_user(
            "Warung@Example.com", "password123"
        )

        assert link is None
        assert account.email == "warung@example.com"
        assert account.credits == 0
        assert account.email_verified is False
        assert account.credits_granted is False
        assert len(account.referral_code) == 8

    async def test_duplicate_email(self, db_session):
        service = AuthService(db_session)
        await service.register_user("dup@example.com", "password123")

        with pytest.raises(UserAlreadyExistsError):
            await service.register_user("DUP@example.com", "password123")

    async def test_register_with_referral(self, db_session, make_account):
        referrer = await make_account(referral_code="WARUNG01")

        account, link = await AuthService(db_session).register_user(
            "new@example.com", "password123", referral_code="warung01"
        )

        assert link.ok is True
        assert link.bonus_awarded == 0
        found = await AuthService(db_session).get_account_by_id(account.id)
        assert found.referred_by_id == referrer.id
        # Bonus waits for email verification
        assert await LedgerService(db_session).get_balance(referrer.id) == 0

    async def test_register_with_unknown_referral_still_registers(self, db_session):
        account, link = await AuthService(db_session).register_user(
            "lonely@example.com", "password123", referral_code="NOBODY00"
        )

        assert account.id is not None
        assert link.ok is False
        assert link.error_code == ReferralErrorCode.INVALID_REFERRAL_CODE

    async def test_login(self, db_session):
        service = AuthService(db_session)
        await service.register_user("login@example.com", "password123")

        account = await service.authenticate_user("login@example.com", "password123")
        assert account.email == "login@example.com"

        with pytest.raises(InvalidCredentialsError):
            await service.authenticate_user("login@example.com", "wrong-password")
        with pytest.raises(InvalidCredentialsError):
            await service.authenticate_user("nobody@example.com", "password123")
