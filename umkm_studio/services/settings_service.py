"""Runtime ledger configuration backed by the settings table.

Values are read at operation time so administrators can change them without
a restart. Each ledger operation works from one ``LedgerConfig`` snapshot.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from umkm_studio.core.config import settings
from umkm_studio.models.app_setting import AppSetting

logger = logging.getLogger(__name__)

FREE_CREDITS_KEY = "free_credits"
RATE_LIMIT_SECONDS_KEY = "rate_limit_seconds"
REFERRAL_SIGNUP_BONUS_KEY = "referral_signup_bonus"
REFERRAL_COMMISSION_PERCENT_KEY = "referral_commission_percent"

LEDGER_SETTING_KEYS = (
    FREE_CREDITS_KEY,
    RATE_LIMIT_SECONDS_KEY,
    REFERRAL_SIGNUP_BONUS_KEY,
    REFERRAL_COMMISSION_PERCENT_KEY,
)


@dataclass(frozen=True)
class LedgerConfig:
    """Immutable snapshot of the ledger configuration."""

    free_credits: int = 10
    cooldown_seconds: int = 60
    referral_signup_bonus: int = 10
    referral_commission_percent: int = 10

    @classmethod
    def defaults(cls) -> "LedgerConfig":
        """Build a snapshot from process settings only."""
        return cls(
            free_credits=settings.FREE_CREDITS,
            cooldown_seconds=settings.RATE_LIMIT_SECONDS,
            referral_signup_bonus=settings.REFERRAL_SIGNUP_BONUS,
            referral_commission_percent=_clamp_percent(settings.REFERRAL_COMMISSION_PERCENT),
        )


def _clamp_percent(value: int) -> int:
    return max(0, min(100, value))


def _parse_non_negative(key: str, raw: Optional[str], default: int) -> int:
    """Parse a stored setting, falling back to the default on bad input."""
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        logger.warning(f"Ignoring unparseable setting {key}={raw!r}, using {default}")
        return default
    if value < 0:
        logger.warning(f"Ignoring negative setting {key}={value}, using {default}")
        return default
    return value


async def load_ledger_config(db: AsyncSession) -> LedgerConfig:
    """Read all ledger settings in one query.

    Args:
        db: Database session

    Returns:
        LedgerConfig with stored values layered over the env defaults
    """
    result = await db.execute(
        select(AppSetting.key, AppSetting.value).where(AppSetting.key.in_(LEDGER_SETTING_KEYS))
    )
    stored = {key: value for key, value in result.all()}
    defaults = LedgerConfig.defaults()

    return LedgerConfig(
        free_credits=_parse_non_negative(
            FREE_CREDITS_KEY, stored.get(FREE_CREDITS_KEY), defaults.free_credits
        ),
        cooldown_seconds=_parse_non_negative(
            RATE_LIMIT_SECONDS_KEY, stored.get(RATE_LIMIT_SECONDS_KEY), defaults.cooldown_seconds
        ),
        referral_signup_bonus=_parse_non_negative(
            REFERRAL_SIGNUP_BONUS_KEY,
            stored.get(REFERRAL_SIGNUP_BONUS_KEY),
            defaults.referral_signup_bonus,
        ),
        referral_commission_percent=_clamp_percent(
            _parse_non_negative(
                REFERRAL_COMMISSION_PERCENT_KEY,
                stored.get(REFERRAL_COMMISSION_PERCENT_KEY),
                defaults.referral_commission_percent,
            )
        ),
    )


async def set_setting(db: AsyncSession, key: str, value: object) -> AppSetting:
    """Create or update a setting and commit.

    Args:
        db: Database session
        key: Setting key
        value: New value (stored as text)

    Returns:
        The stored AppSetting row
    """
    setting = await db.get(AppSetting, key)
    if setting is None:
        setting = AppSetting(key=key, value=str(value))
        db.add(setting)
    else:
        setting.value = str(value)

    await db.commit()
    logger.info(f"Setting {key} set to {value}")
    return setting
