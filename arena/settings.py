"""Read-only operator settings (signup bonus, referral percentage).

Workflows receive a provider instead of reading global state, so tests and
deployments can swap in fixed values.
"""
from abc import ABC, abstractmethod
from decimal import Decimal, InvalidOperation
from typing import Mapping, Optional

from arena.config import config
from arena.storage.base import UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)

SIGNUP_BONUS = "signup_bonus"
REFERRAL_BONUS_PERCENT = "referral_bonus_percent"


class SettingsProvider(ABC):
    """Typed lookups with fallback defaults."""

    defaults: Mapping[str, str] = {
        SIGNUP_BONUS: config.default_signup_bonus,
        REFERRAL_BONUS_PERCENT: config.default_referral_bonus_percent,
    }

    @abstractmethod
    async def get(self, key: str, uow: Optional[UnitOfWork] = None) -> Optional[str]:
        """Raw value for ``key`` or None when unset."""

    async def get_decimal(self, key: str, uow: Optional[UnitOfWork] = None) -> Decimal:
        raw = await self.get(key, uow)
        if raw is not None:
            try:
                value = Decimal(str(raw))
            except InvalidOperation:
                value = None
            if value is not None and value.is_finite():
                return value
            logger.warning(f"Setting {key}={raw!r} is not a finite number, using default")
        return Decimal(self.defaults.get(key, "0"))

    async def signup_bonus(self, uow: Optional[UnitOfWork] = None) -> Decimal:
        return await self.get_decimal(SIGNUP_BONUS, uow)

    async def referral_bonus_percent(self, uow: Optional[UnitOfWork] = None) -> Decimal:
        return await self.get_decimal(REFERRAL_BONUS_PERCENT, uow)


class StorageSettings(SettingsProvider):
    """Settings read from the settings table of the current unit of work."""

    async def get(self, key: str, uow: Optional[UnitOfWork] = None) -> Optional[str]:
        if uow is None:
            raise ValueError("StorageSettings needs a unit of work")
        return await uow.get_setting(key)


class StaticSettings(SettingsProvider):
    """Fixed values, typically for tests or overrides."""

    def __init__(self, values: Optional[Mapping[str, object]] = None):
        self.values = {k: str(v) for k, v in (values or {}).items()}

    async def get(self, key: str, uow: Optional[UnitOfWork] = None) -> Optional[str]:
        return self.values.get(key)
