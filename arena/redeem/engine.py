"""Promo code redemption."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from arena.errors import (
    AlreadyRedeemed,
    ExpiredCode,
    InactiveCode,
    InvalidCode,
    InvalidInput,
    LimitReached,
    NotFound,
)
from arena.ledger import log, wallets
from arena.models import RedeemCode, TransactionType, positive_money, utcnow
from arena.storage.base import Storage
from arena.utils.logger import get_logger

logger = get_logger(__name__)


def normalize_code(code: Optional[str]) -> str:
    code = (code or "").strip()
    if not code:
        raise InvalidInput("Code is required")
    return code


class RedeemEngine:
    """Validates promo codes and credits them once per user."""

    def __init__(self, storage: Storage):
        self.storage = storage

    async def redeem(self, user_id: str, code: str) -> Decimal:
        """Redeem a promo code for a user.

        The code row stays locked until commit, so usage counting is exact
        under concurrent redemptions; the (user, code) uniqueness of the
        history table rejects a second redemption by the same user.

        Returns:
            The amount credited.

        Raises:
            InvalidCode: If no such code exists.
            InactiveCode: If the code was switched off.
            ExpiredCode: If the code is past its expiry.
            LimitReached: If every use has been consumed.
            AlreadyRedeemed: If this user already used the code.
        """
        code = normalize_code(code)
        async with self.storage.unit_of_work() as uow:
            promo = await uow.lock_redeem_code(code)
            if promo is None:
                raise InvalidCode()

            if not promo.is_active:
                raise InactiveCode()
            if promo.is_expired(utcnow()):
                raise ExpiredCode()
            if promo.current_uses >= promo.max_uses:
                raise LimitReached()

            if await uow.has_redeemed(user_id, promo.id):
                raise AlreadyRedeemed()

            await wallets.credit(uow, user_id, promo.amount, bonus=True)
            await uow.insert_redeem_history(user_id, promo.id)
            await uow.increment_code_uses(promo.id)
            await log.append(
                uow,
                user_id,
                TransactionType.REDEEM_CODE,
                promo.amount,
                admin_note=f"Redeemed code: {code}",
            )

        logger.info(f"User {user_id} redeemed {code} for {promo.amount}")
        return promo.amount

    async def create_code(
        self,
        code: str,
        amount: Decimal,
        max_uses: int = 1,
        expires_at: Optional[datetime] = None,
    ) -> RedeemCode:
        """Create a promo code (admin)."""
        code = normalize_code(code)
        amount = positive_money(amount)
        if max_uses is None or max_uses <= 0:
            raise InvalidInput("max_uses must be positive")
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)

        async with self.storage.unit_of_work() as uow:
            promo = await uow.insert_redeem_code(code, amount, max_uses, expires_at)

        logger.info(f"Created redeem code {code}: {amount} x{max_uses}")
        return promo

    async def deactivate_code(self, code: str) -> RedeemCode:
        """Switch a promo code off; later redemptions fail with InactiveCode."""
        code = normalize_code(code)
        async with self.storage.unit_of_work() as uow:
            promo = await uow.lock_redeem_code(code)
            if promo is None:
                raise NotFound("Code not found")
            promo = await uow.set_redeem_code_active(promo.id, False)
        logger.info(f"Deactivated redeem code {code}")
        return promo
