"""Wallet balance primitives.

All wallet mutations go through ``apply`` (or its single-field form
``adjust_balance``) inside a unit of work. Callers that need to decide on a
balance first take the row lock with ``read_balance_for_update``.
"""
from decimal import Decimal
from typing import Mapping

from arena.errors import NotFound
from arena.models import Wallet, WalletField, to_money
from arena.storage.base import UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)


async def read_balance_for_update(uow: UnitOfWork, user_id: str) -> Wallet:
    """Lock a wallet for the rest of the unit of work and return it.

    Raises:
        NotFound: If the user has no wallet.
    """
    wallet = await uow.lock_wallet(user_id)
    if wallet is None:
        raise NotFound("Wallet not found")
    return wallet


async def apply(uow: UnitOfWork, user_id: str, deltas: Mapping[WalletField, Decimal]) -> Wallet:
    """Apply several field deltas to one wallet as a single row update.

    Raises:
        NotFound: If the user has no wallet.
        InsufficientFunds: If any field would become negative.
    """
    deltas = {WalletField(f): to_money(d) for f, d in deltas.items() if d}
    if not deltas:
        return await read_balance_for_update(uow, user_id)
    wallet = await uow.update_wallet(user_id, deltas)
    logger.debug(
        f"Wallet {user_id}: "
        + ", ".join(f"{f.value} {d:+}" for f, d in deltas.items())
    )
    return wallet


async def adjust_balance(
    uow: UnitOfWork,
    user_id: str,
    delta: Decimal,
    field: WalletField = WalletField.BALANCE,
) -> Wallet:
    """Add ``delta`` to one wallet field."""
    return await apply(uow, user_id, {field: delta})


async def credit(uow: UnitOfWork, user_id: str, amount: Decimal, bonus: bool = False) -> Wallet:
    """Credit spendable balance; bonus credits also count toward bonus_balance."""
    deltas = {WalletField.BALANCE: amount}
    if bonus:
        deltas[WalletField.BONUS_BALANCE] = amount
    return await apply(uow, user_id, deltas)


async def debit(uow: UnitOfWork, user_id: str, amount: Decimal) -> Wallet:
    """Debit spendable balance. Raises InsufficientFunds on overdraft."""
    return await apply(uow, user_id, {WalletField.BALANCE: -amount})
