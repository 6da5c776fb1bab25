"""Shared fixtures: an in-memory backend and record factories."""
import os

# Cheap hashing for tests; must be set before arena.config is imported
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("STORAGE_BACKEND", "memory")

from decimal import Decimal

import pytest

from arena.models import Role, WalletField
from arena.settings import REFERRAL_BONUS_PERCENT, SIGNUP_BONUS, StaticSettings
from arena.storage.memory import MemoryStorage


@pytest.fixture
def storage():
    """Fresh in-memory storage with a short lock timeout."""
    return MemoryStorage(lock_timeout=1)


@pytest.fixture
def settings():
    return StaticSettings({SIGNUP_BONUS: "0", REFERRAL_BONUS_PERCENT: "5"})


@pytest.fixture
def make_user(storage):
    """Factory inserting a user with a wallet holding ``balance``."""
    async def _make_user(name="alice", balance="0", referred_by=None, role=Role.PLAYER):
        async with storage.unit_of_work() as uow:
            user = await uow.insert_user(
                name,
                f"{name}@example.com",
                "not-a-hash",
                referral_code=f"REF-{name.upper()}",
                referred_by=referred_by,
                role=role,
            )
            await uow.insert_wallet(user.id)
            if Decimal(balance) > 0:
                await uow.update_wallet(user.id, {WalletField.BALANCE: Decimal(balance)})
        return user
    return _make_user


@pytest.fixture
def make_tournament(storage):
    """Factory inserting an upcoming tournament."""
    async def _make_tournament(entry_fee="10.00", max_players=4, title="Squad Cup"):
        async with storage.unit_of_work() as uow:
            return await uow.insert_tournament(title, Decimal(entry_fee), max_players)
    return _make_tournament


@pytest.fixture
def wallet_of(storage):
    """Read a user's wallet outside any workflow."""
    async def _wallet_of(user_id):
        async with storage.unit_of_work() as uow:
            return await uow.find_wallet(user_id)
    return _wallet_of
