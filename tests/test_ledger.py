"""Tests for wallet primitives and the transaction log."""
from decimal import Decimal

import pytest

from arena.errors import AlreadyProcessed, InsufficientFunds, InvalidInput, NotFound
from arena.ledger import log, wallets
from arena.errors import AmountTooLarge
from arena.models import (
    MAX_AMOUNT,
    TransactionStatus,
    TransactionType,
    WalletField,
    positive_money,
    to_money,
)


class TestMoney:
    """Test money conversion helpers."""

    def test_to_money_rounds_to_cents(self):
        """Test half-up rounding to two places."""
        assert to_money("10.005") == Decimal("10.01")
        assert to_money(3) == Decimal("3.00")

    def test_to_money_float_uses_repr(self):
        """Test floats convert without binary noise."""
        assert to_money(0.1) == Decimal("0.10")

    def test_to_money_rejects_garbage(self):
        """Test non-numeric and non-finite input."""
        with pytest.raises(InvalidInput):
            to_money("ten")
        with pytest.raises(InvalidInput):
            to_money("NaN")

    def test_positive_money(self):
        """Test zero and negatives are refused."""
        with pytest.raises(InvalidInput):
            positive_money("0")
        with pytest.raises(InvalidInput):
            positive_money("-1")

    def test_to_money_ceiling(self):
        """Test amounts must fit a money column."""
        assert to_money("9999999999.994") == MAX_AMOUNT
        with pytest.raises(AmountTooLarge):
            to_money("9999999999.995")
        with pytest.raises(AmountTooLarge):
            positive_money("1e30")


class TestWallets:
    """Test wallet mutations."""

    @pytest.mark.asyncio
    async def test_credit_and_debit(self, storage, make_user):
        """Test plain credits and debits move balance only."""
        user = await make_user(balance="20")

        async with storage.unit_of_work() as uow:
            await wallets.credit(uow, user.id, Decimal("5"))
            wallet = await wallets.debit(uow, user.id, Decimal("7.50"))

        assert wallet.balance == Decimal("17.50")
        assert wallet.bonus_balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_bonus_credit_tracks_bonus_balance(self, storage, make_user):
        """Test bonus credits raise both balance and bonus_balance."""
        user = await make_user()

        async with storage.unit_of_work() as uow:
            wallet = await wallets.credit(uow, user.id, Decimal("3"), bonus=True)

        assert wallet.balance == Decimal("3")
        assert wallet.bonus_balance == Decimal("3")

    @pytest.mark.asyncio
    async def test_debit_overdraft(self, storage, make_user, wallet_of):
        """Test overdraft raises and the unit leaves no change."""
        user = await make_user(balance="2")

        with pytest.raises(InsufficientFunds):
            async with storage.unit_of_work() as uow:
                await wallets.debit(uow, user.id, Decimal("2.01"))

        assert (await wallet_of(user.id)).balance == Decimal("2")

    @pytest.mark.asyncio
    async def test_apply_multiple_fields(self, storage, make_user):
        """Test several fields change in one update."""
        user = await make_user()

        async with storage.unit_of_work() as uow:
            wallet = await wallets.apply(uow, user.id, {
                WalletField.BALANCE: Decimal("40"),
                WalletField.TOTAL_DEPOSITED: Decimal("40"),
            })

        assert wallet.balance == Decimal("40")
        assert wallet.total_deposited == Decimal("40")

    @pytest.mark.asyncio
    async def test_adjust_total_withdrawn(self, storage, make_user):
        """Test adjusting a non-balance field."""
        user = await make_user(balance="10")

        async with storage.unit_of_work() as uow:
            wallet = await wallets.adjust_balance(
                uow, user.id, Decimal("4"), WalletField.TOTAL_WITHDRAWN
            )

        assert wallet.balance == Decimal("10")
        assert wallet.total_withdrawn == Decimal("4")

    @pytest.mark.asyncio
    async def test_missing_wallet(self, storage):
        """Test reading an unknown wallet for update."""
        with pytest.raises(NotFound):
            async with storage.unit_of_work() as uow:
                await wallets.read_balance_for_update(uow, "no-such-user")


class TestTransactionLog:
    """Test transaction recording and settlement."""

    @pytest.mark.asyncio
    async def test_append_rejects_non_positive(self, storage, make_user):
        """Test amounts must be positive."""
        user = await make_user()

        with pytest.raises(InvalidInput):
            async with storage.unit_of_work() as uow:
                await log.append(uow, user.id, TransactionType.REFUND, Decimal("0"))

    @pytest.mark.asyncio
    async def test_transition_once(self, storage, make_user):
        """Test a pending row settles exactly once."""
        user = await make_user()
        async with storage.unit_of_work() as uow:
            tx = await log.append(
                uow, user.id, TransactionType.DEPOSIT, Decimal("10"),
                status=TransactionStatus.PENDING,
            )

        async with storage.unit_of_work() as uow:
            settled = await log.transition(uow, tx.id, TransactionStatus.COMPLETED, "ok")

        assert settled.status == TransactionStatus.COMPLETED
        assert settled.admin_note == "ok"
        assert settled.updated_at is not None

        with pytest.raises(AlreadyProcessed):
            async with storage.unit_of_work() as uow:
                await log.transition(uow, tx.id, TransactionStatus.REJECTED)

    @pytest.mark.asyncio
    async def test_transition_to_pending_refused(self, storage, make_user):
        """Test pending is not a valid target status."""
        user = await make_user()
        async with storage.unit_of_work() as uow:
            tx = await log.append(
                uow, user.id, TransactionType.DEPOSIT, Decimal("10"),
                status=TransactionStatus.PENDING,
            )

        with pytest.raises(InvalidInput):
            async with storage.unit_of_work() as uow:
                await log.transition(uow, tx.id, TransactionStatus.PENDING)

    @pytest.mark.asyncio
    async def test_lock_unknown_transaction(self, storage):
        """Test locking a missing transaction."""
        with pytest.raises(NotFound):
            async with storage.unit_of_work() as uow:
                await log.lock(uow, 999)

    @pytest.mark.asyncio
    async def test_history_newest_first(self, storage, make_user):
        """Test history ordering and ownership."""
        alice = await make_user("alice")
        bob = await make_user("bob")
        async with storage.unit_of_work() as uow:
            first = await log.append(uow, alice.id, TransactionType.REFUND, Decimal("1"))
            await log.append(uow, bob.id, TransactionType.REFUND, Decimal("2"))
            second = await log.append(uow, alice.id, TransactionType.REFUND, Decimal("3"))

        async with storage.unit_of_work() as uow:
            rows = await log.history(uow, alice.id)

        assert [t.id for t in rows] == [second.id, first.id]

    @pytest.mark.asyncio
    async def test_pending_includes_owner(self, storage, make_user):
        """Test pending rows carry the owner's contact details."""
        user = await make_user("carol")
        async with storage.unit_of_work() as uow:
            await log.append(
                uow, user.id, TransactionType.WITHDRAWAL, Decimal("5"),
                status=TransactionStatus.PENDING,
            )
            await log.append(uow, user.id, TransactionType.REFUND, Decimal("1"))

        async with storage.unit_of_work() as uow:
            rows = await log.pending(uow)

        assert len(rows) == 1
        assert rows[0]["username"] == "carol"
        assert rows[0]["email"] == "carol@example.com"
        assert rows[0]["type"] == "withdrawal"
