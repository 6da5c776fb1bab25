"""Tests for tournament join and cancel workflows."""
import asyncio
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

import pytest

from arena.errors import (
    AlreadyCancelled,
    AlreadyJoined,
    InsufficientFunds,
    InvalidInput,
    InvalidTransition,
    NotFound,
    NotJoinable,
    TournamentFull,
)
from arena.models import TournamentStatus, TransactionType
from arena.storage.memory import MemoryUnitOfWork
from arena.tournaments import TournamentRegistry


@pytest.fixture
def registry(storage):
    return TournamentRegistry(storage)


async def transactions_of(storage, user_id):
    async with storage.unit_of_work() as uow:
        return await uow.list_transactions(user_id)


class TestJoinTournament:
    """Test paying and taking a seat."""

    @pytest.mark.asyncio
    async def test_join_debits_fee(self, storage, registry, make_user, make_tournament, wallet_of):
        """Test a join debits the fee, seats the player and logs the fee."""
        user = await make_user(balance="25")
        tournament = await make_tournament(entry_fee="10.00")

        participant = await registry.join_tournament(tournament.id, user.id, "ace")

        assert participant.game_username == "ace"
        assert (await wallet_of(user.id)).balance == Decimal("15")
        assert storage.tournaments[tournament.id].current_players == 1
        txs = await transactions_of(storage, user.id)
        assert len(txs) == 1
        assert txs[0].type == TransactionType.JOIN_FEE
        assert txs[0].amount == Decimal("10.00")
        assert txs[0].admin_note == f"Joined Tournament ID: {tournament.id}"

    @pytest.mark.asyncio
    async def test_free_tournament_records_nothing(self, storage, registry, make_user, make_tournament, wallet_of):
        """Test a free join seats the player without a transaction."""
        user = await make_user()
        tournament = await make_tournament(entry_fee="0")

        await registry.join_tournament(tournament.id, user.id)

        assert (await wallet_of(user.id)).balance == Decimal("0")
        assert await transactions_of(storage, user.id) == []
        assert await registry.is_participant(tournament.id, user.id)

    @pytest.mark.asyncio
    async def test_insufficient_funds(self, storage, registry, make_user, make_tournament, wallet_of):
        """Test a short balance leaves no trace."""
        user = await make_user(balance="9.99")
        tournament = await make_tournament(entry_fee="10.00")

        with pytest.raises(InsufficientFunds):
            await registry.join_tournament(tournament.id, user.id)

        assert (await wallet_of(user.id)).balance == Decimal("9.99")
        assert storage.tournaments[tournament.id].current_players == 0
        assert not await registry.is_participant(tournament.id, user.id)

    @pytest.mark.asyncio
    async def test_already_joined(self, registry, make_user, make_tournament, wallet_of):
        """Test a second join by the same player."""
        user = await make_user(balance="50")
        tournament = await make_tournament()

        await registry.join_tournament(tournament.id, user.id)
        with pytest.raises(AlreadyJoined):
            await registry.join_tournament(tournament.id, user.id)

        assert (await wallet_of(user.id)).balance == Decimal("40")

    @pytest.mark.asyncio
    async def test_unknown_tournament(self, registry, make_user):
        """Test joining a missing tournament."""
        user = await make_user(balance="50")

        with pytest.raises(NotFound):
            await registry.join_tournament(404, user.id)

    @pytest.mark.asyncio
    async def test_not_upcoming(self, registry, make_user, make_tournament):
        """Test only upcoming tournaments accept players."""
        user = await make_user(balance="50")
        tournament = await make_tournament()
        await registry.set_status(tournament.id, TournamentStatus.ONGOING)

        with pytest.raises(NotJoinable):
            await registry.join_tournament(tournament.id, user.id)

    @pytest.mark.asyncio
    async def test_full_reported_before_status(self, registry, make_user, make_tournament):
        """Test a full tournament reports full even when no longer upcoming."""
        first = await make_user("first", balance="50")
        late = await make_user("late", balance="50")
        tournament = await make_tournament(max_players=1)
        await registry.join_tournament(tournament.id, first.id)
        await registry.set_status(tournament.id, TournamentStatus.ONGOING)

        with pytest.raises(TournamentFull):
            await registry.join_tournament(tournament.id, late.id)

    @pytest.mark.asyncio
    async def test_failure_mid_join_rolls_back(self, storage, registry, make_user, make_tournament, wallet_of):
        """Test a storage failure after the debit undoes the debit."""
        user = await make_user(balance="30")
        tournament = await make_tournament()

        with patch.object(MemoryUnitOfWork, "increment_players", side_effect=RuntimeError("db down")):
            with pytest.raises(RuntimeError):
                await registry.join_tournament(tournament.id, user.id)

        assert (await wallet_of(user.id)).balance == Decimal("30")
        assert not await registry.is_participant(tournament.id, user.id)
        assert await transactions_of(storage, user.id) == []


class TestConcurrentJoins:
    """Test capacity and duplicates under concurrency."""

    @pytest.mark.asyncio
    async def test_capacity_never_exceeded(self, storage, registry, make_user, make_tournament, wallet_of):
        """Test N concurrent joins into C seats seat exactly C players."""
        users = [await make_user(f"player{i}", balance="10") for i in range(8)]
        tournament = await make_tournament(entry_fee="10.00", max_players=3)

        results = await asyncio.gather(
            *(registry.join_tournament(tournament.id, u.id) for u in users),
            return_exceptions=True,
        )

        joined = [r for r in results if not isinstance(r, Exception)]
        refused = [r for r in results if isinstance(r, Exception)]
        assert len(joined) == 3
        assert all(isinstance(r, TournamentFull) for r in refused)
        assert storage.tournaments[tournament.id].current_players == 3
        assert len(await registry.participants(tournament.id)) == 3

        balances = [(await wallet_of(u.id)).balance for u in users]
        assert balances.count(Decimal("0")) == 3
        assert balances.count(Decimal("10")) == 5

    @pytest.mark.asyncio
    async def test_same_player_twice_concurrently(self, registry, make_user, make_tournament, wallet_of):
        """Test concurrent duplicate joins charge once."""
        user = await make_user(balance="100")
        tournament = await make_tournament(entry_fee="10.00")

        results = await asyncio.gather(
            registry.join_tournament(tournament.id, user.id),
            registry.join_tournament(tournament.id, user.id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyJoined) for r in results) == 1
        assert (await wallet_of(user.id)).balance == Decimal("90")

    @pytest.mark.asyncio
    async def test_one_wallet_two_tournaments(self, registry, make_user, make_tournament, wallet_of):
        """Test concurrent joins sharing a wallet cannot overdraw it."""
        user = await make_user(balance="10")
        first = await make_tournament(entry_fee="10.00")
        second = await make_tournament(entry_fee="10.00")

        results = await asyncio.gather(
            registry.join_tournament(first.id, user.id),
            registry.join_tournament(second.id, user.id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InsufficientFunds) for r in results) == 1
        assert (await wallet_of(user.id)).balance == Decimal("0")


class TestCancelAndRefund:
    """Test cancellation with refunds."""

    @pytest.mark.asyncio
    async def test_refunds_every_participant(self, storage, registry, make_user, make_tournament, wallet_of):
        """Test each participant gets the fee back with a refund record."""
        users = [await make_user(f"p{i}", balance="15") for i in range(3)]
        tournament = await make_tournament(entry_fee="10.00")
        for u in users:
            await registry.join_tournament(tournament.id, u.id)

        refunded = await registry.cancel_and_refund(tournament.id)

        assert refunded == 3
        assert storage.tournaments[tournament.id].status == TournamentStatus.CANCELLED
        for u in users:
            assert (await wallet_of(u.id)).balance == Decimal("15")
            latest = (await transactions_of(storage, u.id))[0]
            assert latest.type == TransactionType.REFUND
            assert latest.admin_note == f"Refund for Tournament ID: {tournament.id}"

    @pytest.mark.asyncio
    async def test_cancel_twice(self, registry, make_user, make_tournament, wallet_of):
        """Test a second cancel refunds nothing."""
        user = await make_user(balance="10")
        tournament = await make_tournament(entry_fee="10.00")
        await registry.join_tournament(tournament.id, user.id)
        await registry.cancel_and_refund(tournament.id)

        with pytest.raises(AlreadyCancelled):
            await registry.cancel_and_refund(tournament.id)

        assert (await wallet_of(user.id)).balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_concurrent_cancels_refund_once(self, registry, make_user, make_tournament, wallet_of):
        """Test racing cancels refund exactly once."""
        user = await make_user(balance="10")
        tournament = await make_tournament(entry_fee="10.00")
        await registry.join_tournament(tournament.id, user.id)

        results = await asyncio.gather(
            registry.cancel_and_refund(tournament.id),
            registry.cancel_and_refund(tournament.id),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyCancelled) for r in results) == 1
        assert (await wallet_of(user.id)).balance == Decimal("10")

    @pytest.mark.asyncio
    async def test_cancel_completed_refused(self, registry, make_tournament):
        """Test a completed tournament cannot be cancelled."""
        tournament = await make_tournament()
        await registry.set_status(tournament.id, TournamentStatus.ONGOING)
        await registry.set_status(tournament.id, TournamentStatus.COMPLETED)

        with pytest.raises(InvalidTransition):
            await registry.cancel_and_refund(tournament.id)

    @pytest.mark.asyncio
    async def test_cancel_empty(self, registry, make_tournament):
        """Test cancelling with no participants."""
        tournament = await make_tournament()

        assert await registry.cancel_and_refund(tournament.id) == 0


class TestTournamentAdmin:
    """Test creation, room details and status changes."""

    @pytest.mark.asyncio
    async def test_create_tournament(self, registry):
        """Test a new tournament starts upcoming and empty."""
        tournament = await registry.create_tournament(
            "Night Cup", "12.5", 50, map_type="Erangel", start_time=datetime(2026, 1, 1, 18, 0)
        )

        assert tournament.status == TournamentStatus.UPCOMING
        assert tournament.current_players == 0
        assert tournament.entry_fee == Decimal("12.50")
        assert tournament.start_time.tzinfo is not None

    @pytest.mark.asyncio
    async def test_create_validation(self, registry):
        """Test required fields and bounds."""
        with pytest.raises(InvalidInput):
            await registry.create_tournament("  ", "0", 10)
        with pytest.raises(InvalidInput):
            await registry.create_tournament("Cup", "0", 0)
        with pytest.raises(InvalidInput):
            await registry.create_tournament("Cup", "-1", 10)

    @pytest.mark.asyncio
    async def test_status_transitions(self, registry, make_tournament):
        """Test the lifecycle only moves forward."""
        tournament = await make_tournament()

        with pytest.raises(InvalidTransition):
            await registry.set_status(tournament.id, TournamentStatus.COMPLETED)
        with pytest.raises(InvalidInput):
            await registry.set_status(tournament.id, TournamentStatus.CANCELLED)

        updated = await registry.set_status(tournament.id, TournamentStatus.ONGOING)
        assert updated.status == TournamentStatus.ONGOING

    @pytest.mark.asyncio
    async def test_room_visible_to_participants(self, registry, make_user, make_tournament):
        """Test joined players see room credentials in their list."""
        user = await make_user(balance="10")
        tournament = await make_tournament()
        await registry.join_tournament(tournament.id, user.id, "ace")
        await registry.update_room(tournament.id, "R-77", "secret")

        mine = await registry.my_tournaments(user.id)
        public = (await registry.get_tournament(tournament.id)).to_dict()

        assert mine[0]["room_id"] == "R-77"
        assert mine[0]["room_password"] == "secret"
        assert mine[0]["game_username"] == "ace"
        assert "room_password" not in public
