"""Tournament records, rosters and the join / cancel workflows."""
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

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
from arena.ledger import log, wallets
from arena.models import (
    Participant,
    Tournament,
    TournamentStatus,
    TransactionType,
    to_money,
)
from arena.storage.base import Storage, UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)


class TournamentRegistry:
    """Manages tournaments and their participants."""

    def __init__(self, storage: Storage):
        """Initialize the registry.

        Args:
            storage: Backend providing units of work.
        """
        self.storage = storage

    async def _lock(self, uow: UnitOfWork, tournament_id: int) -> Tournament:
        tournament = await uow.lock_tournament(tournament_id)
        if tournament is None:
            raise NotFound("Tournament not found")
        return tournament

    async def join_tournament(
        self,
        tournament_id: int,
        user_id: str,
        game_username: Optional[str] = None,
    ) -> Participant:
        """Pay the entry fee and take a seat in an upcoming tournament.

        The tournament row is locked before the wallet row, so concurrent
        joins queue on the tournament and each sees the previous one's
        seat count and debit.

        Args:
            tournament_id: Tournament to join.
            user_id: Joining player.
            game_username: In-game name shown to the organizers.

        Returns:
            The new participant record.

        Raises:
            NotFound: If the tournament does not exist.
            TournamentFull: If every seat is taken.
            NotJoinable: If the tournament is not upcoming.
            AlreadyJoined: If the player already holds a seat.
            InsufficientFunds: If the balance does not cover the entry fee.
        """
        async with self.storage.unit_of_work() as uow:
            tournament = await self._lock(uow, tournament_id)

            if tournament.is_full:
                raise TournamentFull()
            if tournament.status != TournamentStatus.UPCOMING:
                raise NotJoinable()

            if await uow.find_participant(tournament_id, user_id) is not None:
                raise AlreadyJoined()

            wallet = await wallets.read_balance_for_update(uow, user_id)
            fee = tournament.entry_fee
            if wallet.balance < fee:
                raise InsufficientFunds()

            if fee > 0:
                await wallets.debit(uow, user_id, fee)
            participant = await uow.insert_participant(tournament_id, user_id, game_username)
            await uow.increment_players(tournament_id)
            if fee > 0:
                await log.append(
                    uow,
                    user_id,
                    TransactionType.JOIN_FEE,
                    fee,
                    admin_note=f"Joined Tournament ID: {tournament_id}",
                )

        logger.info(f"User {user_id} joined tournament {tournament_id} (fee {fee})")
        return participant

    async def cancel_and_refund(self, tournament_id: int) -> int:
        """Cancel a tournament and refund every participant's entry fee.

        All refunds and the status change commit together.

        Returns:
            Number of participants refunded.

        Raises:
            NotFound: If the tournament does not exist.
            AlreadyCancelled: If it was cancelled before.
            InvalidTransition: If it already completed.
        """
        async with self.storage.unit_of_work() as uow:
            tournament = await self._lock(uow, tournament_id)
            if tournament.status == TournamentStatus.CANCELLED:
                raise AlreadyCancelled()
            if not tournament.status.can_become(TournamentStatus.CANCELLED):
                raise InvalidTransition(
                    f"Cannot cancel a {tournament.status.value} tournament"
                )

            fee = tournament.entry_fee
            participants = await uow.list_participants(tournament_id)
            if fee > 0:
                for participant in sorted(participants, key=lambda p: p.user_id):
                    await wallets.credit(uow, participant.user_id, fee)
                    await log.append(
                        uow,
                        participant.user_id,
                        TransactionType.REFUND,
                        fee,
                        admin_note=f"Refund for Tournament ID: {tournament_id}",
                    )

            await uow.update_tournament(tournament_id, status=TournamentStatus.CANCELLED)

        logger.info(
            f"Cancelled tournament {tournament_id}, refunded {len(participants)} "
            f"participants {fee} each"
        )
        return len(participants)

    async def create_tournament(
        self,
        title: str,
        entry_fee: Decimal,
        max_players: int,
        created_by: Optional[str] = None,
        game_type: Optional[str] = None,
        map_type: Optional[str] = None,
        prize_pool: Decimal = Decimal("0"),
        per_kill: Decimal = Decimal("0"),
        start_time: Optional[datetime] = None,
    ) -> Tournament:
        """Create an upcoming tournament with no participants."""
        title = (title or "").strip()
        if not title:
            raise InvalidInput("Title is required")
        if max_players is None or max_players <= 0:
            raise InvalidInput("max_players must be positive")
        entry_fee, prize_pool, per_kill = (
            to_money(entry_fee), to_money(prize_pool), to_money(per_kill)
        )
        if min(entry_fee, prize_pool, per_kill) < 0:
            raise InvalidInput("Fees and prizes cannot be negative")
        if start_time is not None and start_time.tzinfo is None:
            start_time = start_time.replace(tzinfo=timezone.utc)

        async with self.storage.unit_of_work() as uow:
            tournament = await uow.insert_tournament(
                title,
                entry_fee,
                max_players,
                game_type=game_type,
                map_type=map_type,
                prize_pool=prize_pool,
                per_kill=per_kill,
                start_time=start_time,
                created_by=created_by,
            )

        logger.info(f"Created tournament {tournament.id} '{title}' ({max_players} seats, fee {entry_fee})")
        return tournament

    async def update_room(self, tournament_id: int, room_id: str, room_password: str) -> Tournament:
        """Publish the game room credentials for a tournament."""
        async with self.storage.unit_of_work() as uow:
            await self._lock(uow, tournament_id)
            tournament = await uow.update_tournament(
                tournament_id, room_id=room_id, room_password=room_password
            )
        logger.info(f"Room details updated for tournament {tournament_id}")
        return tournament

    async def set_status(self, tournament_id: int, status: TournamentStatus) -> Tournament:
        """Move a tournament along its lifecycle.

        Cancellation is refused here because it must refund participants;
        use ``cancel_and_refund``.
        """
        status = TournamentStatus(status)
        if status == TournamentStatus.CANCELLED:
            raise InvalidInput("Use the cancel operation to cancel a tournament")
        async with self.storage.unit_of_work() as uow:
            tournament = await self._lock(uow, tournament_id)
            if not tournament.status.can_become(status):
                raise InvalidTransition(
                    f"Cannot move tournament from {tournament.status.value} to {status.value}"
                )
            tournament = await uow.update_tournament(tournament_id, status=status)
        logger.info(f"Tournament {tournament_id} is now {status.value}")
        return tournament

    async def list_tournaments(self) -> list[Tournament]:
        async with self.storage.unit_of_work() as uow:
            return await uow.list_tournaments()

    async def get_tournament(self, tournament_id: int) -> Tournament:
        async with self.storage.unit_of_work() as uow:
            tournament = await uow.find_tournament(tournament_id)
        if tournament is None:
            raise NotFound("Tournament not found")
        return tournament

    async def participants(self, tournament_id: int) -> list[Participant]:
        async with self.storage.unit_of_work() as uow:
            return await uow.list_participants(tournament_id)

    async def is_participant(self, tournament_id: int, user_id: str) -> bool:
        async with self.storage.unit_of_work() as uow:
            return await uow.find_participant(tournament_id, user_id) is not None

    async def my_tournaments(self, user_id: str) -> list[dict]:
        """Tournaments a user joined, with room details and their game name."""
        async with self.storage.unit_of_work() as uow:
            pairs = await uow.list_user_tournaments(user_id)
        return [
            {**t.to_dict(include_room=True), "game_username": p.game_username}
            for t, p in pairs
        ]
