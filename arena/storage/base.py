"""Unit-of-work storage interface.

A ``UnitOfWork`` is one all-or-nothing transaction. Every ``lock_*`` method
takes an exclusive row lock that is held until the unit commits or aborts;
every mutating method locks the row it touches. Raising out of
``Storage.unit_of_work()`` discards all mutations made through the unit.

Lock order used by the workflows: tournament, transaction, wallets in
ascending user id. Redemption locks its code before the wallet; no other
workflow takes code locks.
"""
from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional

from arena.models import (
    Participant,
    RedeemCode,
    Role,
    Tournament,
    TournamentStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    Wallet,
    WalletField,
)

# Tournament columns that may be rewritten by update_tournament
TOURNAMENT_MUTABLE_FIELDS = frozenset({"status", "room_id", "room_password"})


class UnitOfWork(ABC):
    """Row-level primitives available inside one atomic unit."""

    # Users

    @abstractmethod
    async def insert_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        referral_code: str,
        phone: Optional[str] = None,
        referred_by: Optional[str] = None,
        role: Role = Role.PLAYER,
    ) -> User:
        """Insert a user. Raises UserExists on a duplicate username or email."""

    @abstractmethod
    async def find_user(self, user_id: str) -> Optional[User]: ...

    @abstractmethod
    async def find_user_by_email(self, email: str) -> Optional[User]: ...

    @abstractmethod
    async def find_user_by_referral_code(self, code: str) -> Optional[User]: ...

    @abstractmethod
    async def user_exists(self, username: str, email: str) -> bool:
        """True if either the username or the email is taken (case-insensitive)."""

    @abstractmethod
    async def update_user(
        self,
        user_id: str,
        role: Optional[Role] = None,
        is_banned: Optional[bool] = None,
    ) -> Optional[User]: ...

    # Wallets

    @abstractmethod
    async def insert_wallet(self, user_id: str) -> Wallet: ...

    @abstractmethod
    async def find_wallet(self, user_id: str) -> Optional[Wallet]: ...

    @abstractmethod
    async def lock_wallet(self, user_id: str) -> Optional[Wallet]: ...

    @abstractmethod
    async def update_wallet(self, user_id: str, deltas: Mapping[WalletField, Decimal]) -> Wallet:
        """Add each delta to its column in a single row update.

        Raises:
            NotFound: If the wallet does not exist.
            InsufficientFunds: If any column would become negative.
        """

    # Transactions

    @abstractmethod
    async def insert_transaction(
        self,
        user_id: str,
        type: TransactionType,
        amount: Decimal,
        status: TransactionStatus,
        payment_method: Optional[str] = None,
        payment_proof_url: Optional[str] = None,
        reference: Optional[str] = None,
        admin_note: Optional[str] = None,
    ) -> Transaction: ...

    @abstractmethod
    async def lock_transaction(self, transaction_id: int) -> Optional[Transaction]: ...

    @abstractmethod
    async def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        admin_note: Optional[str],
    ) -> Transaction:
        """Move a pending transaction to ``status``.

        Raises:
            AlreadyProcessed: If the row is no longer pending.
        """

    @abstractmethod
    async def list_transactions(self, user_id: str) -> list[Transaction]:
        """A user's transactions, newest first."""

    @abstractmethod
    async def list_pending_transactions(self) -> list[tuple[Transaction, User]]:
        """Pending transactions with their owners, oldest first."""

    # Tournaments

    @abstractmethod
    async def insert_tournament(
        self,
        title: str,
        entry_fee: Decimal,
        max_players: int,
        game_type: Optional[str] = None,
        map_type: Optional[str] = None,
        prize_pool: Decimal = Decimal("0"),
        per_kill: Decimal = Decimal("0"),
        start_time: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Tournament: ...

    @abstractmethod
    async def find_tournament(self, tournament_id: int) -> Optional[Tournament]: ...

    @abstractmethod
    async def lock_tournament(self, tournament_id: int) -> Optional[Tournament]: ...

    @abstractmethod
    async def list_tournaments(self) -> list[Tournament]:
        """All tournaments, latest start time first."""

    @abstractmethod
    async def update_tournament(self, tournament_id: int, **fields) -> Tournament:
        """Rewrite columns listed in TOURNAMENT_MUTABLE_FIELDS."""

    @abstractmethod
    async def increment_players(self, tournament_id: int) -> Tournament:
        """Add one to current_players. Raises TournamentFull past capacity."""

    @abstractmethod
    async def find_participant(self, tournament_id: int, user_id: str) -> Optional[Participant]: ...

    @abstractmethod
    async def insert_participant(
        self,
        tournament_id: int,
        user_id: str,
        game_username: Optional[str],
    ) -> Participant:
        """Raises AlreadyJoined if the (tournament, user) pair exists."""

    @abstractmethod
    async def list_participants(self, tournament_id: int) -> list[Participant]:
        """Participants ordered by user id."""

    @abstractmethod
    async def list_user_tournaments(self, user_id: str) -> list[tuple[Tournament, Participant]]: ...

    # Redeem codes

    @abstractmethod
    async def insert_redeem_code(
        self,
        code: str,
        amount: Decimal,
        max_uses: int,
        expires_at: Optional[datetime] = None,
    ) -> RedeemCode:
        """Raises DuplicateCode if the code exists."""

    @abstractmethod
    async def lock_redeem_code(self, code: str) -> Optional[RedeemCode]: ...

    @abstractmethod
    async def set_redeem_code_active(self, code_id: int, is_active: bool) -> RedeemCode: ...

    @abstractmethod
    async def increment_code_uses(self, code_id: int) -> RedeemCode:
        """Add one to current_uses. Raises LimitReached past max_uses."""

    @abstractmethod
    async def has_redeemed(self, user_id: str, code_id: int) -> bool: ...

    @abstractmethod
    async def insert_redeem_history(self, user_id: str, code_id: int) -> None:
        """Raises AlreadyRedeemed if the (user, code) pair exists."""

    # Settings

    @abstractmethod
    async def get_setting(self, key: str) -> Optional[str]: ...


class Storage(ABC):
    """Factory for units of work over one backend."""

    async def connect(self) -> None:
        """Acquire backend resources."""

    async def disconnect(self) -> None:
        """Release backend resources."""

    @abstractmethod
    def unit_of_work(self) -> AbstractAsyncContextManager[UnitOfWork]:
        """Open an atomic unit of work.

        Usage:
            async with storage.unit_of_work() as uow:
                wallet = await uow.lock_wallet(user_id)
        """
