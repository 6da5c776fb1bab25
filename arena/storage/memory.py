"""In-process storage backend.

Tables are dicts guarded by per-row ``asyncio.Lock`` objects. A unit of work
keeps every lock it takes until it ends. Its writes are staged privately and
published to the shared tables in one step on commit, so other units only
ever read committed rows. Unique keys (a participant's (tournament, user)
pair, a redemption's (user, code) pair, usernames and emails) are lockable
rows of their own, which closes the gap between an existence check and the
insert.
"""
import asyncio
import itertools
import uuid
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator, Hashable, Mapping, Optional

from arena.config import config
from arena.errors import (
    AlreadyJoined,
    AlreadyProcessed,
    AlreadyRedeemed,
    AmountTooLarge,
    DuplicateCode,
    InsufficientFunds,
    LimitReached,
    LockTimeout,
    NotFound,
    TournamentFull,
    UserExists,
)
from arena.models import (
    MAX_AMOUNT,
    ZERO,
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
    utcnow,
)
from arena.storage.base import TOURNAMENT_MUTABLE_FIELDS, Storage, UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)


class MemoryStorage(Storage):
    """Dict-backed storage with row locks and rollback.

    The table attributes hold committed rows only.
    """

    def __init__(self, lock_timeout: Optional[float] = None, settings: Optional[Mapping[str, str]] = None):
        self.lock_timeout = config.lock_timeout_seconds if lock_timeout is None else lock_timeout
        self.users: dict[str, User] = {}
        self.wallets: dict[str, Wallet] = {}
        self.transactions: dict[int, Transaction] = {}
        self.tournaments: dict[int, Tournament] = {}
        self.participants: dict[tuple[int, str], Participant] = {}
        self.redeem_codes: dict[int, RedeemCode] = {}
        self.redeem_history: dict[tuple[str, int], datetime] = {}
        self.settings: dict[str, str] = dict(settings or {})
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._sequences = defaultdict(lambda: itertools.count(1))

    def next_id(self, table: str) -> int:
        return next(self._sequences[table])

    def lock_for(self, key: Hashable) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator["MemoryUnitOfWork"]:
        uow = MemoryUnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            raise
        else:
            uow.commit()
        finally:
            # After commit, so the next lock holder reads the published rows
            uow.release()


class MemoryUnitOfWork(UnitOfWork):
    """One atomic unit over a MemoryStorage."""

    def __init__(self, storage: MemoryStorage):
        self._storage = storage
        self._held: dict[Hashable, asyncio.Lock] = {}
        self._staged: dict[str, dict] = {}

    # Unit lifecycle

    async def _lock(self, *key: Hashable) -> None:
        """Take an exclusive lock on ``key`` for the rest of the unit."""
        if key in self._held:
            return
        lock = self._storage.lock_for(key)
        acquire = asyncio.ensure_future(lock.acquire())
        done, _ = await asyncio.wait({acquire}, timeout=self._storage.lock_timeout)
        if acquire not in done:
            acquire.cancel()
            await asyncio.wait({acquire})
            if not acquire.cancelled():
                # Granted while the cancel was in flight
                lock.release()
            logger.warning(f"Lock wait on {key} exceeded {self._storage.lock_timeout}s")
            raise LockTimeout()
        self._held[key] = lock

    def _get(self, table: str, key: Hashable):
        staged = self._staged.get(table)
        if staged and key in staged:
            return staged[key]
        return getattr(self._storage, table).get(key)

    def _rows(self, table: str) -> dict:
        """Committed rows of ``table`` overlaid with this unit's writes."""
        committed = getattr(self._storage, table)
        staged = self._staged.get(table)
        return {**committed, **staged} if staged else committed

    def _write(self, table: str, key: Hashable, value) -> None:
        self._staged.setdefault(table, {})[key] = value

    def commit(self) -> None:
        for table, rows in self._staged.items():
            getattr(self._storage, table).update(rows)
        self._staged.clear()

    def rollback(self) -> None:
        dropped = sum(len(rows) for rows in self._staged.values())
        if dropped:
            logger.debug(f"Discarded {dropped} staged row writes")
        self._staged.clear()

    def release(self) -> None:
        for lock in self._held.values():
            lock.release()
        self._held.clear()

    async def _io(self) -> None:
        # Yield to the loop the way a network round trip would
        await asyncio.sleep(0)

    # Users

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
        await self._lock("username", username.lower())
        await self._lock("email", email.lower())
        if await self.user_exists(username, email):
            raise UserExists()
        user = User(
            id=str(uuid.uuid4()),
            username=username,
            email=email.lower(),
            password_hash=password_hash,
            role=role,
            is_banned=False,
            referral_code=referral_code,
            referred_by=referred_by,
            phone=phone,
        )
        self._write("users", user.id, user)
        return user

    async def find_user(self, user_id: str) -> Optional[User]:
        await self._io()
        return self._get("users", user_id)

    async def find_user_by_email(self, email: str) -> Optional[User]:
        await self._io()
        email = email.lower()
        return next((u for u in self._rows("users").values() if u.email == email), None)

    async def find_user_by_referral_code(self, code: str) -> Optional[User]:
        await self._io()
        return next((u for u in self._rows("users").values() if u.referral_code == code), None)

    async def user_exists(self, username: str, email: str) -> bool:
        await self._io()
        username, email = username.lower(), email.lower()
        return any(
            u.username.lower() == username or u.email == email
            for u in self._rows("users").values()
        )

    async def update_user(
        self,
        user_id: str,
        role: Optional[Role] = None,
        is_banned: Optional[bool] = None,
    ) -> Optional[User]:
        await self._lock("user", user_id)
        user = self._get("users", user_id)
        if user is None:
            return None
        changes = {}
        if role is not None:
            changes["role"] = role
        if is_banned is not None:
            changes["is_banned"] = is_banned
        user = replace(user, **changes)
        self._write("users", user_id, user)
        return user

    # Wallets

    async def insert_wallet(self, user_id: str) -> Wallet:
        await self._lock("wallet", user_id)
        wallet = Wallet(user_id=user_id)
        self._write("wallets", user_id, wallet)
        return wallet

    async def find_wallet(self, user_id: str) -> Optional[Wallet]:
        await self._io()
        return self._get("wallets", user_id)

    async def lock_wallet(self, user_id: str) -> Optional[Wallet]:
        await self._lock("wallet", user_id)
        await self._io()
        return self._get("wallets", user_id)

    async def update_wallet(self, user_id: str, deltas: Mapping[WalletField, Decimal]) -> Wallet:
        wallet = await self.lock_wallet(user_id)
        if wallet is None:
            raise NotFound("Wallet not found")
        changes = {f.value: wallet.get(f) + delta for f, delta in deltas.items()}
        if any(value < 0 for value in changes.values()):
            raise InsufficientFunds()
        if any(value > MAX_AMOUNT for value in changes.values()):
            raise AmountTooLarge()
        wallet = replace(wallet, updated_at=utcnow(), **changes)
        self._write("wallets", user_id, wallet)
        return wallet

    # Transactions

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
    ) -> Transaction:
        await self._io()
        if amount > MAX_AMOUNT:
            raise AmountTooLarge()
        tx = Transaction(
            id=self._storage.next_id("transactions"),
            user_id=user_id,
            type=type,
            amount=amount,
            status=status,
            payment_method=payment_method,
            payment_proof_url=payment_proof_url,
            reference=reference,
            admin_note=admin_note,
        )
        self._write("transactions", tx.id, tx)
        return tx

    async def lock_transaction(self, transaction_id: int) -> Optional[Transaction]:
        await self._lock("transaction", transaction_id)
        await self._io()
        return self._get("transactions", transaction_id)

    async def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        admin_note: Optional[str],
    ) -> Transaction:
        tx = await self.lock_transaction(transaction_id)
        if tx is None:
            raise NotFound("Transaction not found")
        if tx.status != TransactionStatus.PENDING:
            raise AlreadyProcessed()
        tx = replace(tx, status=status, admin_note=admin_note, updated_at=utcnow())
        self._write("transactions", transaction_id, tx)
        return tx

    async def list_transactions(self, user_id: str) -> list[Transaction]:
        await self._io()
        rows = [t for t in self._rows("transactions").values() if t.user_id == user_id]
        return sorted(rows, key=lambda t: t.id, reverse=True)

    async def list_pending_transactions(self) -> list[tuple[Transaction, User]]:
        await self._io()
        rows = sorted(
            (t for t in self._rows("transactions").values() if t.status == TransactionStatus.PENDING),
            key=lambda t: t.id,
        )
        return [(t, self._get("users", t.user_id)) for t in rows]

    # Tournaments

    async def insert_tournament(
        self,
        title: str,
        entry_fee: Decimal,
        max_players: int,
        game_type: Optional[str] = None,
        map_type: Optional[str] = None,
        prize_pool: Decimal = ZERO,
        per_kill: Decimal = ZERO,
        start_time: Optional[datetime] = None,
        created_by: Optional[str] = None,
    ) -> Tournament:
        await self._io()
        if max(entry_fee, prize_pool, per_kill) > MAX_AMOUNT:
            raise AmountTooLarge()
        tournament = Tournament(
            id=self._storage.next_id("tournaments"),
            title=title,
            entry_fee=entry_fee,
            max_players=max_players,
            game_type=game_type,
            map_type=map_type,
            prize_pool=prize_pool,
            per_kill=per_kill,
            start_time=start_time,
            created_by=created_by,
        )
        self._write("tournaments", tournament.id, tournament)
        return tournament

    async def find_tournament(self, tournament_id: int) -> Optional[Tournament]:
        await self._io()
        return self._get("tournaments", tournament_id)

    async def lock_tournament(self, tournament_id: int) -> Optional[Tournament]:
        await self._lock("tournament", tournament_id)
        await self._io()
        return self._get("tournaments", tournament_id)

    async def list_tournaments(self) -> list[Tournament]:
        await self._io()
        return sorted(
            self._rows("tournaments").values(),
            key=lambda t: (t.start_time is not None, t.start_time or utcnow(), t.id),
            reverse=True,
        )

    async def update_tournament(self, tournament_id: int, **fields) -> Tournament:
        unknown = set(fields) - TOURNAMENT_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update tournament fields: {sorted(unknown)}")
        tournament = await self.lock_tournament(tournament_id)
        if tournament is None:
            raise NotFound("Tournament not found")
        if "status" in fields:
            fields["status"] = TournamentStatus(fields["status"])
        tournament = replace(tournament, **fields)
        self._write("tournaments", tournament_id, tournament)
        return tournament

    async def increment_players(self, tournament_id: int) -> Tournament:
        tournament = await self.lock_tournament(tournament_id)
        if tournament is None:
            raise NotFound("Tournament not found")
        if tournament.is_full:
            raise TournamentFull()
        tournament = replace(tournament, current_players=tournament.current_players + 1)
        self._write("tournaments", tournament_id, tournament)
        return tournament

    async def find_participant(self, tournament_id: int, user_id: str) -> Optional[Participant]:
        await self._io()
        return self._get("participants", (tournament_id, user_id))

    async def insert_participant(
        self,
        tournament_id: int,
        user_id: str,
        game_username: Optional[str],
    ) -> Participant:
        key = (tournament_id, user_id)
        await self._lock("participant", *key)
        if self._get("participants", key) is not None:
            raise AlreadyJoined()
        participant = Participant(
            id=self._storage.next_id("participants"),
            tournament_id=tournament_id,
            user_id=user_id,
            game_username=game_username,
        )
        self._write("participants", key, participant)
        return participant

    async def list_participants(self, tournament_id: int) -> list[Participant]:
        await self._io()
        rows = [p for (tid, _), p in self._rows("participants").items() if tid == tournament_id]
        return sorted(rows, key=lambda p: p.user_id)

    async def list_user_tournaments(self, user_id: str) -> list[tuple[Tournament, Participant]]:
        await self._io()
        pairs = [
            (self._get("tournaments", tid), p)
            for (tid, uid), p in self._rows("participants").items()
            if uid == user_id
        ]
        return sorted(pairs, key=lambda pair: pair[0].id, reverse=True)

    # Redeem codes

    async def insert_redeem_code(
        self,
        code: str,
        amount: Decimal,
        max_uses: int,
        expires_at: Optional[datetime] = None,
    ) -> RedeemCode:
        await self._lock("code", code)
        if any(c.code == code for c in self._rows("redeem_codes").values()):
            raise DuplicateCode()
        if amount > MAX_AMOUNT:
            raise AmountTooLarge()
        promo = RedeemCode(
            id=self._storage.next_id("redeem_codes"),
            code=code,
            amount=amount,
            max_uses=max_uses,
            expires_at=expires_at,
        )
        self._write("redeem_codes", promo.id, promo)
        return promo

    async def lock_redeem_code(self, code: str) -> Optional[RedeemCode]:
        await self._lock("code", code)
        await self._io()
        return next((c for c in self._rows("redeem_codes").values() if c.code == code), None)

    async def _locked_code(self, code_id: int) -> RedeemCode:
        promo = self._get("redeem_codes", code_id)
        if promo is None:
            raise NotFound("Code not found")
        await self._lock("code", promo.code)
        return self._get("redeem_codes", code_id)

    async def set_redeem_code_active(self, code_id: int, is_active: bool) -> RedeemCode:
        promo = replace(await self._locked_code(code_id), is_active=is_active)
        self._write("redeem_codes", code_id, promo)
        return promo

    async def increment_code_uses(self, code_id: int) -> RedeemCode:
        promo = await self._locked_code(code_id)
        if promo.current_uses >= promo.max_uses:
            raise LimitReached()
        promo = replace(promo, current_uses=promo.current_uses + 1)
        self._write("redeem_codes", code_id, promo)
        return promo

    async def has_redeemed(self, user_id: str, code_id: int) -> bool:
        await self._io()
        return self._get("redeem_history", (user_id, code_id)) is not None

    async def insert_redeem_history(self, user_id: str, code_id: int) -> None:
        key = (user_id, code_id)
        await self._lock("redemption", *key)
        if self._get("redeem_history", key) is not None:
            raise AlreadyRedeemed()
        self._write("redeem_history", key, utcnow())

    # Settings

    async def get_setting(self, key: str) -> Optional[str]:
        await self._io()
        return self._storage.settings.get(key)
