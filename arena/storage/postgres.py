"""PostgreSQL storage backend.

Each unit of work is one database transaction on a pooled connection.
Exclusive locks are ``SELECT ... FOR UPDATE``; UPDATE statements lock the
rows they touch. Table constraints back every invariant, and constraint
violations are translated into the matching business error.
"""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from decimal import Decimal
from functools import wraps
from typing import AsyncIterator, Callable, Mapping, Optional

import asyncpg

from arena.db.connection import Database, db
from arena.db.models import init_db
from arena.errors import (
    AlreadyJoined,
    AlreadyProcessed,
    AlreadyRedeemed,
    AmountTooLarge,
    ArenaError,
    Conflict,
    DuplicateCode,
    InsufficientFunds,
    InvalidInput,
    LimitReached,
    LockTimeout,
    NotFound,
    TournamentFull,
    UserExists,
)
from arena.models import (
    ZERO,
    Participant,
    RedeemCode,
    Role,
    Tournament,
    Transaction,
    TransactionStatus,
    TransactionType,
    User,
    Wallet,
    WalletField,
)
from arena.storage.base import TOURNAMENT_MUTABLE_FIELDS, Storage, UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)

# Constraint name -> error raised when a statement violates it
CONSTRAINT_ERRORS: dict[str, type[ArenaError]] = {
    "users_username_lower_idx": UserExists,
    "users_email_lower_idx": UserExists,
    "wallets_non_negative": InsufficientFunds,
    "tournaments_capacity": TournamentFull,
    "participants_unique": AlreadyJoined,
    "redeem_codes_code_key": DuplicateCode,
    "redeem_codes_uses": LimitReached,
    "redeem_history_unique": AlreadyRedeemed,
}


def translate_errors(func: Callable) -> Callable:
    """Map driver errors raised by a unit-of-work method to ArenaErrors."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except asyncpg.exceptions.IntegrityConstraintViolationError as e:
            error = CONSTRAINT_ERRORS.get(getattr(e, "constraint_name", None), Conflict)
            logger.info(f"Constraint {getattr(e, 'constraint_name', '?')} rejected {func.__name__}")
            raise error() from e
        except asyncpg.exceptions.NumericValueOutOfRangeError as e:
            logger.info(f"Amount out of range in {func.__name__}")
            raise AmountTooLarge() from e
        except asyncpg.exceptions.LockNotAvailableError as e:
            logger.warning(f"Lock wait exceeded in {func.__name__}")
            raise LockTimeout() from e
    return wrapper


def _uuid(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        raise InvalidInput(f"Invalid user id: {value!r}")


def _optional_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    return _uuid(value) if value else None


class PostgresUnitOfWork(UnitOfWork):
    """One database transaction."""

    def __init__(self, conn: asyncpg.Connection):
        self._conn = conn

    # Users

    @translate_errors
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
        record = await self._conn.fetchrow(
            """
            INSERT INTO users (username, email, password_hash, phone, role, referral_code, referred_by)
            VALUES ($1, $2, $3, $4, $5, $6, $7)
            RETURNING *
            """,
            username, email.lower(), password_hash, phone, role.value,
            referral_code, _optional_uuid(referred_by),
        )
        return User.from_record(record)

    async def find_user(self, user_id: str) -> Optional[User]:
        try:
            key = uuid.UUID(str(user_id))
        except ValueError:
            return None
        record = await self._conn.fetchrow("SELECT * FROM users WHERE id = $1", key)
        return User.from_record(record) if record else None

    async def find_user_by_email(self, email: str) -> Optional[User]:
        record = await self._conn.fetchrow(
            "SELECT * FROM users WHERE LOWER(email) = LOWER($1)", email
        )
        return User.from_record(record) if record else None

    async def find_user_by_referral_code(self, code: str) -> Optional[User]:
        record = await self._conn.fetchrow(
            "SELECT * FROM users WHERE referral_code = $1", code
        )
        return User.from_record(record) if record else None

    async def user_exists(self, username: str, email: str) -> bool:
        return await self._conn.fetchval(
            """
            SELECT EXISTS(
                SELECT 1 FROM users
                WHERE LOWER(username) = LOWER($1) OR LOWER(email) = LOWER($2)
            )
            """,
            username, email,
        )

    async def update_user(
        self,
        user_id: str,
        role: Optional[Role] = None,
        is_banned: Optional[bool] = None,
    ) -> Optional[User]:
        record = await self._conn.fetchrow(
            """
            UPDATE users
            SET role = COALESCE($2, role), is_banned = COALESCE($3, is_banned)
            WHERE id = $1
            RETURNING *
            """,
            _uuid(user_id), role.value if role else None, is_banned,
        )
        return User.from_record(record) if record else None

    # Wallets

    async def insert_wallet(self, user_id: str) -> Wallet:
        record = await self._conn.fetchrow(
            "INSERT INTO wallets (user_id) VALUES ($1) RETURNING *", _uuid(user_id)
        )
        return Wallet.from_record(record)

    async def find_wallet(self, user_id: str) -> Optional[Wallet]:
        record = await self._conn.fetchrow(
            "SELECT * FROM wallets WHERE user_id = $1", _uuid(user_id)
        )
        return Wallet.from_record(record) if record else None

    @translate_errors
    async def lock_wallet(self, user_id: str) -> Optional[Wallet]:
        record = await self._conn.fetchrow(
            "SELECT * FROM wallets WHERE user_id = $1 FOR UPDATE", _uuid(user_id)
        )
        return Wallet.from_record(record) if record else None

    @translate_errors
    async def update_wallet(self, user_id: str, deltas: Mapping[WalletField, Decimal]) -> Wallet:
        values = [deltas.get(f, ZERO) for f in WalletField]
        # The WHERE guard turns an overdraft into "no row" instead of aborting on the CHECK
        record = await self._conn.fetchrow(
            """
            UPDATE wallets
            SET balance = balance + $2,
                bonus_balance = bonus_balance + $3,
                total_deposited = total_deposited + $4,
                total_withdrawn = total_withdrawn + $5,
                updated_at = NOW()
            WHERE user_id = $1
              AND balance + $2 >= 0
              AND bonus_balance + $3 >= 0
              AND total_deposited + $4 >= 0
              AND total_withdrawn + $5 >= 0
            RETURNING *
            """,
            _uuid(user_id), *values,
        )
        if record is not None:
            return Wallet.from_record(record)
        if await self.find_wallet(user_id) is None:
            raise NotFound("Wallet not found")
        raise InsufficientFunds()

    # Transactions

    @translate_errors
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
        record = await self._conn.fetchrow(
            """
            INSERT INTO transactions
                (user_id, type, amount, status, payment_method, payment_proof_url, reference, admin_note)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
            RETURNING *
            """,
            _uuid(user_id), type.value, amount, status.value,
            payment_method, payment_proof_url, reference, admin_note,
        )
        return Transaction.from_record(record)

    @translate_errors
    async def lock_transaction(self, transaction_id: int) -> Optional[Transaction]:
        record = await self._conn.fetchrow(
            "SELECT * FROM transactions WHERE id = $1 FOR UPDATE", transaction_id
        )
        return Transaction.from_record(record) if record else None

    @translate_errors
    async def update_transaction_status(
        self,
        transaction_id: int,
        status: TransactionStatus,
        admin_note: Optional[str],
    ) -> Transaction:
        record = await self._conn.fetchrow(
            """
            UPDATE transactions
            SET status = $2, admin_note = $3, updated_at = NOW()
            WHERE id = $1 AND status = 'pending'
            RETURNING *
            """,
            transaction_id, status.value, admin_note,
        )
        if record is not None:
            return Transaction.from_record(record)
        exists = await self._conn.fetchval(
            "SELECT EXISTS(SELECT 1 FROM transactions WHERE id = $1)", transaction_id
        )
        if not exists:
            raise NotFound("Transaction not found")
        raise AlreadyProcessed()

    async def list_transactions(self, user_id: str) -> list[Transaction]:
        records = await self._conn.fetch(
            "SELECT * FROM transactions WHERE user_id = $1 ORDER BY created_at DESC, id DESC",
            _uuid(user_id),
        )
        return [Transaction.from_record(r) for r in records]

    async def list_pending_transactions(self) -> list[tuple[Transaction, User]]:
        records = await self._conn.fetch(
            """
            SELECT t.*, u.id AS u_id, u.username, u.email, u.password_hash, u.phone,
                   u.role, u.is_banned, u.referral_code, u.referred_by,
                   u.created_at AS u_created_at
            FROM transactions t
            JOIN users u ON t.user_id = u.id
            WHERE t.status = 'pending'
            ORDER BY t.created_at ASC, t.id ASC
            """
        )
        pairs = []
        for r in records:
            owner = dict(r)
            owner["id"] = r["u_id"]
            owner["created_at"] = r["u_created_at"]
            pairs.append((Transaction.from_record(r), User.from_record(owner)))
        return pairs

    # Tournaments

    @translate_errors
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
        record = await self._conn.fetchrow(
            """
            INSERT INTO tournaments
                (title, game_type, map_type, entry_fee, prize_pool, per_kill, start_time, max_players, created_by)
            VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            RETURNING *
            """,
            title, game_type, map_type, entry_fee, prize_pool, per_kill,
            start_time, max_players, _optional_uuid(created_by),
        )
        return Tournament.from_record(record)

    async def find_tournament(self, tournament_id: int) -> Optional[Tournament]:
        record = await self._conn.fetchrow(
            "SELECT * FROM tournaments WHERE id = $1", tournament_id
        )
        return Tournament.from_record(record) if record else None

    @translate_errors
    async def lock_tournament(self, tournament_id: int) -> Optional[Tournament]:
        record = await self._conn.fetchrow(
            "SELECT * FROM tournaments WHERE id = $1 FOR UPDATE", tournament_id
        )
        return Tournament.from_record(record) if record else None

    async def list_tournaments(self) -> list[Tournament]:
        records = await self._conn.fetch(
            "SELECT * FROM tournaments ORDER BY start_time DESC NULLS LAST, id DESC"
        )
        return [Tournament.from_record(r) for r in records]

    @translate_errors
    async def update_tournament(self, tournament_id: int, **fields) -> Tournament:
        unknown = set(fields) - TOURNAMENT_MUTABLE_FIELDS
        if unknown or not fields:
            raise ValueError(f"Cannot update tournament fields: {sorted(unknown)}")
        columns = sorted(fields)
        assignments = ", ".join(f"{name} = ${i}" for i, name in enumerate(columns, 2))
        values = [getattr(fields[name], "value", fields[name]) for name in columns]
        record = await self._conn.fetchrow(
            f"UPDATE tournaments SET {assignments} WHERE id = $1 RETURNING *",
            tournament_id, *values,
        )
        if record is None:
            raise NotFound("Tournament not found")
        return Tournament.from_record(record)

    @translate_errors
    async def increment_players(self, tournament_id: int) -> Tournament:
        record = await self._conn.fetchrow(
            """
            UPDATE tournaments SET current_players = current_players + 1
            WHERE id = $1
            RETURNING *
            """,
            tournament_id,
        )
        if record is None:
            raise NotFound("Tournament not found")
        return Tournament.from_record(record)

    async def find_participant(self, tournament_id: int, user_id: str) -> Optional[Participant]:
        record = await self._conn.fetchrow(
            "SELECT * FROM tournament_participants WHERE tournament_id = $1 AND user_id = $2",
            tournament_id, _uuid(user_id),
        )
        return Participant.from_record(record) if record else None

    @translate_errors
    async def insert_participant(
        self,
        tournament_id: int,
        user_id: str,
        game_username: Optional[str],
    ) -> Participant:
        record = await self._conn.fetchrow(
            """
            INSERT INTO tournament_participants (tournament_id, user_id, game_username)
            VALUES ($1, $2, $3)
            RETURNING *
            """,
            tournament_id, _uuid(user_id), game_username,
        )
        return Participant.from_record(record)

    async def list_participants(self, tournament_id: int) -> list[Participant]:
        records = await self._conn.fetch(
            "SELECT * FROM tournament_participants WHERE tournament_id = $1 ORDER BY user_id",
            tournament_id,
        )
        return [Participant.from_record(r) for r in records]

    async def list_user_tournaments(self, user_id: str) -> list[tuple[Tournament, Participant]]:
        records = await self._conn.fetch(
            """
            SELECT t.*, tp.id AS participant_id, tp.tournament_id, tp.user_id,
                   tp.game_username, tp.joined_at
            FROM tournaments t
            JOIN tournament_participants tp ON t.id = tp.tournament_id
            WHERE tp.user_id = $1
            ORDER BY t.start_time DESC NULLS LAST, t.id DESC
            """,
            _uuid(user_id),
        )
        pairs = []
        for r in records:
            seat = dict(r)
            seat["id"] = r["participant_id"]
            pairs.append((Tournament.from_record(r), Participant.from_record(seat)))
        return pairs

    # Redeem codes

    @translate_errors
    async def insert_redeem_code(
        self,
        code: str,
        amount: Decimal,
        max_uses: int,
        expires_at: Optional[datetime] = None,
    ) -> RedeemCode:
        record = await self._conn.fetchrow(
            """
            INSERT INTO redeem_codes (code, amount, max_uses, expires_at)
            VALUES ($1, $2, $3, $4)
            RETURNING *
            """,
            code, amount, max_uses, expires_at,
        )
        return RedeemCode.from_record(record)

    @translate_errors
    async def lock_redeem_code(self, code: str) -> Optional[RedeemCode]:
        record = await self._conn.fetchrow(
            "SELECT * FROM redeem_codes WHERE code = $1 FOR UPDATE", code
        )
        return RedeemCode.from_record(record) if record else None

    @translate_errors
    async def set_redeem_code_active(self, code_id: int, is_active: bool) -> RedeemCode:
        record = await self._conn.fetchrow(
            "UPDATE redeem_codes SET is_active = $2 WHERE id = $1 RETURNING *",
            code_id, is_active,
        )
        if record is None:
            raise NotFound("Code not found")
        return RedeemCode.from_record(record)

    @translate_errors
    async def increment_code_uses(self, code_id: int) -> RedeemCode:
        record = await self._conn.fetchrow(
            "UPDATE redeem_codes SET current_uses = current_uses + 1 WHERE id = $1 RETURNING *",
            code_id,
        )
        if record is None:
            raise NotFound("Code not found")
        return RedeemCode.from_record(record)

    async def has_redeemed(self, user_id: str, code_id: int) -> bool:
        return await self._conn.fetchval(
            "SELECT EXISTS(SELECT 1 FROM redeem_history WHERE user_id = $1 AND code_id = $2)",
            _uuid(user_id), code_id,
        )

    @translate_errors
    async def insert_redeem_history(self, user_id: str, code_id: int) -> None:
        await self._conn.execute(
            "INSERT INTO redeem_history (user_id, code_id) VALUES ($1, $2)",
            _uuid(user_id), code_id,
        )

    # Settings

    async def get_setting(self, key: str) -> Optional[str]:
        return await self._conn.fetchval("SELECT value FROM settings WHERE key = $1", key)


class PostgresStorage(Storage):
    """Storage over the shared asyncpg pool."""

    def __init__(self, database: Optional[Database] = None):
        self.database = database or db

    async def connect(self) -> None:
        await self.database.connect()
        await init_db(self.database)

    async def disconnect(self) -> None:
        await self.database.disconnect()

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[PostgresUnitOfWork]:
        async with self.database.transaction() as conn:
            yield PostgresUnitOfWork(conn)
