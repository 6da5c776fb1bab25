"""Domain records for users, wallets, transactions, tournaments and codes.

Records are plain dataclasses. Storage backends build them with
``from_record`` (anything indexable by column name: an ``asyncpg.Record``
or a dict) and hand them to the workflows, which never mutate them.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from enum import Enum
from typing import Any, Optional

from arena.errors import AmountTooLarge, InvalidInput

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
# Largest value a NUMERIC(12, 2) money column holds
MAX_AMOUNT = Decimal("9999999999.99")


def to_money(value: Any) -> Decimal:
    """Convert a number or numeric string to a Decimal rounded to cents.

    Raises:
        InvalidInput: If the value is not a finite number.
        AmountTooLarge: If it does not fit a money column.
    """
    if isinstance(value, float):
        value = repr(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise InvalidInput(f"Invalid amount: {value!r}")
    # Anything from here up rounds past MAX_AMOUNT
    if abs(amount) >= MAX_AMOUNT + CENT / 2:
        raise AmountTooLarge()
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def positive_money(value: Any, name: str = "amount") -> Decimal:
    """Like ``to_money`` but also rejects zero and negative amounts."""
    amount = to_money(value)
    if amount <= 0:
        raise InvalidInput(f"{name.capitalize()} must be positive")
    return amount


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _str_id(value: Any) -> Optional[str]:
    return str(value) if value is not None else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class Role(str, Enum):
    """User roles."""
    PLAYER = "player"
    ADMIN = "admin"


class WalletField(str, Enum):
    """Wallet columns that may be adjusted by the ledger."""
    BALANCE = "balance"
    BONUS_BALANCE = "bonus_balance"
    TOTAL_DEPOSITED = "total_deposited"
    TOTAL_WITHDRAWN = "total_withdrawn"


class TransactionType(str, Enum):
    """Types of money movements."""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    JOIN_FEE = "join_fee"
    REFUND = "refund"
    REDEEM_CODE = "redeem_code"
    SIGNUP_BONUS = "signup_bonus"
    REFERRAL_BONUS = "referral_bonus"


class TransactionStatus(str, Enum):
    """Lifecycle of a transaction. Only pending rows ever change."""
    PENDING = "pending"
    COMPLETED = "completed"
    REJECTED = "rejected"


class TournamentStatus(str, Enum):
    """Tournament lifecycle."""
    UPCOMING = "upcoming"
    ONGOING = "ongoing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    def can_become(self, target: "TournamentStatus") -> bool:
        return target in _TOURNAMENT_TRANSITIONS[self]


_TOURNAMENT_TRANSITIONS = {
    TournamentStatus.UPCOMING: {TournamentStatus.ONGOING, TournamentStatus.CANCELLED},
    TournamentStatus.ONGOING: {TournamentStatus.COMPLETED, TournamentStatus.CANCELLED},
    TournamentStatus.COMPLETED: set(),
    TournamentStatus.CANCELLED: set(),
}


@dataclass(frozen=True)
class User:
    """Registered account."""
    id: str
    username: str
    email: str
    password_hash: str
    role: Role
    is_banned: bool
    referral_code: str
    referred_by: Optional[str] = None
    phone: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record) -> "User":
        """Create from database record."""
        return cls(
            id=str(record["id"]),
            username=record["username"],
            email=record["email"],
            password_hash=record["password_hash"],
            role=Role(record["role"]),
            is_banned=record["is_banned"],
            referral_code=record["referral_code"],
            referred_by=_str_id(record["referred_by"]),
            phone=record["phone"],
            created_at=record["created_at"],
        )

    def to_dict(self) -> dict:
        """Public view; never includes the password hash."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "phone": self.phone,
            "role": self.role.value,
            "is_banned": self.is_banned,
            "referral_code": self.referral_code,
            "created_at": _iso(self.created_at),
        }


@dataclass(frozen=True)
class Wallet:
    """Money held by a single user."""
    user_id: str
    balance: Decimal = ZERO
    bonus_balance: Decimal = ZERO
    total_deposited: Decimal = ZERO
    total_withdrawn: Decimal = ZERO
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record) -> "Wallet":
        """Create from database record."""
        return cls(
            user_id=str(record["user_id"]),
            balance=record["balance"],
            bonus_balance=record["bonus_balance"],
            total_deposited=record["total_deposited"],
            total_withdrawn=record["total_withdrawn"],
            updated_at=record["updated_at"],
        )

    def get(self, wallet_field: WalletField) -> Decimal:
        return getattr(self, wallet_field.value)

    def to_dict(self) -> dict:
        return {
            "balance": str(self.balance),
            "bonus_balance": str(self.bonus_balance),
            "total_deposited": str(self.total_deposited),
            "total_withdrawn": str(self.total_withdrawn),
        }


@dataclass(frozen=True)
class Transaction:
    """A money movement record."""
    id: int
    user_id: str
    type: TransactionType
    amount: Decimal
    status: TransactionStatus
    payment_method: Optional[str] = None
    payment_proof_url: Optional[str] = None
    reference: Optional[str] = None
    admin_note: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, record) -> "Transaction":
        """Create from database record."""
        return cls(
            id=record["id"],
            user_id=str(record["user_id"]),
            type=TransactionType(record["type"]),
            amount=record["amount"],
            status=TransactionStatus(record["status"]),
            payment_method=record["payment_method"],
            payment_proof_url=record["payment_proof_url"],
            reference=record["reference"],
            admin_note=record["admin_note"],
            created_at=record["created_at"],
            updated_at=record["updated_at"],
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type.value,
            "amount": str(self.amount),
            "status": self.status.value,
            "payment_method": self.payment_method,
            "payment_proof_url": self.payment_proof_url,
            "reference": self.reference,
            "admin_note": self.admin_note,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class Tournament:
    """A paid tournament with a fixed number of seats."""
    id: int
    title: str
    entry_fee: Decimal
    max_players: int
    current_players: int = 0
    status: TournamentStatus = TournamentStatus.UPCOMING
    game_type: Optional[str] = None
    map_type: Optional[str] = None
    prize_pool: Decimal = ZERO
    per_kill: Decimal = ZERO
    start_time: Optional[datetime] = None
    room_id: Optional[str] = None
    room_password: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record) -> "Tournament":
        """Create from database record."""
        return cls(
            id=record["id"],
            title=record["title"],
            entry_fee=record["entry_fee"],
            max_players=record["max_players"],
            current_players=record["current_players"],
            status=TournamentStatus(record["status"]),
            game_type=record["game_type"],
            map_type=record["map_type"],
            prize_pool=record["prize_pool"],
            per_kill=record["per_kill"],
            start_time=record["start_time"],
            room_id=record["room_id"],
            room_password=record["room_password"],
            created_by=_str_id(record["created_by"]),
            created_at=record["created_at"],
        )

    @property
    def is_full(self) -> bool:
        return self.current_players >= self.max_players

    def to_dict(self, include_room: bool = False) -> dict:
        data = {
            "id": self.id,
            "title": self.title,
            "game_type": self.game_type,
            "map_type": self.map_type,
            "entry_fee": str(self.entry_fee),
            "prize_pool": str(self.prize_pool),
            "per_kill": str(self.per_kill),
            "start_time": _iso(self.start_time),
            "max_players": self.max_players,
            "current_players": self.current_players,
            "status": self.status.value,
        }
        if include_room:
            data["room_id"] = self.room_id
            data["room_password"] = self.room_password
        return data


@dataclass(frozen=True)
class Participant:
    """A user's seat in a tournament."""
    id: int
    tournament_id: int
    user_id: str
    game_username: Optional[str] = None
    joined_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record) -> "Participant":
        """Create from database record."""
        return cls(
            id=record["id"],
            tournament_id=record["tournament_id"],
            user_id=str(record["user_id"]),
            game_username=record["game_username"],
            joined_at=record["joined_at"],
        )

    def to_dict(self) -> dict:
        return {
            "tournament_id": self.tournament_id,
            "user_id": self.user_id,
            "game_username": self.game_username,
            "joined_at": _iso(self.joined_at),
        }


@dataclass(frozen=True)
class RedeemCode:
    """Promotional code worth a fixed amount, usable once per user."""
    id: int
    code: str
    amount: Decimal
    max_uses: int
    current_uses: int = 0
    is_active: bool = True
    expires_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_record(cls, record) -> "RedeemCode":
        """Create from database record."""
        return cls(
            id=record["id"],
            code=record["code"],
            amount=record["amount"],
            max_uses=record["max_uses"],
            current_uses=record["current_uses"],
            is_active=record["is_active"],
            expires_at=record["expires_at"],
            created_at=record["created_at"],
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at is not None and (now or utcnow()) > self.expires_at

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "amount": str(self.amount),
            "max_uses": self.max_uses,
            "current_uses": self.current_uses,
            "is_active": self.is_active,
            "expires_at": _iso(self.expires_at),
        }
