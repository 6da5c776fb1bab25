"""Pydantic request schemas for the HTTP API."""
from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

from arena.models import MAX_AMOUNT


# ============= Auth =============

class RegisterRequest(BaseModel):
    """Account registration."""
    username: str = Field(..., min_length=3, max_length=50)
    email: str = Field(..., max_length=255)
    password: str
    phone: Optional[str] = Field(None, max_length=30)
    referral_code: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


# ============= Wallet =============

class DepositRequest(BaseModel):
    """Deposit request; the proof is a reference to an already stored upload."""
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    payment_method: Optional[str] = None
    payment_proof_url: Optional[str] = None
    transaction_id_manual: Optional[str] = Field(None, max_length=100)


class WithdrawRequest(BaseModel):
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    payment_method: Optional[str] = None
    account_details: Optional[str] = None


class RedeemRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)


# ============= Tournaments =============

class JoinTournamentRequest(BaseModel):
    game_username: Optional[str] = Field(None, max_length=100)


class CreateTournamentRequest(BaseModel):
    """Admin: new tournament."""
    title: str = Field(..., min_length=1, max_length=200)
    game_type: Optional[str] = None
    map_type: Optional[str] = None
    entry_fee: Decimal = Field(Decimal("0"), ge=0, le=MAX_AMOUNT)
    prize_pool: Decimal = Field(Decimal("0"), ge=0, le=MAX_AMOUNT)
    per_kill: Decimal = Field(Decimal("0"), ge=0, le=MAX_AMOUNT)
    start_time: Optional[datetime] = None
    max_players: int = Field(..., gt=0)


class RoomRequest(BaseModel):
    room_id: str
    room_password: str


class TournamentStatusRequest(BaseModel):
    status: Literal["ongoing", "completed"]


# ============= Admin =============

class ProcessPaymentRequest(BaseModel):
    status: Literal["approved", "rejected"]
    admin_note: Optional[str] = None


class CreateRedeemCodeRequest(BaseModel):
    code: str = Field(..., min_length=1, max_length=50)
    amount: Decimal = Field(..., gt=0, le=MAX_AMOUNT)
    max_uses: int = Field(1, gt=0)
    expires_at: Optional[datetime] = None


class BanRequest(BaseModel):
    is_banned: bool = True


class RoleRequest(BaseModel):
    role: Literal["player", "admin"]
