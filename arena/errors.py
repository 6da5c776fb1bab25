"""Error taxonomy shared by every settlement workflow.

Every expected business outcome is an ``ArenaError`` subclass with a
user-facing message. Raising one inside a unit of work aborts it, so a
failed workflow leaves no trace in storage.
"""
from enum import Enum


class ErrorKind(str, Enum):
    """Classification used by the boundary to pick a transport status."""
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    INTERNAL = "internal"


class ArenaError(Exception):
    """Base class for all ledger errors."""

    kind: ErrorKind = ErrorKind.INTERNAL
    default_message: str = "Server Error"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidInput(ArenaError):
    """Malformed or missing request fields."""
    kind = ErrorKind.INVALID_INPUT
    default_message = "Invalid input"


class AmountTooLarge(InvalidInput):
    default_message = "Amount exceeds the maximum of 9999999999.99"


class NotFound(ArenaError):
    """Referenced entity does not exist."""
    kind = ErrorKind.NOT_FOUND
    default_message = "Not found"


class InvalidCode(NotFound):
    default_message = "Invalid code"


class Conflict(ArenaError):
    """Business rule violation."""
    kind = ErrorKind.CONFLICT
    default_message = "Conflict"


class AlreadyJoined(Conflict):
    default_message = "Already joined"


class AlreadyProcessed(Conflict):
    default_message = "Transaction already processed"


class AlreadyRedeemed(Conflict):
    default_message = "You have already used this code"


class AlreadyCancelled(Conflict):
    default_message = "Already cancelled"


class TournamentFull(Conflict):
    default_message = "Tournament is full"


class NotJoinable(Conflict):
    default_message = "Cannot join. Tournament is not upcoming."


class InvalidTransition(Conflict):
    default_message = "Invalid status transition"


class LimitReached(Conflict):
    default_message = "Code limit reached"


class ExpiredCode(Conflict):
    default_message = "Code expired"


class InactiveCode(Conflict):
    default_message = "Code is inactive"


class InsufficientFunds(Conflict):
    default_message = "Insufficient balance"


class UserExists(Conflict):
    default_message = "User already exists"


class DuplicateCode(Conflict):
    default_message = "Code already exists"


class Unauthorized(ArenaError):
    """Missing, invalid or expired credentials."""
    kind = ErrorKind.UNAUTHORIZED
    default_message = "Not authorized to access this route"


class Forbidden(ArenaError):
    """Caller is banned or lacks the required role."""
    kind = ErrorKind.FORBIDDEN
    default_message = "Forbidden"


class Internal(ArenaError):
    """Storage failure or unexpected state. Never shown in detail to callers."""
    kind = ErrorKind.INTERNAL


class LockTimeout(Internal):
    default_message = "Timed out waiting for a row lock"
