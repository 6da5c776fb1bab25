"""Settlement workflows: accounts, deposits and withdrawals."""
from .accounts import AccountService, Session
from .payments import Decision, PaymentDesk

__all__ = ["AccountService", "Session", "Decision", "PaymentDesk"]
