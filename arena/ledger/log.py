"""Append-only transaction log."""
from decimal import Decimal
from typing import Optional

from arena.errors import InvalidInput, NotFound
from arena.models import Transaction, TransactionStatus, TransactionType
from arena.storage.base import UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)

FINAL_STATUSES = (TransactionStatus.COMPLETED, TransactionStatus.REJECTED)


async def append(
    uow: UnitOfWork,
    user_id: str,
    transaction_type: TransactionType,
    amount: Decimal,
    status: TransactionStatus = TransactionStatus.COMPLETED,
    payment_method: Optional[str] = None,
    payment_proof_url: Optional[str] = None,
    reference: Optional[str] = None,
    admin_note: Optional[str] = None,
) -> Transaction:
    """Record a money movement.

    Args:
        uow: Unit of work the row belongs to.
        user_id: Owner of the movement.
        transaction_type: Type of transaction.
        amount: Amount moved (positive).
        status: Initial status; pending rows await an admin decision.
        payment_method: Channel named by the user (deposits, withdrawals).
        payment_proof_url: Stored proof reference (deposits).
        reference: Manual payment reference supplied by the user.
        admin_note: Free-form note.

    Returns:
        The recorded transaction.
    """
    if amount <= 0:
        raise InvalidInput("Amount must be positive")
    tx = await uow.insert_transaction(
        user_id,
        transaction_type,
        amount,
        status,
        payment_method=payment_method,
        payment_proof_url=payment_proof_url,
        reference=reference,
        admin_note=admin_note,
    )
    logger.info(
        f"Recorded {transaction_type.value} #{tx.id} for {user_id}: "
        f"{amount} ({status.value})"
    )
    return tx


async def lock(uow: UnitOfWork, transaction_id: int) -> Transaction:
    """Lock a transaction row. Raises NotFound if it does not exist."""
    tx = await uow.lock_transaction(transaction_id)
    if tx is None:
        raise NotFound("Transaction not found")
    return tx


async def transition(
    uow: UnitOfWork,
    transaction_id: int,
    new_status: TransactionStatus,
    note: Optional[str] = None,
) -> Transaction:
    """Settle a pending transaction exactly once.

    Raises:
        InvalidInput: If ``new_status`` is not a final status.
        NotFound: If the transaction does not exist.
        AlreadyProcessed: If it was already completed or rejected.
    """
    if new_status not in FINAL_STATUSES:
        raise InvalidInput(f"Cannot move a transaction to {new_status}")
    new_status = TransactionStatus(new_status)
    tx = await uow.update_transaction_status(transaction_id, new_status, note)
    logger.info(f"Transaction #{transaction_id} {new_status.value}")
    return tx


async def history(uow: UnitOfWork, user_id: str) -> list[Transaction]:
    """A user's transactions, newest first."""
    return await uow.list_transactions(user_id)


async def pending(uow: UnitOfWork) -> list[dict]:
    """Pending requests with owner contact details, oldest first."""
    rows = await uow.list_pending_transactions()
    return [
        {**tx.to_dict(), "username": owner.username, "email": owner.email, "phone": owner.phone}
        for tx, owner in rows
    ]
