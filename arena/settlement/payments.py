"""Deposit and withdrawal requests and their admin settlement.

Withdrawals hold funds by debiting the wallet at request time; a rejection
credits them back, an approval only updates the withdrawn total.
"""
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum
from typing import Optional

from arena.errors import AlreadyProcessed, InsufficientFunds, InvalidInput
from arena.ledger import log, wallets
from arena.models import (
    CENT,
    Transaction,
    TransactionStatus,
    TransactionType,
    WalletField,
    positive_money,
)
from arena.settings import SettingsProvider, StorageSettings
from arena.storage.base import Storage, UnitOfWork
from arena.utils.logger import get_logger

logger = get_logger(__name__)


class Decision(str, Enum):
    """Admin verdict on a pending request."""
    APPROVED = "approved"
    REJECTED = "rejected"

    @property
    def status(self) -> TransactionStatus:
        if self is Decision.APPROVED:
            return TransactionStatus.COMPLETED
        return TransactionStatus.REJECTED


PROCESSABLE_TYPES = (TransactionType.DEPOSIT, TransactionType.WITHDRAWAL)


def referral_bonus(amount: Decimal, percent: Decimal) -> Decimal:
    """Referrer's share of a first deposit, rounded to cents."""
    return (amount * percent / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)


class PaymentDesk:
    """Creates payment requests and settles them."""

    def __init__(self, storage: Storage, settings: Optional[SettingsProvider] = None):
        """Initialize the desk.

        Args:
            storage: Backend providing units of work.
            settings: Source of the referral bonus percentage.
        """
        self.storage = storage
        self.settings = settings or StorageSettings()

    async def request_deposit(
        self,
        user_id: str,
        amount: Decimal,
        payment_proof_url: Optional[str],
        payment_method: Optional[str] = None,
        reference: Optional[str] = None,
    ) -> Transaction:
        """File a pending deposit. The wallet is credited only on approval.

        Raises:
            InvalidInput: If the amount is not positive or no proof is given.
        """
        amount = positive_money(amount)
        if not payment_proof_url:
            raise InvalidInput("Payment screenshot is required")

        async with self.storage.unit_of_work() as uow:
            tx = await log.append(
                uow,
                user_id,
                TransactionType.DEPOSIT,
                amount,
                status=TransactionStatus.PENDING,
                payment_method=payment_method,
                payment_proof_url=payment_proof_url,
                reference=reference,
            )
        return tx

    async def request_withdrawal(
        self,
        user_id: str,
        amount: Decimal,
        payment_method: Optional[str] = None,
        account_details: Optional[str] = None,
    ) -> Transaction:
        """File a pending withdrawal and hold the funds by debiting them.

        Raises:
            InvalidInput: If the amount is not positive.
            InsufficientFunds: If the balance does not cover the amount.
        """
        amount = positive_money(amount)

        async with self.storage.unit_of_work() as uow:
            wallet = await wallets.read_balance_for_update(uow, user_id)
            if wallet.balance < amount:
                raise InsufficientFunds()
            await wallets.debit(uow, user_id, amount)
            tx = await log.append(
                uow,
                user_id,
                TransactionType.WITHDRAWAL,
                amount,
                status=TransactionStatus.PENDING,
                payment_method=payment_method,
                admin_note=account_details,
            )

        logger.info(f"Held {amount} from {user_id} for withdrawal #{tx.id}")
        return tx

    async def process_payment(
        self,
        transaction_id: int,
        decision: Decision,
        note: Optional[str] = None,
    ) -> Transaction:
        """Approve or reject a pending deposit or withdrawal.

        Args:
            transaction_id: Pending transaction to settle.
            decision: Approved or rejected.
            note: Admin note stored on the transaction.

        Returns:
            The settled transaction.

        Raises:
            NotFound: If the transaction does not exist.
            AlreadyProcessed: If it is no longer pending.
            InvalidInput: For an unknown decision or a non-payment transaction.
        """
        try:
            decision = Decision(decision)
        except ValueError:
            raise InvalidInput("Status must be 'approved' or 'rejected'")

        async with self.storage.unit_of_work() as uow:
            tx = await log.lock(uow, transaction_id)
            if tx.status != TransactionStatus.PENDING:
                raise AlreadyProcessed()
            if tx.type not in PROCESSABLE_TYPES:
                raise InvalidInput(f"Cannot process a {tx.type.value} transaction")

            if tx.type == TransactionType.DEPOSIT:
                if decision is Decision.APPROVED:
                    await self._approve_deposit(uow, tx)
            elif decision is Decision.APPROVED:
                await wallets.adjust_balance(uow, tx.user_id, tx.amount, WalletField.TOTAL_WITHDRAWN)
            else:
                await wallets.credit(uow, tx.user_id, tx.amount)

            tx = await log.transition(uow, transaction_id, decision.status, note)

        logger.info(f"{tx.type.value.capitalize()} #{tx.id} of {tx.amount} {decision.value}")
        return tx

    async def _approve_deposit(self, uow: UnitOfWork, tx: Transaction) -> None:
        """Credit an approved deposit and pay the referral bonus on a first deposit."""
        owner = await uow.find_user(tx.user_id)
        referrer_id = owner.referred_by if owner else None

        # Wallet locks in ascending user id order
        for user_id in sorted({tx.user_id, referrer_id} - {None}):
            await wallets.read_balance_for_update(uow, user_id)

        before = await wallets.read_balance_for_update(uow, tx.user_id)
        await wallets.apply(uow, tx.user_id, {
            WalletField.BALANCE: tx.amount,
            WalletField.TOTAL_DEPOSITED: tx.amount,
        })

        first_deposit = before.total_deposited == 0
        if not (first_deposit and referrer_id):
            return

        percent = await self.settings.referral_bonus_percent(uow)
        bonus = referral_bonus(tx.amount, percent)
        if bonus <= 0:
            return
        await wallets.credit(uow, referrer_id, bonus, bonus=True)
        await log.append(
            uow,
            referrer_id,
            TransactionType.REFERRAL_BONUS,
            bonus,
            admin_note=f"Bonus for referring user {tx.user_id}",
        )
        logger.info(f"Referral bonus {bonus} paid to {referrer_id} for {tx.user_id}")

    async def pending(self) -> list[dict]:
        """Pending deposit and withdrawal requests, oldest first."""
        async with self.storage.unit_of_work() as uow:
            return await log.pending(uow)

    async def history(self, user_id: str) -> list[Transaction]:
        """A user's transactions, newest first."""
        async with self.storage.unit_of_work() as uow:
            return await log.history(uow, user_id)
