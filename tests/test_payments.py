"""Tests for deposit and withdrawal settlement."""
import asyncio
from decimal import Decimal

import pytest

from arena.errors import AlreadyProcessed, InsufficientFunds, InvalidInput, NotFound
from arena.ledger import log
from arena.models import TransactionStatus, TransactionType
from arena.settings import REFERRAL_BONUS_PERCENT, SIGNUP_BONUS, StaticSettings
from arena.settlement import Decision, PaymentDesk
from arena.settlement.payments import referral_bonus


@pytest.fixture
def desk(storage, settings):
    return PaymentDesk(storage, settings)


async def transactions_of(storage, user_id):
    async with storage.unit_of_work() as uow:
        return await uow.list_transactions(user_id)


class TestReferralBonus:
    """Test the bonus arithmetic."""

    def test_five_percent(self):
        """Test the default share."""
        assert referral_bonus(Decimal("100.00"), Decimal("5")) == Decimal("5.00")

    def test_rounds_half_up_to_cents(self):
        """Test rounding of fractional cents."""
        assert referral_bonus(Decimal("33.33"), Decimal("5")) == Decimal("1.67")


class TestDeposits:
    """Test deposit requests and their approval."""

    @pytest.mark.asyncio
    async def test_request_is_pending(self, desk, make_user, wallet_of):
        """Test a request does not touch the wallet."""
        user = await make_user()

        tx = await desk.request_deposit(
            user.id, "100", "uploads/proof.png", payment_method="upi", reference="UTR123"
        )

        assert tx.status == TransactionStatus.PENDING
        assert tx.type == TransactionType.DEPOSIT
        assert tx.reference == "UTR123"
        assert (await wallet_of(user.id)).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_proof_required(self, desk, make_user):
        """Test a deposit without proof."""
        user = await make_user()

        with pytest.raises(InvalidInput, match="screenshot"):
            await desk.request_deposit(user.id, "100", None)

    @pytest.mark.asyncio
    async def test_amount_must_be_positive(self, desk, make_user):
        """Test non-positive amounts."""
        user = await make_user()

        with pytest.raises(InvalidInput):
            await desk.request_deposit(user.id, "-5", "proof.png")

    @pytest.mark.asyncio
    async def test_amount_too_large(self, desk, make_user):
        """Test amounts beyond the largest money value."""
        user = await make_user()

        with pytest.raises(InvalidInput, match="maximum"):
            await desk.request_deposit(user.id, "100000000000", "proof.png")

    @pytest.mark.asyncio
    async def test_approval_past_ceiling_is_refused(self, storage, desk, make_user, wallet_of):
        """Test an approval that would overflow the wallet leaves the deposit pending."""
        user = await make_user(balance="9999999999.00")
        tx = await desk.request_deposit(user.id, "5", "proof.png")

        with pytest.raises(InvalidInput):
            await desk.process_payment(tx.id, Decision.APPROVED)

        assert (await wallet_of(user.id)).balance == Decimal("9999999999.00")
        assert [row["id"] for row in await desk.pending()] == [tx.id]

    @pytest.mark.asyncio
    async def test_approve_credits_wallet(self, desk, make_user, wallet_of):
        """Test approval credits balance and total_deposited."""
        user = await make_user()
        tx = await desk.request_deposit(user.id, "100", "proof.png")

        settled = await desk.process_payment(tx.id, Decision.APPROVED, "verified")

        assert settled.status == TransactionStatus.COMPLETED
        assert settled.admin_note == "verified"
        wallet = await wallet_of(user.id)
        assert wallet.balance == Decimal("100")
        assert wallet.total_deposited == Decimal("100")

    @pytest.mark.asyncio
    async def test_reject_leaves_wallet(self, desk, make_user, wallet_of):
        """Test rejection only settles the row."""
        user = await make_user()
        tx = await desk.request_deposit(user.id, "100", "proof.png")

        settled = await desk.process_payment(tx.id, "rejected")

        assert settled.status == TransactionStatus.REJECTED
        assert (await wallet_of(user.id)).balance == Decimal("0")

    @pytest.mark.asyncio
    async def test_process_twice(self, desk, make_user, wallet_of):
        """Test a settled request cannot be settled again."""
        user = await make_user()
        tx = await desk.request_deposit(user.id, "100", "proof.png")
        await desk.process_payment(tx.id, Decision.APPROVED)

        with pytest.raises(AlreadyProcessed):
            await desk.process_payment(tx.id, Decision.APPROVED)
        with pytest.raises(AlreadyProcessed):
            await desk.process_payment(tx.id, Decision.REJECTED)

        assert (await wallet_of(user.id)).balance == Decimal("100")

    @pytest.mark.asyncio
    async def test_concurrent_approvals_credit_once(self, desk, make_user, wallet_of):
        """Test racing approvals of one request."""
        user = await make_user()
        tx = await desk.request_deposit(user.id, "40", "proof.png")

        results = await asyncio.gather(
            desk.process_payment(tx.id, Decision.APPROVED),
            desk.process_payment(tx.id, Decision.APPROVED),
            return_exceptions=True,
        )

        assert sum(isinstance(r, AlreadyProcessed) for r in results) == 1
        assert (await wallet_of(user.id)).balance == Decimal("40")

    @pytest.mark.asyncio
    async def test_unknown_transaction(self, desk):
        """Test settling a missing request."""
        with pytest.raises(NotFound):
            await desk.process_payment(12345, Decision.APPROVED)

    @pytest.mark.asyncio
    async def test_invalid_decision(self, desk, make_user):
        """Test decisions other than approved and rejected."""
        user = await make_user()
        tx = await desk.request_deposit(user.id, "10", "proof.png")

        with pytest.raises(InvalidInput):
            await desk.process_payment(tx.id, "maybe")

    @pytest.mark.asyncio
    async def test_non_payment_transaction(self, storage, desk, make_user):
        """Test only deposits and withdrawals can be settled."""
        user = await make_user()
        async with storage.unit_of_work() as uow:
            tx = await log.append(
                uow, user.id, TransactionType.REFUND, Decimal("1"),
                status=TransactionStatus.PENDING,
            )

        with pytest.raises(InvalidInput):
            await desk.process_payment(tx.id, Decision.APPROVED)


class TestReferral:
    """Test referral bonus on the first approved deposit."""

    @pytest.mark.asyncio
    async def test_first_deposit_pays_referrer(self, storage, desk, make_user, wallet_of):
        """Test the referrer receives the configured share once."""
        referrer = await make_user("alice")
        friend = await make_user("bob", referred_by=referrer.id)

        first = await desk.request_deposit(friend.id, "100", "proof.png")
        await desk.process_payment(first.id, Decision.APPROVED)
        second = await desk.request_deposit(friend.id, "200", "proof.png")
        await desk.process_payment(second.id, Decision.APPROVED)

        wallet = await wallet_of(referrer.id)
        assert wallet.balance == Decimal("5.00")
        assert wallet.bonus_balance == Decimal("5.00")
        bonuses = await transactions_of(storage, referrer.id)
        assert len(bonuses) == 1
        assert bonuses[0].type == TransactionType.REFERRAL_BONUS
        assert bonuses[0].admin_note == f"Bonus for referring user {friend.id}"
        assert (await wallet_of(friend.id)).balance == Decimal("300")

    @pytest.mark.asyncio
    async def test_rejected_deposit_does_not_count(self, desk, make_user, wallet_of):
        """Test the bonus waits for the first approved deposit."""
        referrer = await make_user("alice")
        friend = await make_user("bob", referred_by=referrer.id)

        rejected = await desk.request_deposit(friend.id, "100", "proof.png")
        await desk.process_payment(rejected.id, Decision.REJECTED)
        approved = await desk.request_deposit(friend.id, "60", "proof.png")
        await desk.process_payment(approved.id, Decision.APPROVED)

        assert (await wallet_of(referrer.id)).balance == Decimal("3.00")

    @pytest.mark.asyncio
    async def test_configured_percent(self, storage, make_user, wallet_of):
        """Test the share comes from settings."""
        desk = PaymentDesk(storage, StaticSettings({SIGNUP_BONUS: "0", REFERRAL_BONUS_PERCENT: "10"}))
        referrer = await make_user("alice")
        friend = await make_user("bob", referred_by=referrer.id)

        tx = await desk.request_deposit(friend.id, "50", "proof.png")
        await desk.process_payment(tx.id, Decision.APPROVED)

        assert (await wallet_of(referrer.id)).balance == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_no_referrer(self, storage, desk, make_user):
        """Test deposits without a referrer create no bonus rows."""
        user = await make_user()
        tx = await desk.request_deposit(user.id, "50", "proof.png")
        await desk.process_payment(tx.id, Decision.APPROVED)

        types = [t.type for t in await transactions_of(storage, user.id)]
        assert types == [TransactionType.DEPOSIT]


class TestWithdrawals:
    """Test the hold-then-settle withdrawal flow."""

    @pytest.mark.asyncio
    async def test_request_holds_funds(self, desk, make_user, wallet_of):
        """Test the amount leaves the balance at request time."""
        user = await make_user(balance="80")

        tx = await desk.request_withdrawal(user.id, "30", "upi", "alice@upi")

        assert tx.status == TransactionStatus.PENDING
        assert tx.admin_note == "alice@upi"
        assert (await wallet_of(user.id)).balance == Decimal("50")

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, storage, desk, make_user, wallet_of):
        """Test an overdraft request records nothing."""
        user = await make_user(balance="10")

        with pytest.raises(InsufficientFunds):
            await desk.request_withdrawal(user.id, "10.01")

        assert (await wallet_of(user.id)).balance == Decimal("10")
        assert await transactions_of(storage, user.id) == []

    @pytest.mark.asyncio
    async def test_reject_restores_balance(self, desk, make_user, wallet_of):
        """Test rejection gives the held funds back."""
        user = await make_user(balance="80")
        tx = await desk.request_withdrawal(user.id, "30")

        await desk.process_payment(tx.id, Decision.REJECTED)

        wallet = await wallet_of(user.id)
        assert wallet.balance == Decimal("80")
        assert wallet.total_withdrawn == Decimal("0")

    @pytest.mark.asyncio
    async def test_approve_records_withdrawn(self, desk, make_user, wallet_of):
        """Test approval keeps the debit and counts it as withdrawn."""
        user = await make_user(balance="80")
        tx = await desk.request_withdrawal(user.id, "30")

        await desk.process_payment(tx.id, Decision.APPROVED)

        wallet = await wallet_of(user.id)
        assert wallet.balance == Decimal("50")
        assert wallet.total_withdrawn == Decimal("30")

    @pytest.mark.asyncio
    async def test_concurrent_requests_cannot_overdraw(self, desk, make_user, wallet_of):
        """Test racing withdrawals hold at most the balance."""
        user = await make_user(balance="50")

        results = await asyncio.gather(
            desk.request_withdrawal(user.id, "30"),
            desk.request_withdrawal(user.id, "30"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InsufficientFunds) for r in results) == 1
        assert (await wallet_of(user.id)).balance == Decimal("20")

    @pytest.mark.asyncio
    async def test_pending_queue(self, desk, make_user):
        """Test the admin queue lists open requests oldest first."""
        user = await make_user("dave", balance="100")
        withdrawal = await desk.request_withdrawal(user.id, "10")
        deposit = await desk.request_deposit(user.id, "5", "proof.png")

        rows = await desk.pending()

        assert [r["id"] for r in rows] == [withdrawal.id, deposit.id]
        assert rows[0]["username"] == "dave"
