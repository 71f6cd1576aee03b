import asyncio
import logging
from decimal import Decimal

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError

from conftest import TRON_ADDRESS
from taskinn.core.exceptions import (
    DuplicateSettlement,
    InsufficientBalance,
    InvalidSettlementState,
    SettingsNotFound,
    SettlementNotFound,
    TransactionFailure,
    ValidationError,
    WalletNotFound,
)
from taskinn.models.admin_wallet import AdminWallet
from taskinn.models.wallet import Wallet
from taskinn.models.wallet_transaction import WalletTransaction
from taskinn.services.ledger import LedgerService


async def wallet_balance(database, user_id, currency="USD"):
    async with database.session() as session:
        return await session.scalar(
            select(Wallet.balance).where(Wallet.user_id == user_id, Wallet.currency == currency)
        )


async def admin_balance(database, currency="USD"):
    async with database.session() as session:
        balance = await session.scalar(select(AdminWallet.balance).where(AdminWallet.currency == currency))
        return balance if balance is not None else Decimal("0")


async def transaction_count(database):
    async with database.session() as session:
        return len((await session.execute(select(WalletTransaction.id))).all())


class TestDeposits:

    @pytest.mark.asyncio
    async def test_deposit_credits_net_and_books_commission(self, ledger, database, create_user):
        user_id = await create_user()

        result = await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-1", "paypal")

        assert result.gross_amount == Decimal("100.00")
        assert result.commission_rate == Decimal("0.05")
        assert result.commission_amount == Decimal("5.00")
        assert result.net_amount == Decimal("95.00")
        assert result.new_balance == Decimal("95.00")
        assert result.transaction.reference_id == "ORDER-1"
        assert result.transaction.status == "completed"
        assert result.transaction.rail == "paypal"

        assert await wallet_balance(database, user_id) == Decimal("95.00")
        assert await admin_balance(database) == Decimal("5.00")
        settings_row = await ledger.get_settings()
        assert settings_row.total_earnings == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_replayed_deposit_returns_original_outcome(self, ledger, database, create_user):
        user_id = await create_user()
        first = await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-1", "paypal")

        with pytest.raises(DuplicateSettlement) as exc_info:
            await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-1", "paypal")

        assert exc_info.value.result.transaction.id == first.transaction.id
        assert exc_info.value.result.net_amount == Decimal("95.00")
        assert await wallet_balance(database, user_id) == Decimal("95.00")
        assert await transaction_count(database) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_credit_once(self, ledger, database, create_user):
        user_id = await create_user()

        results = await asyncio.gather(
            ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-RACE", "paypal"),
            ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-RACE", "paypal"),
            return_exceptions=True,
        )

        duplicates = [r for r in results if isinstance(r, DuplicateSettlement)]
        settled = [r for r in results if not isinstance(r, Exception)]
        assert len(settled) == 1
        assert len(duplicates) == 1
        assert await wallet_balance(database, user_id) == Decimal("95.00")
        assert await admin_balance(database) == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_find_deposit(self, ledger, create_user):
        user_id = await create_user()
        await ledger.settle_deposit(user_id, "USDT_TRC20", Decimal("20.5"), "CPTX-1", "coinpayments")

        found = await ledger.find_deposit("CPTX-1")
        assert found.user_id == user_id
        assert found.commission_amount == Decimal("1.025")
        assert found.net_amount == Decimal("19.475")
        assert await ledger.find_deposit("CPTX-unknown") is None

    @pytest.mark.asyncio
    async def test_deposit_rejects_bad_input(self, ledger, create_user):
        user_id = await create_user()

        with pytest.raises(ValidationError):
            await ledger.settle_deposit(user_id, "USD", Decimal("0"), "ORDER-1", "paypal")
        with pytest.raises(ValidationError):
            await ledger.settle_deposit(user_id, "USD", Decimal("10.001"), "ORDER-1", "paypal")
        with pytest.raises(ValidationError):
            await ledger.settle_deposit(user_id, "EUR", Decimal("10"), "ORDER-1", "paypal")
        with pytest.raises(ValidationError):
            await ledger.settle_deposit(user_id, "USD", Decimal("10"), "", "paypal")
        with pytest.raises(ValidationError):
            await ledger.settle_deposit("", "USD", Decimal("10"), "ORDER-1", "paypal")


class TestWithdrawals:

    @pytest.mark.asyncio
    async def test_withdrawal_debits_gross_and_pays_net(self, ledger, database, create_user, fund):
        user_id = await create_user()
        await fund(user_id, "100.00")
        await ledger.set_commission_rate(Decimal("0.02"))

        result = await ledger.settle_withdrawal(user_id, "USD", Decimal("50.00"), "worker@example.com")

        assert result.status == "completed"
        assert result.commission_amount == Decimal("1.00")
        assert result.payout_amount == Decimal("49.00")
        assert result.new_balance == Decimal("50.00")
        assert result.payout_reference.startswith("PAYOUT-")
        assert result.transaction.amount == Decimal("-50.00")
        assert result.transaction.processed_at is not None
        assert await admin_balance(database) == Decimal("1.00")

    @pytest.mark.asyncio
    async def test_insufficient_balance_changes_nothing(self, ledger, database, create_user, fund):
        user_id = await create_user()
        await fund(user_id, "100.00")
        before = await transaction_count(database)

        with pytest.raises(InsufficientBalance) as exc_info:
            await ledger.settle_withdrawal(user_id, "USD", Decimal("150.00"), "worker@example.com")

        assert exc_info.value.available == Decimal("100.00")
        assert exc_info.value.requested == Decimal("150.00")
        assert await wallet_balance(database, user_id) == Decimal("100.00")
        assert await transaction_count(database) == before

    @pytest.mark.asyncio
    async def test_missing_wallet(self, ledger, create_user):
        user_id = await create_user()
        with pytest.raises(WalletNotFound):
            await ledger.settle_withdrawal(user_id, "USD", Decimal("10.00"), "worker@example.com")

    @pytest.mark.asyncio
    async def test_payout_target_is_checked_per_currency(self, ledger, create_user, fund):
        user_id = await create_user()
        await fund(user_id, "100.00")

        with pytest.raises(ValidationError):
            await ledger.settle_withdrawal(user_id, "USD", Decimal("10.00"), "not-an-email")
        with pytest.raises(ValidationError):
            await ledger.settle_withdrawal(user_id, "USDT_TRC20", Decimal("10.00"), "0xabc")

    @pytest.mark.asyncio
    async def test_limits_apply_to_withdrawals(self, database, create_user, fund):
        limited = LedgerService(
            database,
            minimum_amount=Decimal("1.00"),
            maximum_amount=Decimal("500.00"),
        )
        user_id = await create_user()
        await fund(user_id, "1000.00")

        with pytest.raises(ValidationError):
            await limited.settle_withdrawal(user_id, "USD", Decimal("0.50"), "worker@example.com")
        with pytest.raises(ValidationError):
            await limited.settle_withdrawal(user_id, "USD", Decimal("600.00"), "worker@example.com")

    @pytest.mark.asyncio
    async def test_concurrent_withdrawals_cannot_overdraw(self, ledger, database, create_user, fund):
        user_id = await create_user()
        await fund(user_id, "100.00")

        results = await asyncio.gather(
            ledger.settle_withdrawal(user_id, "USD", Decimal("60.00"), "worker@example.com"),
            ledger.settle_withdrawal(user_id, "USD", Decimal("60.00"), "worker@example.com"),
            return_exceptions=True,
        )

        failures = [r for r in results if isinstance(r, InsufficientBalance)]
        settled = [r for r in results if not isinstance(r, Exception)]
        assert len(settled) == 1
        assert len(failures) == 1
        assert await wallet_balance(database, user_id) == Decimal("40.00")
        assert await ledger.reconcile() == []

    @pytest.mark.asyncio
    async def test_failed_write_rolls_back_everything(self, ledger, database, create_user, fund, monkeypatch):
        user_id = await create_user()
        await fund(user_id, "100.00")
        before = await transaction_count(database)

        async def broken_append(*args, **kwargs):
            raise SQLAlchemyError("disk I/O error")

        monkeypatch.setattr(ledger, "_append_transaction", broken_append)

        with pytest.raises(TransactionFailure) as exc_info:
            await ledger.settle_withdrawal(user_id, "USD", Decimal("50.00"), "worker@example.com")

        assert exc_info.value.retryable is False
        assert await wallet_balance(database, user_id) == Decimal("100.00")
        assert await admin_balance(database) == Decimal("0")
        assert await transaction_count(database) == before

    @pytest.mark.asyncio
    async def test_failed_deposit_is_retryable(self, ledger, database, create_user, monkeypatch):
        user_id = await create_user()

        async def broken_append(*args, **kwargs):
            raise SQLAlchemyError("database is locked")

        monkeypatch.setattr(ledger, "_append_transaction", broken_append)

        with pytest.raises(TransactionFailure) as exc_info:
            await ledger.settle_deposit(user_id, "USD", Decimal("50.00"), "ORDER-LOCKED", "paypal")

        assert exc_info.value.retryable is True
        assert await wallet_balance(database, user_id) is None
        assert await ledger.find_deposit("ORDER-LOCKED") is None


class TestCryptoWithdrawalReview:

    async def _pending(self, ledger, create_user, fund):
        user_id = await create_user()
        await fund(user_id, "100", currency="USDT_TRC20")
        await ledger.set_commission_rate(Decimal("0.01"))
        result = await ledger.settle_withdrawal(user_id, "USDT_TRC20", Decimal("50"), TRON_ADDRESS)
        return user_id, result

    @pytest.mark.asyncio
    async def test_crypto_withdrawal_reserves_funds(self, ledger, database, create_user, fund):
        user_id, result = await self._pending(ledger, create_user, fund)

        assert result.status == "pending"
        assert result.payout_amount == Decimal("49.5")
        assert result.transaction.processed_at is None
        assert await wallet_balance(database, user_id, "USDT_TRC20") == Decimal("50")
        assert await ledger.reconcile() == []

    @pytest.mark.asyncio
    async def test_confirm_completes_pending_withdrawal(self, ledger, create_user, fund):
        _, result = await self._pending(ledger, create_user, fund)

        confirmed = await ledger.confirm_withdrawal(result.payout_reference)
        assert confirmed.status == "completed"
        assert confirmed.processed_at is not None

        with pytest.raises(InvalidSettlementState):
            await ledger.confirm_withdrawal(result.payout_reference)
        with pytest.raises(InvalidSettlementState):
            await ledger.reject_withdrawal(result.payout_reference, "too late")

    @pytest.mark.asyncio
    async def test_reject_restores_funds_and_reverses_commission(self, ledger, database, create_user, fund):
        user_id, result = await self._pending(ledger, create_user, fund)
        assert await admin_balance(database, "USDT_TRC20") == Decimal("0.5")

        rejected = await ledger.reject_withdrawal(result.payout_reference, "address flagged")

        assert rejected.status == "failed"
        assert "address flagged" in rejected.description
        assert await wallet_balance(database, user_id, "USDT_TRC20") == Decimal("100")
        assert await admin_balance(database, "USDT_TRC20") == Decimal("0")
        assert (await ledger.get_settings()).total_earnings == Decimal("0")
        assert await ledger.reconcile() == []

    @pytest.mark.asyncio
    async def test_unknown_reference(self, ledger):
        with pytest.raises(SettlementNotFound):
            await ledger.confirm_withdrawal("PAYOUT-NOPE")
        with pytest.raises(SettlementNotFound):
            await ledger.reject_withdrawal("PAYOUT-NOPE")


class TestTaskPayments:

    @pytest.mark.asyncio
    async def test_task_payment_moves_funds_without_commission(self, ledger, database, create_user, fund):
        employer = await create_user()
        worker = await create_user()
        await fund(employer, "100.00")

        result = await ledger.settle_task_payment(employer, worker, "USD", Decimal("30.00"), "TASK-1")

        assert result.payer_balance == Decimal("70.00")
        assert result.payee_balance == Decimal("30.00")
        assert result.debit.amount == Decimal("-30.00")
        assert result.credit.amount == Decimal("30.00")
        assert await admin_balance(database) == Decimal("0")

        with pytest.raises(DuplicateSettlement):
            await ledger.settle_task_payment(employer, worker, "USD", Decimal("30.00"), "TASK-1")
        assert await wallet_balance(database, employer) == Decimal("70.00")

    @pytest.mark.asyncio
    async def test_refund_reverses_task_payment(self, ledger, database, create_user, fund):
        employer = await create_user()
        worker = await create_user()
        await fund(employer, "100.00")
        await ledger.settle_task_payment(employer, worker, "USD", Decimal("30.00"), "TASK-1")

        refund = await ledger.refund_task_payment("TASK-1")

        assert refund.payer_balance == Decimal("0")
        assert refund.payee_balance == Decimal("100.00")
        assert await wallet_balance(database, employer) == Decimal("100.00")
        assert await wallet_balance(database, worker) == Decimal("0")

        with pytest.raises(DuplicateSettlement):
            await ledger.refund_task_payment("TASK-1")
        with pytest.raises(SettlementNotFound):
            await ledger.refund_task_payment("TASK-UNKNOWN")
        assert await ledger.reconcile() == []

    @pytest.mark.asyncio
    async def test_task_payment_checks(self, ledger, create_user, fund):
        employer = await create_user()
        worker = await create_user()
        await fund(employer, "10.00")

        with pytest.raises(InsufficientBalance):
            await ledger.settle_task_payment(employer, worker, "USD", Decimal("30.00"), "TASK-2")
        with pytest.raises(ValidationError):
            await ledger.settle_task_payment(employer, employer, "USD", Decimal("5.00"), "TASK-3")
        with pytest.raises(WalletNotFound):
            await ledger.settle_task_payment(worker, employer, "USD", Decimal("5.00"), "TASK-4")


class TestCommissionSettings:

    @pytest.mark.asyncio
    async def test_default_rate_until_settings_exist(self, ledger):
        assert await ledger.get_commission_rate() == Decimal("0.05")
        with pytest.raises(SettingsNotFound):
            await ledger.get_settings()

    @pytest.mark.asyncio
    async def test_set_commission_rate(self, ledger):
        settings_row = await ledger.set_commission_rate(Decimal("0.075"))
        assert settings_row.commission_rate == Decimal("0.075")
        assert await ledger.get_commission_rate() == Decimal("0.0750")

        with pytest.raises(ValidationError):
            await ledger.set_commission_rate(Decimal("1"))
        with pytest.raises(ValidationError):
            await ledger.set_commission_rate(Decimal("-0.01"))
        with pytest.raises(ValidationError):
            await ledger.set_commission_rate(Decimal("0.12345"))

    @pytest.mark.asyncio
    async def test_rate_change_only_affects_later_settlements(self, ledger, create_user):
        user_id = await create_user()
        first = await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-A", "paypal")
        await ledger.set_commission_rate(Decimal("0.10"))
        second = await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-B", "paypal")

        assert first.commission_amount == Decimal("5.00")
        assert second.commission_amount == Decimal("10.00")
        assert second.new_balance == Decimal("185.00")


class TestReconciliation:

    @pytest.mark.asyncio
    async def test_reconcile_flags_out_of_band_changes(self, ledger, database, create_user):
        user_id = await create_user()
        await ledger.settle_deposit(user_id, "USD", Decimal("100.00"), "ORDER-1", "paypal")
        assert await ledger.reconcile() == []

        async with database.transaction() as session:
            await session.execute(
                update(Wallet).where(Wallet.user_id == user_id).values(balance=Decimal("120.00"))
            )

        mismatches = await ledger.reconcile()
        assert len(mismatches) == 1
        assert mismatches[0].user_id == user_id
        assert mismatches[0].ledger_total == Decimal("95.00")
        assert mismatches[0].difference == Decimal("25.00")


class TestCancellation:

    @pytest.mark.asyncio
    async def test_cancelled_caller_does_not_abort_settlement(self, ledger, database, create_user):
        user_id = await create_user()

        task = asyncio.create_task(
            ledger.settle_deposit(user_id, "USD", Decimal("40.00"), "ORDER-CANCEL", "paypal")
        )
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        settled = None
        for _ in range(200):
            settled = await ledger.find_deposit("ORDER-CANCEL")
            if settled is not None:
                break
            await asyncio.sleep(0.05)

        assert settled is not None
        assert await wallet_balance(database, user_id) == Decimal("38.00")

    @pytest.mark.asyncio
    async def test_failure_after_cancellation_is_logged(self, ledger, database, create_user, monkeypatch, caplog):
        user_id = await create_user()
        entered = asyncio.Event()
        release = asyncio.Event()

        async def stalled_append(*args, **kwargs):
            entered.set()
            await release.wait()
            raise SQLAlchemyError("connection reset")

        monkeypatch.setattr(ledger, "_append_transaction", stalled_append)
        caplog.set_level(logging.INFO, logger="taskinn.services.ledger")

        task = asyncio.create_task(
            ledger.settle_deposit(user_id, "USD", Decimal("40.00"), "ORDER-GONE", "paypal")
        )
        await asyncio.wait_for(entered.wait(), timeout=5)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        release.set()

        for _ in range(200):
            if any("failed after its caller went away" in r.getMessage() for r in caplog.records):
                break
            await asyncio.sleep(0.01)

        assert any("failed after its caller went away" in r.getMessage() for r in caplog.records)
        assert await ledger.find_deposit("ORDER-GONE") is None
        assert await wallet_balance(database, user_id) is None
