"""
Ledger settlement engine.

Every money movement (deposit, withdrawal, task payment) goes through
LedgerService. Each operation runs in one database transaction: the wallet
rows it reads are locked FOR UPDATE, balances move through SQL-side
arithmetic, debits are guarded by ``balance >= amount`` in the UPDATE itself,
and the audit record is written in the same unit. A wallet's balance
therefore always equals the sum of its non-failed transactions.
"""
import asyncio
import functools
import logging
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union

from sqlalchemy import select, update, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from taskinn.core.currencies import Currency, Rail, CURRENCY_RAILS, MANUAL_REVIEW_RAILS
from taskinn.core.database_types import MONEY_SCALE
from taskinn.core.exceptions import (
    DuplicateSettlement,
    InsufficientBalance,
    InvalidSettlementState,
    LedgerError,
    SettingsNotFound,
    SettlementNotFound,
    TransactionFailure,
    ValidationError,
    WalletNotFound,
)
from taskinn.core.security import generate_reference_id
from taskinn.db.database import Database
from taskinn.models.admin_settings import AdminSettings, SETTINGS_ROW_ID
from taskinn.models.admin_wallet import AdminWallet
from taskinn.models.wallet import Wallet
from taskinn.models.wallet_transaction import WalletTransaction, TransactionType, TransactionStatus
from taskinn.schemas.ledger import (
    DepositSettlement,
    ReconciliationEntry,
    TaskPaymentSettlement,
    WithdrawalSettlement,
)
from taskinn.schemas.wallet import WalletTransactionResponse
from taskinn.services.fee_service import FeeService

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
TRON_ADDRESS_PATTERN = re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$")

RATE_SCALE = Decimal("0.0001")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _log_detached_outcome(action: str, settlement: "asyncio.Future") -> None:
    # Done-callback for a settlement whose caller was cancelled
    if settlement.cancelled():
        logger.error(f"Ledger {action} was cancelled before it finished")
        return
    error = settlement.exception()
    if error is not None:
        logger.error(f"Ledger {action} failed after its caller went away: {error!r}")
    else:
        logger.info(f"Ledger {action} committed after its caller went away")


class LedgerService:
    """Commission settlement over user wallets, admin wallets and admin settings"""

    def __init__(
        self,
        database: Database,
        default_commission_rate: Decimal = Decimal("0.05"),
        minimum_amount: Optional[Decimal] = None,
        maximum_amount: Optional[Decimal] = None,
    ):
        self.database = database
        self.default_commission_rate = self._check_rate(default_commission_rate)
        self.minimum_amount = minimum_amount
        self.maximum_amount = maximum_amount

    @staticmethod
    def parse_currency(currency: Union[str, Currency]) -> Currency:
        try:
            return Currency(currency)
        except ValueError:
            raise ValidationError(
                f"Unsupported currency: {currency}",
                details={"supported": [c.value for c in Currency]},
            )

    def validate_amount(
        self, currency: Union[str, Currency], amount, check_limits: bool = True
    ) -> Tuple[Currency, Decimal]:
        """Check currency and amount before anything touches the database"""
        currency = self.parse_currency(currency)
        try:
            amount = FeeService.to_amount(amount, currency)
        except ValueError as e:
            raise ValidationError(str(e))

        if amount <= 0:
            raise ValidationError("Amount must be greater than zero")
        if not check_limits:
            return currency, amount
        if self.minimum_amount is not None and amount < self.minimum_amount:
            raise ValidationError(
                f"Minimum amount is {self.minimum_amount} {currency.value}",
                details={"minimum": str(self.minimum_amount)},
            )
        if self.maximum_amount is not None and amount > self.maximum_amount:
            raise ValidationError(
                f"Maximum amount is {self.maximum_amount} {currency.value}",
                details={"maximum": str(self.maximum_amount)},
            )
        return currency, amount

    @staticmethod
    def validate_payout_target(currency: Currency, target: Optional[str]) -> str:
        target = (target or "").strip()
        if currency == Currency.USD and not EMAIL_PATTERN.match(target):
            raise ValidationError("A valid PayPal email is required")
        if currency == Currency.USDT_TRC20 and not TRON_ADDRESS_PATTERN.match(target):
            raise ValidationError("Invalid TRON address format")
        return target

    @staticmethod
    def _check_rate(rate) -> Decimal:
        try:
            rate = Decimal(str(rate))
        except InvalidOperation:
            raise ValidationError(f"Invalid commission rate: {rate!r}")
        if not rate.is_finite() or rate < 0 or rate >= 1:
            raise ValidationError("Commission rate must be in [0, 1)")
        if rate != rate.quantize(RATE_SCALE):
            raise ValidationError("Commission rate supports at most 4 decimal places")
        return rate

    async def settle_deposit(
        self,
        user_id: str,
        currency: Union[str, Currency],
        gross_amount,
        external_reference_id: str,
        rail: Union[str, Rail],
        transaction_hash: Optional[str] = None,
    ) -> DepositSettlement:
        """
        Credit a deposit confirmed by a payment rail.

        The platform commission is taken out of the gross amount; the user
        wallet receives the net. A reference that was already settled raises
        DuplicateSettlement carrying the original result. Min/max limits
        apply when a deposit is initiated, not when the rail confirms it.
        """
        self._require_user(user_id)
        currency, gross = self.validate_amount(currency, gross_amount, check_limits=False)
        if not external_reference_id:
            raise ValidationError("An external reference id is required")
        try:
            rail = Rail(rail)
        except ValueError:
            raise ValidationError(f"Unknown payment rail: {rail}")

        try:
            return await self._atomic(
                "deposit",
                self._settle_deposit(user_id, currency, gross, external_reference_id, rail, transaction_hash),
            )
        except TransactionFailure as e:
            # Two deliveries of the same confirmation raced past the lookup
            if isinstance(e.__cause__, IntegrityError):
                prior = await self.find_deposit(external_reference_id)
                if prior is not None:
                    logger.info(f"Deposit {external_reference_id} settled concurrently, returning prior result")
                    raise DuplicateSettlement(external_reference_id, prior) from None
            raise

    async def settle_withdrawal(
        self,
        user_id: str,
        currency: Union[str, Currency],
        gross_amount,
        payout_target: str,
    ) -> WithdrawalSettlement:
        """
        Debit a withdrawal and book the commission.

        The full gross amount leaves the wallet; the rail is instructed to
        pay out the net. Crypto payouts are created pending until an operator
        confirms them. A rolled back withdrawal is reported as not retryable;
        the user has to submit it again.
        """
        self._require_user(user_id)
        currency, gross = self.validate_amount(currency, gross_amount)
        target = self.validate_payout_target(currency, payout_target)
        return await self._atomic(
            "withdrawal", self._settle_withdrawal(user_id, currency, gross, target), retryable=False
        )

    async def confirm_withdrawal(self, reference_id: str) -> WalletTransactionResponse:
        """Operator confirmation of a pending payout"""
        return await self._atomic("withdrawal confirmation", self._confirm_withdrawal(reference_id))

    async def reject_withdrawal(self, reference_id: str, reason: Optional[str] = None) -> WalletTransactionResponse:
        """Fail a pending payout, give the funds back and reverse the commission"""
        return await self._atomic("withdrawal rejection", self._reject_withdrawal(reference_id, reason))

    async def settle_task_payment(
        self,
        payer_id: str,
        payee_id: str,
        currency: Union[str, Currency],
        amount,
        task_reference: str,
    ) -> TaskPaymentSettlement:
        """Move funds from employer to worker for an approved task (no commission)"""
        self._require_user(payer_id)
        self._require_user(payee_id)
        if payer_id == payee_id:
            raise ValidationError("Payer and payee must be different users")
        if not task_reference:
            raise ValidationError("A task reference is required")
        currency, amount = self.validate_amount(currency, amount)
        return await self._atomic(
            "task payment",
            self._settle_task_payment(payer_id, payee_id, currency, amount, task_reference),
        )

    async def refund_task_payment(self, task_reference: str) -> TaskPaymentSettlement:
        """Reverse a task payment from worker back to employer"""
        return await self._atomic("task refund", self._refund_task_payment(task_reference))

    async def find_deposit(self, reference_id: str) -> Optional[DepositSettlement]:
        async with self.database.session() as session:
            txn = await self._find_transaction(session, reference_id)
            if txn is None or txn.transaction_type != TransactionType.DEPOSIT.value:
                return None
            wallet = await session.get(Wallet, txn.wallet_id)
            return self._deposit_result(wallet, txn)

    async def get_settings(self) -> AdminSettings:
        async with self.database.session() as session:
            settings_row = await session.get(AdminSettings, SETTINGS_ROW_ID)
            if settings_row is None:
                raise SettingsNotFound("Admin settings have not been initialised")
            return settings_row

    async def get_commission_rate(self) -> Decimal:
        async with self.database.session() as session:
            return await self._read_commission_rate(session)

    async def set_commission_rate(self, rate) -> AdminSettings:
        rate = self._check_rate(rate)
        return await self._atomic("commission rate update", self._set_commission_rate(rate))

    async def reconcile(self) -> List[ReconciliationEntry]:
        """Compare every wallet balance with the sum of its non-failed transactions"""
        async with self.database.session() as session:
            ledger_totals = (
                select(
                    WalletTransaction.wallet_id.label("wallet_id"),
                    func.sum(WalletTransaction.amount).label("total"),
                )
                .where(WalletTransaction.status != TransactionStatus.FAILED.value)
                .group_by(WalletTransaction.wallet_id)
                .subquery()
            )
            result = await session.execute(
                select(Wallet, ledger_totals.c.total)
                .outerjoin(ledger_totals, ledger_totals.c.wallet_id == Wallet.id)
                .order_by(Wallet.created_at)
            )

            mismatches = []
            for wallet, total in result.all():
                ledger_total = Decimal(str(total or 0)).quantize(MONEY_SCALE)
                if wallet.balance != ledger_total:
                    mismatches.append(ReconciliationEntry(
                        wallet_id=wallet.id,
                        user_id=wallet.user_id,
                        currency=wallet.currency,
                        balance=wallet.balance,
                        ledger_total=ledger_total,
                        difference=wallet.balance - ledger_total,
                    ))
            return mismatches

    async def _atomic(self, action: str, operation, retryable: bool = True):
        """Run one settlement to completion even if the caller goes away.

        The body is shielded from cancellation so it always ends in a commit
        or a rollback; datastore errors come back as TransactionFailure.
        Withdrawals pass retryable=False.
        """
        settlement = asyncio.ensure_future(operation)
        try:
            return await asyncio.shield(settlement)
        except asyncio.CancelledError:
            settlement.add_done_callback(functools.partial(_log_detached_outcome, action))
            raise
        except LedgerError:
            raise
        except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
            logger.error(f"Ledger {action} rolled back: {e}")
            failure = TransactionFailure(
                f"The {action} could not be completed and was rolled back",
                details={"operation": action},
            )
            failure.retryable = retryable
            raise failure from e

    async def _settle_deposit(
        self,
        user_id: str,
        currency: Currency,
        gross: Decimal,
        reference_id: str,
        rail: Rail,
        transaction_hash: Optional[str],
    ) -> DepositSettlement:
        async with self.database.transaction() as session:
            prior = await self._find_transaction(session, reference_id)
            if prior is not None:
                if prior.transaction_type != TransactionType.DEPOSIT.value:
                    raise ValidationError(f"Reference {reference_id} belongs to another transaction")
                wallet = await session.get(Wallet, prior.wallet_id)
                logger.info(f"Deposit {reference_id} already settled, skipping")
                raise DuplicateSettlement(reference_id, self._deposit_result(wallet, prior))

            rate = await self._read_commission_rate(session)
            net, commission = FeeService.split_gross_amount(gross, rate, currency)

            wallet = await self._get_or_create_wallet(session, user_id, currency)
            await self._adjust_wallet(session, wallet.id, net)
            await self._add_commission(session, currency, commission)

            txn = await self._append_transaction(
                session,
                wallet_id=wallet.id,
                transaction_type=TransactionType.DEPOSIT.value,
                amount=net,
                currency=currency.value,
                status=TransactionStatus.COMPLETED.value,
                gross_amount=gross,
                commission_amount=commission,
                rail=rail.value,
                reference_id=reference_id,
                transaction_hash=transaction_hash,
                description=(
                    f"{rail.value} deposit of {gross} {currency.value} "
                    f"(Commission: {commission} {currency.value}, Net: {net} {currency.value})"
                ),
            )
            await session.refresh(wallet)
            result = self._deposit_result(wallet, txn, rate)

        logger.info(
            f"Deposit {reference_id} settled for user {user_id}: "
            f"gross={gross} commission={commission} net={net} {currency.value}"
        )
        return result

    async def _settle_withdrawal(
        self,
        user_id: str,
        currency: Currency,
        gross: Decimal,
        target: str,
    ) -> WithdrawalSettlement:
        rail = CURRENCY_RAILS[currency]
        status = (
            TransactionStatus.PENDING if rail in MANUAL_REVIEW_RAILS else TransactionStatus.COMPLETED
        )
        payout_reference = generate_reference_id("PAYOUT")

        async with self.database.transaction() as session:
            wallet = await self._lock_wallet(session, user_id, currency)
            if wallet is None:
                raise WalletNotFound(
                    f"No {currency.value} wallet found for user",
                    details={"currency": currency.value},
                )
            if wallet.balance < gross:
                logger.warning(
                    f"Withdrawal rejected for user {user_id}: "
                    f"requested {gross}, available {wallet.balance} {currency.value}"
                )
                raise InsufficientBalance(wallet.balance, gross, currency.value)

            rate = await self._read_commission_rate(session)
            net, commission = FeeService.split_gross_amount(gross, rate, currency)

            if not await self._adjust_wallet(session, wallet.id, -gross):
                # Balance moved between the read and the guarded update
                available = await session.scalar(select(Wallet.balance).where(Wallet.id == wallet.id))
                logger.warning(
                    f"Withdrawal rejected for user {user_id}: "
                    f"requested {gross}, available {available} {currency.value}"
                )
                raise InsufficientBalance(available, gross, currency.value)

            await self._add_commission(session, currency, commission)

            txn = await self._append_transaction(
                session,
                wallet_id=wallet.id,
                transaction_type=TransactionType.WITHDRAWAL.value,
                amount=-gross,
                currency=currency.value,
                status=status.value,
                gross_amount=gross,
                commission_amount=commission,
                rail=rail.value,
                reference_id=payout_reference,
                transaction_hash=target,
                description=(
                    f"Withdrawal of {gross} {currency.value} to {target} via {rail.value} "
                    f"(Net: {net} {currency.value}, Commission: {commission} {currency.value})"
                ),
                processed_at=_utcnow() if status == TransactionStatus.COMPLETED else None,
            )
            await session.refresh(wallet)

            result = WithdrawalSettlement(
                user_id=user_id,
                wallet_id=wallet.id,
                currency=currency.value,
                gross_amount=gross,
                commission_rate=rate,
                commission_amount=commission,
                payout_amount=net,
                payout_reference=payout_reference,
                payout_target=target,
                status=status.value,
                new_balance=wallet.balance,
                transaction=WalletTransactionResponse.model_validate(txn),
            )

        logger.info(
            f"Withdrawal {payout_reference} settled for user {user_id}: "
            f"gross={gross} commission={commission} payout={net} {currency.value} ({status.value})"
        )
        return result

    async def _confirm_withdrawal(self, reference_id: str) -> WalletTransactionResponse:
        async with self.database.transaction() as session:
            txn = await self._close_pending_withdrawal(session, reference_id, TransactionStatus.COMPLETED)
            result = WalletTransactionResponse.model_validate(txn)
        logger.info(f"Withdrawal {reference_id} confirmed")
        return result

    async def _reject_withdrawal(self, reference_id: str, reason: Optional[str]) -> WalletTransactionResponse:
        async with self.database.transaction() as session:
            txn = await self._close_pending_withdrawal(
                session, reference_id, TransactionStatus.FAILED, note=reason or "rejected"
            )
            gross = -txn.amount
            commission = txn.commission_amount or Decimal("0")

            await self._adjust_wallet(session, txn.wallet_id, gross)
            await self._add_commission(session, Currency(txn.currency), -commission)
            result = WalletTransactionResponse.model_validate(txn)

        logger.warning(
            f"Withdrawal {reference_id} rejected ({reason or 'no reason given'}): "
            f"restored {gross} {txn.currency}, reversed commission {commission}"
        )
        return result

    async def _settle_task_payment(
        self,
        payer_id: str,
        payee_id: str,
        currency: Currency,
        amount: Decimal,
        task_reference: str,
    ) -> TaskPaymentSettlement:
        debit_ref = f"{task_reference}:debit"
        credit_ref = f"{task_reference}:credit"

        async with self.database.transaction() as session:
            prior_debit = await self._find_transaction(session, debit_ref)
            if prior_debit is not None:
                prior_credit = await self._find_transaction(session, credit_ref)
                raise DuplicateSettlement(
                    task_reference,
                    await self._task_result(session, task_reference, prior_debit, prior_credit),
                )

            # Lock both wallets in a fixed order so opposite payments cannot deadlock
            wallets = {}
            for user_id in sorted((payer_id, payee_id)):
                if user_id == payer_id:
                    wallets[user_id] = await self._lock_wallet(session, user_id, currency)
                else:
                    wallets[user_id] = await self._get_or_create_wallet(session, user_id, currency)
            payer_wallet, payee_wallet = wallets[payer_id], wallets[payee_id]

            if payer_wallet is None:
                raise WalletNotFound(
                    f"No {currency.value} wallet found for payer",
                    details={"currency": currency.value},
                )
            if not await self._adjust_wallet(session, payer_wallet.id, -amount):
                available = await session.scalar(select(Wallet.balance).where(Wallet.id == payer_wallet.id))
                raise InsufficientBalance(available, amount, currency.value)
            await self._adjust_wallet(session, payee_wallet.id, amount)

            debit = await self._append_transaction(
                session,
                wallet_id=payer_wallet.id,
                transaction_type=TransactionType.TASK_PAYMENT.value,
                amount=-amount,
                currency=currency.value,
                status=TransactionStatus.COMPLETED.value,
                gross_amount=amount,
                commission_amount=Decimal("0"),
                rail=Rail.INTERNAL.value,
                reference_id=debit_ref,
                description=f"Payment of {amount} {currency.value} for task {task_reference}",
                processed_at=_utcnow(),
            )
            credit = await self._append_transaction(
                session,
                wallet_id=payee_wallet.id,
                transaction_type=TransactionType.TASK_PAYMENT.value,
                amount=amount,
                currency=currency.value,
                status=TransactionStatus.COMPLETED.value,
                gross_amount=amount,
                commission_amount=Decimal("0"),
                rail=Rail.INTERNAL.value,
                reference_id=credit_ref,
                description=f"Earnings of {amount} {currency.value} for task {task_reference}",
                processed_at=_utcnow(),
            )
            result = await self._task_result(session, task_reference, debit, credit)

        logger.info(f"Task payment {task_reference} settled: {amount} {currency.value} from {payer_id} to {payee_id}")
        return result

    async def _refund_task_payment(self, task_reference: str) -> TaskPaymentSettlement:
        refund_debit_ref = f"{task_reference}:refund:debit"
        refund_credit_ref = f"{task_reference}:refund:credit"

        async with self.database.transaction() as session:
            original_debit = await self._find_transaction(session, f"{task_reference}:debit")
            original_credit = await self._find_transaction(session, f"{task_reference}:credit")
            if original_debit is None or original_credit is None:
                raise SettlementNotFound(f"No task payment found for {task_reference}")

            prior = await self._find_transaction(session, refund_debit_ref)
            if prior is not None:
                prior_credit = await self._find_transaction(session, refund_credit_ref)
                raise DuplicateSettlement(
                    f"{task_reference}:refund",
                    await self._task_result(session, task_reference, prior, prior_credit),
                )

            amount = original_credit.amount
            currency = original_credit.currency
            if not await self._adjust_wallet(session, original_credit.wallet_id, -amount):
                available = await session.scalar(
                    select(Wallet.balance).where(Wallet.id == original_credit.wallet_id)
                )
                raise InsufficientBalance(available, amount, currency)
            await self._adjust_wallet(session, original_debit.wallet_id, amount)

            debit = await self._append_transaction(
                session,
                wallet_id=original_credit.wallet_id,
                transaction_type=TransactionType.TASK_REFUND.value,
                amount=-amount,
                currency=currency,
                status=TransactionStatus.COMPLETED.value,
                gross_amount=amount,
                commission_amount=Decimal("0"),
                rail=Rail.INTERNAL.value,
                reference_id=refund_debit_ref,
                description=f"Refund of {amount} {currency} for task {task_reference}",
                processed_at=_utcnow(),
            )
            credit = await self._append_transaction(
                session,
                wallet_id=original_debit.wallet_id,
                transaction_type=TransactionType.TASK_REFUND.value,
                amount=amount,
                currency=currency,
                status=TransactionStatus.COMPLETED.value,
                gross_amount=amount,
                commission_amount=Decimal("0"),
                rail=Rail.INTERNAL.value,
                reference_id=refund_credit_ref,
                description=f"Refund of {amount} {currency} for task {task_reference}",
                processed_at=_utcnow(),
            )
            result = await self._task_result(session, task_reference, debit, credit)

        logger.info(f"Task payment {task_reference} refunded: {amount} {currency}")
        return result

    async def _set_commission_rate(self, rate: Decimal) -> AdminSettings:
        async with self.database.transaction() as session:
            table = AdminSettings.__table__
            await session.execute(
                self._insert(table)
                .values(id=SETTINGS_ROW_ID, commission_rate=rate, total_earnings=Decimal("0"))
                .on_conflict_do_update(
                    index_elements=[table.c.id],
                    set_={"commission_rate": rate, "updated_at": func.now()},
                )
            )
            settings_row = await session.get(AdminSettings, SETTINGS_ROW_ID, populate_existing=True)
        logger.info(f"Commission rate set to {rate}")
        return settings_row

    def _insert(self, table):
        if self.database.dialect_name == "postgresql":
            return pg_insert(table)
        if self.database.dialect_name == "sqlite":
            return sqlite_insert(table)
        raise RuntimeError(f"Unsupported database dialect: {self.database.dialect_name}")

    @staticmethod
    def _require_user(user_id: str):
        if not user_id:
            raise ValidationError("An authenticated user id is required")

    async def _read_commission_rate(self, session: AsyncSession) -> Decimal:
        rate = await session.scalar(
            select(AdminSettings.commission_rate).where(AdminSettings.id == SETTINGS_ROW_ID)
        )
        if rate is None:
            return self.default_commission_rate
        return Decimal(str(rate)).quantize(RATE_SCALE)

    async def _lock_wallet(self, session: AsyncSession, user_id: str, currency: Currency) -> Optional[Wallet]:
        result = await session.execute(
            select(Wallet)
            .where(Wallet.user_id == user_id, Wallet.currency == currency.value)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _get_or_create_wallet(self, session: AsyncSession, user_id: str, currency: Currency) -> Wallet:
        table = Wallet.__table__
        await session.execute(
            self._insert(table)
            .values(user_id=user_id, currency=currency.value, balance=Decimal("0"))
            .on_conflict_do_nothing(index_elements=[table.c.user_id, table.c.currency])
        )
        return await self._lock_wallet(session, user_id, currency)

    async def _adjust_wallet(self, session: AsyncSession, wallet_id, delta: Decimal) -> bool:
        """Add delta to a wallet; debits only apply while the balance covers them"""
        table = Wallet.__table__
        stmt = update(table).where(table.c.id == wallet_id)
        if delta < 0:
            stmt = stmt.where(table.c.balance >= -delta)
        result = await session.execute(
            stmt.values(balance=table.c.balance + delta, updated_at=func.now())
        )
        return result.rowcount == 1

    async def _add_commission(self, session: AsyncSession, currency: Currency, commission: Decimal):
        """Book commission (negative to reverse) on the admin wallet and settings"""
        if commission == 0:
            return

        wallets = AdminWallet.__table__
        await session.execute(
            self._insert(wallets)
            .values(
                currency=currency.value,
                balance=commission,
                total_earned=commission,
                total_withdrawn=Decimal("0"),
            )
            .on_conflict_do_update(
                index_elements=[wallets.c.currency],
                set_={
                    "balance": wallets.c.balance + commission,
                    "total_earned": wallets.c.total_earned + commission,
                    "updated_at": func.now(),
                },
            )
        )

        settings_table = AdminSettings.__table__
        await session.execute(
            self._insert(settings_table)
            .values(
                id=SETTINGS_ROW_ID,
                commission_rate=self.default_commission_rate,
                total_earnings=commission,
            )
            .on_conflict_do_update(
                index_elements=[settings_table.c.id],
                set_={
                    "total_earnings": settings_table.c.total_earnings + commission,
                    "updated_at": func.now(),
                },
            )
        )

    async def _append_transaction(self, session: AsyncSession, **values) -> WalletTransaction:
        txn = WalletTransaction(**values)
        session.add(txn)
        await session.flush()
        await session.refresh(txn)
        return txn

    async def _find_transaction(self, session: AsyncSession, reference_id: str) -> Optional[WalletTransaction]:
        return await session.scalar(
            select(WalletTransaction).where(WalletTransaction.reference_id == reference_id)
        )

    async def _close_pending_withdrawal(
        self,
        session: AsyncSession,
        reference_id: str,
        status: TransactionStatus,
        note: Optional[str] = None,
    ) -> WalletTransaction:
        txn = await self._find_transaction(session, reference_id)
        if txn is None or txn.transaction_type != TransactionType.WITHDRAWAL.value:
            raise SettlementNotFound(f"No withdrawal found for reference {reference_id}")

        table = WalletTransaction.__table__
        values = {"status": status.value, "processed_at": _utcnow()}
        if note:
            values["description"] = f"{txn.description or ''} [{status.value}: {note}]".strip()

        result = await session.execute(
            update(table)
            .where(table.c.id == txn.id, table.c.status == TransactionStatus.PENDING.value)
            .values(**values)
        )
        await session.refresh(txn)
        if result.rowcount != 1:
            raise InvalidSettlementState(
                f"Withdrawal {reference_id} is already {txn.status}",
                details={"status": txn.status},
            )
        return txn

    def _deposit_result(
        self, wallet: Wallet, txn: WalletTransaction, rate: Optional[Decimal] = None
    ) -> DepositSettlement:
        gross = txn.gross_amount if txn.gross_amount is not None else txn.amount
        commission = txn.commission_amount or Decimal("0")
        if rate is None:
            rate = (commission / gross).quantize(RATE_SCALE) if gross else Decimal("0")
        return DepositSettlement(
            user_id=wallet.user_id,
            wallet_id=wallet.id,
            currency=wallet.currency,
            gross_amount=gross,
            commission_rate=rate,
            commission_amount=commission,
            net_amount=txn.amount,
            new_balance=wallet.balance,
            transaction=WalletTransactionResponse.model_validate(txn),
        )

    async def _task_result(
        self,
        session: AsyncSession,
        task_reference: str,
        debit: WalletTransaction,
        credit: WalletTransaction,
    ) -> TaskPaymentSettlement:
        debit_balance = await session.scalar(select(Wallet.balance).where(Wallet.id == debit.wallet_id))
        credit_balance = await session.scalar(select(Wallet.balance).where(Wallet.id == credit.wallet_id))
        return TaskPaymentSettlement(
            task_reference=task_reference,
            currency=credit.currency,
            amount=credit.amount,
            payer_balance=debit_balance,
            payee_balance=credit_balance,
            debit=WalletTransactionResponse.model_validate(debit),
            credit=WalletTransactionResponse.model_validate(credit),
        )
