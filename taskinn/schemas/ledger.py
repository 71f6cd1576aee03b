from pydantic import BaseModel
from typing import Optional
from decimal import Decimal
from uuid import UUID

from taskinn.schemas.wallet import WalletTransactionResponse


class DepositSettlement(BaseModel):
    """Outcome of crediting a confirmed deposit"""
    user_id: str
    wallet_id: UUID
    currency: str
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    new_balance: Decimal
    transaction: WalletTransactionResponse


class WithdrawalSettlement(BaseModel):
    """Outcome of debiting a withdrawal; payout_amount is what the rail must send"""
    user_id: str
    wallet_id: UUID
    currency: str
    gross_amount: Decimal
    commission_rate: Decimal
    commission_amount: Decimal
    payout_amount: Decimal
    payout_reference: str
    payout_target: str
    status: str
    new_balance: Decimal
    transaction: WalletTransactionResponse
    rail_withdrawal_id: Optional[str] = None


class TaskPaymentSettlement(BaseModel):
    task_reference: str
    currency: str
    amount: Decimal
    payer_balance: Decimal
    payee_balance: Decimal
    debit: WalletTransactionResponse
    credit: WalletTransactionResponse


class ReconciliationEntry(BaseModel):
    wallet_id: UUID
    user_id: str
    currency: str
    balance: Decimal
    ledger_total: Decimal
    difference: Decimal
