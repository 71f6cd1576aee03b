import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from taskinn.api.deps import get_current_user, get_ledger, get_coinpayments_client
from taskinn.core.currencies import COINPAYMENTS_CODES, Currency
from taskinn.core.exceptions import UpstreamRailError
from taskinn.db.database import get_db
from taskinn.models.user import User
from taskinn.models.wallet import Wallet
from taskinn.models.wallet_transaction import WalletTransaction, TransactionStatus
from taskinn.schemas.base import BaseResponse
from taskinn.schemas.ledger import WithdrawalSettlement
from taskinn.schemas.wallet import WalletResponse, WalletTransactionResponse, WithdrawalRequest
from taskinn.services.coinpayments import CoinPaymentsClient
from taskinn.services.ledger import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/", response_model=BaseResponse[List[WalletResponse]])
async def get_user_wallets(
    currency: Optional[Currency] = None,
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get user's wallets"""

    query = select(Wallet).where(Wallet.user_id == current_user.id)

    if currency:
        query = query.where(Wallet.currency == currency.value)

    query = query.order_by(Wallet.created_at.desc())

    result = await db.execute(query)
    wallets = result.scalars().all()

    return BaseResponse.success_response(data=wallets, message="Wallets retrieved successfully")


@router.get("/transactions", response_model=BaseResponse[List[WalletTransactionResponse]])
async def get_wallet_transactions(
    currency: Optional[Currency] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """Get user's ledger history, newest first"""

    query = (
        select(WalletTransaction)
        .join(Wallet, Wallet.id == WalletTransaction.wallet_id)
        .where(Wallet.user_id == current_user.id)
    )

    if currency:
        query = query.where(WalletTransaction.currency == currency.value)

    query = query.order_by(WalletTransaction.created_at.desc()).offset(skip).limit(limit)

    result = await db.execute(query)
    transactions = result.scalars().all()

    return BaseResponse.success_response(data=transactions, message="Transactions retrieved successfully")


@router.post("/withdraw", response_model=BaseResponse[WithdrawalSettlement])
async def withdraw(
    withdrawal: WithdrawalRequest,
    current_user: User = Depends(get_current_user),
    ledger: LedgerService = Depends(get_ledger),
    coinpayments: CoinPaymentsClient = Depends(get_coinpayments_client),
):
    """Withdraw funds to PayPal (USD) or a TRC-20 address (USDT)"""

    settlement = await ledger.settle_withdrawal(
        current_user.id,
        withdrawal.currency,
        withdrawal.amount,
        withdrawal.payout_address,
    )

    if settlement.status != TransactionStatus.PENDING.value:
        return BaseResponse.success_response(data=settlement, message="Withdrawal processed successfully")

    # Crypto payouts are queued on the rail and confirmed by an operator later
    try:
        payout = await coinpayments.create_withdrawal(
            settlement.payout_amount,
            settlement.payout_target,
            COINPAYMENTS_CODES[withdrawal.currency],
            note=f"TaskInn withdrawal {settlement.payout_reference}",
        )
    except UpstreamRailError:
        logger.error(f"Payout {settlement.payout_reference} could not be queued, restoring funds")
        await ledger.reject_withdrawal(settlement.payout_reference, "payout could not be queued")
        raise

    settlement.rail_withdrawal_id = payout.get("id")
    return BaseResponse.success_response(
        data=settlement,
        message="Withdrawal submitted and awaiting confirmation",
    )
