import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from taskinn.api.deps import get_current_admin, get_ledger
from taskinn.core.security import create_access_token, verify_password
from taskinn.db.database import get_db
from taskinn.models.admin_settings import AdminSettings, SETTINGS_ROW_ID
from taskinn.models.admin_wallet import AdminWallet
from taskinn.models.wallet_transaction import WalletTransaction, TransactionType, TransactionStatus
from taskinn.schemas.admin import (
    AdminLogin, Token, AdminSettingsResponse, CommissionRateUpdate, WithdrawalReview
)
from taskinn.schemas.admin_wallet import AdminWalletResponse
from taskinn.schemas.base import BaseResponse
from taskinn.schemas.ledger import ReconciliationEntry
from taskinn.schemas.wallet import WalletTransactionResponse
from taskinn.services.ledger import LedgerService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=BaseResponse[Token])
async def admin_login(login_data: AdminLogin, db: AsyncSession = Depends(get_db)):
    """Admin login"""
    admin_settings = await db.get(AdminSettings, SETTINGS_ROW_ID)

    if (
        not admin_settings
        or not admin_settings.admin_password_hash
        or admin_settings.admin_username != login_data.username
        or not verify_password(login_data.password, admin_settings.admin_password_hash)
    ):
        logger.warning(f"Failed admin login for {login_data.username}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password"
        )

    access_token = create_access_token(subject=admin_settings.admin_username)
    logger.info(f"Admin {admin_settings.admin_username} logged in")

    return BaseResponse.success_response(
        data=Token(access_token=access_token), message="Login successful"
    )


@router.get("/settings", response_model=BaseResponse[AdminSettingsResponse])
async def get_admin_settings(
    ledger: LedgerService = Depends(get_ledger),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """Get commission rate and lifetime earnings"""
    admin_settings = await ledger.get_settings()
    return BaseResponse.success_response(data=admin_settings, message="Settings retrieved successfully")


@router.put("/settings/commission-rate", response_model=BaseResponse[AdminSettingsResponse])
async def update_commission_rate(
    update: CommissionRateUpdate,
    ledger: LedgerService = Depends(get_ledger),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """Change the commission rate applied to future settlements"""
    admin_settings = await ledger.set_commission_rate(update.commission_rate)
    logger.info(f"Admin {current_admin.admin_username} set commission rate to {update.commission_rate}")
    return BaseResponse.success_response(data=admin_settings, message="Commission rate updated successfully")


@router.get("/wallets", response_model=BaseResponse[List[AdminWalletResponse]])
async def get_admin_wallets(
    db: AsyncSession = Depends(get_db),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """Get platform commission wallets"""
    result = await db.execute(select(AdminWallet).order_by(AdminWallet.currency))
    wallets = result.scalars().all()
    return BaseResponse.success_response(data=wallets, message="Admin wallets retrieved successfully")


@router.get("/withdrawals/pending", response_model=BaseResponse[List[WalletTransactionResponse]])
async def get_pending_withdrawals(
    currency: Optional[str] = None,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """Get withdrawals waiting for operator review, oldest first"""
    query = select(WalletTransaction).where(
        WalletTransaction.transaction_type == TransactionType.WITHDRAWAL.value,
        WalletTransaction.status == TransactionStatus.PENDING.value,
    )
    if currency:
        query = query.where(WalletTransaction.currency == currency.upper())

    query = query.order_by(WalletTransaction.created_at.asc()).offset(skip).limit(limit)
    result = await db.execute(query)
    return BaseResponse.success_response(
        data=result.scalars().all(), message="Pending withdrawals retrieved successfully"
    )


@router.post("/withdrawals/{reference_id}/confirm", response_model=BaseResponse[WalletTransactionResponse])
async def confirm_withdrawal(
    reference_id: str,
    ledger: LedgerService = Depends(get_ledger),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """Mark a pending payout as sent"""
    transaction = await ledger.confirm_withdrawal(reference_id)
    return BaseResponse.success_response(data=transaction, message="Withdrawal confirmed")


@router.post("/withdrawals/{reference_id}/reject", response_model=BaseResponse[WalletTransactionResponse])
async def reject_withdrawal(
    reference_id: str,
    review: Optional[WithdrawalReview] = None,
    ledger: LedgerService = Depends(get_ledger),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """Reject a pending payout and return the funds to the user"""
    reason = review.reason if review else None
    transaction = await ledger.reject_withdrawal(reference_id, reason)
    return BaseResponse.success_response(data=transaction, message="Withdrawal rejected and funds restored")


@router.get("/reconciliation", response_model=BaseResponse[List[ReconciliationEntry]])
async def get_reconciliation(
    ledger: LedgerService = Depends(get_ledger),
    current_admin: AdminSettings = Depends(get_current_admin)
):
    """List wallets whose balance does not match their ledger"""
    mismatches = await ledger.reconcile()
    message = "Ledger is balanced" if not mismatches else f"{len(mismatches)} wallet(s) out of balance"
    return BaseResponse.success_response(data=mismatches, message=message)
