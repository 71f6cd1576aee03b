from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime
from decimal import Decimal
from uuid import UUID

from taskinn.core.currencies import Currency


class WalletResponse(BaseModel):
    id: UUID
    user_id: str
    currency: str
    balance: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WalletTransactionResponse(BaseModel):
    id: UUID
    wallet_id: UUID
    transaction_type: str
    amount: Decimal
    currency: str
    status: str
    gross_amount: Optional[Decimal] = None
    commission_amount: Optional[Decimal] = None
    rail: Optional[str] = None
    reference_id: Optional[str] = None
    transaction_hash: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class WithdrawalRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)
    currency: Currency
    # PayPal email for USD, TRC-20 address for USDT_TRC20
    payout_address: str = Field(..., min_length=3, max_length=255)

    @validator('payout_address')
    def strip_address(cls, v):
        return v.strip()
