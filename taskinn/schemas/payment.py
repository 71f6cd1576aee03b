from pydantic import BaseModel, Field
from typing import Optional
from decimal import Decimal


class PayPalDepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class PayPalOrderResponse(BaseModel):
    order_id: str
    approval_url: Optional[str] = None
    amount: Decimal


class PayPalCaptureRequest(BaseModel):
    order_id: str = Field(..., min_length=1, max_length=255)


class CryptoDepositRequest(BaseModel):
    amount: Decimal = Field(..., gt=0)


class CryptoDepositResponse(BaseModel):
    txn_id: str
    address: str
    amount: Decimal
    qrcode_url: Optional[str] = None
    status_url: Optional[str] = None
    checkout_url: str
    timeout: Optional[int] = None
