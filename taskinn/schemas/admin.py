from pydantic import BaseModel, Field, validator
from typing import Optional
from datetime import datetime
from decimal import Decimal


class AdminLogin(BaseModel):
    username: str
    password: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class AdminSettingsResponse(BaseModel):
    commission_rate: Decimal
    total_earnings: Decimal
    admin_username: str
    admin_email: Optional[str] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CommissionRateUpdate(BaseModel):
    commission_rate: Decimal = Field(..., ge=0, lt=1)

    @validator('commission_rate')
    def validate_precision(cls, v):
        if v != v.quantize(Decimal("0.0001")):
            raise ValueError('Commission rate supports at most 4 decimal places')
        return v


class WithdrawalReview(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)
