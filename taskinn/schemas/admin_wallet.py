from pydantic import BaseModel
from typing import Optional
from uuid import UUID
from datetime import datetime
from decimal import Decimal


class AdminWalletResponse(BaseModel):
    id: UUID
    currency: str
    balance: Decimal
    total_earned: Decimal
    total_withdrawn: Decimal
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True
