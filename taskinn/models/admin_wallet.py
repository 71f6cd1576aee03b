from sqlalchemy import Column, String, DateTime
from sqlalchemy.sql import func
import uuid
from taskinn.db.database import Base
from taskinn.core.database_types import Money, UUIDType


class AdminWallet(Base):
    """Platform commission balance, one row per currency."""
    __tablename__ = "admin_wallets"

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)
    currency = Column(String(20), nullable=False, unique=True)

    # Commission accounting
    balance = Column(Money, nullable=False, default=0)
    total_earned = Column(Money, nullable=False, default=0)
    total_withdrawn = Column(Money, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<AdminWallet(currency='{self.currency}', balance='{self.balance}', total_earned='{self.total_earned}')>"
