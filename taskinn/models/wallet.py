from sqlalchemy import Column, String, DateTime, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from taskinn.db.database import Base
from taskinn.core.database_types import Money, UUIDType


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (
        UniqueConstraint("user_id", "currency", name="uq_wallets_user_currency"),
    )

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)
    user_id = Column(String(255), ForeignKey("users.id"), nullable=False, index=True)

    # USD or USDT_TRC20
    currency = Column(String(20), nullable=False)

    # Only the ledger service writes this
    balance = Column(Money, nullable=False, default=0)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    # Relationships
    user = relationship("User", back_populates="wallets")
    transactions = relationship("WalletTransaction", back_populates="wallet")

    def __repr__(self):
        return f"<Wallet(user_id='{self.user_id}', currency='{self.currency}', balance='{self.balance}')>"
