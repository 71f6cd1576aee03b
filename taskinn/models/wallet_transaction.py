from enum import Enum

from sqlalchemy import Column, String, DateTime, Text, ForeignKey
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
import uuid
from taskinn.db.database import Base
from taskinn.core.database_types import Money, UUIDType


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TASK_PAYMENT = "task_payment"
    TASK_REFUND = "task_refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class WalletTransaction(Base):
    """Append-only ledger entry.

    Rows are never deleted. The only update allowed is moving a pending
    withdrawal to completed or failed (with processed_at).
    """
    __tablename__ = "wallet_transactions"

    id = Column(UUIDType, primary_key=True, default=uuid.uuid4)
    wallet_id = Column(UUIDType, ForeignKey("wallets.id"), nullable=False, index=True)

    transaction_type = Column(String(20), nullable=False)
    amount = Column(Money, nullable=False)  # positive = credit, negative = debit
    currency = Column(String(20), nullable=False)
    status = Column(String(20), nullable=False, default=TransactionStatus.PENDING.value)

    # Settlement breakdown
    gross_amount = Column(Money, nullable=True)
    commission_amount = Column(Money, nullable=True)
    rail = Column(String(20), nullable=True)  # paypal, coinpayments, internal

    # External references
    reference_id = Column(String(255), nullable=True, unique=True, index=True)
    transaction_hash = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    wallet = relationship("Wallet", back_populates="transactions")

    def __repr__(self):
        return (
            f"<WalletTransaction(type='{self.transaction_type}', amount='{self.amount}', "
            f"status='{self.status}', reference_id='{self.reference_id}')>"
        )
