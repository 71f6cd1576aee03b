from sqlalchemy import Column, String, DateTime, Boolean
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from taskinn.db.database import Base


class User(Base):
    """Local mirror of an identity-provider account.

    Rows are created on first authenticated request; the id is the
    provider's subject claim.
    """
    __tablename__ = "users"

    id = Column(String(255), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(255), nullable=True)
    email_verified = Column(Boolean, default=False)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
    last_login = Column(DateTime(timezone=True), nullable=True)

    # Relationships
    wallets = relationship("Wallet", back_populates="user")

    def __repr__(self):
        return f"<User(id='{self.id}', email='{self.email}')>"
