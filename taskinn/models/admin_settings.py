from sqlalchemy import Column, Integer, String, DateTime, Numeric
from sqlalchemy.sql import func

from taskinn.db.database import Base
from taskinn.core.database_types import Money

SETTINGS_ROW_ID = 1


class AdminSettings(Base):
    """Platform-wide singleton: commission rate, lifetime earnings and admin login."""
    __tablename__ = "admin_settings"

    id = Column(Integer, primary_key=True, default=SETTINGS_ROW_ID)
    commission_rate = Column(Numeric(5, 4, asdecimal=True), nullable=False)
    total_earnings = Column(Money, nullable=False, default=0)

    # Admin login
    admin_username = Column(String(100), nullable=False, default="admin")
    admin_password_hash = Column(String(255), nullable=True)
    admin_email = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def __repr__(self):
        return f"<AdminSettings(commission_rate='{self.commission_rate}', total_earnings='{self.total_earnings}')>"
