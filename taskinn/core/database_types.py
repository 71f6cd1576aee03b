"""Database type mapping for different database engines"""

from decimal import Decimal
from sqlalchemy import Numeric, String, TypeDecorator
import uuid

MONEY_SCALE = Decimal("0.00000001")


class UUIDString(TypeDecorator):
    """Platform-independent UUID type.
    Uses PostgreSQL UUID for PostgreSQL, String for others.
    """
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            from sqlalchemy.dialects.postgresql import UUID
            return dialect.type_descriptor(UUID(as_uuid=True))
        return dialect.type_descriptor(String(36))

    def process_bind_param(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None or dialect.name == 'postgresql':
            return value
        if isinstance(value, str):
            return uuid.UUID(value)
        return value


class Money(TypeDecorator):
    """Fixed-point money column.

    Stored as NUMERIC(20, 8) and always read back as a Decimal quantized to
    8 places, so drivers without native decimals (SQLite) cannot leak float
    noise into balances.
    """
    impl = Numeric(20, 8, asdecimal=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return Decimal(str(value)).quantize(MONEY_SCALE)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        return Decimal(str(value)).quantize(MONEY_SCALE)


# Export the UUID type
UUIDType = UUIDString(36)
