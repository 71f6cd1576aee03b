"""
Ledger error taxonomy.

Every error raised by the settlement engine or a payment rail client is a
LedgerError carrying a fixed HTTP status and a machine-readable code, so the
HTTP layer can render it without inspecting datastore internals.
"""
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import status


class LedgerError(Exception):
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "LEDGER_ERROR"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"


class InvalidSignature(ValidationError):
    code = "INVALID_SIGNATURE"


class InsufficientBalance(LedgerError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "INSUFFICIENT_BALANCE"

    def __init__(self, available: Decimal, requested: Decimal, currency: str):
        super().__init__(
            f"Insufficient {currency} balance",
            details={
                "available": str(available),
                "requested": str(requested),
                "currency": currency,
            },
        )
        self.available = available
        self.requested = requested
        self.currency = currency


class WalletNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "WALLET_NOT_FOUND"


class SettingsNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "SETTINGS_NOT_FOUND"


class SettlementNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "SETTLEMENT_NOT_FOUND"


class InvalidSettlementState(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    code = "INVALID_SETTLEMENT_STATE"


class DuplicateSettlement(LedgerError):
    """Raised when a reference has already been settled; carries the prior result."""

    status_code = status.HTTP_200_OK
    code = "DUPLICATE_SETTLEMENT"

    def __init__(self, reference_id: str, result: Any = None):
        super().__init__(
            f"Reference {reference_id} has already been settled",
            details={"reference_id": reference_id},
        )
        self.reference_id = reference_id
        self.result = result


class TransactionFailure(LedgerError):
    """Rolled back datastore operation; withdrawals clear ``retryable`` on the instance."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "TRANSACTION_FAILURE"
    retryable = True


class UpstreamRailError(LedgerError):
    status_code = status.HTTP_502_BAD_GATEWAY
    code = "UPSTREAM_RAIL_ERROR"

    def __init__(self, rail: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details={"rail": rail, **(details or {})})
        self.rail = rail
