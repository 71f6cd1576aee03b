from .base import BaseResponse
from .wallet import WalletResponse, WalletTransactionResponse, WithdrawalRequest
from .ledger import DepositSettlement, WithdrawalSettlement, TaskPaymentSettlement, ReconciliationEntry
from .payment import (
    PayPalDepositRequest, PayPalOrderResponse, PayPalCaptureRequest,
    CryptoDepositRequest, CryptoDepositResponse
)
from .admin import AdminLogin, Token, AdminSettingsResponse, CommissionRateUpdate, WithdrawalReview
from .admin_wallet import AdminWalletResponse

__all__ = [
    "BaseResponse",
    "WalletResponse", "WalletTransactionResponse", "WithdrawalRequest",
    "DepositSettlement", "WithdrawalSettlement", "TaskPaymentSettlement", "ReconciliationEntry",
    "PayPalDepositRequest", "PayPalOrderResponse", "PayPalCaptureRequest",
    "CryptoDepositRequest", "CryptoDepositResponse",
    "AdminLogin", "Token", "AdminSettingsResponse", "CommissionRateUpdate", "WithdrawalReview",
    "AdminWalletResponse",
]
