from .user import User
from .wallet import Wallet
from .wallet_transaction import WalletTransaction, TransactionType, TransactionStatus
from .admin_wallet import AdminWallet
from .admin_settings import AdminSettings, SETTINGS_ROW_ID

__all__ = [
    "User", "Wallet", "WalletTransaction", "TransactionType", "TransactionStatus",
    "AdminWallet", "AdminSettings", "SETTINGS_ROW_ID",
]
