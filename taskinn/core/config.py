from pydantic_settings import BaseSettings
from typing import List, Optional
from decimal import Decimal


class Settings(BaseSettings):
    # API Configuration
    API_V1_STR: str = "/api/v1"
    PROJECT_NAME: str = "TaskInn Ledger API"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    APP_URL: str = "http://localhost:3000"

    # Database Configuration
    DATABASE_URL: str
    DATABASE_ECHO: bool = False
    DATABASE_POOL_SIZE: int = 20
    DATABASE_MAX_OVERFLOW: int = 30
    DATABASE_STATEMENT_TIMEOUT: float = 10.0  # seconds, also used as pool checkout timeout

    # Redis Configuration
    REDIS_URL: str = "redis://localhost:6379/0"

    # Admin token configuration
    SECRET_KEY: str
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # Identity provider (Supabase style HS256 access tokens)
    IDENTITY_JWT_SECRET: str
    IDENTITY_JWT_ALGORITHM: str = "HS256"
    IDENTITY_JWT_AUDIENCE: str = "authenticated"

    # CORS Configuration
    ALLOWED_HOSTS: str = "localhost,127.0.0.1"
    CORS_ORIGINS: str = ""

    # PayPal Configuration
    PAYPAL_MODE: str = "sandbox"  # sandbox or live
    PAYPAL_CLIENT_ID: Optional[str] = None
    PAYPAL_CLIENT_SECRET: Optional[str] = None

    # CoinPayments Configuration
    COINPAYMENTS_API_KEY: Optional[str] = None
    COINPAYMENTS_API_SECRET: Optional[str] = None
    COINPAYMENTS_MERCHANT_ID: Optional[str] = None
    COINPAYMENTS_IPN_SECRET: Optional[str] = None

    # Rail HTTP timeout
    RAIL_TIMEOUT: float = 30.0

    # Celery Configuration
    CELERY_BROKER_URL: str = "redis://localhost:6379/1"
    CELERY_RESULT_BACKEND: str = "redis://localhost:6379/2"
    RECONCILIATION_INTERVAL_SECONDS: float = 3600.0

    # Ledger Configuration
    DEFAULT_COMMISSION_RATE: Decimal = Decimal("0.05")  # 5%
    MINIMUM_TRANSACTION_AMOUNT: Decimal = Decimal("1.00")
    MAXIMUM_TRANSACTION_AMOUNT: Decimal = Decimal("50000.00")

    @property
    def parsed_allowed_hosts(self) -> List[str]:
        """Parse ALLOWED_HOSTS string into list"""
        return [host.strip() for host in self.ALLOWED_HOSTS.split(",")]

    @property
    def parsed_cors_origins(self) -> List[str]:
        """Parse CORS_ORIGINS string into list"""
        if not self.CORS_ORIGINS:
            return []
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def coinpayments_ipn_url(self) -> str:
        return f"{self.APP_URL.rstrip('/')}{self.API_V1_STR}/payments/coinpayments/ipn"

    class Config:
        env_file = ".env"
        case_sensitive = True


settings = Settings()
