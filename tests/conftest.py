"""
Shared fixtures for the ledger test suite.

Every test gets its own file-backed SQLite database so concurrent
settlements exercise real connection-level locking.
"""
import os

# Settings are read at import time, so the environment must be ready first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./taskinn-test.db")
os.environ.setdefault("SECRET_KEY", "test-admin-secret")
os.environ.setdefault("IDENTITY_JWT_SECRET", "test-identity-secret")
os.environ["ALLOWED_HOSTS"] = "test,localhost,127.0.0.1"

import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import pytest_asyncio
from jose import jwt

from taskinn.core.config import settings
from taskinn.db.database import Database
from taskinn.models.user import User
from taskinn.services.coinpayments import CoinPaymentsClient
from taskinn.services.ledger import LedgerService
from taskinn.services.paypal import PayPalClient

TRON_ADDRESS = "TXYZopYRdj2D9XRtbG411XZZ3kM5VkAeBf"
IPN_SECRET = "test-ipn-secret"
MERCHANT_ID = "merchant-123"


@pytest_asyncio.fixture
async def database(tmp_path):
    db = Database(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}", statement_timeout=30.0)
    await db.create_all()
    yield db
    await db.dispose()


@pytest.fixture
def ledger(database):
    return LedgerService(database, default_commission_rate=Decimal("0.05"))


@pytest.fixture
def create_user(database):
    async def _create(user_id=None, email=None):
        user_id = user_id or f"user-{uuid.uuid4().hex[:8]}"
        async with database.transaction() as session:
            session.add(User(id=user_id, email=email or f"{user_id}@example.com"))
        return user_id
    return _create


@pytest.fixture
def fund(ledger):
    """Credit a wallet with no commission, restoring the previous rate after"""
    async def _fund(user_id, amount, currency="USD"):
        previous = await ledger.get_commission_rate()
        await ledger.set_commission_rate(Decimal("0"))
        settlement = await ledger.settle_deposit(
            user_id, currency, Decimal(amount), f"FUND-{uuid.uuid4().hex[:10]}", "internal"
        )
        await ledger.set_commission_rate(previous)
        return settlement
    return _fund


def identity_token(user_id: str, email: str = None) -> str:
    claims = {
        "sub": user_id,
        "email": email or f"{user_id}@example.com",
        "aud": settings.IDENTITY_JWT_AUDIENCE,
        "exp": datetime.now(timezone.utc) + timedelta(hours=1),
        "user_metadata": {"full_name": "Test User"},
    }
    return jwt.encode(claims, settings.IDENTITY_JWT_SECRET, algorithm=settings.IDENTITY_JWT_ALGORITHM)


def auth_headers(user_id: str) -> dict:
    return {"Authorization": f"Bearer {identity_token(user_id)}"}


def paypal_client(handler) -> PayPalClient:
    return PayPalClient("client-id", "client-secret", transport=httpx.MockTransport(handler))


def coinpayments_client(handler=None) -> CoinPaymentsClient:
    def _unexpected(request):
        raise AssertionError(f"Unexpected CoinPayments call: {request.content!r}")

    return CoinPaymentsClient(
        "public-key",
        "private-secret",
        merchant_id=MERCHANT_ID,
        ipn_secret=IPN_SECRET,
        ipn_url="http://test/api/v1/payments/coinpayments/ipn",
        transport=httpx.MockTransport(handler or _unexpected),
    )


@pytest_asyncio.fixture
async def app(database, ledger):
    from taskinn.main import app as fastapi_app

    fastapi_app.state.database = database
    fastapi_app.state.ledger = ledger
    fastapi_app.state.redis = None
    fastapi_app.state.paypal = None
    fastapi_app.state.coinpayments = coinpayments_client()
    yield fastapi_app
    for name in ("database", "ledger", "redis", "paypal", "coinpayments"):
        setattr(fastapi_app.state, name, None)


@pytest_asyncio.fixture
async def client(app):
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
