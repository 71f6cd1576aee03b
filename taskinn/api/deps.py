import logging
from datetime import datetime, timezone

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from taskinn.core.security import verify_token, verify_identity_token
from taskinn.db.database import get_db
from taskinn.models.admin_settings import AdminSettings, SETTINGS_ROW_ID
from taskinn.models.user import User
from taskinn.services.coinpayments import CoinPaymentsClient
from taskinn.services.ledger import LedgerService
from taskinn.services.paypal import PayPalClient

logger = logging.getLogger(__name__)

security = HTTPBearer()


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_paypal_client(request: Request) -> PayPalClient:
    return request.app.state.paypal


def get_coinpayments_client(request: Request) -> CoinPaymentsClient:
    return request.app.state.coinpayments


async def get_current_user(
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """Get current authenticated user, mirroring the identity account locally"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    claims = verify_identity_token(credentials.credentials)
    if claims is None:
        raise credentials_exception

    metadata = claims.get("user_metadata") or {}
    user = await db.get(User, claims["sub"])
    if user is None:
        user = User(
            id=claims["sub"],
            email=claims["email"],
            name=metadata.get("full_name") or metadata.get("name"),
            email_verified=bool(metadata.get("email_verified", False)),
            last_login=datetime.now(timezone.utc),
        )
        db.add(user)
        try:
            await db.commit()
        except IntegrityError:
            # Another request synced the same account first
            await db.rollback()
            user = await db.get(User, claims["sub"])
            if user is None:
                raise credentials_exception
        else:
            logger.info(f"Synced new user {user.id} ({user.email})")

    return user


async def get_current_admin(
    db: AsyncSession = Depends(get_db),
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> AdminSettings:
    """Get current authenticated admin"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate admin credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    username = verify_token(credentials.credentials)
    if username is None:
        raise credentials_exception

    admin_settings = await db.get(AdminSettings, SETTINGS_ROW_ID)
    if admin_settings is None or admin_settings.admin_username != username:
        raise credentials_exception

    return admin_settings
