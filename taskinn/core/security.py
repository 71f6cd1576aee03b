from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Union
import uuid

from jose import jwt, JWTError
from passlib.context import CryptContext

from taskinn.core.config import settings

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

ALGORITHM = settings.ALGORITHM
ADMIN_TOKEN_TYPE = "admin"


def create_access_token(
    subject: Union[str, Any], expires_delta: timedelta = None, token_type: str = ADMIN_TOKEN_TYPE
) -> str:
    """Create JWT access token for the admin surface"""
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(
            minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES
        )
    to_encode = {"exp": expire, "sub": str(subject), "type": token_type}
    return jwt.encode(to_encode, settings.SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str, token_type: str = ADMIN_TOKEN_TYPE) -> Optional[str]:
    """Verify JWT token and return subject"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[ALGORITHM])
        if payload.get("type") != token_type:
            return None
        return payload.get("sub")
    except JWTError:
        return None


def verify_identity_token(token: str) -> Optional[Dict[str, Any]]:
    """Verify an access token issued by the identity provider.

    Returns the claims when the signature, expiry and audience check out and
    the token names a subject and an email, otherwise None.
    """
    try:
        claims = jwt.decode(
            token,
            settings.IDENTITY_JWT_SECRET,
            algorithms=[settings.IDENTITY_JWT_ALGORITHM],
            audience=settings.IDENTITY_JWT_AUDIENCE,
        )
    except JWTError:
        return None
    if not claims.get("sub") or not claims.get("email"):
        return None
    return claims


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify password against hash"""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash password"""
    return pwd_context.hash(password)


def generate_reference_id(prefix: str) -> str:
    """Generate a ledger reference in format PREFIX-XXXXXXXXXXXX"""
    return f"{prefix}-{uuid.uuid4().hex[:12].upper()}"

