# backend/booking_chat/api/auth.py
"""Bearer-token identity.

Accounts and login live with the identity service; this module only mints
and verifies the HS256 access tokens that name the acting user by email.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional
import logging

from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from jose.exceptions import ExpiredSignatureError
from sqlalchemy import func
from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.user import User

logger = logging.getLogger(__name__)

SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


class TokenError(Exception):
    """Token could not be decoded; ``reason`` is logged and never shown to users."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    )
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def decode_access_token(token: Optional[str]) -> Dict[str, Any]:
    """Return the claims of a valid access token or raise ``TokenError``."""
    if not token:
        raise TokenError("missing")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError as exc:
        raise TokenError("expired") from exc
    except JWTError as exc:
        raise TokenError("invalid") from exc
    if str(payload.get("typ") or "").lower() == "refresh":
        raise TokenError("invalid_type")
    if not payload.get("sub"):
        raise TokenError("missing_sub")
    return payload


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    email = (email or "").strip().lower()
    return db.query(User).filter(func.lower(User.email) == email).first()
