from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..models.user import User
from .auth import TokenError, decode_access_token, get_user_by_email, oauth2_scheme

__all__ = ["get_db", "get_current_user"]


def get_current_user(
    token: str = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
    request: Request = None,
) -> User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    # Prefer Authorization header; fall back to access_token cookie if missing
    jwt_token = token or (request.cookies.get("access_token") if request else None)
    try:
        payload = decode_access_token(jwt_token)
    except TokenError:
        raise credentials_exception
    user = get_user_by_email(db, payload["sub"])
    if user is None or not user.is_active:
        raise credentials_exception
    return user
