"""
Session resolution for API routes and dashboard actions.

One primitive, ``get_session``, turns a request into a ``Session`` (or None).
Two dependencies sit on top of it:

  - ``require_session_or_fail``     -> 401 for programmatic endpoints
  - ``require_session_or_redirect`` -> 303 to the sign-in page for dashboard actions
"""

import datetime as dt
import logging
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from sqlalchemy.orm import Session as DbSession

import settings
from database import get_db
from models import User

logger = logging.getLogger(__name__)

# auto_error=False: a missing header is not an error here, the cookie may carry the token
bearer = HTTPBearer(auto_error=False)


class SessionUser(BaseModel):
    id: str
    email: str
    name: Optional[str] = None


class Session(BaseModel):
    user: SessionUser


# --- JWT helpers ---
def create_token(user_id: str) -> str:
    payload = {
        "sub": user_id,
        "exp": dt.datetime.now(dt.timezone.utc) + dt.timedelta(days=settings.JWT_TTL_DAYS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[str]:
    """Return the user id carried by ``token``, or None when it is invalid or expired."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
    sub = payload.get("sub")
    return sub if isinstance(sub, str) and sub else None


def _token_from_request(request: Request) -> Optional[str]:
    header = request.headers.get("authorization") or ""
    scheme, _, credentials = header.partition(" ")
    if scheme.lower() == "bearer" and credentials.strip():
        return credentials.strip()
    return request.cookies.get(settings.SESSION_COOKIE_NAME) or None


def get_session(request: Request, db: DbSession) -> Optional[Session]:
    """
    Resolve the authenticated identity for this request.

    The token comes from ``Authorization: Bearer ...`` or, for browser
    navigation, the session cookie. Database errors propagate.
    """
    token = _token_from_request(request)
    if not token:
        return None

    user_id = decode_token(token)
    if user_id is None:
        return None

    user = db.query(User).filter(User.id == user_id).first()
    if not user:
        return None

    return Session(user=SessionUser(id=user.id, email=user.email, name=user.name))


def require_session_or_fail(
    request: Request,
    _credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    db: DbSession = Depends(get_db),
) -> Session:
    session = get_session(request, db)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return session


def require_session_or_redirect(
    request: Request,
    db: DbSession = Depends(get_db),
) -> Session:
    session = get_session(request, db)
    if session is None:
        raise HTTPException(
            status_code=status.HTTP_303_SEE_OTHER,
            headers={"Location": settings.SIGN_IN_PATH},
        )
    return session
