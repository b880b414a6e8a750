"""
Bearer-token authentication and role checks.

``protect`` resolves the calling user from a JWT sent either as
``Authorization: Bearer <token>`` or in the ``jwt`` cookie; any failure is
``UnauthenticatedError``. ``restrict_to(...)`` then limits a route to a set
of roles, failing with ``ForbiddenError``.
"""

import hashlib
import hmac
import logging
import os
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Collection, Mapping, Optional

import jwt
from fastapi import Cookie, Depends, Header
from fastapi.responses import JSONResponse
from jwt import PyJWTError

from database import get_db
from errors import SUCCESS, ForbiddenError, NotFoundError, UnauthenticatedError
from schemas import Role, as_utc

logger = logging.getLogger(__name__)

COOKIE_NAME = "jwt"
JWT_ALGORITHM = "HS256"
# passwordChangedAt is stored this far in the past so a token issued right after the change stays valid
PASSWORD_CHANGE_SKEW = timedelta(seconds=1)


def hash_password(password: str, salt: Optional[str] = None) -> tuple[str, str]:
    salt = salt or secrets.token_hex(16)
    hashed = hashlib.sha256((salt + password).encode()).hexdigest()
    return hashed, salt


def verify_password(password: str, user: Mapping[str, Any]) -> bool:
    hashed, _ = hash_password(password, user.get("passwordSalt") or "")
    return hmac.compare_digest(hashed, user.get("passwordHash") or "")


def password_changed_at(now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now(timezone.utc)) - PASSWORD_CHANGE_SKEW


def _jwt_secret() -> str:
    secret = os.getenv("JWT_SECRET")
    if not secret:
        raise RuntimeError("JWT_SECRET is not configured")
    return secret


def create_token(user_id: Any, issued_at: Optional[datetime] = None) -> str:
    now = issued_at or datetime.now(timezone.utc)
    expires_days = int(os.getenv("JWT_EXPIRES_DAYS", "90"))
    payload = {
        "id": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(days=expires_days)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(
            token,
            _jwt_secret(),
            algorithms=[JWT_ALGORITHM],
            options={"require": ["id", "iat", "exp"]},
        )
    except PyJWTError as e:
        raise UnauthenticatedError(f"invalid token: {e}")


def extract_token(authorization: Optional[str], cookie: Optional[str]) -> Optional[str]:
    if authorization:
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() == "bearer" and token.strip():
            return token.strip()
    return cookie or None


def changed_password_after(user: Mapping[str, Any], issued_at: int) -> bool:
    changed_at = user.get("passwordChangedAt")
    if changed_at is None:
        return False
    return int(as_utc(changed_at).timestamp()) > issued_at


async def authenticate(db, token: Optional[str]) -> dict:
    if not token:
        raise UnauthenticatedError("no token presented")

    claims = decode_token(token)

    try:
        user = await db.users.find_by_id(claims["id"])
    except NotFoundError:
        user = None
    if user is None:
        raise UnauthenticatedError("the user belonging to this token no longer exists")

    if changed_password_after(user, claims["iat"]):
        raise UnauthenticatedError("password changed after the token was issued")
    return user


async def protect(
    authorization: Optional[str] = Header(None),
    jwt_cookie: Optional[str] = Cookie(None, alias=COOKIE_NAME),
    db=Depends(get_db),
) -> dict:
    return await authenticate(db, extract_token(authorization, jwt_cookie))


def is_role_allowed(role: Optional[str], allowed: Collection[str]) -> bool:
    return role is not None and role in allowed


def restrict_to(*roles: Role):
    allowed = frozenset(Role(r).value for r in roles)

    async def require_role(user: dict = Depends(protect)) -> dict:
        if not is_role_allowed(user.get("role"), allowed):
            raise ForbiddenError("you are not authorized to access this page")
        return user

    return require_role


def token_response(user_id: Any, message: Optional[str] = None, status_code: int = 200) -> JSONResponse:
    """JSON response carrying a fresh token, also set as an http-only cookie."""
    token = create_token(user_id)
    body = {"status": SUCCESS, "token": token}
    if message:
        body["message"] = message
    response = JSONResponse(status_code=status_code, content=body)
    cookie_days = int(os.getenv("JWT_COOKIE_EXPIRES_DAYS", "3"))
    response.set_cookie(
        COOKIE_NAME,
        token,
        max_age=cookie_days * 24 * 60 * 60,
        httponly=True,
        secure=os.getenv("ENVIRONMENT", "development") == "production",
    )
    return response
