"""
Forgot-password / reset-password flow.

A reset request stores only the sha256 of a random token on the user,
together with an expiry ``RESET_TOKEN_TTL`` from now, and hands the raw
token to a mailer as part of a reset URL. Redeeming the token sets the new
password, clears the token and marks the password as changed so older JWTs
stop working.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Tuple

from fastapi import Request

from auth import hash_password, password_changed_at
from errors import InvalidRequestError
from schemas import as_utc

logger = logging.getLogger(__name__)

RESET_TOKEN_TTL = timedelta(minutes=10)
RESET_FIELDS_CLEARED = {"passwordResetToken": None, "passwordResetExpires": None}


class ConsoleResetMailer:
    """Mailer used when no e-mail provider is configured: logs instead of sending."""

    def send_password_reset(self, to_email: str, reset_url: str, user_name: Optional[str] = None) -> bool:
        logger.info("Password reset requested for %s; reset link issued", to_email)
        logger.debug("Password reset link for %s: %s", to_email, reset_url)
        return True


def get_reset_mailer(request: Request):
    mailer = getattr(request.app.state, "reset_mailer", None)
    return mailer if mailer is not None else ConsoleResetMailer()


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def create_password_reset_token(now: Optional[datetime] = None) -> Tuple[str, dict]:
    """
    Returns:
        tuple: the raw token for the user, and the fields to store on the user document
    """
    now = now or datetime.now(timezone.utc)
    token = secrets.token_hex(32)
    return token, {"passwordResetToken": hash_reset_token(token), "passwordResetExpires": now + RESET_TOKEN_TTL}


async def request_password_reset(db, email: str, base_url: str, mailer) -> bool:
    """
    Issue a reset token for ``email`` and send the reset link.

    Always returns True so the response does not reveal whether the address
    belongs to an account.
    """
    user = await db.users.find_one({"email": email.lower()})
    if user is None:
        logger.info("Password reset requested for unknown email")
        return True

    token, fields = create_password_reset_token()
    await db.users.update_by_id(user["_id"], fields)
    reset_url = f"{base_url.rstrip('/')}/api/v1/auth/reset-password/{token}"

    sent = mailer.send_password_reset(to_email=user["email"], reset_url=reset_url, user_name=user.get("name"))
    if not sent:
        # an unsent token is useless to the user; do not leave it redeemable
        await db.users.update_by_id(user["_id"], RESET_FIELDS_CLEARED)
        logger.error("Password reset email to user %s was not sent", user["_id"])
    return True


def _expired(user: Mapping[str, Any], now: datetime) -> bool:
    expires = user.get("passwordResetExpires")
    return expires is None or as_utc(expires) <= now


async def reset_password(db, token: str, new_password: str, now: Optional[datetime] = None) -> Any:
    """
    Redeem a reset token.

    Returns:
        the id of the user whose password was reset
    """
    now = now or datetime.now(timezone.utc)
    user = await db.users.find_one({"passwordResetToken": hash_reset_token(token)})
    if user is None:
        raise InvalidRequestError("invalid password reset token")
    if _expired(user, now):
        await db.users.update_by_id(user["_id"], RESET_FIELDS_CLEARED)
        raise InvalidRequestError("password reset token expired")

    hashed, salt = hash_password(new_password)
    await db.users.update_by_id(
        user["_id"],
        {
            "passwordHash": hashed,
            "passwordSalt": salt,
            "passwordChangedAt": password_changed_at(now),
            **RESET_FIELDS_CLEARED,
        },
    )
    logger.info("Password reset for user %s", user["_id"])
    return user["_id"]
