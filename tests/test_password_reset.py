from datetime import datetime, timedelta, timezone

import pytest

from auth import PASSWORD_CHANGE_SKEW, verify_password
from errors import InvalidRequestError
from password_reset import (
    RESET_TOKEN_TTL,
    ConsoleResetMailer,
    create_password_reset_token,
    hash_reset_token,
    request_password_reset,
    reset_password,
)


class RecordingMailer:
    def __init__(self, delivered=True):
        self.delivered = delivered
        self.sent = []

    def send_password_reset(self, to_email, reset_url, user_name=None):
        self.sent.append((to_email, reset_url, user_name))
        return self.delivered


def test_reset_token_is_stored_hashed_with_expiry():
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    token, fields = create_password_reset_token(now)

    assert len(token) == 64
    assert fields["passwordResetToken"] == hash_reset_token(token) != token
    assert fields["passwordResetExpires"] == now + RESET_TOKEN_TTL
    assert create_password_reset_token(now)[0] != token


@pytest.mark.asyncio
async def test_request_for_unknown_email_sends_nothing(db):
    mailer = RecordingMailer()

    assert await request_password_reset(db, "ghost@example.com", "http://testserver/", mailer) is True
    assert mailer.sent == []


@pytest.mark.asyncio
async def test_request_stores_token_and_mails_link(db, make_user):
    user = make_user(name="Ayla Cornell")
    mailer = RecordingMailer()

    assert await request_password_reset(db, user["email"].upper(), "http://testserver/", mailer) is True

    [(to_email, reset_url, user_name)] = mailer.sent
    assert (to_email, user_name) == (user["email"], "Ayla Cornell")
    token = reset_url.rsplit("/", 1)[1]
    assert reset_url == f"http://testserver/api/v1/auth/reset-password/{token}"
    stored = db.users.docs[user["_id"]]
    assert stored["passwordResetToken"] == hash_reset_token(token)
    assert stored["passwordResetExpires"] > datetime.now(timezone.utc)


@pytest.mark.asyncio
async def test_undelivered_reset_mail_clears_token(db, make_user, caplog):
    user = make_user()

    await request_password_reset(db, user["email"], "http://testserver/", RecordingMailer(delivered=False))

    assert db.users.docs[user["_id"]]["passwordResetToken"] is None
    assert "was not sent" in caplog.text


def test_console_mailer_reports_delivery():
    assert ConsoleResetMailer().send_password_reset("a@example.com", "http://testserver/x") is True


@pytest.mark.asyncio
async def test_reset_sets_password_and_clears_token(db, make_user):
    now = datetime.now(timezone.utc)
    token, fields = create_password_reset_token(now)
    user = make_user(password="forgotten1", **fields)

    assert await reset_password(db, token, "brand-new-pass", now=now) == user["_id"]

    stored = db.users.docs[user["_id"]]
    assert verify_password("brand-new-pass", stored)
    assert not verify_password("forgotten1", stored)
    assert stored["passwordResetToken"] is None
    assert stored["passwordResetExpires"] is None
    assert stored["passwordChangedAt"] == now - PASSWORD_CHANGE_SKEW

    with pytest.raises(InvalidRequestError):
        await reset_password(db, token, "another-pass", now=now)


@pytest.mark.asyncio
async def test_expired_reset_token_is_rejected_and_cleared(db, make_user):
    issued = datetime.now(timezone.utc) - timedelta(minutes=30)
    token, fields = create_password_reset_token(issued)
    user = make_user(password="forgotten1", **fields)

    with pytest.raises(InvalidRequestError, match="expired"):
        await reset_password(db, token, "brand-new-pass")

    stored = db.users.docs[user["_id"]]
    assert stored["passwordResetToken"] is None
    assert verify_password("forgotten1", stored)


@pytest.mark.asyncio
async def test_unknown_reset_token_is_rejected(db, make_user):
    make_user(**create_password_reset_token()[1])

    with pytest.raises(InvalidRequestError, match="invalid"):
        await reset_password(db, "0" * 64, "brand-new-pass")
