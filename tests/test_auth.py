"""Tests for password hashing and session tokens."""

from datetime import datetime, timedelta, timezone

import pytest
from jose import jwt

from app.auth import AuthManager, Principal, hash_password, verify_password
from app.errors import AuthenticationError
from app.models import Role

ADMIN_HASH = hash_password("admin-pass")
STAFF_HASH = hash_password("staff-pass")


@pytest.fixture
def auth():
    return AuthManager(ADMIN_HASH, STAFF_HASH, jwt_secret="test-secret", expire_hours=1)


def test_hash_and_verify():
    assert verify_password("admin-pass", ADMIN_HASH)
    assert not verify_password("wrong", ADMIN_HASH)
    assert not verify_password("admin-pass", "")
    assert not verify_password("admin-pass", "not-a-bcrypt-hash")


def test_admin_login(auth):
    principal = auth.login(Role.ADMIN, "admin-pass")
    assert principal == Principal("Administrator", Role.ADMIN)
    assert principal.is_admin


def test_staff_login_uses_given_name(auth):
    principal = auth.login(Role.STAFF, "staff-pass", name="  Ali Hassan ")
    assert principal == Principal("Ali Hassan", Role.STAFF)
    assert not principal.is_admin


@pytest.mark.parametrize(
    "role, password, name",
    [
        (Role.ADMIN, "staff-pass", ""),
        (Role.STAFF, "admin-pass", "Ali Hassan"),
        (Role.STAFF, "staff-pass", "   "),
    ],
)
def test_login_rejected(auth, role, password, name):
    with pytest.raises(AuthenticationError):
        auth.login(role, password, name)


def test_login_rejected_when_no_hash_configured():
    auth = AuthManager("", "", jwt_secret="s")
    with pytest.raises(AuthenticationError):
        auth.login(Role.ADMIN, "")


def test_token_round_trip(auth):
    token = auth.create_session_token(Principal("Fatima Zahra", Role.STAFF))
    assert auth.verify_session_token(token) == Principal("Fatima Zahra", Role.STAFF)


def test_token_with_other_secret_is_rejected(auth):
    other = AuthManager(ADMIN_HASH, STAFF_HASH, jwt_secret="other-secret")
    token = other.create_session_token(Principal("Administrator", Role.ADMIN))
    assert auth.verify_session_token(token) is None


def test_expired_token_is_rejected(auth):
    past = datetime.now(timezone.utc) - timedelta(hours=2)
    token = jwt.encode(
        {"sub": "Ali Hassan", "role": "staff", "iat": past, "exp": past + timedelta(hours=1)},
        "test-secret",
        algorithm="HS256",
    )
    assert auth.verify_session_token(token) is None


def test_token_with_unknown_role_is_rejected(auth):
    token = jwt.encode({"sub": "x", "role": "owner"}, "test-secret", algorithm="HS256")
    assert auth.verify_session_token(token) is None
