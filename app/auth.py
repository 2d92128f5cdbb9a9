"""
Authentication module: bcrypt password check + JWT session tokens.

Two roles: ``admin`` (manages rosters and history) and ``staff`` (places
calls under their own name). Only bcrypt hashes of the passwords are
configured; nothing is compared in plaintext.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import structlog
from fastapi import HTTPException, Request, Response
from jose import JWTError, jwt

from app.errors import AuthenticationError
from app.models import Role

log = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
COOKIE_NAME = "session_token"
ADMIN_DISPLAY_NAME = "Administrator"


def hash_password(password: str) -> str:
    """bcrypt hash suitable for ADMIN_PASSWORD_HASH / STAFF_PASSWORD_HASH."""
    # bcrypt only looks at the first 72 bytes
    return bcrypt.hashpw(password.encode("utf-8")[:72], bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8")[:72], hashed.encode("utf-8"))
    except ValueError:
        log.error("password_hash_malformed")
        return False


@dataclass(frozen=True)
class Principal:
    name: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class AuthManager:
    """Handles password login and JWT session management."""

    def __init__(
        self,
        admin_password_hash: str,
        staff_password_hash: str,
        jwt_secret: str,
        expire_hours: int = 12,
        secure_cookies: bool = True,
    ):
        self.admin_password_hash = admin_password_hash
        self.staff_password_hash = staff_password_hash
        self.jwt_secret = jwt_secret
        self.expire_hours = expire_hours
        self.secure_cookies = secure_cookies

    def login(self, role: Role, password: str, name: str = "") -> Principal:
        """Check credentials; raises AuthenticationError on failure."""
        if role is Role.ADMIN:
            if not verify_password(password, self.admin_password_hash):
                log.warning("login_failed", role=role.value)
                raise AuthenticationError("Invalid credentials.")
            principal = Principal(ADMIN_DISPLAY_NAME, Role.ADMIN)
        else:
            name = name.strip()
            if not name:
                raise AuthenticationError("Staff name is required.")
            if not verify_password(password, self.staff_password_hash):
                log.warning("login_failed", role=role.value)
                raise AuthenticationError("Invalid credentials.")
            principal = Principal(name, Role.STAFF)
        log.info("login_succeeded", role=principal.role.value, name=principal.name)
        return principal

    def create_session_token(self, principal: Principal) -> str:
        """Create a JWT session token."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": principal.name,
            "role": principal.role.value,
            "iat": now,
            "exp": now + timedelta(hours=self.expire_hours),
        }
        return jwt.encode(payload, self.jwt_secret, algorithm=JWT_ALGORITHM)

    def verify_session_token(self, token: str) -> Optional[Principal]:
        """Verify and decode JWT. Returns the principal or None."""
        try:
            payload = jwt.decode(token, self.jwt_secret, algorithms=[JWT_ALGORITHM])
            return Principal(payload["sub"], Role(payload["role"]))
        except (JWTError, KeyError, ValueError):
            return None

    def set_session_cookie(self, response: Response, token: str) -> None:
        """Set session cookie on response."""
        response.set_cookie(
            key=COOKIE_NAME,
            value=token,
            httponly=True,
            secure=self.secure_cookies,
            samesite="lax",
            max_age=self.expire_hours * 3600,
            path="/",
        )

    def clear_session_cookie(self, response: Response) -> None:
        """Clear session cookie."""
        response.delete_cookie(key=COOKIE_NAME, path="/")

    def get_principal(self, request: Request) -> Optional[Principal]:
        """Read the session from the cookie or a bearer header."""
        token = request.cookies.get(COOKIE_NAME)
        if not token:
            header = request.headers.get("authorization", "")
            if header.lower().startswith("bearer "):
                token = header[7:].strip()
        if not token:
            return None
        return self.verify_session_token(token)

    def require_auth(self, request: Request) -> Principal:
        """Extract the principal or raise 401."""
        principal = self.get_principal(request)
        if principal is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return principal

    def require_admin(self, request: Request) -> Principal:
        principal = self.require_auth(request)
        if not principal.is_admin:
            raise HTTPException(status_code=403, detail="Admin access required")
        return principal
