"""
Session verification for the HTTP API.

Sessions are issued elsewhere (login is out of scope); this module only
verifies HMAC-signed session tokens presented either as
``Authorization: Bearer <token>`` or in the session cookie.
``AuthManager.create_session`` exists so the issuing side and tests can mint
compatible tokens.
"""

import binascii
import hashlib
import hmac
import json
import logging
import time
from base64 import b64decode, b64encode
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from webmail.config import SecurityConfig

logger = logging.getLogger(__name__)

SESSION_COOKIE = "webmail_session"
USER_HEADER = "X-User-Id"
SESSION_MAX_AGE = 86400  # 24 hours default


@dataclass
class Session:
    """Authenticated caller."""

    user_id: str
    email: Optional[str] = None
    created_at: float = 0.0
    expires_at: float = 0.0

    def is_valid(self) -> bool:
        return time.time() < self.expires_at

    def to_json(self) -> str:
        return json.dumps(
            {
                "user_id": self.user_id,
                "email": self.email,
                "created_at": self.created_at,
                "expires_at": self.expires_at,
            }
        )

    @classmethod
    def from_json(cls, data: str) -> "Session":
        d = json.loads(data)
        return cls(
            user_id=d["user_id"],
            email=d.get("email"),
            created_at=d.get("created_at", 0.0),
            expires_at=d.get("expires_at", 0.0),
        )


class AuthManager:
    """Signs and verifies session tokens."""

    def __init__(self, security: Optional[SecurityConfig] = None, enabled: bool = True):
        self.security = security or SecurityConfig()
        self.enabled = enabled

    @property
    def session_secret(self) -> bytes:
        if not self.security.session_secret:
            # Fallback for development - NOT SECURE
            return b"insecure-dev-secret-do-not-use-in-production"
        return self.security.session_secret.encode()

    @property
    def session_expiry(self) -> int:
        return self.security.session_expiry_hours * 3600 or SESSION_MAX_AGE

    def _sign(self, payload: str) -> str:
        return hmac.new(self.session_secret, payload.encode(), hashlib.sha256).hexdigest()

    def create_session(self, user_id: str, email: Optional[str] = None) -> str:
        """Create a signed session token."""
        now = time.time()
        session = Session(
            user_id=user_id,
            email=email,
            created_at=now,
            expires_at=now + self.session_expiry,
        )
        payload = session.to_json()
        return b64encode(f"{payload}|{self._sign(payload)}".encode()).decode()

    def verify_session(self, token: str) -> Optional[Session]:
        """Verify and decode a session token; None if forged, malformed or expired."""
        try:
            decoded = b64decode(token.encode(), validate=True).decode()
            payload, signature = decoded.rsplit("|", 1)
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            logger.debug(f"Malformed session token: {e}")
            return None

        if not hmac.compare_digest(signature, self._sign(payload)):
            logger.warning("Invalid session signature")
            return None
        try:
            session = Session.from_json(payload)
        except (ValueError, KeyError) as e:
            logger.debug(f"Session payload unreadable: {e}")
            return None
        if not session.is_valid():
            logger.debug("Session expired")
            return None
        return session


def get_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization") or ""
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return request.cookies.get(SESSION_COOKIE)


async def require_user(request: Request) -> Session:
    """Dependency resolving the calling user.

    With auth disabled (development), the user is taken from the
    ``X-User-Id`` header, defaulting to ``anonymous``.
    """
    auth_mgr: AuthManager = request.app.state.services.auth

    if not auth_mgr.enabled:
        return Session(user_id=request.headers.get(USER_HEADER) or "anonymous")

    token = get_token(request)
    session = auth_mgr.verify_session(token) if token else None
    if not session:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session
