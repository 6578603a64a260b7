"""
API Authentication - Signed Bearer Tokens for the Settlement API

Implements:
- HMAC-SHA256 signed access tokens carrying user id, role and expiry
- FastAPI dependencies resolving the caller against the User Directory
- Admin-only guard for operator routes

Token format: base64(json_payload).signature
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Final, Optional

from fastapi import Depends, HTTPException, Request

from core.settlement import SettlementServices, User


logger = logging.getLogger(__name__)

BEARER_PREFIX: Final[str] = "bearer "
DEFAULT_TOKEN_TTL_HOURS: Final[int] = 24


# =============================================================================
# Token Payload
# =============================================================================


@dataclass(frozen=True)
class AccessToken:
    """Decoded, signature-checked token payload."""

    user_id: str
    role: str
    issued_at: datetime
    expires_at: datetime
    token_id: str

    @property
    def is_expired(self) -> bool:
        """Check if token has expired."""
        return datetime.utcnow() > self.expires_at

    def to_dict(self) -> dict:
        return {
            "sub": self.user_id,
            "role": self.role,
            "iat": self.issued_at.isoformat(),
            "exp": self.expires_at.isoformat(),
            "jti": self.token_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AccessToken":
        return cls(
            user_id=data["sub"],
            role=data["role"],
            issued_at=datetime.fromisoformat(data["iat"]),
            expires_at=datetime.fromisoformat(data["exp"]),
            token_id=data["jti"],
        )


def _sign(payload_b64: str, secret: str) -> str:
    return hmac.new(secret.encode(), payload_b64.encode(), hashlib.sha256).hexdigest()


def issue_access_token(
    user: User,
    secret: str,
    ttl_hours: int = DEFAULT_TOKEN_TTL_HOURS,
) -> str:
    """
    Issue a signed access token for a directory user.

    Args:
        user: The user the token identifies
        secret: Signing secret (TOKEN_SECRET)
        ttl_hours: Lifetime in hours
    """
    now = datetime.utcnow()
    token = AccessToken(
        user_id=user.user_id,
        role=user.role.value,
        issued_at=now,
        expires_at=now + timedelta(hours=ttl_hours),
        token_id=secrets.token_hex(8),
    )
    payload = json.dumps(token.to_dict(), separators=(",", ":"))
    payload_b64 = base64.urlsafe_b64encode(payload.encode()).decode()
    return f"{payload_b64}.{_sign(payload_b64, secret)}"


def verify_access_token(token: str, secret: str) -> Optional[AccessToken]:
    """
    Verify and decode a signed access token.

    Returns AccessToken if valid and not expired, None otherwise.
    """
    if not token or not secret:
        return None
    try:
        payload_b64, signature = token.rsplit(".", 1)
        if not hmac.compare_digest(signature, _sign(payload_b64, secret)):
            return None

        payload = base64.urlsafe_b64decode(payload_b64.encode()).decode()
        access = AccessToken.from_dict(json.loads(payload))
    except (ValueError, KeyError, TypeError, UnicodeDecodeError):
        # json.JSONDecodeError and binascii.Error are ValueErrors
        return None

    if access.is_expired:
        return None
    return access


def resolve_user(services: SettlementServices, token: Optional[str]) -> Optional[User]:
    """
    Resolve a raw token to a directory user.

    The role in the token must still match the directory; a user whose role
    changed needs a new token.
    """
    access = verify_access_token(token or "", services.config.token_secret)
    if access is None:
        return None
    user = services.directory.get(access.user_id)
    if user is None or user.role.value != access.role:
        return None
    return user


# =============================================================================
# FastAPI Dependencies
# =============================================================================


def get_settlement_services(request: Request) -> SettlementServices:
    """Services container attached to the running app."""
    return request.app.state.services


def _bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("Authorization", "")
    if not header.lower().startswith(BEARER_PREFIX):
        return None
    return header[len(BEARER_PREFIX):].strip() or None


def require_actor(
    request: Request,
    services: SettlementServices = Depends(get_settlement_services),
) -> User:
    """
    Dependency that requires a valid bearer token.

    Raises HTTPException(401) if the token is missing, invalid or expired.
    """
    user = resolve_user(services, _bearer_token(request))
    if user is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return user


def require_admin(actor: User = Depends(require_actor)) -> User:
    """
    Dependency that requires an admin caller.

    Raises HTTPException(403) for authenticated non-admins.
    """
    if not actor.is_admin:
        logger.warning("Admin route refused for %s (%s)", actor.user_id, actor.role.value)
        raise HTTPException(status_code=403, detail="Admin access required")
    return actor
