"""
Bearer-token authorization for the pipeline endpoints.

Tokens are issued by the account service and carry the caller's role.
Format: user_id|role|expiry_timestamp|signature (HMAC-SHA256).
"""
import os
import hmac
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Request

ROLE_ADMIN = "ADMIN"
ROLE_RECRUITER = "RECRUITER"
ROLE_USER = "USER"

TOKEN_DURATION_HOURS = 8


@dataclass
class Principal:
    user_id: str
    role: str


def get_auth_secret() -> str:
    """Get JOBLINK_AUTH_SECRET from environment."""
    secret = os.getenv("JOBLINK_AUTH_SECRET")
    if not secret:
        raise ValueError("JOBLINK_AUTH_SECRET environment variable required")
    return secret


def is_dev_mode() -> bool:
    return os.getenv("JOBLINK_ENV", "").lower() == "dev"


def _sign(message: str, secret: str) -> str:
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def create_access_token(user_id: str, role: str, secret: str, hours: int = TOKEN_DURATION_HOURS) -> str:
    expiry = datetime.now(timezone.utc) + timedelta(hours=hours)
    message = f"{user_id}|{role.upper()}|{int(expiry.timestamp())}"
    return f"{message}|{_sign(message, secret)}"


def verify_access_token(token: str, secret: str) -> Optional[Principal]:
    """
    Verify HMAC-signed token.
    Returns the principal if valid, None otherwise.
    """
    try:
        parts = token.split("|")
        if len(parts) != 4:
            return None

        user_id, role, expiry_ts_str, signature = parts
        if datetime.now(timezone.utc).timestamp() > int(expiry_ts_str):
            return None

        expected = _sign(f"{user_id}|{role}|{expiry_ts_str}", secret)
        if not hmac.compare_digest(signature, expected):
            return None

        return Principal(user_id=user_id, role=role)
    except (ValueError, IndexError):
        return None


def get_current_principal(request: Request) -> Optional[Principal]:
    """
    Resolve the caller from the Authorization header.
    Returns None if not authenticated.
    """
    if is_dev_mode() and request.headers.get("X-Dev-Role"):
        return Principal(user_id="dev-user", role=request.headers["X-Dev-Role"].upper())

    header = request.headers.get("Authorization", "")
    if not header.lower().startswith("bearer "):
        return None

    try:
        secret = get_auth_secret()
    except ValueError:
        return None

    return verify_access_token(header[7:].strip(), secret)


def require_roles(*roles: str):
    """
    Build a FastAPI dependency admitting only the given roles.
    Raises 401 when unauthenticated and 403 when the role is not allowed.
    """
    allowed = {r.upper() for r in roles}

    def dependency(request: Request) -> Principal:
        principal = get_current_principal(request)
        if principal is None:
            raise HTTPException(status_code=401, detail="Authentication required")
        if principal.role not in allowed:
            raise HTTPException(status_code=403, detail="Insufficient permissions")
        return principal

    return dependency


admin_required = require_roles(ROLE_ADMIN)
staff_required = require_roles(ROLE_ADMIN, ROLE_RECRUITER)
