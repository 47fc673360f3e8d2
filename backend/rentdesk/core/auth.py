"""
Bearer tokens for the billing API. Tokens are issued by the account service with the same
keys; this side mostly verifies them and resolves the user id.
"""

from datetime import datetime, timezone, timedelta
from typing import Any

from jose import JWTError, jwt

from rentdesk.config import settings


class AuthError(Exception):
    """Token missing, malformed, expired or signed with another key."""


def _signing_key() -> tuple[str, str]:
    if settings.use_rs256:
        return settings.jwt_private_key.strip(), "RS256"
    return settings.secret_key, settings.jwt_algorithm


def _verification_key() -> tuple[str, list[str]]:
    if settings.use_rs256:
        return settings.jwt_public_key.strip(), ["RS256"]
    return settings.secret_key, [settings.jwt_algorithm]


def create_access_token(user_id: int, email: str, expires_in: timedelta | None = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_in or timedelta(minutes=settings.access_token_expire_minutes))
    key, algorithm = _signing_key()
    return jwt.encode({"sub": str(user_id), "email": email, "exp": expire}, key, algorithm=algorithm)


def decode_token(token: str) -> dict[str, Any]:
    key, algorithms = _verification_key()
    return jwt.decode(token, key, algorithms=algorithms)


def user_id_from_token(token: str) -> int:
    """Verify the token and return its numeric subject. Raises AuthError."""
    try:
        payload = decode_token(token)
    except JWTError as e:
        raise AuthError("Invalid or expired token") from e
    try:
        return int(payload.get("sub") or "")
    except ValueError:
        raise AuthError("Invalid token")
