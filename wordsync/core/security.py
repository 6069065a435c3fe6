"""Token inspection helpers for the credential provider."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from jose import JWTError, jwt


class InvalidTokenError(Exception):
    """Raised when a JWT cannot be decoded or is invalid."""


def decode_unverified_claims(token: str) -> Dict[str, Any]:
    """Return the claims of ``token`` without checking its signature.

    The identity provider signs tokens; the engine only needs ``exp`` to
    decide when to refresh, the remote store does the real verification.
    """

    try:
        return jwt.get_unverified_claims(token)
    except JWTError as exc:
        raise InvalidTokenError(str(exc)) from exc


def token_expires_at(token: str) -> datetime | None:
    claims = decode_unverified_claims(token)
    exp = claims.get("exp")
    if not isinstance(exp, (int, float)):
        return None
    return datetime.fromtimestamp(exp, timezone.utc)


def is_token_expired(token: str | None, *, margin_seconds: int = 0, now: datetime | None = None) -> bool:
    """Return ``True`` when ``token`` is missing, unreadable or within ``margin_seconds`` of expiry."""

    if not token:
        return True
    try:
        expires_at = token_expires_at(token)
    except InvalidTokenError:
        return True
    if expires_at is None:
        return True
    now = now or datetime.now(timezone.utc)
    return (expires_at - now).total_seconds() <= margin_seconds
