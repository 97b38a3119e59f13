"""RS256 access and refresh tokens."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import jwt

from nudgr.config import get_settings

_private_key: str | None = None
_public_key: str | None = None


def _load_keys() -> tuple[str, str]:
    """Read the PEM key pair once per process."""
    global _private_key, _public_key  # noqa: PLW0603
    if _private_key is None or _public_key is None:
        settings = get_settings()
        _private_key = Path(settings.jwt_private_key_path).read_text()
        _public_key = Path(settings.jwt_public_key_path).read_text()
    return _private_key, _public_key


def reset_keys() -> None:
    """Forget cached keys so the next call re-reads the configured paths."""
    global _private_key, _public_key  # noqa: PLW0603
    _private_key = None
    _public_key = None


def _encode(claims: dict[str, Any], lifetime: timedelta) -> str:
    private_key, _ = _load_keys()
    settings = get_settings()
    now = datetime.now(timezone.utc)
    payload = {**claims, "iat": now, "exp": now + lifetime, "iss": settings.jwt_issuer}
    return jwt.encode(payload, private_key, algorithm=settings.jwt_algorithm)


def create_access_token(user_id: int, email: str) -> str:
    settings = get_settings()
    return _encode(
        {"sub": str(user_id), "email": email, "type": "access"},
        timedelta(minutes=settings.jwt_access_token_expire_minutes),
    )


def create_refresh_token(user_id: int, *, token_id: str) -> str:
    """Refresh tokens carry a JTI so each one can be revoked on its own."""
    settings = get_settings()
    return _encode(
        {"sub": str(user_id), "jti": token_id, "type": "refresh"},
        timedelta(days=settings.jwt_refresh_token_expire_days),
    )


def verify_token(token: str, expected_type: str = "access") -> dict[str, Any]:
    """Decode and check signature, issuer, expiry and token type.

    Raises:
        jwt.InvalidTokenError: on any failure, including expiry.
    """
    _, public_key = _load_keys()
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            public_key,
            algorithms=[settings.jwt_algorithm],
            issuer=settings.jwt_issuer,
            options={"require": ["sub", "exp", "type"]},
        )
    except jwt.ExpiredSignatureError:
        msg = "Token has expired"
        raise jwt.InvalidTokenError(msg) from None

    if payload.get("type") != expected_type:
        msg = f"Expected token type '{expected_type}', got '{payload.get('type')}'"
        raise jwt.InvalidTokenError(msg)

    return payload


def user_id_from_token(token: str) -> int:
    """Return the subject of a valid access token."""
    payload = verify_token(token, expected_type="access")
    try:
        return int(payload["sub"])
    except (TypeError, ValueError):
        msg = "Token subject is not a user id"
        raise jwt.InvalidTokenError(msg) from None
