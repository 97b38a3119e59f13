"""User accounts and refresh-token sessions."""

from __future__ import annotations

import hashlib
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import jwt
import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from nudgr.auth.jwt import create_access_token, create_refresh_token, verify_token
from nudgr.auth.password import hash_password, needs_rehash, validate_password_strength, verify_password
from nudgr.config import get_settings
from nudgr.db.models import RefreshToken, User
from nudgr.errors import AuthorizationError, DuplicateError

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class IssuedTokens:
    access_token: str
    refresh_token: str
    expires_in: int


def _hash_token(raw: str) -> str:
    return hashlib.sha256(raw.encode()).hexdigest()


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


async def get_user_by_id(db: AsyncSession, user_id: int) -> User | None:
    result = await db.execute(select(User).where(User.id == user_id))
    return result.scalar_one_or_none()


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    """Case-insensitive lookup."""
    result = await db.execute(select(User).where(func.lower(User.email) == email.lower()))
    return result.scalar_one_or_none()


async def register_user(
    db: AsyncSession,
    email: str,
    password: str,
    display_name: str | None = None,
) -> User:
    """Create an account. The caller commits.

    Raises:
        ValidationError: weak password.
        DuplicateError: email already registered.
    """
    validate_password_strength(password)
    email = email.lower().strip()
    if await get_user_by_email(db, email) is not None:
        msg = "Email already registered"
        raise DuplicateError(msg)

    now = datetime.now(timezone.utc)
    user = User(
        email=email,
        password_hash=hash_password(password),
        display_name=display_name,
        created_at=now,
        last_login=now,
        login_count=1,
    )
    db.add(user)
    try:
        await db.flush()
    except IntegrityError as e:
        await db.rollback()
        msg = "Email already registered"
        raise DuplicateError(msg) from e
    logger.info("user_created", user_id=user.id)
    return user


async def authenticate_user(db: AsyncSession, email: str, password: str) -> User:
    """Check credentials and bump login metadata.

    Raises:
        AuthorizationError: unknown email or wrong password (same message for both).
    """
    user = await get_user_by_email(db, email)
    if user is None or not verify_password(password, user.password_hash):
        msg = "Invalid email or password"
        raise AuthorizationError(msg)

    user.last_login = datetime.now(timezone.utc)
    user.login_count = (user.login_count or 0) + 1
    if needs_rehash(user.password_hash):
        user.password_hash = hash_password(password)
        logger.info("password_rehashed", user_id=user.id)
    await db.flush()
    return user


async def change_password(db: AsyncSession, user: User, current_password: str, new_password: str) -> int:
    """Replace the password and revoke every session. The caller commits.

    Returns how many refresh tokens were revoked; open event streams close on
    their next poll.

    Raises:
        AuthorizationError: wrong current password.
        ValidationError: weak new password.
    """
    if not verify_password(current_password, user.password_hash):
        msg = "Current password is incorrect"
        raise AuthorizationError(msg)
    validate_password_strength(new_password)
    user.password_hash = hash_password(new_password)
    revoked = await revoke_all_tokens(db, user.id)
    await db.flush()
    logger.info("password_changed", user_id=user.id, revoked=revoked)
    return revoked


async def delete_account(db: AsyncSession, user: User, password: str) -> None:
    """Remove a user and their sessions. The caller commits.

    Rows in other tables go with the user through their foreign keys; the
    stores that keep their own per-user state listen for ``UserDeleted``.

    Raises:
        AuthorizationError: wrong password.
    """
    if not verify_password(password, user.password_hash):
        msg = "Incorrect password"
        raise AuthorizationError(msg)
    user_id = user.id
    await db.execute(delete(RefreshToken).where(RefreshToken.user_id == user_id))
    await db.execute(delete(User).where(User.id == user_id))
    logger.info("user_deleted", user_id=user_id)


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


async def issue_tokens(db: AsyncSession, user: User) -> IssuedTokens:
    """Mint an access/refresh pair and record the refresh token. The caller commits."""
    settings = get_settings()
    token_id = str(uuid.uuid4())
    refresh_token = create_refresh_token(user.id, token_id=token_id)
    db.add(
        RefreshToken(
            id=token_id,
            user_id=user.id,
            token_hash=_hash_token(refresh_token),
            issued_at=datetime.now(timezone.utc),
            expires_at=datetime.now(timezone.utc) + timedelta(days=settings.jwt_refresh_token_expire_days),
        )
    )
    await db.flush()
    return IssuedTokens(
        access_token=create_access_token(user.id, user.email),
        refresh_token=refresh_token,
        expires_in=settings.jwt_access_token_expire_minutes * 60,
    )


async def get_refresh_token(db: AsyncSession, token_id: str) -> RefreshToken | None:
    result = await db.execute(select(RefreshToken).where(RefreshToken.id == token_id))
    return result.scalar_one_or_none()


async def rotate_refresh_token(db: AsyncSession, raw_token: str) -> tuple[User, IssuedTokens]:
    """Swap a refresh token for a new pair.

    Presenting an already-revoked token revokes every session of its owner,
    since it means the token was copied.

    Raises:
        AuthorizationError: invalid, unknown, mismatched or revoked token.
    """
    try:
        payload = verify_token(raw_token, expected_type="refresh")
    except jwt.InvalidTokenError as e:
        raise AuthorizationError(str(e)) from e

    stored = await get_refresh_token(db, payload.get("jti", ""))
    if stored is None or stored.token_hash != _hash_token(raw_token):
        msg = "Refresh token not found"
        raise AuthorizationError(msg)
    if stored.is_revoked:
        revoked = await revoke_all_tokens(db, stored.user_id)
        await db.commit()
        logger.warning("refresh_token_reused", user_id=stored.user_id, revoked=revoked)
        msg = "Refresh token has been revoked"
        raise AuthorizationError(msg)

    user = await get_user_by_id(db, stored.user_id)
    if user is None:
        msg = "User not found"
        raise AuthorizationError(msg)

    tokens = await issue_tokens(db, user)
    new_payload = verify_token(tokens.refresh_token, expected_type="refresh")
    stored.is_revoked = True
    stored.revoked_at = datetime.now(timezone.utc)
    stored.replaced_by = new_payload["jti"]
    await db.flush()
    return user, tokens


async def revoke_refresh_token(db: AsyncSession, raw_token: str) -> bool:
    """Revoke the session behind ``raw_token``. Expired tokens can still be revoked."""
    try:
        payload = jwt.decode(raw_token, options={"verify_signature": False})
    except jwt.InvalidTokenError:
        return False
    token_id = payload.get("jti")
    if not token_id:
        return False
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.id == token_id)
        .where(RefreshToken.token_hash == _hash_token(raw_token))
        .where(RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=datetime.now(timezone.utc))
    )
    return bool(result.rowcount)


async def revoke_all_tokens(db: AsyncSession, user_id: int) -> int:
    """Revoke every live refresh token of a user. Returns how many were revoked."""
    result = await db.execute(
        update(RefreshToken)
        .where(RefreshToken.user_id == user_id)
        .where(RefreshToken.is_revoked.is_(False))
        .values(is_revoked=True, revoked_at=datetime.now(timezone.utc))
    )
    return result.rowcount  # type: ignore[return-value]


async def has_active_session(db: AsyncSession, user_id: int, now: datetime | None = None) -> bool:
    """True while the user holds at least one unrevoked, unexpired refresh token."""
    now = now or datetime.now(timezone.utc)
    result = await db.execute(
        select(RefreshToken.id)
        .where(RefreshToken.user_id == user_id)
        .where(RefreshToken.is_revoked.is_(False))
        .where(RefreshToken.expires_at > now)
        .limit(1)
    )
    return result.first() is not None
