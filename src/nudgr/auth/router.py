"""Authentication endpoints under /api/v1/auth."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.auth.dependencies import get_current_user
from nudgr.auth.schemas import (
    ChangePasswordRequest,
    DeleteAccountRequest,
    LoginRequest,
    LogoutRequest,
    RefreshRequest,
    RegisterRequest,
    TokenResponse,
    UserResponse,
)
from nudgr.auth.service import (
    IssuedTokens,
    authenticate_user,
    change_password,
    delete_account,
    issue_tokens,
    register_user,
    revoke_all_tokens,
    revoke_refresh_token,
    rotate_refresh_token,
)
from nudgr.database import get_session
from nudgr.db.models import User
from nudgr.events.bus import bus
from nudgr.events.types import UserDeleted, UserRegistered

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/auth", tags=["Authentication"])


def _token_response(user: User, tokens: IssuedTokens) -> TokenResponse:
    return TokenResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        expires_in=tokens.expires_in,
        user=UserResponse.model_validate(user),
    )


@router.post("/register", response_model=TokenResponse, status_code=201)
async def register(body: RegisterRequest, db: AsyncSession = Depends(get_session)) -> TokenResponse:
    """Create an account and sign it in. Also opens the user's points ledger."""
    user = await register_user(db, email=body.email, password=body.password, display_name=body.display_name)
    tokens = await issue_tokens(db, user)
    await db.commit()
    await bus.publish(UserRegistered(user_id=user.id))
    return _token_response(user, tokens)


@router.post("/login", response_model=TokenResponse)
async def login(body: LoginRequest, db: AsyncSession = Depends(get_session)) -> TokenResponse:
    user = await authenticate_user(db, body.email, body.password)
    tokens = await issue_tokens(db, user)
    await db.commit()
    logger.info("user_logged_in", user_id=user.id)
    return _token_response(user, tokens)


@router.post("/refresh", response_model=TokenResponse)
async def refresh(body: RefreshRequest, db: AsyncSession = Depends(get_session)) -> TokenResponse:
    """Rotate a refresh token."""
    user, tokens = await rotate_refresh_token(db, body.refresh_token)
    await db.commit()
    return _token_response(user, tokens)


@router.post("/logout")
async def logout(body: LogoutRequest, db: AsyncSession = Depends(get_session)) -> dict[str, str]:
    """Revoke one refresh token. Always succeeds."""
    if await revoke_refresh_token(db, body.refresh_token):
        await db.commit()
    return {"status": "logged_out"}


@router.post("/logout-all")
async def logout_all(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, str | int]:
    """Revoke every session. Open event streams close on their next poll."""
    count = await revoke_all_tokens(db, user.id)
    await db.commit()
    return {"status": "all_sessions_revoked", "revoked_count": count}


@router.get("/me", response_model=UserResponse)
async def me(user: User = Depends(get_current_user)) -> UserResponse:
    return UserResponse.model_validate(user)


@router.post("/change-password")
async def change_my_password(
    body: ChangePasswordRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, str | int]:
    """Change password. Every session is revoked, so the client signs in again."""
    revoked = await change_password(db, user, body.current_password, body.new_password)
    await db.commit()
    return {"status": "password_changed", "revoked_count": revoked}


@router.post("/delete-account")
async def delete_my_account(
    body: DeleteAccountRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> dict[str, str]:
    """Delete the account after re-checking the password. Clears its bets, ledger and nudges."""
    user_id = user.id
    await delete_account(db, user, body.password)
    await db.commit()
    await bus.publish(UserDeleted(user_id=user_id))
    return {"status": "account_deleted"}
