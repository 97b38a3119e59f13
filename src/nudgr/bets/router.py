"""Micro-bet endpoints under /api/v1/bets."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.auth.dependencies import get_current_user
from nudgr.bets.schemas import (
    BetListResponse,
    BetResponse,
    BettingProfileResponse,
    CancelBetResponse,
    PlaceBetRequest,
)
from nudgr.bets.service import (
    cancel_bet,
    get_active_bets,
    get_bet,
    get_bet_history,
    get_betting_profile,
    place_bet,
)
from nudgr.database import get_session
from nudgr.db.models import User
from nudgr.errors import NotFoundError
from nudgr.tasks.service import get_task

router = APIRouter(prefix="/api/v1/bets", tags=["Bets"])


@router.post("", response_model=BetResponse, status_code=201)
async def place(
    body: PlaceBetRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BetResponse:
    """Stake points on starting a task before the deadline.

    The deadline must fall before the task's due date when it has one.
    """
    task = await get_task(db, user.id, body.task_id)
    bet = await place_bet(db, user.id, task.id, body.wager, body.deadline, task_due_time=task.due_date)
    return BetResponse.model_validate(bet)


@router.get("", response_model=BetListResponse)
async def history(
    status: str | None = Query(None, pattern="^(pending|success|failure)$"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BetListResponse:
    bets = await get_bet_history(db, user.id, status=status)
    return BetListResponse(bets=[BetResponse.model_validate(b) for b in bets], total=len(bets))


@router.get("/active", response_model=BetListResponse)
async def active(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BetListResponse:
    bets = await get_active_bets(db, user.id)
    return BetListResponse(bets=[BetResponse.model_validate(b) for b in bets], total=len(bets))


@router.get("/profile", response_model=BettingProfileResponse)
async def profile(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BettingProfileResponse:
    return BettingProfileResponse.model_validate(await get_betting_profile(db, user.id))


@router.get("/{task_id}", response_model=BetResponse)
async def get_one(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> BetResponse:
    bet = await get_bet(db, user.id, task_id)
    if bet is None:
        msg = "Bet not found"
        raise NotFoundError(msg)
    return BetResponse.model_validate(bet)


@router.delete("/{task_id}", response_model=CancelBetResponse)
async def cancel(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> CancelBetResponse:
    """Withdraw a bet. Unresolved wagers are refunded."""
    refunded = await cancel_bet(db, user.id, task_id)
    return CancelBetResponse(task_id=task_id, refunded=refunded)
