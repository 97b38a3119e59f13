"""Nudge endpoints under /api/v1/nudges."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.auth.dependencies import get_current_user
from nudgr.database import get_session
from nudgr.db.models import User
from nudgr.errors import NotFoundError
from nudgr.nudges.schemas import NudgeListResponse, NudgeResponse, ScheduleNudgeRequest
from nudgr.nudges.service import cancel_nudge, get_nudge, list_nudges, schedule_nudge
from nudgr.tasks.service import get_task

router = APIRouter(prefix="/api/v1/nudges", tags=["Nudges"])


@router.post("", response_model=NudgeResponse, status_code=201)
async def schedule(
    body: ScheduleNudgeRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> NudgeResponse:
    """Schedule an AI nudge for one of the user's tasks."""
    await get_task(db, user.id, body.task_id)
    nudge = await schedule_nudge(db, user.id, body.task_id, body.delivery_time)
    return NudgeResponse.model_validate(nudge)


@router.get("", response_model=NudgeListResponse)
async def list_all(
    status: str | None = Query(None, pattern="^(pending|triggered|canceled)$"),
    limit: int = Query(50, ge=1, le=200),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> NudgeListResponse:
    nudges = await list_nudges(db, user.id, status=status, limit=limit)
    return NudgeListResponse(nudges=[NudgeResponse.model_validate(n) for n in nudges], total=len(nudges))


@router.get("/{task_id}", response_model=NudgeResponse)
async def get_one(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> NudgeResponse:
    nudge = await get_nudge(db, user.id, task_id)
    if nudge is None:
        msg = "Nudge not found"
        raise NotFoundError(msg)
    return NudgeResponse.model_validate(nudge)


@router.delete("/{task_id}", status_code=204)
async def cancel(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> Response:
    """Cancel a pending nudge. 409 if it already fired or was canceled."""
    await cancel_nudge(db, user.id, task_id)
    return Response(status_code=204)
