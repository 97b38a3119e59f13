"""Emotion journaling endpoints under /api/v1/emotions."""

from __future__ import annotations

import math
from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.auth.dependencies import get_current_user
from nudgr.database import get_session
from nudgr.db.models import User
from nudgr.emotions.constants import Emotion, Phase
from nudgr.emotions.schemas import (
    EmotionLogPage,
    EmotionLogResponse,
    EmotionStatsResponse,
    LogEmotionRequest,
    RecentEmotionsResponse,
    TaskEmotionsResponse,
)
from nudgr.emotions.service import emotion_stats, get_task_emotions, list_logs, log_emotion, recent_emotions
from nudgr.tasks.service import get_task

router = APIRouter(prefix="/api/v1/emotions", tags=["Emotions"])


@router.post("", response_model=EmotionLogResponse, status_code=201)
async def log(
    body: LogEmotionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> EmotionLogResponse:
    entry = await log_emotion(db, user.id, body.task_id, body.phase, body.emotion)
    return EmotionLogResponse.model_validate(entry)


@router.get("", response_model=EmotionLogPage)
async def history(
    page: int = Query(1, ge=1),
    per_page: int = Query(20, ge=1, le=100),
    phase: Phase | None = None,
    emotion: Emotion | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> EmotionLogPage:
    logs, total = await list_logs(db, user.id, page=page, per_page=per_page, phase=phase, emotion=emotion)
    return EmotionLogPage(
        logs=[EmotionLogResponse.model_validate(entry) for entry in logs],
        total=total,
        page=page,
        total_pages=math.ceil(total / per_page),
    )


@router.get("/recent", response_model=RecentEmotionsResponse)
async def recent(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> RecentEmotionsResponse:
    return RecentEmotionsResponse(emotions=await recent_emotions(db, user.id))


@router.get("/stats", response_model=EmotionStatsResponse)
async def stats(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> EmotionStatsResponse:
    return EmotionStatsResponse(**asdict(await emotion_stats(db, user.id)))


@router.get("/tasks/{task_id}", response_model=TaskEmotionsResponse)
async def for_task(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskEmotionsResponse:
    await get_task(db, user.id, task_id)
    emotions = await get_task_emotions(db, user.id, task_id)
    return TaskEmotionsResponse(task_id=task_id, **emotions)
