"""Emotion journaling: one log per task phase, plus recent history and stats."""

from __future__ import annotations

import math
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from nudgr.db.models import EmotionLog
from nudgr.emotions.constants import (
    POSITIVE_EMOTIONS,
    RECENT_EMOTIONS_LIMIT,
    TREND_WINDOW,
    Emotion,
    Phase,
)
from nudgr.errors import DuplicateError, NotFoundError
from nudgr.tasks.service import get_task

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class EmotionStats:
    total_logs: int
    most_common: str | None
    least_common: str | None
    average_per_day: float
    recent_trend: str  # improving | declining | stable | insufficient_data
    counts: dict[str, int]


async def log_emotion(
    db: AsyncSession,
    user_id: int,
    task_id: int,
    phase: Phase,
    emotion: Emotion,
    now: datetime | None = None,
) -> EmotionLog:
    """Record how the user feels before or after a task. Each phase is logged once.

    Raises:
        NotFoundError / ForbiddenError: task missing or not owned.
        DuplicateError: this phase was already logged for the task.
    """
    await get_task(db, user_id, task_id)
    log = EmotionLog(
        user_id=user_id,
        task_id=task_id,
        phase=Phase(phase).value,
        emotion=Emotion(emotion).value,
        created_at=now or datetime.now(timezone.utc),
    )
    db.add(log)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        msg = f"{Phase(phase).value.capitalize()} emotion already logged for this task"
        raise DuplicateError(msg) from e
    logger.info("emotion_logged", user_id=user_id, task_id=task_id, phase=log.phase)
    return log


async def get_task_emotions(db: AsyncSession, user_id: int, task_id: int) -> dict[str, str]:
    """``{"before": ..., "after": ...}`` with only the phases that were logged."""
    result = await db.execute(
        select(EmotionLog.phase, EmotionLog.emotion)
        .where(EmotionLog.user_id == user_id)
        .where(EmotionLog.task_id == task_id)
    )
    return {phase: emotion for phase, emotion in result.all()}


async def list_logs(
    db: AsyncSession,
    user_id: int,
    *,
    page: int = 1,
    per_page: int = 20,
    phase: Phase | None = None,
    emotion: Emotion | None = None,
) -> tuple[list[EmotionLog], int]:
    """Paginated logs, newest first. Returns ``(logs, total)``."""
    filters = [EmotionLog.user_id == user_id]
    if phase is not None:
        filters.append(EmotionLog.phase == Phase(phase).value)
    if emotion is not None:
        filters.append(EmotionLog.emotion == Emotion(emotion).value)

    total = (await db.execute(select(func.count(EmotionLog.id)).where(*filters))).scalar_one()
    result = await db.execute(
        select(EmotionLog)
        .where(*filters)
        .order_by(EmotionLog.created_at.desc(), EmotionLog.id.desc())
        .offset((page - 1) * per_page)
        .limit(per_page)
    )
    return list(result.scalars().all()), total


async def recent_emotions(db: AsyncSession, user_id: int, limit: int = RECENT_EMOTIONS_LIMIT) -> list[str]:
    """The user's last ``limit`` logged emotions, newest first."""
    result = await db.execute(
        select(EmotionLog.emotion)
        .where(EmotionLog.user_id == user_id)
        .order_by(EmotionLog.created_at.desc(), EmotionLog.id.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def _trend(newest_first: list[str]) -> str:
    if len(newest_first) < TREND_WINDOW * 2:
        return "insufficient_data"
    positive = {e.value for e in POSITIVE_EMOTIONS}
    recent = sum(1 for e in newest_first[:TREND_WINDOW] if e in positive)
    previous = sum(1 for e in newest_first[TREND_WINDOW : TREND_WINDOW * 2] if e in positive)
    if recent > previous:
        return "improving"
    if recent < previous:
        return "declining"
    return "stable"


async def emotion_stats(db: AsyncSession, user_id: int, sample: int = 1000) -> EmotionStats:
    """Aggregate stats over the user's latest ``sample`` logs.

    Raises:
        NotFoundError: the user has never logged an emotion.
    """
    result = await db.execute(
        select(EmotionLog.emotion, EmotionLog.created_at)
        .where(EmotionLog.user_id == user_id)
        .order_by(EmotionLog.created_at.desc(), EmotionLog.id.desc())
        .limit(sample)
    )
    rows = result.all()
    if not rows:
        msg = "No emotion logs found"
        raise NotFoundError(msg)

    emotions = [row.emotion for row in rows]
    ranked = Counter(emotions).most_common()
    span = rows[0].created_at - rows[-1].created_at
    days = max(1, math.ceil(span.total_seconds() / 86400))

    return EmotionStats(
        total_logs=len(rows),
        most_common=ranked[0][0],
        least_common=ranked[-1][0],
        average_per_day=round(len(rows) / days, 2),
        recent_trend=_trend(emotions),
        counts=dict(ranked),
    )


async def delete_task_logs(db: AsyncSession, user_id: int, task_id: int) -> int:
    """Remove both phases for a task. The caller commits."""
    result = await db.execute(
        delete(EmotionLog).where(EmotionLog.user_id == user_id).where(EmotionLog.task_id == task_id)
    )
    return result.rowcount  # type: ignore[return-value]
