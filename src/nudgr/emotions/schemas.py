"""Request/response schemas for /api/v1/emotions."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from nudgr.emotions.constants import Emotion, Phase


class LogEmotionRequest(BaseModel):
    task_id: int
    phase: Phase
    emotion: Emotion


class EmotionLogResponse(BaseModel):
    id: int
    task_id: int
    phase: Phase
    emotion: Emotion
    created_at: datetime

    model_config = {"from_attributes": True}


class EmotionLogPage(BaseModel):
    logs: list[EmotionLogResponse]
    total: int
    page: int
    total_pages: int


class RecentEmotionsResponse(BaseModel):
    emotions: list[Emotion]


class TaskEmotionsResponse(BaseModel):
    task_id: int
    before: Emotion | None = None
    after: Emotion | None = None


class EmotionStatsResponse(BaseModel):
    total_logs: int
    most_common: Emotion | None = None
    least_common: Emotion | None = None
    average_per_day: float
    recent_trend: str
    counts: dict[str, int]
