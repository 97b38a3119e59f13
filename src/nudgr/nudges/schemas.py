"""Request/response schemas for /api/v1/nudges."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel


class ScheduleNudgeRequest(BaseModel):
    task_id: int
    delivery_time: datetime


class NudgeResponse(BaseModel):
    id: int
    task_id: int
    delivery_time: datetime
    triggered_at: datetime | None = None
    message: str | None = None
    status: str
    created_at: datetime

    model_config = {"from_attributes": True}


class NudgeListResponse(BaseModel):
    nudges: list[NudgeResponse]
    total: int
