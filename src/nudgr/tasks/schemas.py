"""Request/response schemas for /api/v1/tasks."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class TaskCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field("", max_length=5000)
    due_date: datetime | None = None
    nudge_at: datetime | None = Field(None, description="When to send an AI nudge for this task")


class TaskUpdateRequest(BaseModel):
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, max_length=5000)
    due_date: datetime | None = None


class TaskResponse(BaseModel):
    id: int
    title: str
    description: str
    due_date: datetime | None = None
    started_at: datetime | None = None
    completed: bool
    status: str
    created_at: datetime


class TaskListResponse(BaseModel):
    tasks: list[TaskResponse]
    total: int
