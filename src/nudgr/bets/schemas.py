"""Request/response schemas for /api/v1/bets."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class PlaceBetRequest(BaseModel):
    task_id: int
    wager: int = Field(..., gt=0, description="Points staked on starting the task in time")
    deadline: datetime


class BetResponse(BaseModel):
    id: int
    task_id: int
    wager: int
    deadline: datetime
    task_due_time: datetime | None = None
    status: str
    resolved_at: datetime | None = None
    reward: int | None = None
    created_at: datetime

    model_config = {"from_attributes": True}


class BetListResponse(BaseModel):
    bets: list[BetResponse]
    total: int


class CancelBetResponse(BaseModel):
    task_id: int
    refunded: int


class BettingProfileResponse(BaseModel):
    points: int
    streak: int
    active_bets: int
    won_bets: int
    lost_bets: int

    model_config = {"from_attributes": True}
