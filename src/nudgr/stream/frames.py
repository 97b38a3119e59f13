"""JSON frames sent over the event stream.

Every frame carries a ``type`` discriminator. Field names on the wire are
camelCase where the web client expects them (``deliveryTime``).
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from nudgr.db.models import Bet, Nudge

CONNECTED_MESSAGE = "Unified event stream connected"


class NudgePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: int
    task: int
    delivery_time: datetime = Field(alias="deliveryTime")
    message: str


class BetPayload(BaseModel):
    id: int
    task: int
    wager: int
    deadline: datetime
    success: bool


class ConnectedFrame(BaseModel):
    type: Literal["connected"] = "connected"
    message: str = CONNECTED_MESSAGE


class NudgeFrame(BaseModel):
    type: Literal["nudge"] = "nudge"
    nudge: NudgePayload


class BetResolvedFrame(BaseModel):
    type: Literal["bet_resolved"] = "bet_resolved"
    bet: BetPayload


class BetExpiredFrame(BaseModel):
    type: Literal["bet_expired"] = "bet_expired"
    bet: BetPayload


class HeartbeatFrame(BaseModel):
    type: Literal["heartbeat"] = "heartbeat"
    timestamp: datetime


class ErrorFrame(BaseModel):
    type: Literal["error"] = "error"
    message: str


class PongFrame(BaseModel):
    type: Literal["pong"] = "pong"


Frame = Union[
    ConnectedFrame,
    NudgeFrame,
    BetResolvedFrame,
    BetExpiredFrame,
    HeartbeatFrame,
    ErrorFrame,
    PongFrame,
]


def nudge_frame(nudge: Nudge) -> NudgeFrame:
    if nudge.triggered_at is None or nudge.message is None:
        msg = f"Nudge {nudge.id} has not been triggered"
        raise ValueError(msg)
    return NudgeFrame(
        nudge=NudgePayload(
            id=nudge.id,
            task=nudge.task_id,
            delivery_time=nudge.delivery_time,
            message=nudge.message,
        )
    )


def bet_frame(bet: Bet) -> BetResolvedFrame | BetExpiredFrame:
    """``bet_resolved`` for a won bet, ``bet_expired`` for a lost one."""
    if bet.success is None:
        msg = f"Bet {bet.id} is not resolved"
        raise ValueError(msg)
    payload = BetPayload(id=bet.id, task=bet.task_id, wager=bet.wager, deadline=bet.deadline, success=bet.success)
    if bet.success:
        return BetResolvedFrame(bet=payload)
    return BetExpiredFrame(bet=payload)


def dump_frame(frame: Frame) -> dict[str, Any]:
    return frame.model_dump(mode="json", by_alias=True)
