"""Typed domain events published after a state transition commits.

Events are plain frozen dataclasses; subscribers look at the fields they
need and ignore the rest.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, kw_only=True)
class DomainEvent:
    user_id: int


# --- Users ---


@dataclass(frozen=True, kw_only=True)
class UserRegistered(DomainEvent):
    pass


@dataclass(frozen=True, kw_only=True)
class UserDeleted(DomainEvent):
    pass


# --- Tasks ---


@dataclass(frozen=True, kw_only=True)
class TaskCreated(DomainEvent):
    task_id: int
    title: str
    due_date: datetime | None = None
    nudge_at: datetime | None = None


@dataclass(frozen=True, kw_only=True)
class TaskStarted(DomainEvent):
    task_id: int
    started_at: datetime


@dataclass(frozen=True, kw_only=True)
class TaskCompleted(DomainEvent):
    task_id: int


@dataclass(frozen=True, kw_only=True)
class TaskDeleted(DomainEvent):
    task_id: int


# --- Nudges ---


@dataclass(frozen=True, kw_only=True)
class NudgeScheduled(DomainEvent):
    task_id: int
    delivery_time: datetime


@dataclass(frozen=True, kw_only=True)
class NudgeTriggered(DomainEvent):
    task_id: int
    nudge_id: int
    delivery_time: datetime


@dataclass(frozen=True, kw_only=True)
class NudgeCanceled(DomainEvent):
    task_id: int


# --- Bets ---


@dataclass(frozen=True, kw_only=True)
class BetPlaced(DomainEvent):
    task_id: int
    bet_id: int
    wager: int
    deadline: datetime


@dataclass(frozen=True, kw_only=True)
class BetResolved(DomainEvent):
    task_id: int
    bet_id: int
    reward: int
    streak: int


@dataclass(frozen=True, kw_only=True)
class BetExpired(DomainEvent):
    task_id: int
    bet_id: int
    wager: int


@dataclass(frozen=True, kw_only=True)
class BetCanceled(DomainEvent):
    task_id: int
    refunded: int
