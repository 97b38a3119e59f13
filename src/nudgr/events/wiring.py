"""Subscribes the stores to each other's events.

Each handler opens its own session: it runs after the publishing request's
transaction has committed and must not share it.
"""

from __future__ import annotations

from collections.abc import Callable
from typing import TYPE_CHECKING

import structlog

from nudgr.bets.ledger import initialize_bettor
from nudgr.bets.service import cancel_bet, remove_bettor, resolve_bet
from nudgr.emotions.service import delete_task_logs
from nudgr.errors import AlreadyTerminalError, DeadlineMissedError, NotFoundError
from nudgr.events.types import (
    BetExpired,
    BetResolved,
    DomainEvent,
    NudgeTriggered,
    TaskCompleted,
    TaskCreated,
    TaskDeleted,
    TaskStarted,
    UserDeleted,
    UserRegistered,
)
from nudgr.nudges.service import cancel_nudge, delete_user_nudges, schedule_nudge

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from nudgr.events.bus import EventBus
    from nudgr.stream.registry import ConnectionRegistry

logger = structlog.get_logger()


def register_handlers(
    bus: EventBus,
    session_factory: async_sessionmaker[AsyncSession],
    registry: ConnectionRegistry,
) -> list[Callable[[], None]]:
    """Wire the default subscriptions. Returns their unsubscribe callables."""

    async def on_user_registered(event: UserRegistered) -> None:
        async with session_factory() as db:
            await initialize_bettor(db, event.user_id)

    async def on_user_deleted(event: UserDeleted) -> None:
        async with session_factory() as db:
            bets = await remove_bettor(db, event.user_id)
            nudges = await delete_user_nudges(db, event.user_id)
        logger.info("user_state_removed", user_id=event.user_id, bets=bets, nudges=nudges)
        registry.wake_user(event.user_id)

    async def on_task_created(event: TaskCreated) -> None:
        if event.nudge_at is None:
            return
        async with session_factory() as db:
            await schedule_nudge(db, event.user_id, event.task_id, event.nudge_at)

    async def on_task_started(event: TaskStarted) -> None:
        async with session_factory() as db:
            try:
                await resolve_bet(db, event.user_id, event.task_id, completion_time=event.started_at)
            except (NotFoundError, DeadlineMissedError) as e:
                logger.debug("task_start_no_bet_win", user_id=event.user_id, task_id=event.task_id, reason=e.message)
            try:
                await cancel_nudge(db, event.user_id, event.task_id)
            except (NotFoundError, AlreadyTerminalError):
                pass

    async def on_task_completed(event: TaskCompleted) -> None:
        async with session_factory() as db:
            try:
                await cancel_nudge(db, event.user_id, event.task_id)
            except (NotFoundError, AlreadyTerminalError):
                pass

    async def on_task_deleted(event: TaskDeleted) -> None:
        async with session_factory() as db:
            try:
                await cancel_nudge(db, event.user_id, event.task_id)
            except (NotFoundError, AlreadyTerminalError):
                pass
            try:
                await cancel_bet(db, event.user_id, event.task_id)
            except NotFoundError:
                pass
            removed = await delete_task_logs(db, event.user_id, event.task_id)
            await db.commit()
            if removed:
                logger.info("emotion_logs_removed", user_id=event.user_id, task_id=event.task_id, count=removed)

    async def wake_streams(event: DomainEvent) -> None:
        registry.wake_user(event.user_id)

    return [
        bus.subscribe(UserRegistered, on_user_registered),
        bus.subscribe(UserDeleted, on_user_deleted),
        bus.subscribe(TaskCreated, on_task_created),
        bus.subscribe(TaskStarted, on_task_started),
        bus.subscribe(TaskCompleted, on_task_completed),
        bus.subscribe(TaskDeleted, on_task_deleted),
        bus.subscribe(NudgeTriggered, wake_streams),
        bus.subscribe(BetResolved, wake_streams),
        bus.subscribe(BetExpired, wake_streams),
    ]
