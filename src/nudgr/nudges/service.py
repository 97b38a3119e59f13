"""Nudge scheduling and at-most-once triggering.

A nudge moves from pending to exactly one of triggered or canceled. Both
moves are single conditional UPDATEs on the pending predicate, so concurrent
callers (several open streams, the sweeper, a task start) cannot double-fire
a nudge or trigger a canceled one. Losing such a race is reported as a
``TriggerStatus``, never raised.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from nudgr.db.models import Nudge
from nudgr.emotions.service import recent_emotions
from nudgr.errors import (
    AlreadyTerminalError,
    DuplicateError,
    ForbiddenError,
    GenerationError,
    NotFoundError,
    PastTimeError,
)
from nudgr.events.bus import bus
from nudgr.events.types import NudgeCanceled, NudgeScheduled, NudgeTriggered
from nudgr.nudges.generator import MessageGenerator, NudgeContext
from nudgr.tasks.service import get_task_context

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


class TriggerStatus(str, enum.Enum):
    TRIGGERED = "triggered"
    NOT_FOUND = "not_found"
    ALREADY_TRIGGERED = "already_triggered"
    CANCELED = "canceled"
    NOT_DUE = "not_due"


@dataclass(frozen=True)
class TriggerResult:
    status: TriggerStatus
    nudge: Nudge | None = None

    @property
    def triggered(self) -> bool:
        return self.status is TriggerStatus.TRIGGERED


def _pending_due(user_id: int, task_id: int, now: datetime) -> tuple:
    return (
        Nudge.user_id == user_id,
        Nudge.task_id == task_id,
        Nudge.triggered_at.is_(None),
        Nudge.canceled.is_(False),
        Nudge.delivery_time <= now,
    )


async def _diagnose(db: AsyncSession, user_id: int, task_id: int, now: datetime) -> TriggerStatus:
    nudge = await get_nudge(db, user_id, task_id)
    if nudge is None:
        return TriggerStatus.NOT_FOUND
    if nudge.triggered_at is not None:
        return TriggerStatus.ALREADY_TRIGGERED
    if nudge.canceled:
        return TriggerStatus.CANCELED
    if nudge.delivery_time > now:
        return TriggerStatus.NOT_DUE
    # Pending and due under the same clock: the row was claimed and released in between.
    return TriggerStatus.ALREADY_TRIGGERED


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_nudge(db: AsyncSession, user_id: int, task_id: int) -> Nudge | None:
    result = await db.execute(
        select(Nudge)
        .where(Nudge.user_id == user_id, Nudge.task_id == task_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def list_nudges(
    db: AsyncSession,
    user_id: int,
    status: str | None = None,
    limit: int = 50,
) -> list[Nudge]:
    """Nudges newest delivery first, optionally only ``pending``, ``triggered`` or ``canceled``."""
    stmt = select(Nudge).where(Nudge.user_id == user_id)
    if status == "pending":
        stmt = stmt.where(Nudge.triggered_at.is_(None), Nudge.canceled.is_(False))
    elif status == "triggered":
        stmt = stmt.where(Nudge.triggered_at.is_not(None))
    elif status == "canceled":
        stmt = stmt.where(Nudge.canceled.is_(True))
    result = await db.execute(stmt.order_by(Nudge.delivery_time.desc(), Nudge.id.desc()).limit(limit))
    return list(result.scalars().all())


async def get_ready_nudges(
    db: AsyncSession,
    user_id: int | None,
    now: datetime,
    limit: int | None = None,
) -> list[Nudge]:
    """Pending nudges whose delivery time has come, earliest first.

    ``user_id=None`` scans every user (used by the sweeper).
    """
    stmt = select(Nudge).where(
        Nudge.triggered_at.is_(None),
        Nudge.canceled.is_(False),
        Nudge.delivery_time <= now,
    )
    if user_id is not None:
        stmt = stmt.where(Nudge.user_id == user_id)
    stmt = stmt.order_by(Nudge.delivery_time, Nudge.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_triggered_nudges_since(
    db: AsyncSession,
    user_id: int,
    after: datetime,
    limit: int,
    after_id: int | None = None,
) -> list[Nudge]:
    """Triggered nudges positioned after ``(after, after_id)``, earliest first.

    Without ``after_id`` the bound is ``delivery_time > after``. With it, nudges
    sharing ``after`` are ordered by id, so a page boundary inside a tie loses
    nothing.
    """
    position = Nudge.delivery_time > after
    if after_id is not None:
        position = or_(position, and_(Nudge.delivery_time == after, Nudge.id > after_id))
    result = await db.execute(
        select(Nudge)
        .where(
            Nudge.user_id == user_id,
            Nudge.triggered_at.is_not(None),
            position,
        )
        .order_by(Nudge.delivery_time, Nudge.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def load_nudge_context(db: AsyncSession, user_id: int, task_id: int) -> NudgeContext:
    """Task title and description plus the user's latest emotions.

    Raises:
        NotFoundError / ForbiddenError: the task is gone or not the user's.
    """
    task = await get_task_context(db, user_id, task_id)
    emotions = await recent_emotions(db, user_id)
    return NudgeContext(title=task.title, description=task.description, recent_emotions=emotions)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def schedule_nudge(
    db: AsyncSession,
    user_id: int,
    task_id: int,
    delivery_time: datetime,
    now: datetime | None = None,
) -> Nudge:
    """Create a pending nudge.

    Raises:
        PastTimeError: ``delivery_time`` is not in the future.
        DuplicateError: the task already has a nudge.
    """
    now = now or datetime.now(timezone.utc)
    if delivery_time <= now:
        msg = "Delivery time must be in the future"
        raise PastTimeError(msg)
    if await get_nudge(db, user_id, task_id) is not None:
        msg = "A nudge is already scheduled for this task"
        raise DuplicateError(msg)

    nudge = Nudge(user_id=user_id, task_id=task_id, delivery_time=delivery_time, canceled=False, created_at=now)
    db.add(nudge)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        msg = "A nudge is already scheduled for this task"
        raise DuplicateError(msg) from e

    logger.info("nudge_scheduled", user_id=user_id, task_id=task_id, delivery_time=delivery_time.isoformat())
    await bus.publish(NudgeScheduled(user_id=user_id, task_id=task_id, delivery_time=delivery_time))
    return nudge


async def cancel_nudge(db: AsyncSession, user_id: int, task_id: int) -> None:
    """Cancel a pending nudge.

    Raises:
        NotFoundError: no nudge for this task.
        AlreadyTerminalError: it was already triggered or canceled.
    """
    result = await db.execute(
        update(Nudge)
        .where(
            Nudge.user_id == user_id,
            Nudge.task_id == task_id,
            Nudge.triggered_at.is_(None),
            Nudge.canceled.is_(False),
        )
        .values(canceled=True)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await db.rollback()
        nudge = await get_nudge(db, user_id, task_id)
        if nudge is None:
            msg = "Nudge not found"
            raise NotFoundError(msg)
        state = "triggered" if nudge.triggered_at is not None else "canceled"
        msg = f"Nudge was already {state}"
        raise AlreadyTerminalError(msg)
    await db.commit()

    logger.info("nudge_canceled", user_id=user_id, task_id=task_id)
    await bus.publish(NudgeCanceled(user_id=user_id, task_id=task_id))


async def cancel_orphaned_nudge(db: AsyncSession, user_id: int, task_id: int) -> bool:
    """Cancel a due nudge whose task is gone so it stops holding a place in the ready queue.

    Returns False when the nudge was no longer pending.
    """
    try:
        await cancel_nudge(db, user_id, task_id)
    except (NotFoundError, AlreadyTerminalError):
        return False
    logger.info("orphaned_nudge_canceled", user_id=user_id, task_id=task_id)
    return True


async def trigger_nudge(
    db: AsyncSession,
    generator: MessageGenerator,
    user_id: int,
    task_id: int,
    context: NudgeContext,
    now: datetime | None = None,
) -> TriggerResult:
    """Generate the message and mark the nudge triggered, at most once.

    The record is only written after the generator returns a valid message,
    and the write re-checks the pending predicate. If another caller got
    there first the result is ``ALREADY_TRIGGERED`` and nothing is written.

    Raises:
        GenerationError: the generator failed; the nudge stays pending.
    """
    now = now or datetime.now(timezone.utc)
    result = await db.execute(select(Nudge.id).where(*_pending_due(user_id, task_id, now)))
    nudge_id = result.scalar_one_or_none()
    if nudge_id is None:
        status = await _diagnose(db, user_id, task_id, now)
        logger.debug("nudge_trigger_skipped", user_id=user_id, task_id=task_id, reason=status.value)
        return TriggerResult(status)

    message = await generator.generate(context)

    claimed = await db.execute(
        update(Nudge)
        .where(Nudge.id == nudge_id, *_pending_due(user_id, task_id, now))
        .values(triggered_at=now, message=message)
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount == 0:
        await db.rollback()
        status = await _diagnose(db, user_id, task_id, now)
        logger.debug("nudge_trigger_lost_race", user_id=user_id, task_id=task_id, reason=status.value)
        return TriggerResult(status)
    await db.commit()

    nudge = await get_nudge(db, user_id, task_id)
    logger.info("nudge_triggered", user_id=user_id, task_id=task_id, nudge_id=nudge_id)
    await bus.publish(
        NudgeTriggered(user_id=user_id, task_id=task_id, nudge_id=nudge_id, delivery_time=nudge.delivery_time)
    )
    return TriggerResult(TriggerStatus.TRIGGERED, nudge)


async def trigger_ready_nudges(
    db: AsyncSession,
    generator: MessageGenerator,
    now: datetime | None = None,
    limit: int | None = None,
) -> int:
    """Trigger every due nudge across all users. Returns how many this call triggered.

    Generation failures are logged and left for the next run.
    """
    now = now or datetime.now(timezone.utc)
    targets = [(n.user_id, n.task_id) for n in await get_ready_nudges(db, None, now, limit)]
    triggered = 0
    for user_id, task_id in targets:
        try:
            context = await load_nudge_context(db, user_id, task_id)
        except (NotFoundError, ForbiddenError):
            await cancel_orphaned_nudge(db, user_id, task_id)
            continue
        try:
            outcome = await trigger_nudge(db, generator, user_id, task_id, context, now=now)
        except GenerationError as e:
            logger.warning("nudge_sweep_generation_failed", user_id=user_id, task_id=task_id, error=e.message)
            continue
        if outcome.triggered:
            triggered += 1
    return triggered


async def delete_user_nudges(db: AsyncSession, user_id: int) -> int:
    result = await db.execute(delete(Nudge).where(Nudge.user_id == user_id))
    await db.commit()
    return result.rowcount  # type: ignore[return-value]
