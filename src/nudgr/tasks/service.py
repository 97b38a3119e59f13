"""Task CRUD, ownership checks and status derivation.

Every mutation commits, then publishes its domain event so that nudges,
bets and emotion logs follow the task's lifecycle.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import select

from nudgr.db.models import Task
from nudgr.errors import ConflictError, ForbiddenError, NotFoundError, PastTimeError, ValidationError
from nudgr.events.bus import bus
from nudgr.events.types import TaskCompleted, TaskCreated, TaskDeleted, TaskStarted

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


@dataclass(frozen=True)
class TaskContext:
    """The slice of a task the nudge prompt needs."""

    title: str
    description: str


def task_status(task: Task, now: datetime | None = None) -> str:
    """completed > in_progress > overdue > pending."""
    now = now or datetime.now(timezone.utc)
    if task.completed:
        return "completed"
    if task.started_at is not None:
        return "in_progress"
    if task.due_date is not None and task.due_date < now:
        return "overdue"
    return "pending"


def _clean_title(title: str) -> str:
    title = title.strip()
    if not title:
        msg = "Title cannot be empty"
        raise ValidationError(msg)
    return title


async def get_task(db: AsyncSession, user_id: int, task_id: int) -> Task:
    """Fetch a task owned by ``user_id``.

    Raises:
        NotFoundError: no such task.
        ForbiddenError: the task belongs to someone else.
    """
    task = await db.get(Task, task_id)
    if task is None:
        msg = "Task not found"
        raise NotFoundError(msg)
    if task.user_id != user_id:
        msg = "Task belongs to another user"
        raise ForbiddenError(msg)
    return task


async def get_task_context(db: AsyncSession, user_id: int, task_id: int) -> TaskContext:
    task = await get_task(db, user_id, task_id)
    return TaskContext(title=task.title, description=task.description)


async def list_tasks(db: AsyncSession, user_id: int, status: str | None = None) -> list[Task]:
    """All tasks of a user, newest first, optionally filtered by derived status."""
    result = await db.execute(
        select(Task).where(Task.user_id == user_id).order_by(Task.created_at.desc(), Task.id.desc())
    )
    tasks = list(result.scalars().all())
    if status is None:
        return tasks
    now = datetime.now(timezone.utc)
    return [t for t in tasks if task_status(t, now) == status]


async def create_task(
    db: AsyncSession,
    user_id: int,
    title: str,
    description: str = "",
    due_date: datetime | None = None,
    nudge_at: datetime | None = None,
    now: datetime | None = None,
) -> Task:
    """Create a task. ``nudge_at`` asks for a reminder, scheduled through the event bus."""
    now = now or datetime.now(timezone.utc)
    title = _clean_title(title)
    if due_date is not None and due_date < now:
        msg = "Due date cannot be in the past"
        raise PastTimeError(msg)
    if nudge_at is not None and nudge_at <= now:
        msg = "Nudge time must be in the future"
        raise PastTimeError(msg)

    task = Task(
        user_id=user_id,
        title=title,
        description=description or "",
        due_date=due_date,
        completed=False,
        created_at=now,
    )
    db.add(task)
    await db.commit()
    logger.info("task_created", user_id=user_id, task_id=task.id)

    await bus.publish(
        TaskCreated(user_id=user_id, task_id=task.id, title=task.title, due_date=due_date, nudge_at=nudge_at)
    )
    return task


async def update_task(
    db: AsyncSession,
    user_id: int,
    task_id: int,
    *,
    title: str | None = None,
    description: str | None = None,
    due_date: datetime | None = None,
    now: datetime | None = None,
) -> Task:
    """Partial update. An unchanged past due date is allowed; a newly set one must be in the future."""
    now = now or datetime.now(timezone.utc)
    task = await get_task(db, user_id, task_id)
    if title is not None:
        task.title = _clean_title(title)
    if description is not None:
        task.description = description
    if due_date is not None and due_date != task.due_date:
        if due_date < now:
            msg = "Due date cannot be in the past"
            raise PastTimeError(msg)
        task.due_date = due_date
    await db.commit()
    return task


async def start_task(db: AsyncSession, user_id: int, task_id: int, now: datetime | None = None) -> Task:
    """Mark started. Wins any open bet placed on this task if it is before the deadline."""
    now = now or datetime.now(timezone.utc)
    task = await get_task(db, user_id, task_id)
    if task.started_at is not None:
        msg = "Task already started"
        raise ConflictError(msg)
    task.started_at = now
    await db.commit()
    logger.info("task_started", user_id=user_id, task_id=task_id)

    await bus.publish(TaskStarted(user_id=user_id, task_id=task_id, started_at=now))
    return task


async def complete_task(db: AsyncSession, user_id: int, task_id: int) -> Task:
    task = await get_task(db, user_id, task_id)
    if task.completed:
        msg = "Task already complete"
        raise ConflictError(msg)
    task.completed = True
    await db.commit()

    await bus.publish(TaskCompleted(user_id=user_id, task_id=task_id))
    return task


async def delete_task(db: AsyncSession, user_id: int, task_id: int) -> None:
    task = await get_task(db, user_id, task_id)
    await db.delete(task)
    await db.commit()
    logger.info("task_deleted", user_id=user_id, task_id=task_id)

    await bus.publish(TaskDeleted(user_id=user_id, task_id=task_id))
