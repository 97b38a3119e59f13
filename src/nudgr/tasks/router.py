"""Task endpoints under /api/v1/tasks."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.auth.dependencies import get_current_user
from nudgr.database import get_session
from nudgr.db.models import Task, User
from nudgr.tasks.schemas import TaskCreateRequest, TaskListResponse, TaskResponse, TaskUpdateRequest
from nudgr.tasks.service import (
    complete_task,
    create_task,
    delete_task,
    get_task,
    list_tasks,
    start_task,
    task_status,
    update_task,
)

router = APIRouter(prefix="/api/v1/tasks", tags=["Tasks"])


def _task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        title=task.title,
        description=task.description,
        due_date=task.due_date,
        started_at=task.started_at,
        completed=task.completed,
        status=task_status(task),
        created_at=task.created_at,
    )


@router.post("", response_model=TaskResponse, status_code=201)
async def create(
    body: TaskCreateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskResponse:
    task = await create_task(
        db, user.id, body.title, body.description, due_date=body.due_date, nudge_at=body.nudge_at
    )
    return _task_response(task)


@router.get("", response_model=TaskListResponse)
async def list_all(
    status: str | None = Query(None, pattern="^(pending|in_progress|overdue|completed)$"),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskListResponse:
    tasks = await list_tasks(db, user.id, status=status)
    return TaskListResponse(tasks=[_task_response(t) for t in tasks], total=len(tasks))


@router.get("/{task_id}", response_model=TaskResponse)
async def get_one(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskResponse:
    return _task_response(await get_task(db, user.id, task_id))


@router.patch("/{task_id}", response_model=TaskResponse)
async def update(
    task_id: int,
    body: TaskUpdateRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskResponse:
    task = await update_task(
        db, user.id, task_id, title=body.title, description=body.description, due_date=body.due_date
    )
    return _task_response(task)


@router.post("/{task_id}/start", response_model=TaskResponse)
async def start(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskResponse:
    """Start a task. An open bet on it is resolved before this returns."""
    return _task_response(await start_task(db, user.id, task_id))


@router.post("/{task_id}/complete", response_model=TaskResponse)
async def complete(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> TaskResponse:
    return _task_response(await complete_task(db, user.id, task_id))


@router.delete("/{task_id}", status_code=204)
async def delete(
    task_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_session),
) -> Response:
    await delete_task(db, user.id, task_id)
    return Response(status_code=204)
