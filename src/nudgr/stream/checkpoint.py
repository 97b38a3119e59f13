"""Per-user stream cursor: the newest nudge and bet event already delivered.

A cursor is a ``(timestamp, id)`` position. Events that share a timestamp
are ordered by id, so nothing sharing the cursor's instant is skipped.

Both positions only move forward. An advance is a conditional UPDATE that
matches only when the stored position is older, so a slower connection
replaying older events can never pull the cursor back.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError

from nudgr.db.models import StreamCheckpoint

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession


class CheckpointKind(str, enum.Enum):
    NUDGE = "nudge"
    BET = "bet"


_COLUMNS = {
    CheckpointKind.NUDGE: (StreamCheckpoint.last_seen_nudge_at, StreamCheckpoint.last_seen_nudge_id),
    CheckpointKind.BET: (StreamCheckpoint.last_seen_bet_at, StreamCheckpoint.last_seen_bet_id),
}


@dataclass
class CheckpointState:
    nudge_at: datetime
    bet_at: datetime
    nudge_id: int = 0
    bet_id: int = 0

    def position(self, kind: CheckpointKind) -> tuple[datetime, int]:
        if kind is CheckpointKind.NUDGE:
            return self.nudge_at, self.nudge_id
        return self.bet_at, self.bet_id

    def is_after(self, kind: CheckpointKind, ts: datetime, event_id: int) -> bool:
        """True when the event at ``(ts, event_id)`` has not been delivered yet."""
        return (ts, event_id) > self.position(kind)

    def bump(self, kind: CheckpointKind, ts: datetime, event_id: int) -> None:
        """Move the in-memory cursor forward; never backward."""
        if not self.is_after(kind, ts, event_id):
            return
        if kind is CheckpointKind.NUDGE:
            self.nudge_at, self.nudge_id = ts, event_id
        else:
            self.bet_at, self.bet_id = ts, event_id


async def get_checkpoint(db: AsyncSession, user_id: int) -> StreamCheckpoint | None:
    result = await db.execute(
        select(StreamCheckpoint)
        .where(StreamCheckpoint.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def load_checkpoint(
    db: AsyncSession,
    user_id: int,
    now: datetime | None = None,
    backlog_window: timedelta = timedelta(hours=1),
) -> CheckpointState:
    """Stored cursors, defaulting each missing one to ``now - backlog_window``."""
    now = now or datetime.now(timezone.utc)
    floor = now - backlog_window
    state = CheckpointState(nudge_at=floor, bet_at=floor)
    row = await get_checkpoint(db, user_id)
    if row is None:
        return state
    if row.last_seen_nudge_at is not None:
        state.nudge_at, state.nudge_id = row.last_seen_nudge_at, row.last_seen_nudge_id or 0
    if row.last_seen_bet_at is not None:
        state.bet_at, state.bet_id = row.last_seen_bet_at, row.last_seen_bet_id or 0
    return state


async def advance_checkpoint(
    db: AsyncSession,
    user_id: int,
    kind: CheckpointKind,
    ts: datetime,
    event_id: int,
) -> bool:
    """Record that events of ``kind`` up to ``(ts, event_id)`` were delivered. Commits.

    Returns False when the stored cursor was already at or past that position.
    """
    ts_column, id_column = _COLUMNS[kind]
    now = datetime.now(timezone.utc)
    stmt = (
        update(StreamCheckpoint)
        .where(
            StreamCheckpoint.user_id == user_id,
            or_(
                ts_column.is_(None),
                ts_column < ts,
                and_(ts_column == ts, or_(id_column.is_(None), id_column < event_id)),
            ),
        )
        .values({ts_column.key: ts, id_column.key: event_id, "updated_at": now})
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    if result.rowcount == 1:
        await db.commit()
        return True

    if await get_checkpoint(db, user_id) is not None:
        # No change; commit so the caller's loaded rows stay unexpired.
        await db.commit()
        return False

    db.add(StreamCheckpoint(user_id=user_id, updated_at=now, **{ts_column.key: ts, id_column.key: event_id}))
    try:
        await db.commit()
    except IntegrityError:
        # Another connection created the row first; retry as a plain advance.
        await db.rollback()
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount == 1
    return True
