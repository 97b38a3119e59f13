"""Per-user points balance and bet streak.

Functions here never commit; they run inside the caller's transaction so a
debit and the bet insert it pays for succeed or fail together. Every balance
change is a conditional UPDATE checked through ``rowcount``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timezone

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.config import get_settings
from nudgr.db.models import LedgerEntry

logger = logging.getLogger(__name__)

# Attempts at the streak compare-and-swap before giving up.
MAX_CAS_ATTEMPTS = 5


class LedgerConflictError(RuntimeError):
    """The streak kept changing under a success update."""


async def get_ledger(db: AsyncSession, user_id: int) -> LedgerEntry | None:
    result = await db.execute(
        select(LedgerEntry).where(LedgerEntry.user_id == user_id).execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_or_create_ledger(db: AsyncSession, user_id: int, starting_points: int = 0) -> LedgerEntry:
    """Get or create the ledger row for a user."""
    entry = await get_ledger(db, user_id)
    if entry is None:
        entry = LedgerEntry(
            user_id=user_id,
            points=starting_points,
            streak=0,
            updated_at=datetime.now(timezone.utc),
        )
        db.add(entry)
        await db.flush()
    return entry


async def initialize_bettor(db: AsyncSession, user_id: int) -> LedgerEntry:
    """Open a ledger with the configured starting balance and commit it."""
    entry = await get_or_create_ledger(db, user_id, starting_points=get_settings().starting_points)
    await db.commit()
    return entry


async def debit_points(db: AsyncSession, user_id: int, amount: int) -> bool:
    """Take ``amount`` points if the balance covers it. Returns False otherwise."""
    result = await db.execute(
        update(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .where(LedgerEntry.points >= amount)
        .values(points=LedgerEntry.points - amount, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def credit_points(db: AsyncSession, user_id: int, amount: int) -> None:
    await get_or_create_ledger(db, user_id)
    await db.execute(
        update(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .values(points=LedgerEntry.points + amount, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


async def apply_bet_success(
    db: AsyncSession,
    user_id: int,
    reward_for: Callable[[int], int],
) -> tuple[int, int]:
    """Credit a won bet and extend the streak.

    ``reward_for`` maps the streak before this win to the payout. The streak
    is read, the reward computed, and the row updated only if the streak is
    still the one read; a concurrent change triggers a re-read.

    Returns ``(reward, streak_before)``.
    """
    await get_or_create_ledger(db, user_id)
    for attempt in range(1, MAX_CAS_ATTEMPTS + 1):
        streak_before = (
            await db.execute(select(LedgerEntry.streak).where(LedgerEntry.user_id == user_id))
        ).scalar_one()
        reward = reward_for(streak_before)
        result = await db.execute(
            update(LedgerEntry)
            .where(LedgerEntry.user_id == user_id)
            .where(LedgerEntry.streak == streak_before)
            .values(
                points=LedgerEntry.points + reward,
                streak=LedgerEntry.streak + 1,
                updated_at=datetime.now(timezone.utc),
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            return reward, streak_before
        logger.info("Streak changed during bet payout for user %s (attempt %d)", user_id, attempt)

    msg = f"Could not apply bet success for user {user_id} after {MAX_CAS_ATTEMPTS} attempts"
    raise LedgerConflictError(msg)


async def reset_streak(db: AsyncSession, user_id: int) -> None:
    await db.execute(
        update(LedgerEntry)
        .where(LedgerEntry.user_id == user_id)
        .values(streak=0, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )


async def delete_ledger(db: AsyncSession, user_id: int) -> bool:
    result = await db.execute(delete(LedgerEntry).where(LedgerEntry.user_id == user_id))
    return result.rowcount == 1
