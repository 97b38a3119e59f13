"""Micro-bet lifecycle: place, cancel, resolve on task start, expire at deadline.

A bet is resolved at most once. Both resolution paths flip ``success`` with a
single UPDATE guarded by ``success IS NULL``; whoever loses that race gets an
``ALREADY_RESOLVED`` outcome instead of an error, so a task start, the
background sweeper and any number of open event streams can all try to
resolve the same bet.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

import structlog
from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError

from nudgr.bets.ledger import (
    apply_bet_success,
    credit_points,
    debit_points,
    delete_ledger,
    get_ledger,
    get_or_create_ledger,
    reset_streak,
)
from nudgr.bets.rewards import calculate_reward
from nudgr.db.models import Bet
from nudgr.errors import (
    DeadlineMissedError,
    DuplicateError,
    InsufficientPointsError,
    NotExpiredError,
    NotFoundError,
    PastTimeError,
    ValidationError,
)
from nudgr.events.bus import bus
from nudgr.events.types import BetCanceled, BetExpired, BetPlaced, BetResolved

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = structlog.get_logger()


class BetOutcome(str, enum.Enum):
    RESOLVED = "resolved"
    EXPIRED = "expired"
    ALREADY_RESOLVED = "already_resolved"


@dataclass(frozen=True)
class BetResolution:
    status: BetOutcome
    bet: Bet
    reward: int = 0

    @property
    def applied(self) -> bool:
        """True when this call performed the transition."""
        return self.status is not BetOutcome.ALREADY_RESOLVED


@dataclass(frozen=True)
class BettingProfile:
    points: int
    streak: int
    active_bets: int
    won_bets: int
    lost_bets: int


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


async def get_bet(db: AsyncSession, user_id: int, task_id: int) -> Bet | None:
    result = await db.execute(
        select(Bet)
        .where(Bet.user_id == user_id, Bet.task_id == task_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def get_bet_history(db: AsyncSession, user_id: int, status: str | None = None) -> list[Bet]:
    """Bets newest first, optionally only ``pending``, ``success`` or ``failure``."""
    stmt = select(Bet).where(Bet.user_id == user_id)
    if status == "pending":
        stmt = stmt.where(Bet.success.is_(None))
    elif status == "success":
        stmt = stmt.where(Bet.success.is_(True))
    elif status == "failure":
        stmt = stmt.where(Bet.success.is_(False))
    result = await db.execute(stmt.order_by(Bet.created_at.desc(), Bet.id.desc()))
    return list(result.scalars().all())


async def get_active_bets(db: AsyncSession, user_id: int) -> list[Bet]:
    """Unresolved bets, soonest deadline first."""
    result = await db.execute(
        select(Bet).where(Bet.user_id == user_id, Bet.success.is_(None)).order_by(Bet.deadline, Bet.id)
    )
    return list(result.scalars().all())


async def get_expired_unresolved_bets(
    db: AsyncSession,
    user_id: int | None,
    now: datetime,
    limit: int | None = None,
) -> list[Bet]:
    """Unresolved bets whose deadline has passed, oldest deadline first.

    ``user_id=None`` scans every user (used by the sweeper).
    """
    stmt = select(Bet).where(Bet.success.is_(None), Bet.deadline <= now)
    if user_id is not None:
        stmt = stmt.where(Bet.user_id == user_id)
    stmt = stmt.order_by(Bet.deadline, Bet.id)
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def get_resolved_bets_since(
    db: AsyncSession,
    user_id: int,
    after: datetime,
    limit: int,
    after_id: int | None = None,
) -> list[Bet]:
    """Bets resolved after ``(after, after_id)``, in resolution order.

    A sweep stamps a whole batch with one ``resolved_at``; ``after_id`` breaks
    that tie.
    """
    position = Bet.resolved_at > after
    if after_id is not None:
        position = or_(position, and_(Bet.resolved_at == after, Bet.id > after_id))
    result = await db.execute(
        select(Bet)
        .where(Bet.user_id == user_id, Bet.resolved_at.is_not(None), position)
        .order_by(Bet.resolved_at, Bet.id)
        .limit(limit)
    )
    return list(result.scalars().all())


async def get_betting_profile(db: AsyncSession, user_id: int) -> BettingProfile:
    entry = await get_ledger(db, user_id)
    if entry is None:
        msg = "User has no betting ledger"
        raise NotFoundError(msg)
    rows = await db.execute(
        select(Bet.success, func.count(Bet.id)).where(Bet.user_id == user_id).group_by(Bet.success)
    )
    counts = {success: count for success, count in rows.all()}
    return BettingProfile(
        points=entry.points,
        streak=entry.streak,
        active_bets=counts.get(None, 0),
        won_bets=counts.get(True, 0),
        lost_bets=counts.get(False, 0),
    )


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


async def place_bet(
    db: AsyncSession,
    user_id: int,
    task_id: int,
    wager: int,
    deadline: datetime,
    task_due_time: datetime | None = None,
    now: datetime | None = None,
) -> Bet:
    """Stake ``wager`` points on starting the task before ``deadline``.

    The debit and the insert share one transaction: losing a duplicate-key
    race rolls both back, which returns the points.

    Raises:
        ValidationError: non-positive wager, or deadline not before the due time.
        PastTimeError: deadline not in the future.
        DuplicateError: a bet already exists for this task.
        InsufficientPointsError: balance below the wager.
    """
    now = now or datetime.now(timezone.utc)
    if wager <= 0:
        msg = "Wager must be a positive number of points"
        raise ValidationError(msg)
    if deadline <= now:
        msg = "Deadline must be in the future"
        raise PastTimeError(msg)
    if task_due_time is not None and deadline >= task_due_time:
        msg = "Deadline must be before the task's due date"
        raise ValidationError(msg)
    if await get_bet(db, user_id, task_id) is not None:
        msg = "A bet already exists for this task"
        raise DuplicateError(msg)

    await get_or_create_ledger(db, user_id)
    if not await debit_points(db, user_id, wager):
        await db.rollback()
        msg = "Not enough points for this wager"
        raise InsufficientPointsError(msg)

    bet = Bet(
        user_id=user_id,
        task_id=task_id,
        wager=wager,
        deadline=deadline,
        task_due_time=task_due_time,
        created_at=now,
    )
    db.add(bet)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.warning("bet_place_compensated", user_id=user_id, task_id=task_id, wager=wager)
        msg = "A bet already exists for this task"
        raise DuplicateError(msg) from e

    logger.info("bet_placed", user_id=user_id, task_id=task_id, wager=wager, deadline=deadline.isoformat())
    await bus.publish(BetPlaced(user_id=user_id, task_id=task_id, bet_id=bet.id, wager=wager, deadline=deadline))
    return bet


async def cancel_bet(db: AsyncSession, user_id: int, task_id: int) -> int:
    """Delete the bet; refund the wager if it was still unresolved. Returns the refund."""
    bet = await get_bet(db, user_id, task_id)
    if bet is None:
        msg = "Bet not found"
        raise NotFoundError(msg)
    bet_id, wager = bet.id, bet.wager

    result = await db.execute(
        delete(Bet)
        .where(Bet.id == bet_id, Bet.success.is_(None))
        .execution_options(synchronize_session=False)
    )
    refunded = 0
    if result.rowcount == 1:
        await credit_points(db, user_id, wager)
        refunded = wager
    else:
        result = await db.execute(
            delete(Bet).where(Bet.id == bet_id).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await db.rollback()
            msg = "Bet not found"
            raise NotFoundError(msg)
    await db.commit()

    logger.info("bet_canceled", user_id=user_id, task_id=task_id, refunded=refunded)
    await bus.publish(BetCanceled(user_id=user_id, task_id=task_id, refunded=refunded))
    return refunded


async def _already_resolved(db: AsyncSession, user_id: int, task_id: int) -> BetResolution:
    bet = await get_bet(db, user_id, task_id)
    if bet is None:
        msg = "Bet not found"
        raise NotFoundError(msg)
    return BetResolution(BetOutcome.ALREADY_RESOLVED, bet)


async def resolve_bet(
    db: AsyncSession,
    user_id: int,
    task_id: int,
    completion_time: datetime,
    now: datetime | None = None,
) -> BetResolution:
    """Win the bet because the task started at ``completion_time``.

    Raises:
        NotFoundError: no bet for this task.
        DeadlineMissedError: the start came after the deadline; expiry handles it.
    """
    now = now or datetime.now(timezone.utc)
    bet = await get_bet(db, user_id, task_id)
    if bet is None:
        msg = "Bet not found"
        raise NotFoundError(msg)
    if bet.success is not None:
        return BetResolution(BetOutcome.ALREADY_RESOLVED, bet)
    if completion_time > bet.deadline:
        msg = "Task was started after the bet deadline"
        raise DeadlineMissedError(msg)

    wager, deadline, task_due_time = bet.wager, bet.deadline, bet.task_due_time
    try:
        claimed = await db.execute(
            update(Bet).where(Bet.id == bet.id, Bet.success.is_(None)).values(success=True, resolved_at=now)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await db.rollback()
            return await _already_resolved(db, user_id, task_id)

        reward, streak_before = await apply_bet_success(
            db, user_id, lambda streak: calculate_reward(wager, streak, deadline, task_due_time)
        )
        await db.execute(
            update(Bet)
            .where(Bet.id == bet.id)
            .values(reward=reward)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    bet = await get_bet(db, user_id, task_id)
    logger.info(
        "bet_resolved",
        user_id=user_id,
        task_id=task_id,
        wager=wager,
        reward=reward,
        streak_before=streak_before,
    )
    await bus.publish(
        BetResolved(user_id=user_id, task_id=task_id, bet_id=bet.id, reward=reward, streak=streak_before + 1)
    )
    return BetResolution(BetOutcome.RESOLVED, bet, reward)


async def resolve_expired_bet(
    db: AsyncSession,
    user_id: int,
    task_id: int,
    now: datetime | None = None,
) -> BetResolution:
    """Lose the bet because its deadline passed without a qualifying start.

    Raises:
        NotFoundError: no bet for this task.
        NotExpiredError: the deadline is still ahead.
    """
    now = now or datetime.now(timezone.utc)
    bet = await get_bet(db, user_id, task_id)
    if bet is None:
        msg = "Bet not found"
        raise NotFoundError(msg)
    if bet.success is not None:
        return BetResolution(BetOutcome.ALREADY_RESOLVED, bet)
    if bet.deadline > now:
        msg = "Bet deadline has not passed yet"
        raise NotExpiredError(msg)

    try:
        claimed = await db.execute(
            update(Bet)
            .where(Bet.id == bet.id, Bet.success.is_(None), Bet.deadline <= now)
            .values(success=False, resolved_at=now, reward=0)
            .execution_options(synchronize_session=False)
        )
        if claimed.rowcount == 0:
            await db.rollback()
            return await _already_resolved(db, user_id, task_id)
        await reset_streak(db, user_id)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    bet = await get_bet(db, user_id, task_id)
    logger.info("bet_expired", user_id=user_id, task_id=task_id, wager=bet.wager)
    await bus.publish(BetExpired(user_id=user_id, task_id=task_id, bet_id=bet.id, wager=bet.wager))
    return BetResolution(BetOutcome.EXPIRED, bet)


async def resolve_all_expired_bets(db: AsyncSession, now: datetime | None = None, limit: int | None = None) -> int:
    """Expire every overdue bet across all users. Returns how many this call expired."""
    now = now or datetime.now(timezone.utc)
    targets = [(b.user_id, b.task_id) for b in await get_expired_unresolved_bets(db, None, now, limit)]
    expired = 0
    for user_id, task_id in targets:
        try:
            resolution = await resolve_expired_bet(db, user_id, task_id, now=now)
        except NotFoundError:
            continue  # canceled since the scan
        if resolution.applied:
            expired += 1
    return expired


async def remove_bettor(db: AsyncSession, user_id: int) -> int:
    """Drop a user's ledger and every bet they hold. Returns the number of bets removed."""
    result = await db.execute(delete(Bet).where(Bet.user_id == user_id))
    await delete_ledger(db, user_id)
    await db.commit()
    return result.rowcount  # type: ignore[return-value]
