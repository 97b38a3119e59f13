"""Per-connection event reconciliation.

An ``EventReconciler`` serves one open stream for one user. It walks

    CONNECTING -> BACKFILLING -> POLLING -> CLOSED

On connect it authenticates the token and loads the user's checkpoint. The
backfill cycle replays what the user missed since that checkpoint, triggers
nudges that came due, and expires overdue bets. Every poll cycle afterwards
re-checks authorization first and then does the same scan with a smaller
limit. Nothing here takes a lock shared with other connections: the stores'
conditional updates decide which caller performs a transition, and losers
simply see the result on their next replay.

Delivery order is ascending ``(delivery_time, id)`` for nudges and ascending
``(resolved_at, id)`` for bets, and the checkpoint is advanced only after the
frame was written. A failed write closes the reconciler at once.
"""

from __future__ import annotations

import asyncio
import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Protocol

import jwt
import structlog

from nudgr.auth.jwt import user_id_from_token
from nudgr.auth.service import has_active_session
from nudgr.bets.service import BetOutcome, get_expired_unresolved_bets, get_resolved_bets_since, resolve_expired_bet
from nudgr.errors import AuthorizationError, ForbiddenError, GenerationError, NotFoundError
from nudgr.nudges.service import (
    TriggerStatus,
    cancel_orphaned_nudge,
    get_nudge,
    get_ready_nudges,
    get_triggered_nudges_since,
    load_nudge_context,
    trigger_nudge,
)
from nudgr.stream.checkpoint import CheckpointKind, CheckpointState, advance_checkpoint, load_checkpoint
from nudgr.stream.frames import ConnectedFrame, ErrorFrame, Frame, HeartbeatFrame, bet_frame, dump_frame, nudge_frame

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from nudgr.config import Settings
    from nudgr.db.models import Nudge
    from nudgr.nudges.generator import MessageGenerator

logger = structlog.get_logger()

Send = Callable[[dict[str, Any]], Awaitable[None]]

CYCLE_ERROR_MESSAGE = "Error checking for events"
GENERATION_ERROR_MESSAGE = "Could not generate a nudge right now; will retry"


class ReconcilerState(str, enum.Enum):
    CONNECTING = "connecting"
    BACKFILLING = "backfilling"
    POLLING = "polling"
    CLOSED = "closed"


class Authorizer(Protocol):
    async def current_user(self, token: str) -> int:
        """Return the user id behind ``token`` or raise ``AuthorizationError``."""
        ...

    async def has_active_session(self, user_id: int) -> bool: ...


class TokenAuthorizer:
    """Authorizer backed by JWT access tokens and stored refresh-token sessions."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def current_user(self, token: str) -> int:
        if not token:
            msg = "Missing access token"
            raise AuthorizationError(msg)
        try:
            return user_id_from_token(token)
        except jwt.InvalidTokenError as e:
            raise AuthorizationError(str(e)) from e

    async def has_active_session(self, user_id: int) -> bool:
        async with self._session_factory() as db:
            return await has_active_session(db, user_id)


@dataclass(frozen=True)
class StreamSettings:
    backlog_window: timedelta = timedelta(hours=1)
    backlog_limit: int = 50
    polling_limit: int = 10
    poll_interval: float = 5.0
    heartbeat_interval: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> StreamSettings:
        return cls(
            backlog_window=timedelta(minutes=settings.stream_backlog_window_minutes),
            backlog_limit=settings.stream_backlog_limit,
            polling_limit=settings.stream_polling_limit,
            poll_interval=settings.stream_poll_interval_seconds,
            heartbeat_interval=settings.stream_heartbeat_interval_seconds,
        )


class _DeliveryFailed(Exception):
    """The transport write failed or the reconciler is closed; abort the cycle."""


class EventReconciler:
    def __init__(
        self,
        token: str,
        send: Send,
        authorizer: Authorizer,
        session_factory: async_sessionmaker[AsyncSession],
        generator: MessageGenerator,
        settings: StreamSettings | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.token = token
        self.settings = settings or StreamSettings()
        self.state = ReconcilerState.CONNECTING
        self.user_id: int | None = None
        self.close_reason: str | None = None
        self.delivered = 0
        self._send = send
        self._authorizer = authorizer
        self._session_factory = session_factory
        self._generator = generator
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._cursor: CheckpointState | None = None
        self._send_lock = asyncio.Lock()
        self._closed = asyncio.Event()
        self._wake = asyncio.Event()
        self._cycle_error_sent = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def closed(self) -> bool:
        return self.state is ReconcilerState.CLOSED

    @property
    def cursor(self) -> CheckpointState | None:
        return self._cursor

    async def connect(self) -> int:
        """Authenticate and load the checkpoint. Returns the user id.

        Raises:
            AuthorizationError: the token is invalid; the reconciler is closed.
        """
        try:
            user_id = await self._authorizer.current_user(self.token)
        except AuthorizationError:
            self.close("unauthorized")
            raise
        async with self._session_factory() as db:
            self._cursor = await load_checkpoint(db, user_id, self._clock(), self.settings.backlog_window)
        self.user_id = user_id
        logger.info(
            "stream_connected",
            user_id=user_id,
            nudge_cursor=self._cursor.nudge_at.isoformat(),
            bet_cursor=self._cursor.bet_at.isoformat(),
        )
        return user_id

    async def backfill(self) -> None:
        """Send ``connected`` and catch the user up. Runs once, before polling."""
        if self.state is not ReconcilerState.CONNECTING or self.user_id is None:
            msg = f"backfill() requires a connected reconciler, state is {self.state.value}"
            raise RuntimeError(msg)
        self.state = ReconcilerState.BACKFILLING
        try:
            await self._deliver(ConnectedFrame())
            await self._run_cycle(self.settings.backlog_limit)
        except _DeliveryFailed:
            return
        if not self.closed:
            self.state = ReconcilerState.POLLING

    async def poll_once(self) -> None:
        """One polling cycle: authorization first, then the event scan."""
        if self.state is not ReconcilerState.POLLING:
            return
        self._cycle_error_sent = False
        try:
            authorized = await self._still_authorized()
        except Exception:
            logger.exception("stream_auth_check_failed", user_id=self.user_id)
            await self._report_error(CYCLE_ERROR_MESSAGE)
            return
        if not authorized:
            self.close("unauthorized")
            return
        try:
            await self._run_cycle(self.settings.polling_limit)
        except _DeliveryFailed:
            return

    async def send_heartbeat(self) -> bool:
        """Write a heartbeat frame. False once the stream is closed or the write failed."""
        try:
            await self._deliver(HeartbeatFrame(timestamp=self._clock()))
        except _DeliveryFailed:
            return False
        return True

    async def send_frame(self, frame: Frame) -> bool:
        try:
            await self._deliver(frame)
        except _DeliveryFailed:
            return False
        return True

    def close(self, reason: str) -> bool:
        """Enter CLOSED. Safe from any path; only the first call has an effect."""
        if self.state is ReconcilerState.CLOSED:
            return False
        previous = self.state
        self.state = ReconcilerState.CLOSED
        self.close_reason = reason
        self._closed.set()
        self._wake.set()
        logger.info(
            "stream_closed",
            user_id=self.user_id,
            reason=reason,
            previous_state=previous.value,
            delivered=self.delivered,
        )
        return True

    async def wait_closed(self) -> None:
        await self._closed.wait()

    def wake(self) -> None:
        """Run the next poll cycle now instead of at the end of the interval."""
        self._wake.set()

    async def wait_for_wake(self, timeout: float) -> None:
        """Sleep until woken, closed, or ``timeout`` seconds pass."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout)
        except TimeoutError:
            pass
        finally:
            if not self.closed:
                self._wake.clear()

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def _still_authorized(self) -> bool:
        try:
            user_id = await self._authorizer.current_user(self.token)
        except AuthorizationError as e:
            logger.info("stream_token_rejected", user_id=self.user_id, error=e.message)
            return False
        if user_id != self.user_id:
            return False
        return await self._authorizer.has_active_session(user_id)

    def _require_connected(self) -> tuple[int, CheckpointState]:
        if self.user_id is None or self._cursor is None:
            msg = f"reconciler is not connected, state is {self.state.value}"
            raise RuntimeError(msg)
        return self.user_id, self._cursor

    async def _still_authorized(self) -> bool:
        try:
            user_id = await self._authorizer.current_user(self.token)
        except AuthorizationError as e:
            logger.info("stream_token_rejected", user_id=self.user_id, error=e.message)
            return False
        if user_id != self.user_id:
            return False
        return await self._authorizer.has_active_session(user_id)

    async def _run_cycle(self, limit: int) -> None:
        self._cycle_error_sent = False
        try:
            async with self._session_factory() as db:
                await self._reconcile_nudges(db, limit)
                await self._replay_bets(db, limit)
                await self._expire_bets(db, limit)
        except _DeliveryFailed:
            raise
        except Exception:
            logger.exception("stream_cycle_failed", user_id=self.user_id, state=self.state.value)
            await self._report_error(CYCLE_ERROR_MESSAGE)

    async def _reconcile_nudges(self, db: AsyncSession, limit: int) -> None:
        """Replay nudges triggered elsewhere and trigger due ones, merged by delivery time.

        Stops at the first generation failure so later nudges are not
        delivered ahead of the one that will be retried. A due nudge whose
        task is gone is canceled rather than skipped, otherwise enough of them
        would fill every page of the ready queue.
        """
        user_id, cursor = self._require_connected()
        now = self._clock()
        after, after_id = cursor.position(CheckpointKind.NUDGE)
        replay = await get_triggered_nudges_since(db, user_id, after, limit, after_id=after_id)
        ready = await get_ready_nudges(db, user_id, now, limit)

        candidates: dict[int, Nudge] = {n.id: n for n in replay}
        for nudge in ready:
            candidates.setdefault(nudge.id, nudge)
        # Snapshot first: a rollback inside any store call expires every loaded row.
        plan = [
            (n.id, n.task_id, n.delivery_time, nudge_frame(n) if n.triggered_at is not None else None)
            for n in sorted(candidates.values(), key=lambda n: (n.delivery_time, n.id))[:limit]
        ]

        for nudge_id, task_id, delivery_time, replay_frame in plan:
            if replay_frame is not None:
                # The query bounded on the cursor and the plan is in position order.
                await self._deliver_event(db, CheckpointKind.NUDGE, replay_frame, delivery_time, nudge_id)
                continue

            try:
                context = await load_nudge_context(db, user_id, task_id)
            except (NotFoundError, ForbiddenError):
                await cancel_orphaned_nudge(db, user_id, task_id)
                continue
            try:
                result = await trigger_nudge(db, self._generator, user_id, task_id, context, now=now)
            except GenerationError as e:
                logger.warning("stream_nudge_generation_failed", user_id=user_id, task_id=task_id, error=e.message)
                await self._report_error(GENERATION_ERROR_MESSAGE)
                return

            if result.triggered and result.nudge is not None:
                await self._deliver_nudge(db, result.nudge)
            elif result.status is TriggerStatus.ALREADY_TRIGGERED:
                # Another observer won the race; show its message here too.
                winner = await get_nudge(db, user_id, task_id)
                if (
                    winner is not None
                    and winner.message
                    and cursor.is_after(CheckpointKind.NUDGE, winner.delivery_time, winner.id)
                ):
                    await self._deliver_nudge(db, winner)

    async def _replay_bets(self, db: AsyncSession, limit: int) -> None:
        user_id, cursor = self._require_connected()
        after, after_id = cursor.position(CheckpointKind.BET)
        plan = [
            (bet.resolved_at, bet.id, bet_frame(bet))
            for bet in await get_resolved_bets_since(db, user_id, after, limit, after_id=after_id)
            if bet.resolved_at is not None
        ]
        for resolved_at, bet_id, frame in plan:
            await self._deliver_event(db, CheckpointKind.BET, frame, resolved_at, bet_id)

    async def _expire_bets(self, db: AsyncSession, limit: int) -> None:
        """Expire overdue bets, then deliver the results in ``(resolved_at, id)`` order.

        A cycle cut short after the first delivery leaves the rest ahead of
        the checkpoint, where the next replay picks them up.
        """
        user_id, cursor = self._require_connected()
        now = self._clock()
        targets = [bet.task_id for bet in await get_expired_unresolved_bets(db, user_id, now, limit)]
        outcomes: list[tuple[datetime, int, Frame]] = []
        for task_id in targets:
            try:
                resolution = await resolve_expired_bet(db, user_id, task_id, now=now)
            except NotFoundError:
                continue
            bet = resolution.bet
            if bet.resolved_at is None:
                continue
            if resolution.status is BetOutcome.ALREADY_RESOLVED and not cursor.is_after(
                CheckpointKind.BET, bet.resolved_at, bet.id
            ):
                continue
            outcomes.append((bet.resolved_at, bet.id, bet_frame(bet)))

        for resolved_at, bet_id, frame in sorted(outcomes, key=lambda o: (o[0], o[1])):
            await self._deliver_event(db, CheckpointKind.BET, frame, resolved_at, bet_id)

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    async def _deliver(self, frame: Frame) -> None:
        if self.closed:
            raise _DeliveryFailed
        async with self._send_lock:
            try:
                await self._send(dump_frame(frame))
            except Exception as e:
                logger.info("stream_delivery_failed", user_id=self.user_id, frame=frame.type, error=str(e))
                self.close("delivery_failed")
                raise _DeliveryFailed from e
        self.delivered += 1

    async def _deliver_event(
        self, db: AsyncSession, kind: CheckpointKind, frame: Frame, ts: datetime, event_id: int
    ) -> None:
        """Send, then move the cursor. Never the other way round."""
        user_id, cursor = self._require_connected()
        await self._deliver(frame)
        cursor.bump(kind, ts, event_id)
        await advance_checkpoint(db, user_id, kind, ts, event_id)

    async def _deliver_nudge(self, db: AsyncSession, nudge: Nudge) -> None:
        await self._deliver_event(db, CheckpointKind.NUDGE, nudge_frame(nudge), nudge.delivery_time, nudge.id)

    async def _report_error(self, message: str) -> None:
        """Send at most one error frame per cycle. The stream stays open."""
        if self._cycle_error_sent or self.closed:
            return
        self._cycle_error_sent = True
        try:
            await self._deliver(ErrorFrame(message=message))
        except _DeliveryFailed:
            return
