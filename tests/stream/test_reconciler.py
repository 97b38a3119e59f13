"""EventReconciler tests: backfill, replay without duplicates, failure handling."""

from __future__ import annotations

from datetime import timedelta

import pytest
import pytest_asyncio
from conftest import NOW, FakeAuthorizer, StubGenerator, minutes_ago
from sqlalchemy.ext.asyncio import AsyncSession

from nudgr.bets.service import get_bet, place_bet, resolve_all_expired_bets, resolve_bet
from nudgr.errors import AuthorizationError
from nudgr.nudges.service import get_nudge, schedule_nudge, trigger_ready_nudges
from nudgr.stream.checkpoint import get_checkpoint
from nudgr.stream.frames import CONNECTED_MESSAGE
from nudgr.stream.reconciler import (
    CYCLE_ERROR_MESSAGE,
    GENERATION_ERROR_MESSAGE,
    EventReconciler,
    ReconcilerState,
    StreamSettings,
)
from nudgr.tasks.service import create_task


class Outbox:
    """Collects frames; can be told to fail writes of given frame types."""

    def __init__(self) -> None:
        self.frames: list[dict] = []
        self.fail_types: set[str] = set()

    async def __call__(self, frame: dict) -> None:
        if frame["type"] in self.fail_types:
            raise ConnectionResetError("socket closed")
        self.frames.append(frame)

    def types(self) -> list[str]:
        return [f["type"] for f in self.frames]


async def _task_with_nudge(db: AsyncSession, user_id: int, minutes_before_now: int, title: str) -> int:
    task = await create_task(db, user_id, title, now=NOW - timedelta(hours=3))
    delivery = minutes_ago(minutes_before_now)
    await schedule_nudge(db, user_id, task.id, delivery, now=delivery - timedelta(minutes=30))
    return task.id



def _limited_reconciler(session_factory, user_id: int, generator: StubGenerator, outbox: Outbox, limit: int):
    """A reconciler whose backfill and poll cycles both stop after ``limit`` events."""
    return EventReconciler(
        token="access-token",
        send=outbox,
        authorizer=FakeAuthorizer(user_id),
        session_factory=session_factory,
        generator=generator,
        settings=StreamSettings(backlog_window=timedelta(hours=1), backlog_limit=limit, polling_limit=limit),
        clock=lambda: NOW,
    )


@pytest_asyncio.fixture
async def stream_factory(session_factory, user):
    """Build reconcilers for ``user`` sharing one authorizer and a fixed clock."""
    authorizer = FakeAuthorizer(user.id)

    def _make(generator: StubGenerator, outbox: Outbox | None = None, clock=lambda: NOW) -> EventReconciler:
        return EventReconciler(
            token="access-token",
            send=outbox if outbox is not None else Outbox(),
            authorizer=authorizer,
            session_factory=session_factory,
            generator=generator,
            settings=StreamSettings(backlog_window=timedelta(hours=1), backlog_limit=50, polling_limit=10),
            clock=clock,
        )

    _make.authorizer = authorizer
    return _make


class TestConnect:
    @pytest.mark.asyncio
    async def test_invalid_token_closes(self, stream_factory, generator) -> None:
        stream_factory.authorizer.token_valid = False
        reconciler = stream_factory(generator)
        with pytest.raises(AuthorizationError):
            await reconciler.connect()
        assert reconciler.state is ReconcilerState.CLOSED
        assert reconciler.close_reason == "unauthorized"

    @pytest.mark.asyncio
    async def test_connect_loads_default_cursor(self, stream_factory, generator, user) -> None:
        reconciler = stream_factory(generator)
        assert await reconciler.connect() == user.id
        assert reconciler.cursor.nudge_at == NOW - timedelta(hours=1)


class TestBackfill:
    @pytest.mark.asyncio
    async def test_connected_then_due_nudges_in_delivery_order(self, stream_factory, generator, db_session, user):
        later = await _task_with_nudge(db_session, user.id, 5, "Later")
        earlier = await _task_with_nudge(db_session, user.id, 20, "Earlier")
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)

        await reconciler.connect()
        await reconciler.backfill()

        assert outbox.types() == ["connected", "nudge", "nudge"]
        assert outbox.frames[0]["message"] == CONNECTED_MESSAGE
        assert [f["nudge"]["task"] for f in outbox.frames[1:]] == [earlier, later]
        assert all(f["nudge"]["message"] == generator.message for f in outbox.frames[1:])
        assert reconciler.state is ReconcilerState.POLLING

        row = await get_checkpoint(db_session, user.id)
        assert row.last_seen_nudge_at == minutes_ago(5)

    @pytest.mark.asyncio
    async def test_stale_pending_nudge_delivered_once(self, stream_factory, generator, db_session, user):
        """A pending nudge older than the backlog window is still triggered, and not replayed later."""
        stale = await _task_with_nudge(db_session, user.id, 120, "Stale")
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()
        assert [f["nudge"]["task"] for f in outbox.frames if f["type"] == "nudge"] == [stale]

        replay = Outbox()
        second = stream_factory(generator, replay)
        await second.connect()
        await second.backfill()
        assert replay.types() == ["connected"]

    @pytest.mark.asyncio
    async def test_reconnect_skips_delivered_and_sends_new(self, stream_factory, generator, db_session, user):
        first_task = await _task_with_nudge(db_session, user.id, 10, "First")
        first = stream_factory(generator, Outbox())
        await first.connect()
        await first.backfill()
        first.close("client_disconnected")

        second_task = await _task_with_nudge(db_session, user.id, 5, "Second")
        outbox = Outbox()
        second = stream_factory(generator, outbox)
        await second.connect()
        await second.backfill()

        assert outbox.types() == ["connected", "nudge"]
        assert outbox.frames[1]["nudge"]["task"] == second_task
        assert first_task != second_task
        assert len(generator.calls) == 2

    @pytest.mark.asyncio
    async def test_future_nudge_not_delivered(self, stream_factory, generator, db_session, user):
        task = await create_task(db_session, user.id, "Tomorrow", now=NOW)
        await schedule_nudge(db_session, user.id, task.id, NOW + timedelta(days=1), now=NOW)
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()
        assert outbox.types() == ["connected"]
        assert generator.calls == []


class TestDeliveryFailure:
    @pytest.mark.asyncio
    async def test_failed_write_closes_and_does_not_advance(self, stream_factory, generator, db_session, user):
        task_id = await _task_with_nudge(db_session, user.id, 10, "Essay")
        outbox = Outbox()
        outbox.fail_types = {"nudge"}
        reconciler = stream_factory(generator, outbox)

        await reconciler.connect()
        await reconciler.backfill()

        assert reconciler.state is ReconcilerState.CLOSED
        assert reconciler.close_reason == "delivery_failed"
        assert await get_checkpoint(db_session, user.id) is None
        nudge = await get_nudge(db_session, user.id, task_id)
        assert nudge.status == "triggered"

    @pytest.mark.asyncio
    async def test_undelivered_nudge_replayed_on_next_connection(self, stream_factory, generator, db_session, user):
        task_id = await _task_with_nudge(db_session, user.id, 10, "Essay")
        broken = Outbox()
        broken.fail_types = {"nudge"}
        first = stream_factory(generator, broken)
        await first.connect()
        await first.backfill()

        outbox = Outbox()
        second = stream_factory(generator, outbox)
        await second.connect()
        await second.backfill()

        assert outbox.types() == ["connected", "nudge"]
        assert outbox.frames[1]["nudge"]["task"] == task_id
        assert len(generator.calls) == 1

    @pytest.mark.asyncio
    async def test_closed_reconciler_sends_nothing(self, stream_factory, generator):
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        reconciler.close("client_disconnected")
        assert await reconciler.send_heartbeat() is False
        assert outbox.frames == []


class TestGenerationFailure:
    @pytest.mark.asyncio
    async def test_error_frame_and_nudge_stays_pending(self, stream_factory, failing_generator, db_session, user):
        task_id = await _task_with_nudge(db_session, user.id, 10, "Essay")
        await _task_with_nudge(db_session, user.id, 5, "Later essay")
        outbox = Outbox()
        reconciler = stream_factory(failing_generator, outbox)

        await reconciler.connect()
        await reconciler.backfill()

        assert outbox.types() == ["connected", "error"]
        assert outbox.frames[1]["message"] == GENERATION_ERROR_MESSAGE
        assert reconciler.state is ReconcilerState.POLLING
        assert len(failing_generator.calls) == 1
        nudge = await get_nudge(db_session, user.id, task_id)
        assert nudge.status == "pending"

    @pytest.mark.asyncio
    async def test_retried_on_next_poll(self, stream_factory, failing_generator, db_session, user):
        await _task_with_nudge(db_session, user.id, 10, "Essay")
        outbox = Outbox()
        reconciler = stream_factory(failing_generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()

        failing_generator.fail_with = None
        await reconciler.poll_once()

        assert outbox.types() == ["connected", "error", "nudge"]


class TestPolling:
    @pytest.mark.asyncio
    async def test_revoked_session_closes(self, stream_factory, generator, db_session, user):
        reconciler = stream_factory(generator, Outbox())
        await reconciler.connect()
        await reconciler.backfill()
        await _task_with_nudge(db_session, user.id, 1, "After logout")

        stream_factory.authorizer.session_active = False
        await reconciler.poll_once()

        assert reconciler.state is ReconcilerState.CLOSED
        assert reconciler.close_reason == "unauthorized"
        assert generator.calls == []

    @pytest.mark.asyncio
    async def test_expired_token_closes(self, stream_factory, generator):
        reconciler = stream_factory(generator, Outbox())
        await reconciler.connect()
        await reconciler.backfill()
        stream_factory.authorizer.token_valid = False
        await reconciler.poll_once()
        assert reconciler.close_reason == "unauthorized"

    @pytest.mark.asyncio
    async def test_poll_picks_up_nudge_that_came_due(self, session_factory, stream_factory, generator, user):
        clock_now = [NOW]
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox, clock=lambda: clock_now[0])
        async with session_factory() as db:
            task = await create_task(db, user.id, "Soon", now=NOW)
            await schedule_nudge(db, user.id, task.id, NOW + timedelta(seconds=30), now=NOW)

        await reconciler.connect()
        await reconciler.backfill()
        assert outbox.types() == ["connected"]

        clock_now[0] = NOW + timedelta(minutes=1)
        await reconciler.poll_once()
        assert outbox.types() == ["connected", "nudge"]

        await reconciler.poll_once()
        assert outbox.types() == ["connected", "nudge"]

    @pytest.mark.asyncio
    async def test_cycle_error_sends_one_error_frame(self, stream_factory, generator, monkeypatch):
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()

        async def broken(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr("nudgr.stream.reconciler.get_triggered_nudges_since", broken)
        await reconciler.poll_once()

        assert outbox.types() == ["connected", "error"]
        assert outbox.frames[1]["message"] == CYCLE_ERROR_MESSAGE
        assert reconciler.state is ReconcilerState.POLLING


class TestBets:
    @pytest.mark.asyncio
    async def test_overdue_bet_expired_and_delivered(self, stream_factory, generator, db_session, user):
        task = await create_task(db_session, user.id, "Gym", now=NOW - timedelta(hours=3))
        await place_bet(db_session, user.id, task.id, 20, NOW - timedelta(minutes=1), now=NOW - timedelta(hours=2))
        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)

        await reconciler.connect()
        await reconciler.backfill()

        assert outbox.types() == ["connected", "bet_expired"]
        assert outbox.frames[1]["bet"]["success"] is False
        bet = await get_bet(db_session, user.id, task.id)
        assert bet.success is False
        row = await get_checkpoint(db_session, user.id)
        assert row.last_seen_bet_at == NOW

    @pytest.mark.asyncio
    async def test_bet_won_elsewhere_is_replayed_once(self, stream_factory, generator, db_session, user):
        task = await create_task(db_session, user.id, "Gym", now=NOW - timedelta(hours=3))
        await place_bet(db_session, user.id, task.id, 20, NOW + timedelta(hours=1), now=NOW - timedelta(hours=2))
        won_at = NOW - timedelta(minutes=2)
        await resolve_bet(db_session, user.id, task.id, completion_time=won_at, now=won_at)

        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()
        await reconciler.poll_once()

        assert outbox.types() == ["connected", "bet_resolved"]
        assert outbox.frames[1]["bet"]["task"] == task.id


class TestSharedTimestamps:
    @pytest.mark.asyncio
    async def test_bets_expired_in_one_sweep_are_all_replayed(self, stream_factory, generator, db_session, user):
        tasks = []
        for title in ("A", "B"):
            task_id = (await create_task(db_session, user.id, title, now=NOW - timedelta(hours=3))).id
            tasks.append(task_id)
            await place_bet(db_session, user.id, task_id, 10, minutes_ago(20), now=NOW - timedelta(hours=2))
        assert await resolve_all_expired_bets(db_session, now=minutes_ago(5)) == 2

        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()

        assert outbox.types() == ["connected", "bet_expired", "bet_expired"]
        assert sorted(f["bet"]["task"] for f in outbox.frames[1:]) == sorted(tasks)

        again = Outbox()
        second = stream_factory(generator, again)
        await second.connect()
        await second.backfill()
        assert again.types() == ["connected"]

    @pytest.mark.asyncio
    async def test_tie_split_across_cycles(self, session_factory, generator, db_session, user):
        for title in ("A", "B", "C"):
            task = await create_task(db_session, user.id, title, now=NOW - timedelta(hours=3))
            await place_bet(db_session, user.id, task.id, 10, minutes_ago(20), now=NOW - timedelta(hours=2))
        assert await resolve_all_expired_bets(db_session, now=minutes_ago(5)) == 3

        outbox = Outbox()
        reconciler = _limited_reconciler(session_factory, user.id, generator, outbox, limit=1)
        await reconciler.connect()
        await reconciler.backfill()
        await reconciler.poll_once()
        await reconciler.poll_once()
        await reconciler.poll_once()

        assert outbox.types() == ["connected", "bet_expired", "bet_expired", "bet_expired"]
        assert len({f["bet"]["id"] for f in outbox.frames[1:]}) == 3

    @pytest.mark.asyncio
    async def test_nudges_sharing_delivery_time_are_all_replayed(self, stream_factory, generator, db_session, user):
        first = await _task_with_nudge(db_session, user.id, 10, "First")
        second = await _task_with_nudge(db_session, user.id, 10, "Second")
        assert await trigger_ready_nudges(db_session, generator, now=minutes_ago(5)) == 2

        outbox = Outbox()
        reconciler = stream_factory(generator, outbox)
        await reconciler.connect()
        await reconciler.backfill()

        assert outbox.types() == ["connected", "nudge", "nudge"]
        assert sorted(f["nudge"]["task"] for f in outbox.frames[1:]) == sorted([first, second])
        assert len(generator.calls) == 2


class TestOrphanedNudges:
    @pytest.mark.asyncio
    async def test_orphans_do_not_starve_later_nudges(self, session_factory, generator, db_session, user):
        orphans = [9000 + i for i in range(11)]
        for i, task_id in enumerate(orphans):
            delivery = minutes_ago(40 - i)
            await schedule_nudge(db_session, user.id, task_id, delivery, now=delivery - timedelta(minutes=30))
        valid = await _task_with_nudge(db_session, user.id, 5, "Real task")

        outbox = Outbox()
        reconciler = _limited_reconciler(session_factory, user.id, generator, outbox, limit=10)
        await reconciler.connect()
        await reconciler.backfill()
        await reconciler.poll_once()

        assert outbox.types() == ["connected", "nudge"]
        assert outbox.frames[1]["nudge"]["task"] == valid
        for task_id in orphans:
            assert (await get_nudge(db_session, user.id, task_id)).status == "canceled"
        assert len(generator.calls) == 1


class TestMultipleConnections:
    @pytest.mark.asyncio
    async def test_nudge_generated_once_and_seen_by_both(self, stream_factory, generator, db_session, user):
        task_id = await _task_with_nudge(db_session, user.id, 10, "Shared")
        out_a, out_b = Outbox(), Outbox()
        a = stream_factory(generator, out_a)
        b = stream_factory(generator, out_b)
        await a.connect()
        await b.connect()

        await a.backfill()
        await b.backfill()

        assert len(generator.calls) == 1
        for outbox in (out_a, out_b):
            assert outbox.types() == ["connected", "nudge"]
            assert outbox.frames[1]["nudge"]["task"] == task_id


class TestClose:
    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, stream_factory, generator):
        reconciler = stream_factory(generator)
        await reconciler.connect()
        assert reconciler.close("unauthorized") is True
        assert reconciler.close("delivery_failed") is False
        assert reconciler.close_reason == "unauthorized"
        await reconciler.wait_closed()

    @pytest.mark.asyncio
    async def test_wake_interrupts_wait(self, stream_factory, generator):
        reconciler = stream_factory(generator)
        await reconciler.connect()
        reconciler.wake()
        await reconciler.wait_for_wake(timeout=5)
        assert not reconciler.closed
