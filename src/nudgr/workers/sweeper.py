"""arq jobs that trigger due nudges and expire overdue bets.

Open event streams do the same work for their own user; the sweeper covers
users with no stream open. Both paths go through the same conditional
updates, so running them side by side never double-fires anything.
"""

from __future__ import annotations

import logging

from nudgr.bets.service import resolve_all_expired_bets
from nudgr.config import get_settings
from nudgr.database import close_db, get_session_factory, init_db
from nudgr.events.bus import bus
from nudgr.events.wiring import register_handlers
from nudgr.middleware.logging import setup_logging
from nudgr.nudges.generator import get_message_generator
from nudgr.nudges.service import trigger_ready_nudges
from nudgr.stream.registry import registry

logger = logging.getLogger(__name__)


async def startup(ctx: dict) -> None:  # type: ignore[type-arg]
    """Open the database and wire event handlers for the worker process."""
    settings = get_settings()
    setup_logging(settings)
    await init_db(settings.database_url)
    ctx["unsubscribe"] = register_handlers(bus, get_session_factory(), registry)
    logger.info("Sweeper started (batch_size=%d)", settings.sweeper_batch_size)


async def shutdown(ctx: dict) -> None:  # type: ignore[type-arg]
    for off in ctx.get("unsubscribe", []):
        off()
    await close_db()
    logger.info("Sweeper shut down")


async def sweep_due_events(ctx: dict) -> dict[str, int]:  # type: ignore[type-arg]
    """Trigger every due nudge and expire every overdue bet, one batch each."""
    batch_size = get_settings().sweeper_batch_size
    session_factory = get_session_factory()

    async with session_factory() as db:
        triggered = await trigger_ready_nudges(db, get_message_generator(), limit=batch_size)
    async with session_factory() as db:
        expired = await resolve_all_expired_bets(db, limit=batch_size)

    if triggered or expired:
        logger.info("Sweep: triggered %d nudges, expired %d bets", triggered, expired)
    return {"nudges_triggered": triggered, "bets_expired": expired}
