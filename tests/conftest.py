"""Shared test fixtures.

Each test gets its own SQLite file database with the schema created from the
ORM metadata. Redis is never initialized, so rate limiting passes through.
"""

from __future__ import annotations

import asyncio
import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable, Iterator
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import WebSocketDisconnect
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette.websockets import WebSocketState

from nudgr.config import get_settings


def _ensure_test_keys() -> None:
    """Generate an RSA key pair for JWT signing and point settings at it."""
    tmpdir = Path(tempfile.mkdtemp(prefix="nudgr_test_keys_"))
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    private_path = tmpdir / "jwt_private.pem"
    public_path = tmpdir / "jwt_public.pem"
    private_path.write_bytes(
        private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        )
    )
    public_path.write_bytes(
        private_key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )
    )
    os.environ["NUDGR_JWT_PRIVATE_KEY_PATH"] = str(private_path)
    os.environ["NUDGR_JWT_PUBLIC_KEY_PATH"] = str(public_path)


os.environ.setdefault("NUDGR_ENVIRONMENT", "test")
os.environ.setdefault("NUDGR_LOG_FORMAT", "console")
os.environ["NUDGR_NUDGE_PROVIDER"] = "template"
_ensure_test_keys()
get_settings.cache_clear()

from nudgr.auth.jwt import reset_keys  # noqa: E402
from nudgr.database import close_db, get_engine, get_session_factory, init_db  # noqa: E402
from nudgr.db import models  # noqa: E402, F401
from nudgr.db.base import Base  # noqa: E402
from nudgr.errors import AuthorizationError, GenerationError  # noqa: E402
from nudgr.events.bus import bus  # noqa: E402
from nudgr.nudges.generator import NudgeContext, reset_message_generator  # noqa: E402
from nudgr.stream.registry import registry  # noqa: E402

reset_keys()

# Fixed reference time for store and stream tests.
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def database(tmp_path: Path) -> AsyncGenerator[None, None]:
    """Fresh SQLite database with all tables."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'nudgr_test.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def session_factory(database: None) -> async_sessionmaker[AsyncSession]:
    return get_session_factory()


@pytest_asyncio.fixture
async def db_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def _isolate_globals() -> Iterator[None]:
    """Clear the event bus, stream registry and generator singleton around each test."""
    bus.clear()
    registry.close_all("test_reset")
    registry._connections.clear()
    registry._user_connections.clear()
    reset_message_generator()
    yield
    bus.clear()
    registry._connections.clear()
    registry._user_connections.clear()
    reset_message_generator()


@pytest.fixture
def wired_bus(session_factory: async_sessionmaker[AsyncSession]) -> None:
    """Subscribe the production event handlers for this test."""
    from nudgr.events.wiring import register_handlers

    register_handlers(bus, session_factory, registry)


@pytest_asyncio.fixture
async def client(database: None, wired_bus: None) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client against the app. The lifespan is skipped; fixtures set up the DB."""
    from nudgr.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------


@dataclass
class SeededUser:
    id: int
    email: str
    access_token: str
    refresh_token: str


@pytest_asyncio.fixture
async def make_user(session_factory: async_sessionmaker[AsyncSession]) -> Callable[..., Awaitable[SeededUser]]:
    """Factory: register a user with a live session and an opened ledger."""
    from nudgr.auth.service import issue_tokens, register_user
    from nudgr.bets.ledger import get_or_create_ledger

    counter = 0

    async def _make(email: str | None = None, points: int = 100) -> SeededUser:
        nonlocal counter
        counter += 1
        email = email or f"user{counter}@example.com"
        async with session_factory() as db:
            user = await register_user(db, email, "correct-horse-9")
            tokens = await issue_tokens(db, user)
            await get_or_create_ledger(db, user.id, starting_points=points)
            await db.commit()
            return SeededUser(
                id=user.id,
                email=email,
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token,
            )

    return _make


@pytest_asyncio.fixture
async def user(make_user: Callable[..., Awaitable[SeededUser]]) -> SeededUser:
    return await make_user()


# ---------------------------------------------------------------------------
# Message generation
# ---------------------------------------------------------------------------


class StubGenerator:
    """Stands in for ``MessageGenerator``: records calls and returns a fixed message.

    ``before_return`` runs inside ``generate`` after the call is recorded,
    which lets a test interleave a competing caller at that exact point.
    """

    def __init__(self, message: str = "You can do it. Start with five minutes.") -> None:
        self.message = message
        self.calls: list[NudgeContext] = []
        self.fail_with: Exception | None = None
        self.before_return: Callable[[], Awaitable[None]] | None = None

    async def generate(self, context: NudgeContext) -> str:
        self.calls.append(context)
        if self.fail_with is not None:
            raise self.fail_with
        if self.before_return is not None:
            hook, self.before_return = self.before_return, None
            await hook()
        return self.message


@pytest.fixture
def generator() -> StubGenerator:
    return StubGenerator()


@pytest.fixture
def failing_generator() -> StubGenerator:
    stub = StubGenerator()
    stub.fail_with = GenerationError("Failed to generate motivational message")
    return stub


def minutes_ago(minutes: int) -> datetime:
    return NOW - timedelta(minutes=minutes)


class FakeAuthorizer:
    """Stream authorizer with switchable token and session validity."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        self.token_valid = True
        self.session_active = True

    async def current_user(self, token: str) -> int:
        if not self.token_valid:
            raise AuthorizationError("Token has been revoked")
        return self.user_id

    async def has_active_session(self, user_id: int) -> bool:
        return self.session_active


def auth_headers(seeded: SeededUser) -> dict[str, str]:
    return {"Authorization": f"Bearer {seeded.access_token}"}


# ---------------------------------------------------------------------------
# Event stream
# ---------------------------------------------------------------------------

DISCONNECT = object()


class FakeWebSocket:
    """In-memory stand-in for a Starlette WebSocket.

    Put text on ``incoming`` to simulate client messages, or ``DISCONNECT``
    to simulate the client going away.
    """

    def __init__(self, headers: dict[str, str] | None = None) -> None:
        self.headers = headers or {}
        self.sent: list[dict] = []
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.client_state = WebSocketState.CONNECTING
        self.accepted = False
        self.close_codes: list[int] = []

    async def accept(self) -> None:
        self.accepted = True
        self.client_state = WebSocketState.CONNECTED

    async def send_json(self, data: dict) -> None:
        if self.client_state != WebSocketState.CONNECTED:
            raise RuntimeError("Cannot call send once a close message has been sent.")
        self.sent.append(data)

    async def receive_text(self) -> str:
        item = await self.incoming.get()
        if item is DISCONNECT:
            self.client_state = WebSocketState.DISCONNECTED
            raise WebSocketDisconnect(code=1001)
        return item

    async def close(self, code: int = 1000, reason: str | None = None) -> None:
        self.close_codes.append(code)
        self.client_state = WebSocketState.DISCONNECTED

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)
