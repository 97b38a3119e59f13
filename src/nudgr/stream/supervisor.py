"""Runs one event stream: timers, inbound watcher and teardown.

The supervisor owns three tasks for its reconciler: the poll loop, the
heartbeat loop and a receive loop that notices the client going away.
Any of them (or the server) may end the stream; ``shutdown`` runs once.
"""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import TYPE_CHECKING

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from nudgr.stream.frames import PongFrame

if TYPE_CHECKING:
    from nudgr.stream.reconciler import EventReconciler
    from nudgr.stream.registry import ConnectionRegistry

logger = structlog.get_logger()

CLOSE_NORMAL = 1000
CLOSE_UNAUTHORIZED = 4001
CLOSE_TOO_MANY_CONNECTIONS = 4008


class ConnectionSupervisor:
    def __init__(
        self,
        websocket: WebSocket,
        reconciler: EventReconciler,
        registry: ConnectionRegistry,
        heartbeat_interval: float = 30.0,
        poll_interval: float = 5.0,
        conn_id: str | None = None,
    ) -> None:
        self.websocket = websocket
        self.reconciler = reconciler
        self.registry = registry
        self.heartbeat_interval = heartbeat_interval
        self.poll_interval = poll_interval
        self.conn_id = conn_id or str(uuid.uuid4())
        self._tasks: list[asyncio.Task] = []
        self._shut_down = False

    async def run(self) -> None:
        """Serve the stream until the reconciler closes, then tear down."""
        user_id = self.reconciler.user_id
        if user_id is None:
            msg = "reconciler must be connected before it is supervised"
            raise RuntimeError(msg)

        self.registry.add(self.conn_id, user_id, self.reconciler)
        try:
            self._tasks.append(asyncio.create_task(self._receive_loop(), name=f"stream-recv-{self.conn_id}"))
            self._tasks.append(asyncio.create_task(self._heartbeat_loop(), name=f"stream-hb-{self.conn_id}"))
            await self.reconciler.backfill()
            if not self.reconciler.closed:
                self._tasks.append(asyncio.create_task(self._poll_loop(), name=f"stream-poll-{self.conn_id}"))
            await self.reconciler.wait_closed()
        finally:
            await self.shutdown()

    async def shutdown(self) -> None:
        """Stop the tasks, unregister and close the socket. Only the first call does anything."""
        if self._shut_down:
            return
        self._shut_down = True
        self.reconciler.close("supervisor_shutdown")

        current = asyncio.current_task()
        pending = [t for t in self._tasks if t is not current and not t.done()]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

        self.registry.remove(self.conn_id)

        if self.websocket.client_state == WebSocketState.CONNECTED:
            code = CLOSE_UNAUTHORIZED if self.reconciler.close_reason == "unauthorized" else CLOSE_NORMAL
            try:
                await self.websocket.close(code=code)
            except RuntimeError:
                # Client already went away.
                pass

    async def _poll_loop(self) -> None:
        while not self.reconciler.closed:
            await self.reconciler.wait_for_wake(self.poll_interval)
            if self.reconciler.closed:
                break
            await self.reconciler.poll_once()

    async def _heartbeat_loop(self) -> None:
        while not self.reconciler.closed:
            await asyncio.sleep(self.heartbeat_interval)
            if not await self.reconciler.send_heartbeat():
                break

    async def _receive_loop(self) -> None:
        try:
            while not self.reconciler.closed:
                raw = await self.websocket.receive_text()
                try:
                    msg = json.loads(raw)
                except json.JSONDecodeError:
                    continue
                if isinstance(msg, dict) and msg.get("action") == "ping":
                    await self.reconciler.send_frame(PongFrame())
        except WebSocketDisconnect:
            self.reconciler.close("client_disconnected")
        except RuntimeError as e:
            # Starlette raises RuntimeError when receiving on a closed socket.
            logger.debug("stream_receive_stopped", conn_id=self.conn_id, error=str(e))
            self.reconciler.close("client_disconnected")
