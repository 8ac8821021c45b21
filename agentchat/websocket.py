"""WebSocket boundary for agentchat.

Every connected client gets its own subscription to the engine's
``EventChannel`` and its own sender task draining it, so one slow client
never holds up another and every client sees events (broadcasts and direct
replies alike) in publication order.

Inbound frames are requests from ``events.py`` and are routed to the
``SessionManager``; anything that cannot be served is answered with an
``error`` event to the requesting client only.

Usage:
    server = ChatWSServer(manager, host="localhost", port=8080)
    await server.start()   # serves until stop()
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from .errors import AgentChatError
from .events import (
    ConnectedEvent,
    CreateSessionRequest,
    DeleteSessionRequest,
    ErrorEvent,
    Event,
    InterruptRequest,
    ListSessionsRequest,
    SendMessageRequest,
    SessionListEvent,
    SessionSnapshotEvent,
    SnapshotRequest,
    SwitchSessionRequest,
    deserialize_event,
    serialize_event,
)
from .session_manager import SessionManager

logger = logging.getLogger(__name__)

PING_INTERVAL = 30
PING_TIMEOUT = 10


@dataclass
class ClientConnection:
    """One connected client and its outbound event queue."""
    websocket: Any
    client_id: str
    outbox: "asyncio.Queue[Event]"
    connected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    sender: Optional["asyncio.Task[None]"] = None


class ChatWSServer:
    """Serves a SessionManager to WebSocket clients."""

    def __init__(self, manager: SessionManager, host: str = "localhost", port: int = 8080):
        self.host = host
        self.port = port
        self._manager = manager
        self._clients: Dict[str, ClientConnection] = {}
        self._next_client = 0
        self._request_tasks: Set[asyncio.Task] = set()
        self._listening = False
        self._stopped = asyncio.Event()

    # =========================================================================
    # Server lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Listen for clients until stop() is called."""
        async with serve(
            self._handle_client,
            self.host,
            self.port,
            ping_interval=PING_INTERVAL,
            ping_timeout=PING_TIMEOUT,
        ):
            self._listening = True
            logger.info(f"Listening on ws://{self.host}:{self.port}")
            try:
                await self._stopped.wait()
            finally:
                self._listening = False
        logger.info("WebSocket server closed")

    async def stop(self) -> None:
        """Disconnect every client and let start() return."""
        self._stopped.set()
        for task in list(self._request_tasks):
            task.cancel()
        for client in list(self._clients.values()):
            try:
                await client.websocket.close(1001, "Server shutting down")
            except ConnectionClosed:
                pass
            await self._disconnect(client.client_id)

    # =========================================================================
    # Client bookkeeping
    # =========================================================================

    def _connect(self, websocket: Any) -> ClientConnection:
        """Register a client and start draining its subscription."""
        self._next_client += 1
        client = ClientConnection(
            websocket=websocket,
            client_id=f"client_{self._next_client}",
            outbox=self._manager.channel.subscribe(),
        )
        client.sender = asyncio.create_task(self._drain(client), name=client.client_id)
        self._clients[client.client_id] = client
        return client

    async def _disconnect(self, client_id: str) -> None:
        client = self._clients.pop(client_id, None)
        if client is None:
            return
        self._manager.channel.unsubscribe(client.outbox)
        sender = client.sender
        if sender is not None and sender is not asyncio.current_task() and not sender.done():
            sender.cancel()
            try:
                await sender
            except asyncio.CancelledError:
                pass
        logger.info(f"Client disconnected: {client_id}")

    async def _drain(self, client: ClientConnection) -> None:
        """Forward queued events to one client until its socket goes away."""
        while True:
            event = await client.outbox.get()
            try:
                await client.websocket.send(serialize_event(event))
            except ConnectionClosed:
                break
            except Exception as e:
                logger.error(f"Send to {client.client_id} failed: {e}")
                break
        await self._disconnect(client.client_id)

    async def _handle_client(self, websocket: ServerConnection) -> None:
        client = self._connect(websocket)
        logger.info(f"Client connected: {client.client_id} from {websocket.remote_address}")
        self._reply(client.client_id, ConnectedEvent(
            client_id=client.client_id,
            active_session_id=self._manager.active_session_id,
            sessions=[m.to_dict() for m in self._manager.list_sessions()],
        ))
        try:
            async for frame in websocket:
                await self._handle_message(client.client_id, frame)
        except ConnectionClosed:
            pass
        finally:
            await self._disconnect(client.client_id)

    def _reply(self, client_id: str, event: Event) -> None:
        """Queue an event for a single client behind its pending broadcasts."""
        client = self._clients.get(client_id)
        if client is None:
            return
        try:
            client.outbox.put_nowait(event)
        except asyncio.QueueFull:
            logger.warning(f"Outbox of {client_id} full, dropping {event.type.value} reply")

    def _reply_error(self, client_id: str, error: str, error_type: str = "RequestError") -> None:
        self._reply(client_id, ErrorEvent(error=error, error_type=error_type))

    # =========================================================================
    # Request routing
    # =========================================================================

    async def _handle_message(self, client_id: str, frame: Any) -> None:
        """Decode one inbound frame and dispatch it.

        Args:
            client_id: The sending client.
            frame: Raw text frame holding a JSON request.
        """
        try:
            request = deserialize_event(frame)
        except json.JSONDecodeError as e:
            self._reply_error(client_id, f"Invalid JSON: {e}")
            return
        except (TypeError, ValueError) as e:
            self._reply_error(client_id, str(e))
            return

        manager = self._manager
        target = request.session_id

        if isinstance(request, SendMessageRequest):
            # send_message waits for the runtime to take the turn.
            task = asyncio.create_task(self._send_message(client_id, request))
            self._request_tasks.add(task)
            task.add_done_callback(self._request_tasks.discard)
        elif isinstance(request, InterruptRequest):
            await manager.interrupt(target)
        elif isinstance(request, CreateSessionRequest):
            manager.create_session()
        elif isinstance(request, DeleteSessionRequest):
            if not target or not await manager.delete_session(target):
                self._reply_error(
                    client_id, f"Cannot delete session {target} (unknown or running)", "SessionError"
                )
        elif isinstance(request, SwitchSessionRequest):
            if not target or not manager.switch_session(target):
                self._reply_error(client_id, f"Unknown session: {target}", "SessionError")
        elif isinstance(request, ListSessionsRequest):
            self._reply(client_id, SessionListEvent(
                active_session_id=manager.active_session_id,
                sessions=[m.to_dict() for m in manager.list_sessions()],
            ))
        elif isinstance(request, SnapshotRequest):
            snapshot = manager.get_snapshot(target)
            if snapshot is None:
                self._reply_error(client_id, f"Unknown session: {target}", "SessionError")
            else:
                self._reply(client_id, SessionSnapshotEvent(session_id=snapshot["session"]["id"], **snapshot))
        else:
            self._reply_error(client_id, f"Unknown request type: {request.type.value}")

    async def _send_message(self, client_id: str, request: SendMessageRequest) -> None:
        try:
            await self._manager.send_message(
                request.text,
                request.attachments or None,
                session_id=request.session_id,
            )
        except asyncio.CancelledError:
            raise
        except AgentChatError as e:
            self._reply_error(client_id, str(e), type(e).__name__)
        except Exception as e:
            logger.error(f"Turn from {client_id} failed: {e}", exc_info=True)
            self._reply_error(client_id, str(e), type(e).__name__)

    # =========================================================================
    # Status
    # =========================================================================

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def is_running(self) -> bool:
        return self._listening and not self._stopped.is_set()

    def get_server_info(self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "port": self.port,
            "is_running": self.is_running,
            "client_count": self.client_count,
            "session_count": len(self._manager),
            "active_session_id": self._manager.active_session_id,
        }
