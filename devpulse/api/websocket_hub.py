"""
DevPulse Local API - WebSocket Hub
===================================

Streams StateStore changes to connected clients.

On connect a client receives `connected` and then a full `state` snapshot;
after that one `state_delta` per store write. Deltas carry the store
version, so a client can ignore any delta not newer than its snapshot.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional
from uuid import uuid4

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from devpulse.core.tracking import StateStore, StoreChange

logger = structlog.get_logger()


# ==========================================================================
# WebSocket Message Types
# ==========================================================================

class WSMessageType(str, Enum):
    """WebSocket message types"""
    # Client -> Server
    PING = "ping"

    # Server -> Client
    CONNECTED = "connected"
    STATE = "state"
    STATE_DELTA = "state_delta"
    PONG = "pong"
    ERROR = "error"


@dataclass
class WSMessage:
    """WebSocket message structure"""
    type: WSMessageType
    payload: Any
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    message_id: str = field(default_factory=lambda: str(uuid4()))

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type.value,
            "payload": self.payload,
            "timestamp": self.timestamp,
            "message_id": self.message_id,
        })

    @classmethod
    def from_json(cls, data: str) -> "WSMessage":
        parsed = json.loads(data)
        return cls(
            type=WSMessageType(parsed["type"]),
            payload=parsed.get("payload"),
            timestamp=parsed.get("timestamp", datetime.now(timezone.utc).isoformat()),
            message_id=parsed.get("message_id", str(uuid4())),
        )


# ==========================================================================
# Connection Manager
# ==========================================================================

@dataclass
class ClientConnection:
    """A connected WebSocket client"""
    id: str
    websocket: WebSocket
    connected_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    is_active: bool = True


class ConnectionManager:
    """
    Fans store changes out to every connected client.

    The store listener only enqueues; a single pump task does the sending,
    so deltas reach each client in write order.
    """

    def __init__(self, store: StateStore):
        self.store = store
        self.connections: Dict[str, ClientConnection] = {}
        self._lock = asyncio.Lock()
        self._queue: "asyncio.Queue[StoreChange]" = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self) -> None:
        """Subscribe to the store and start the pump task."""
        if self._pump_task is not None:
            return
        self._unsubscribe = self.store.subscribe(self._on_change)
        self._pump_task = asyncio.create_task(self._pump(), name="devpulse:ws-pump")
        logger.info("ws_hub_started")

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None
        logger.info("ws_hub_stopped")

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a connection and send it the current state."""
        await websocket.accept()

        client_id = str(uuid4())
        async with self._lock:
            self.connections[client_id] = ClientConnection(id=client_id, websocket=websocket)

        await self.send_to_client(client_id, WSMessage(
            type=WSMessageType.CONNECTED,
            payload={"client_id": client_id},
        ))
        await self.send_to_client(client_id, WSMessage(
            type=WSMessageType.STATE,
            payload={"version": self.store.version, "analyses": self.store.snapshot()},
        ))

        logger.info("ws_client_connected", client_id=client_id, total=len(self.connections))
        return client_id

    async def disconnect(self, client_id: str) -> None:
        async with self._lock:
            connection = self.connections.pop(client_id, None)
            if connection is not None:
                connection.is_active = False

        logger.info("ws_client_disconnected", client_id=client_id, total=len(self.connections))

    async def handle_message(self, client_id: str, message: WSMessage) -> None:
        """Handle incoming message from client"""
        if message.type == WSMessageType.PING:
            await self.send_to_client(client_id, WSMessage(
                type=WSMessageType.PONG,
                payload={"received": message.timestamp},
            ))
        else:
            await self.send_to_client(client_id, WSMessage(
                type=WSMessageType.ERROR,
                payload={"error": f"Unsupported message type: {message.type.value}"},
            ))

    async def send_to_client(self, client_id: str, message: WSMessage) -> None:
        connection = self.connections.get(client_id)
        if not connection or not connection.is_active:
            return

        try:
            if connection.websocket.client_state == WebSocketState.CONNECTED:
                await connection.websocket.send_text(message.to_json())
        except Exception as e:
            logger.error("ws_send_failed", client_id=client_id, error=str(e))
            connection.is_active = False

    async def broadcast(self, message: WSMessage) -> None:
        for client_id, connection in list(self.connections.items()):
            if connection.is_active:
                await self.send_to_client(client_id, message)

    def _on_change(self, change: StoreChange) -> None:
        if self.connections:
            self._queue.put_nowait(change)

    async def _pump(self) -> None:
        while True:
            change = await self._queue.get()
            await self.broadcast(WSMessage(
                type=WSMessageType.STATE_DELTA,
                payload=change.to_dict(),
            ))


# ==========================================================================
# FastAPI WebSocket Endpoint
# ==========================================================================

async def websocket_endpoint(websocket: WebSocket, manager: ConnectionManager) -> None:
    """Serve one client until it disconnects."""
    client_id = await manager.connect(websocket)

    try:
        while True:
            data = await websocket.receive_text()
            try:
                message = WSMessage.from_json(data)
            except (ValueError, KeyError):
                await manager.send_to_client(client_id, WSMessage(
                    type=WSMessageType.ERROR,
                    payload={"error": "Invalid message"},
                ))
                continue
            await manager.handle_message(client_id, message)
    except WebSocketDisconnect:
        await manager.disconnect(client_id)
    except Exception as e:
        logger.error("ws_error", client_id=client_id, error=str(e))
        await manager.disconnect(client_id)
