"""Live fan-out of security events, alerts and metrics to dashboard websockets."""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Protocol

from sandboxguard.security.models import Alert, SecurityEvent

logger = logging.getLogger(__name__)

_CONNECTION_QUEUE_SIZE = 100


class _WebSocket(Protocol):
    async def accept(self) -> None: ...

    async def send_text(self, data: str) -> None: ...

    async def receive(self) -> dict[str, Any]: ...


def _encode(kind: str, data: Any) -> str:
    return json.dumps({"type": kind, "data": data})


def _offer(queue: asyncio.Queue[str], message: str) -> bool:
    """Queue ``message``, dropping the oldest one if the client is lagging."""
    try:
        queue.put_nowait(message)
        return True
    except asyncio.QueueFull:
        queue.get_nowait()
        queue.put_nowait(message)
        return False


class WebSocketManager:
    """Keeps one outgoing message queue per connected dashboard client."""

    def __init__(self) -> None:
        self._connections: dict[str, asyncio.Queue[str]] = {}

    def _broadcast(self, message: str, what: str) -> None:
        if not self._connections:
            logger.warning("Failed to broadcast %s: no connected clients", what)
            return
        for connection_id, queue in list(self._connections.items()):
            if not _offer(queue, message):
                logger.warning("Client %s is lagging; dropped oldest message", connection_id)

    def broadcast_event(self, event: SecurityEvent) -> None:
        self._broadcast(_encode("security_event", event.model_dump(mode="json")), "security event")

    def broadcast_alert(self, alert: Alert) -> None:
        self._broadcast(_encode("alert", alert.model_dump(mode="json")), "alert")

    def broadcast_metrics(self, metrics: Any) -> None:
        message = _encode("metrics_update", metrics)
        for connection_id, queue in list(self._connections.items()):
            if not _offer(queue, message):
                logger.warning("Client %s is lagging; dropped oldest message", connection_id)

    def add_connection(self, connection_id: str) -> asyncio.Queue[str]:
        """Register a client and return the queue its outgoing messages arrive on."""
        queue: asyncio.Queue[str] = asyncio.Queue(maxsize=_CONNECTION_QUEUE_SIZE)
        self._connections[connection_id] = queue
        return queue

    def remove_connection(self, connection_id: str) -> None:
        self._connections.pop(connection_id, None)
        logger.info("Removed WebSocket connection: %s", connection_id)

    def connection_count(self) -> int:
        return len(self._connections)


def _handle_client_message(message: str, connection_id: str) -> None:
    parsed = json.loads(message)
    kind = parsed.get("type") if isinstance(parsed, dict) else None
    channel = parsed.get("channel") if isinstance(parsed, dict) else None
    if kind == "ping":
        logger.info("Received ping from %s", connection_id)
    elif kind == "subscribe":
        if isinstance(channel, str):
            logger.info("Client %s subscribed to channel: %s", connection_id, channel)
    elif kind == "unsubscribe":
        if isinstance(channel, str):
            logger.info("Client %s unsubscribed from channel: %s", connection_id, channel)
    else:
        logger.warning("Unknown message type from %s: %s", connection_id, message)


async def handle_connection(websocket: _WebSocket, manager: WebSocketManager) -> None:
    """Serve one dashboard client until it disconnects or the socket fails."""
    connection_id = str(uuid.uuid4())
    logger.info("New WebSocket connection: %s", connection_id)
    await websocket.accept()
    queue = manager.add_connection(connection_id)

    welcome = json.dumps(
        {
            "type": "connection_established",
            "connection_id": connection_id,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
    )
    receiving: asyncio.Future[dict[str, Any]] | None = None
    sending: asyncio.Future[str] | None = None
    try:
        try:
            await websocket.send_text(welcome)
        except Exception:
            logger.error("Failed to send welcome message to %s", connection_id)
            return

        while True:
            if receiving is None:
                receiving = asyncio.ensure_future(websocket.receive())
            if sending is None:
                sending = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait(
                {receiving, sending}, return_when=asyncio.FIRST_COMPLETED
            )

            if receiving in done:
                try:
                    incoming = receiving.result()
                except Exception as exc:
                    logger.error("WebSocket error for %s: %s", connection_id, exc)
                    break
                receiving = None
                if incoming.get("type") == "websocket.disconnect":
                    logger.info("Client %s disconnected", connection_id)
                    break
                text = incoming.get("text")
                if text is not None:
                    try:
                        _handle_client_message(text, connection_id)
                    except (ValueError, AttributeError) as exc:
                        logger.error("Failed to handle client message: %s", exc)

            if sending in done:
                outgoing = sending.result()
                sending = None
                try:
                    await websocket.send_text(outgoing)
                except Exception as exc:
                    logger.error(
                        "Failed to send broadcast message to %s: %s", connection_id, exc
                    )
                    break
    finally:
        for pending in (receiving, sending):
            if pending is not None and not pending.done():
                pending.cancel()
        manager.remove_connection(connection_id)