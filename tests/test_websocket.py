import asyncio
import json
from datetime import datetime, timezone

import pytest

from sandboxguard.security.models import Alert, SecurityEvent
from sandboxguard.security.websocket import WebSocketManager, handle_connection


def make_event():
    return SecurityEvent(
        id="evt-1",
        event_type="file_access",
        severity="medium",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        sandbox_id="sb-1",
        provider="custom",
        message="File access",
        details={"filename": "/tmp/test.txt"},
    )


class FakeWebSocket:
    def __init__(self, fail_send=False):
        self.accepted = False
        self.sent = []
        self.incoming = asyncio.Queue()
        self.fail_send = fail_send

    async def accept(self):
        self.accepted = True

    async def send_text(self, data):
        if self.fail_send:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    async def receive(self):
        return await self.incoming.get()


async def wait_until(predicate):
    for _ in range(300):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def test_broadcast_event_reaches_every_connection():
    manager = WebSocketManager()
    first = manager.add_connection("a")
    second = manager.add_connection("b")
    manager.broadcast_event(make_event())
    for queue in (first, second):
        message = json.loads(queue.get_nowait())
        assert message["type"] == "security_event"
        assert message["data"]["id"] == "evt-1"
        assert message["data"]["details"] == {"filename": "/tmp/test.txt"}


def test_broadcast_alert_and_metrics():
    manager = WebSocketManager()
    queue = manager.add_connection("a")
    alert = Alert(
        id="al-1",
        severity="high",
        message="alert!",
        timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
        sandbox_id="sb-1",
        acknowledged=False,
    )
    manager.broadcast_alert(alert)
    manager.broadcast_metrics({"total_events": 7})
    alert_message = json.loads(queue.get_nowait())
    metrics_message = json.loads(queue.get_nowait())
    assert alert_message["type"] == "alert"
    assert Alert.model_validate(alert_message["data"]) == alert
    assert metrics_message == {"type": "metrics_update", "data": {"total_events": 7}}


def test_connection_bookkeeping():
    manager = WebSocketManager()
    manager.add_connection("a")
    manager.add_connection("b")
    assert manager.connection_count() == 2
    manager.remove_connection("a")
    manager.remove_connection("missing")
    assert manager.connection_count() == 1


def test_lagging_client_keeps_newest_messages():
    manager = WebSocketManager()
    queue = manager.add_connection("a")
    for value in range(queue.maxsize + 5):
        manager.broadcast_metrics({"n": value})
    assert queue.qsize() == queue.maxsize
    received = [json.loads(queue.get_nowait())["data"]["n"] for _ in range(queue.qsize())]
    assert received[-1] == queue.maxsize + 4
    assert received == sorted(received)


@pytest.mark.asyncio
async def test_handle_connection_forwards_broadcasts():
    manager = WebSocketManager()
    socket = FakeWebSocket()
    task = asyncio.create_task(handle_connection(socket, manager))

    assert await wait_until(lambda: manager.connection_count() == 1)
    assert socket.accepted
    welcome = json.loads(socket.sent[0])
    assert welcome["type"] == "connection_established"

    await socket.incoming.put({"type": "websocket.receive", "text": '{"type": "ping"}'})
    await socket.incoming.put({"type": "websocket.receive", "text": "not json"})
    await socket.incoming.put({"type": "websocket.receive", "bytes": b"\x00"})

    manager.broadcast_event(make_event())
    assert await wait_until(lambda: len(socket.sent) == 2)
    assert json.loads(socket.sent[1])["data"]["id"] == "evt-1"

    await socket.incoming.put({"type": "websocket.disconnect", "code": 1000})
    await asyncio.wait_for(task, timeout=3)
    assert manager.connection_count() == 0


@pytest.mark.asyncio
async def test_handle_connection_drops_client_when_welcome_fails():
    manager = WebSocketManager()
    socket = FakeWebSocket(fail_send=True)
    await asyncio.wait_for(handle_connection(socket, manager), timeout=3)
    assert socket.sent == []
    assert manager.connection_count() == 0