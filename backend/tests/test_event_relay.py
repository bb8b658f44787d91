"""Tests for the websocket relay behind the conversation events route."""

import asyncio

import pytest
from fastapi import WebSocketDisconnect

from lmchat.api.v1.projects import relay_events


class FakeWebSocket:
    """Records sent events; receive blocks until the client is closed."""

    def __init__(self, send_error: Exception | None = None):
        self.sent = []
        self.send_error = send_error
        self.closed = asyncio.Event()

    async def send_json(self, data):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(data)

    async def receive_text(self):
        await self.closed.wait()
        raise WebSocketDisconnect(code=1000)


@pytest.mark.asyncio
async def test_relay_forwards_until_client_disconnects():
    websocket = FakeWebSocket()
    queue = asyncio.Queue()
    relay = asyncio.create_task(relay_events(websocket, queue))

    await queue.put({"type": "chunk", "content": "Hi"})
    await queue.put({"type": "typing", "active": False})
    while len(websocket.sent) < 2:
        await asyncio.sleep(0)
    websocket.closed.set()

    await asyncio.wait_for(relay, 1)
    assert websocket.sent == [
        {"type": "chunk", "content": "Hi"},
        {"type": "typing", "active": False},
    ]


@pytest.mark.asyncio
async def test_relay_stops_when_send_fails():
    websocket = FakeWebSocket(send_error=WebSocketDisconnect(code=1006))
    queue = asyncio.Queue()
    await queue.put({"type": "chunk", "content": "Hi"})

    # The client never sends anything, so only the failed send can end the relay
    await asyncio.wait_for(relay_events(websocket, queue), 1)
    assert websocket.sent == []


@pytest.mark.asyncio
async def test_relay_propagates_unexpected_send_errors():
    websocket = FakeWebSocket(send_error=RuntimeError("socket state"))
    queue = asyncio.Queue()
    await queue.put({"type": "chunk", "content": "Hi"})

    with pytest.raises(RuntimeError, match="socket state"):
        await asyncio.wait_for(relay_events(websocket, queue), 1)
