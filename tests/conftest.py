"""
Shared fixtures for the voicelink test suite.

The fakes below stand in for aiohttp's ClientSession and
ClientWebSocketResponse so node behaviour can be driven frame by frame
without a network.
"""

import asyncio
import json
from collections import namedtuple
from typing import Any
from unittest.mock import AsyncMock

import aiohttp
import pytest

from voicelink.config import ManagerConfig, NodeConfig
from voicelink.manager import PlayerManager
from voicelink.protocol.node import Node

BOT_ID = "BOT"

# Same shape as aiohttp.WSMessage
Message = namedtuple("Message", "type data extra")


class FakeWebSocket:
    """In-memory stand-in for aiohttp.ClientWebSocketResponse."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.close_code: int | None = None
        self.close_calls: list[tuple[int, bytes]] = []
        self.fail_send: BaseException | None = None
        self._inbox: asyncio.Queue[Message] = asyncio.Queue()

    async def send_str(self, data: str) -> None:
        if self.fail_send is not None:
            raise self.fail_send
        self.sent.append(json.loads(data))

    async def receive(self) -> Message:
        return await self._inbox.get()

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.close_calls.append((code, message))
        if not self.closed:
            self.closed = True
            self.close_code = code
            self._inbox.put_nowait(Message(aiohttp.WSMsgType.CLOSED, None, None))
        return True

    def exception(self) -> BaseException | None:
        return None

    def feed(self, data: str | bytes | dict[str, Any]) -> None:
        """Queue an inbound frame."""
        if isinstance(data, dict):
            data = json.dumps(data)
        msg_type = aiohttp.WSMsgType.TEXT if isinstance(data, str) else aiohttp.WSMsgType.BINARY
        self._inbox.put_nowait(Message(msg_type, data, None))

    def feed_close(self, code: int, reason: str = "") -> None:
        """Queue a close frame from the remote side."""
        self.closed = True
        self.close_code = code
        self._inbox.put_nowait(Message(aiohttp.WSMsgType.CLOSE, code, reason))

    def feed_error(self, error: BaseException) -> None:
        self.closed = True
        self._inbox.put_nowait(Message(aiohttp.WSMsgType.ERROR, error, None))

    def ops(self) -> list[str]:
        return [message["op"] for message in self.sent]


class FakeSession:
    """In-memory stand-in for aiohttp.ClientSession (WebSocket side only)."""

    def __init__(self) -> None:
        self.sockets: list[FakeWebSocket] = []
        self.connect_calls: list[dict[str, Any]] = []
        self.failures = 0
        self.closed = False
        # When set, handshakes block until the event is set
        self.gate: asyncio.Event | None = None

    async def ws_connect(self, url: str, *, headers: dict[str, str] | None = None, **kwargs: Any) -> FakeWebSocket:
        self.connect_calls.append({"url": url, "headers": dict(headers or {}), **kwargs})
        if self.gate is not None:
            await self.gate.wait()
        if self.failures:
            self.failures -= 1
            raise aiohttp.ClientConnectionError("Connection refused")
        ws = FakeWebSocket()
        self.sockets.append(ws)
        return ws

    async def close(self) -> None:
        self.closed = True


async def settle(rounds: int = 20) -> None:
    """Let queued frames and scheduled callbacks run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


def socket_of(node: Node) -> FakeWebSocket:
    """The fake socket a node is currently connected through."""
    ws = node._ws
    assert isinstance(ws, FakeWebSocket)
    return ws


@pytest.fixture
def session() -> FakeSession:
    return FakeSession()


@pytest.fixture
def gateway() -> AsyncMock:
    """Records voice packets sent to the chat platform."""
    return AsyncMock()


@pytest.fixture
def manager_config() -> ManagerConfig:
    return ManagerConfig(voice_timeout=0.2)


@pytest.fixture
async def manager(gateway: AsyncMock, session: FakeSession, manager_config: ManagerConfig):
    manager = PlayerManager(gateway, user_id=BOT_ID, config=manager_config, session=session)
    yield manager
    await manager.close()


@pytest.fixture
def node_config() -> NodeConfig:
    return NodeConfig(host="localhost", port=2333, reconnect_interval=0.01)


@pytest.fixture
async def node(manager: PlayerManager, node_config: NodeConfig) -> Node:
    return await manager.create_node(node_config)
