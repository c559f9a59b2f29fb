"""
Tests for the Node connection state machine.

These tests drive a node through fake WebSocket frames and verify the
handshake headers, resuming, frame demultiplexing and the reconnect rules.
"""

import asyncio
import json

import pytest

from voicelink.config import NodeConfig
from voicelink.core.events import Event
from voicelink.manager import PlayerManager
from voicelink.protocol.node import (
    DESTROY_CODE,
    RECONNECT_CODE,
    Node,
    NodeSendError,
    NodeStats,
    ProtocolError,
)
from tests.conftest import FakeSession, settle, socket_of

STATS_FRAME = {
    "op": "stats",
    "players": 3,
    "playingPlayers": 1,
    "uptime": 1000,
    "memory": {"free": 1, "used": 2, "allocated": 3, "reservable": 4},
    "cpu": {"cores": 4, "systemLoad": 0.5, "lavalinkLoad": 0.1},
}


async def record(manager: PlayerManager, event_type: str) -> list[Event]:
    """Subscribe to an event type on the manager and collect what arrives."""
    received: list[Event] = []

    async def handler(event: Event) -> None:
        received.append(event)

    await manager.events.subscribe(event_type, handler)
    return received


# -----------------------------------------------------------------------------
# Handshake
# -----------------------------------------------------------------------------


class TestNodeConnect:
    """Tests for opening the connection."""

    @pytest.mark.asyncio
    async def test_connect_sends_auth_headers(self, node: Node, session: FakeSession) -> None:
        """The upgrade request carries password, user id and shard count."""
        call = session.connect_calls[0]
        assert call["url"] == "ws://localhost:2333/"
        assert call["headers"] == {
            "Authorization": "youshallnotpass",
            "User-Id": "BOT",
            "Num-Shards": "1",
        }

    @pytest.mark.asyncio
    async def test_open_configures_resuming_first(self, node: Node) -> None:
        """configureResuming is the first frame sent on every open."""
        ws = socket_of(node)
        first = ws.sent[0]
        assert first["op"] == "configureResuming"
        assert first["timeout"] == 120
        assert first["key"] == node.resume_key
        assert "guildId" not in first

    @pytest.mark.asyncio
    async def test_resuming_disabled_with_zero_timeout(self, manager: PlayerManager) -> None:
        node = await manager.create_node(NodeConfig(host="quiet", resume_timeout=0))
        assert socket_of(node).sent == []
        assert node.resume_key is None

    @pytest.mark.asyncio
    async def test_ready_event_published(self, manager: PlayerManager, node_config: NodeConfig) -> None:
        ready = await record(manager, "node.ready")
        node = await manager.create_node(node_config)

        assert len(ready) == 1
        assert ready[0].node is node
        assert ready[0].resume_key == node.resume_key

    @pytest.mark.asyncio
    async def test_connected_is_derived_from_socket(self, node: Node) -> None:
        """Connection status follows the live socket, not a stored flag."""
        assert node.connected
        socket_of(node).closed = True
        assert not node.connected
        assert not node.ready

    @pytest.mark.asyncio
    async def test_connect_failure_schedules_reconnect(
        self,
        manager: PlayerManager,
        session: FakeSession,
        node_config: NodeConfig,
    ) -> None:
        errors = await record(manager, "node.error")
        session.failures = 1

        node = await manager.create_node(node_config)
        assert not node.connected
        assert len(errors) == 1
        assert node.reconnecting

        await asyncio.sleep(0.05)
        assert node.connected
        assert len(session.connect_calls) == 2

    @pytest.mark.asyncio
    async def test_manual_connect_replaces_open_connection(
        self,
        manager: PlayerManager,
        node: Node,
        session: FakeSession,
    ) -> None:
        """A second connect() closes the first socket and detaches its listener."""
        messages = await record(manager, "node.message")
        old = socket_of(node)

        await node.connect()

        assert len(session.sockets) == 2
        assert old.closed
        assert old.close_calls[-1][0] == RECONNECT_CODE

        old.feed(STATS_FRAME)
        await settle()
        assert messages == []


# -----------------------------------------------------------------------------
# Inbound frames
# -----------------------------------------------------------------------------


class TestNodeMessages:
    """Tests for frame demultiplexing."""

    @pytest.mark.asyncio
    async def test_stats_frame_replaces_snapshot(self, node: Node) -> None:
        await node._on_message(json.dumps(STATS_FRAME))

        assert isinstance(node.stats, NodeStats)
        assert node.stats.players == 3
        assert node.stats.playing_players == 1
        assert node.stats.load == pytest.approx(12.5)
        assert "op" not in node.stats.raw
        assert node.load == pytest.approx(12.5)

    @pytest.mark.asyncio
    async def test_binary_and_fragmented_frames(self, node: Node) -> None:
        await node._on_message(json.dumps(STATS_FRAME).encode())
        assert node.stats is not None and node.stats.players == 3

        encoded = json.dumps({**STATS_FRAME, "players": 7}).encode()
        await node._on_message([encoded[:10], bytearray(encoded[10:])])
        assert node.stats.players == 7

    @pytest.mark.asyncio
    async def test_malformed_frame_is_dropped(self, manager: PlayerManager, node: Node) -> None:
        """Bad JSON is reported but neither closes nor reconnects the node."""
        errors = await record(manager, "node.error")
        messages = await record(manager, "node.message")

        socket_of(node).feed("{not json")
        await settle()

        assert len(errors) == 1
        assert isinstance(errors[0].error, ProtocolError)
        assert messages == []
        assert node.connected
        assert not node.reconnecting

    @pytest.mark.asyncio
    async def test_non_object_frame_is_dropped(self, manager: PlayerManager, node: Node) -> None:
        errors = await record(manager, "node.error")
        await node._on_message("[1, 2, 3]")
        assert isinstance(errors[0].error, ProtocolError)

    @pytest.mark.asyncio
    async def test_every_frame_is_published(self, manager: PlayerManager, node: Node) -> None:
        messages = await record(manager, "node.message")

        socket_of(node).feed(STATS_FRAME)
        socket_of(node).feed({"op": "playerUpdate", "guildId": "nobody", "state": {}})
        await settle()

        assert [event.payload["op"] for event in messages] == ["stats", "playerUpdate"]
        assert all(event.node is node for event in messages)

    @pytest.mark.asyncio
    async def test_guild_frame_routed_to_player(self, manager: PlayerManager, node: Node) -> None:
        player = await manager.join("G1", "C1", node="localhost")

        socket_of(node).feed({"op": "playerUpdate", "guildId": "G1", "state": {"position": 4200}})
        await settle()

        assert player.state.position == 4200

    @pytest.mark.asyncio
    async def test_frame_for_player_on_other_node_ignored(
        self,
        manager: PlayerManager,
        node: Node,
    ) -> None:
        other = await manager.create_node(NodeConfig(host="other", reconnect_interval=0.01))
        player = await manager.join("G1", "C1", node="other")

        socket_of(node).feed({"op": "playerUpdate", "guildId": "G1", "state": {"position": 1}})
        await settle()
        assert player.state.position is None

        socket_of(other).feed({"op": "playerUpdate", "guildId": "G1", "state": {"position": 2}})
        await settle()
        assert player.state.position == 2


# -----------------------------------------------------------------------------
# Close and reconnect
# -----------------------------------------------------------------------------


class TestNodeReconnect:
    """Tests for the close/reconnect rules."""

    @pytest.mark.asyncio
    async def test_clean_destroy_close_is_terminal(
        self,
        manager: PlayerManager,
        node: Node,
        session: FakeSession,
    ) -> None:
        disconnects = await record(manager, "node.disconnect")

        socket_of(node).feed_close(DESTROY_CODE, "destroy")
        await settle()
        await asyncio.sleep(0.05)

        assert len(session.sockets) == 1
        assert not node.reconnecting
        assert not node.connected
        assert disconnects[0].will_reconnect is False

    @pytest.mark.asyncio
    async def test_abnormal_close_reconnects_with_resume_key(
        self,
        manager: PlayerManager,
        node: Node,
        session: FakeSession,
    ) -> None:
        reconnecting = await record(manager, "node.reconnecting")
        resume_key = node.resume_key
        assert resume_key

        socket_of(node).feed_close(1006)
        await settle()
        assert node.reconnecting

        await asyncio.sleep(0.05)

        assert len(session.sockets) == 2
        assert session.connect_calls[1]["headers"]["Resume-Key"] == resume_key
        assert len(reconnecting) == 1
        assert node.connected
        # A new key is configured on the new connection
        assert socket_of(node).sent[0]["op"] == "configureResuming"

    @pytest.mark.asyncio
    async def test_close_1000_with_other_reason_reconnects(
        self,
        node: Node,
        session: FakeSession,
    ) -> None:
        socket_of(node).feed_close(1000, "bye")
        await settle()
        await asyncio.sleep(0.05)
        assert len(session.sockets) == 2

    @pytest.mark.asyncio
    async def test_one_reconnect_per_close(self, node: Node, session: FakeSession) -> None:
        """An error followed by a close still schedules a single reconnect."""
        await node._on_error(ConnectionResetError("reset"))
        await node._on_close(1006, "")
        await asyncio.sleep(0.1)

        assert len(session.sockets) == 2

    @pytest.mark.asyncio
    async def test_reconnect_detaches_old_listener(
        self,
        manager: PlayerManager,
        node: Node,
    ) -> None:
        """Frames on the previous socket are not delivered after a reconnect."""
        old = socket_of(node)
        old.feed_close(1006)
        await asyncio.sleep(0.05)

        messages = await record(manager, "node.message")
        old.feed(STATS_FRAME)
        socket_of(node).feed(STATS_FRAME)
        await settle()

        assert len(messages) == 1

    @pytest.mark.asyncio
    async def test_error_frame_schedules_reconnect(self, node: Node, session: FakeSession) -> None:
        socket_of(node).feed_error(RuntimeError("boom"))
        await settle()
        assert node.reconnecting

        await asyncio.sleep(0.05)
        assert len(session.sockets) == 2

    @pytest.mark.asyncio
    async def test_null_error_is_ignored(self, node: Node) -> None:
        await node._on_error(None)
        assert not node.reconnecting

    @pytest.mark.asyncio
    async def test_destroy_cancels_pending_reconnect(
        self,
        node: Node,
        session: FakeSession,
    ) -> None:
        socket_of(node).feed_close(1006)
        await settle()
        assert node.reconnecting

        assert await node.destroy() is False
        await asyncio.sleep(0.05)

        assert len(session.sockets) == 1
        assert not node.reconnecting

    @pytest.mark.asyncio
    async def test_destroy_during_reconnect_handshake(
        self,
        node: Node,
        session: FakeSession,
    ) -> None:
        """A node destroyed while reconnecting stays down once the handshake returns."""
        session.gate = asyncio.Event()
        socket_of(node).feed_close(1006)
        await asyncio.sleep(0.05)
        assert len(session.connect_calls) == 2
        assert node.reconnecting

        await node.destroy()
        session.gate.set()
        await asyncio.sleep(0.05)

        assert not node.connected
        assert not node.reconnecting
        assert len(session.sockets) == 1

    @pytest.mark.asyncio
    async def test_remove_node_during_reconnect_handshake(
        self,
        manager: PlayerManager,
        node: Node,
        session: FakeSession,
    ) -> None:
        session.gate = asyncio.Event()
        socket_of(node).feed_close(1006)
        await asyncio.sleep(0.05)

        assert await manager.remove_node(node.key) is True
        session.gate.set()
        await asyncio.sleep(0.05)

        assert not node.connected
        assert all(ws.closed for ws in session.sockets)

    @pytest.mark.asyncio
    async def test_destroy_during_manual_connect(
        self,
        node: Node,
        session: FakeSession,
    ) -> None:
        """A socket that opens after destroy() is closed right away."""
        session.gate = asyncio.Event()
        connecting = asyncio.create_task(node.connect())
        await settle()

        await node.destroy()
        session.gate.set()

        assert await connecting is False
        assert not node.connected
        assert session.sockets[-1].close_calls[-1] == (DESTROY_CODE, b"destroy")
        await asyncio.sleep(0.05)
        assert len(session.connect_calls) == 2

    @pytest.mark.asyncio
    async def test_failed_reconnect_retries(self, node: Node, session: FakeSession) -> None:
        session.failures = 1
        socket_of(node).feed_close(1006)
        await asyncio.sleep(0.1)

        assert len(session.connect_calls) == 3
        assert node.connected
        assert not node.reconnecting


# -----------------------------------------------------------------------------
# Outbound
# -----------------------------------------------------------------------------


class TestNodeSendAndDestroy:
    """Tests for send() and destroy()."""

    @pytest.mark.asyncio
    async def test_destroy_closes_with_destroy_code(self, manager: PlayerManager, node: Node) -> None:
        disconnects = await record(manager, "node.disconnect")
        ws = socket_of(node)

        assert await node.destroy() is True

        assert ws.close_calls[-1] == (DESTROY_CODE, b"destroy")
        assert not node.connected
        assert disconnects[0].reason == "destroy"
        assert await node.destroy() is False

    @pytest.mark.asyncio
    async def test_send_returns_false_when_disconnected(self, node: Node) -> None:
        await node.destroy()
        assert await node.send({"op": "stop", "guildId": "G1"}) is False

    @pytest.mark.asyncio
    async def test_send_writes_json(self, node: Node) -> None:
        assert await node.send({"op": "stop", "guildId": "G1"}) is True
        assert socket_of(node).sent[-1] == {"op": "stop", "guildId": "G1"}

    @pytest.mark.asyncio
    async def test_send_unserializable_raises(self, node: Node) -> None:
        with pytest.raises(NodeSendError, match="serialize"):
            await node.send({"op": "play", "track": object()})

    @pytest.mark.asyncio
    async def test_send_write_failure_raises(self, node: Node) -> None:
        socket_of(node).fail_send = ConnectionResetError("gone")
        with pytest.raises(NodeSendError):
            await node.send({"op": "stop", "guildId": "G1"})

    @pytest.mark.asyncio
    async def test_configure_resuming_with_explicit_key(self, node: Node) -> None:
        assert await node.configure_resuming("my-key", 30) is True
        assert socket_of(node).sent[-1] == {"op": "configureResuming", "key": "my-key", "timeout": 30}
        assert node.headers["Resume-Key"] == "my-key"
