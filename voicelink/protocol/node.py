"""
Node connection for voicelink.

A Node is the WebSocket control channel to one remote playback node. It
owns connecting, resuming and reconnecting, and demultiplexes inbound
frames: "stats" frames refresh the node's load snapshot, guild-scoped
frames are forwarded to the matching Player, and every frame is published
as a node.message event.

Connection lifecycle:

    DISCONNECTED -> CONNECTING -> OPEN -> CLOSED (clean: 1000 + "destroy")
                                       -> CLOSED (unclean) -> RECONNECTING
                                                              -> CONNECTING

Handshake headers:
    Authorization: <password>
    User-Id: <bot user id>
    Num-Shards: <shard count>
    Resume-Key: <key>         (only once a resume key was configured)

Whether the node is connected is always derived from the live WebSocket;
no separate flag is kept.
"""

from __future__ import annotations

import asyncio
import json
import logging
import secrets
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

from voicelink.config import NodeConfig
from voicelink.core.events import (
    EventBus,
    NodeDisconnectEvent,
    NodeErrorEvent,
    NodeMessageEvent,
    NodeReadyEvent,
    NodeReconnectingEvent,
)
from voicelink.protocol.commands import InboundOp, build_configure_resuming
from voicelink.protocol.rest import LoadResult, load_tracks

if TYPE_CHECKING:
    from voicelink.manager import PlayerManager

logger = logging.getLogger(__name__)

# Close code and reason marking an intentional, terminal close
DESTROY_CODE = 1000
DESTROY_REASON = "destroy"

# Close code used when a connection is replaced by a new one
RECONNECT_CODE = 4000

_CLOSERS = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)


class NodeError(Exception):
    """Base exception for node errors."""

    pass


class NodeSendError(NodeError):
    """A message could not be serialized or written to the node."""

    pass


class ProtocolError(NodeError):
    """Invalid data received from the node."""

    pass


@dataclass
class NodeStats:
    """Snapshot of a node's last "stats" frame."""

    players: int = 0
    playing_players: int = 0
    uptime: int = 0
    memory: dict[str, int] = field(default_factory=dict)
    cpu_cores: int = 0
    system_load: float = 0.0
    lavalink_load: float = 0.0
    frames_sent: int = -1
    frames_nulled: int = -1
    frames_deficit: int = -1
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "NodeStats":
        cpu = data.get("cpu") or {}
        frame_stats = data.get("frameStats") or {}
        return cls(
            players=int(data.get("players", 0)),
            playing_players=int(data.get("playingPlayers", 0)),
            uptime=int(data.get("uptime", 0)),
            memory=dict(data.get("memory") or {}),
            cpu_cores=int(cpu.get("cores", 0)),
            system_load=float(cpu.get("systemLoad", 0.0)),
            lavalink_load=float(cpu.get("lavalinkLoad", 0.0)),
            frames_sent=int(frame_stats.get("sent", -1)),
            frames_nulled=int(frame_stats.get("nulled", -1)),
            frames_deficit=int(frame_stats.get("deficit", -1)),
            raw=dict(data),
        )

    @property
    def load(self) -> float:
        """System CPU load per core, as a percentage."""
        if self.cpu_cores <= 0:
            return 0.0
        return self.system_load / self.cpu_cores * 100


def _decode_frame(data: Any) -> dict[str, Any]:
    """
    Decode one inbound frame into a JSON object.

    Text frames, binary frames and lists of binary fragments are accepted.

    Raises:
        ProtocolError: If the frame is not a JSON object.
    """
    if isinstance(data, (list, tuple)):
        data = b"".join(bytes(chunk) for chunk in data)
    elif isinstance(data, (bytearray, memoryview)):
        data = bytes(data)

    try:
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        payload = json.loads(data)
    except (TypeError, UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ProtocolError(f"Malformed frame: {e}") from e

    if not isinstance(payload, dict):
        raise ProtocolError(f"Expected a JSON object, got {type(payload).__name__}")
    return payload


class Node:
    """
    WebSocket control connection to a single playback node.

    Attributes:
        manager: The PlayerManager owning this node.
        config: Connection settings.
        events: Bus for node.* events (re-published by the manager).
        stats: Last stats snapshot, None until the first stats frame.
        resume_key: Key of the last successfully configured resumable session.
    """

    def __init__(
        self,
        manager: "PlayerManager",
        config: NodeConfig,
        session: aiohttp.ClientSession,
    ) -> None:
        """
        Initialize a node. Call connect() to open the connection.

        Args:
            manager: The PlayerManager owning this node.
            config: Connection settings.
            session: HTTP session used for the WebSocket and REST calls.
        """
        self.manager = manager
        self.config = config
        self.session = session
        self.events = EventBus()

        self.stats: NodeStats | None = None
        self.resume_key: str | None = None

        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._listener_task: asyncio.Task[None] | None = None
        self._reconnect_task: asyncio.Task[None] | None = None
        self._destroyed = False

    @property
    def key(self) -> str:
        return self.config.key

    @property
    def host(self) -> str:
        return self.config.host

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def region(self) -> str | None:
        return self.config.region

    @property
    def connected(self) -> bool:
        """Whether the WebSocket is currently open."""
        return self._ws is not None and not self._ws.closed

    @property
    def ready(self) -> bool:
        return self.connected

    @property
    def reconnecting(self) -> bool:
        """Whether a reconnect attempt is scheduled."""
        return self._reconnect_task is not None and not self._reconnect_task.done()

    @property
    def load(self) -> float:
        """Load used to rank nodes; nodes without stats count as idle."""
        return self.stats.load if self.stats is not None else 0.0

    @property
    def headers(self) -> dict[str, str]:
        headers = {
            "Authorization": self.config.password,
            "User-Id": str(self.manager.user_id),
            "Num-Shards": str(self.manager.shards),
        }
        if self.resume_key:
            headers["Resume-Key"] = self.resume_key
        return headers

    def _log_headers(self) -> dict[str, str]:
        headers = self.headers
        headers["Authorization"] = "*" * len(self.config.password)
        return headers

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self) -> bool:
        """
        Open the WebSocket, replacing any existing connection.

        A failed attempt is reported as a node.error event and schedules a
        reconnect; it does not raise.

        Returns:
            True if the connection opened.
        """
        self._destroyed = False
        return await self._open()

    async def _open(self) -> bool:
        await self._discard_connection(close=True)

        logger.info(
            "Connecting to node %s at %s with headers %s",
            self.key,
            self.config.ws_url,
            self._log_headers(),
        )

        try:
            ws = await self.session.ws_connect(
                self.config.ws_url,
                headers=self.headers,
                heartbeat=self.config.heartbeat,
            )
        except (OSError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("Failed to connect to node %s: %s", self.key, e)
            await self._on_error(e)
            return False

        if self._destroyed:
            logger.info("Node %s destroyed during connect, closing new connection", self.key)
            await ws.close(code=DESTROY_CODE, message=DESTROY_REASON.encode())
            return False

        self._ws = ws
        self._listener_task = asyncio.create_task(
            self._listen(ws),
            name=f"voicelink-node-{self.key}",
        )
        await self._on_open()
        return self.connected

    async def _discard_connection(self, close: bool) -> None:
        """Detach the listener from the current connection and drop it."""
        task = self._listener_task
        self._listener_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        ws = self._ws
        self._ws = None
        if close and ws is not None and not ws.closed:
            logger.debug("Closing previous connection to node %s", self.key)
            await ws.close(code=RECONNECT_CODE, message=b"reconnecting")

    async def destroy(self) -> bool:
        """
        Close the connection for good.

        Cancels any pending reconnect, detaches the listener and closes the
        socket with code 1000 and the "destroy" reason.

        Returns:
            True if there was an open connection to close.
        """
        self._destroyed = True
        self._cancel_reconnect()

        ws = self._ws
        was_connected = self.connected
        await self._discard_connection(close=False)

        if not was_connected or ws is None:
            return False

        logger.info("Destroying connection to node %s", self.key)
        await ws.close(code=DESTROY_CODE, message=DESTROY_REASON.encode())
        await self.events.publish(
            NodeDisconnectEvent(
                node_key=self.key,
                node=self,
                code=DESTROY_CODE,
                reason=DESTROY_REASON,
                will_reconnect=False,
            )
        )
        return True

    def _schedule_reconnect(self) -> None:
        if self._destroyed:
            return
        # A failed attempt inside the reconnect task schedules its successor
        if self.reconnecting and self._reconnect_task is not asyncio.current_task():
            logger.debug("Reconnect to node %s already scheduled", self.key)
            return

        logger.info(
            "Reconnecting to node %s in %.1fs",
            self.key,
            self.config.reconnect_interval,
        )
        self._reconnect_task = asyncio.create_task(
            self._reconnect_after(self.config.reconnect_interval),
            name=f"voicelink-node-{self.key}-reconnect",
        )

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            logger.debug("Cancelled pending reconnect to node %s", self.key)

    async def _reconnect_after(self, delay: float) -> None:
        # The task stays registered until the attempt finished so that
        # destroy() can cancel an in-flight handshake.
        try:
            await asyncio.sleep(delay)
            if self._destroyed:
                return

            await self._discard_connection(close=True)
            await self.events.publish(NodeReconnectingEvent(node_key=self.key, node=self))
            await self._open()
        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # =========================================================================
    # WebSocket handlers
    # =========================================================================

    async def _listen(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        """Read frames from one connection until it closes."""
        try:
            while True:
                msg = await ws.receive()

                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self._on_message(msg.data)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    await self._on_error(msg.data or ws.exception())
                    return
                elif msg.type in _CLOSERS:
                    if msg.type == aiohttp.WSMsgType.CLOSE:
                        code, reason = msg.data, msg.extra
                    else:
                        code, reason = ws.close_code, ""
                    await self._on_close(code, reason or "")
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("Listener for node %s failed: %s", self.key, e)
            await self._on_error(e)

    async def _on_open(self) -> None:
        self._cancel_reconnect()
        logger.info("Connected to node %s", self.key)

        # Resuming is configured before any other traffic
        if self.config.resume_timeout > 0:
            try:
                await self.configure_resuming()
            except NodeSendError as e:
                await self._on_error(e)
                return

        await self.events.publish(
            NodeReadyEvent(node_key=self.key, node=self, resume_key=self.resume_key)
        )

    async def _on_message(self, data: Any) -> None:
        try:
            payload = _decode_frame(data)
        except ProtocolError as e:
            logger.warning("Dropping frame from node %s: %s", self.key, e)
            await self.events.publish(NodeErrorEvent(node_key=self.key, node=self, error=e))
            return

        op = payload.get("op")
        if op == InboundOp.STATS:
            self.stats = NodeStats.from_payload(
                {key: value for key, value in payload.items() if key != "op"}
            )
        else:
            logger.debug("Node %s -> %s", self.key, payload)

        guild_id = payload.get("guildId")
        if guild_id is not None:
            player = self.manager.players.get(str(guild_id))
            if player is not None and player.node is self:
                try:
                    await player.handle_message(payload)
                except Exception as e:
                    logger.exception(
                        "Player %s failed to handle %s from node %s",
                        guild_id,
                        op,
                        self.key,
                    )
                    await self.events.publish(
                        NodeErrorEvent(node_key=self.key, node=self, error=e)
                    )

        await self.events.publish(NodeMessageEvent(node_key=self.key, node=self, payload=payload))

    async def _on_error(self, error: BaseException | None) -> None:
        if error is None:
            return

        logger.warning("Node %s error: %r", self.key, error)
        await self.events.publish(NodeErrorEvent(node_key=self.key, node=self, error=error))
        self._schedule_reconnect()

    async def _on_close(self, code: int | None, reason: str) -> None:
        clean = code == DESTROY_CODE and reason == DESTROY_REASON
        self._ws = None

        if clean:
            logger.info("Node %s closed the connection (destroy)", self.key)
        else:
            logger.warning("Node %s connection closed: code=%s reason=%r", self.key, code, reason)

        await self.events.publish(
            NodeDisconnectEvent(
                node_key=self.key,
                node=self,
                code=code,
                reason=reason,
                will_reconnect=not clean and not self._destroyed,
            )
        )

        if not clean:
            self._schedule_reconnect()

    # =========================================================================
    # Outbound
    # =========================================================================

    async def send(self, message: dict[str, Any]) -> bool:
        """
        Serialize a message and write it to the node.

        Args:
            message: JSON-serializable payload.

        Returns:
            True if the message was written, False if the node is not
            connected.

        Raises:
            NodeSendError: If serialization or the write fails.
        """
        if not self.connected or self._ws is None:
            logger.debug("Not sending %s to node %s: not connected", message.get("op"), self.key)
            return False

        try:
            payload = json.dumps(message)
        except (TypeError, ValueError) as e:
            raise NodeSendError(f"Cannot serialize {message.get('op')!r} message: {e}") from e

        try:
            await self._ws.send_str(payload)
        except (ConnectionError, RuntimeError, aiohttp.ClientError) as e:
            raise NodeSendError(f"Failed to send to node {self.key}: {e}") from e

        logger.debug("Node %s <- %s", self.key, payload)
        return True

    async def configure_resuming(self, key: str | None = None, timeout: int | None = None) -> bool:
        """
        Make the current session resumable.

        Args:
            key: Resume key; a fresh random key when None.
            timeout: Seconds the node keeps the session after a disconnect.

        Returns:
            True if the configuration was sent.
        """
        key = key or secrets.token_urlsafe(24)
        timeout = self.config.resume_timeout if timeout is None else timeout

        sent = await self.send(build_configure_resuming(key, timeout))
        if sent:
            self.resume_key = key
            logger.debug("Configured resuming on node %s (timeout %ds)", self.key, timeout)
        return sent

    async def load_tracks(self, identifier: str) -> LoadResult:
        """Resolve an identifier into tracks via this node's REST endpoint."""
        return await load_tracks(self.session, self.config, identifier)

    def __repr__(self) -> str:
        return (
            f"Node(key={self.key!r}, url={self.config.ws_url!r}, "
            f"region={self.region!r}, connected={self.connected})"
        )
