"""
Player Manager - Main voicelink entry point.

This module contains the PlayerManager class that ties nodes, players and
the chat platform together:

- It owns the set of Nodes and picks one for every new player.
- It owns the PlayerRegistry; nodes route guild-scoped frames through it.
- It pairs the platform's VOICE_SERVER_UPDATE and VOICE_STATE_UPDATE
  dispatches per guild and tells the player to connect once both are known.
- It sends voice-channel join/leave packets through the platform's gateway
  (an external `send(packet)` callable supplied by the application).

Flow:
    gateway raw packet -> handle_raw() -> VoiceHandshake
        -> Player.connect() -> Node.send(voiceUpdate)
    node frame -> Node -> Player.handle_message() -> player.* events
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import aiohttp

from voicelink.config import ManagerConfig, NodeConfig
from voicelink.core.events import Event, EventBus, VoiceTimeoutEvent
from voicelink.core.handshake import PendingVoice, VoiceHandshake, VoiceUpdateState
from voicelink.player.player import DEFAULT_VOLUME, Player, PlayerOptions
from voicelink.player.registry import PlayerFactory, PlayerRegistry
from voicelink.protocol.commands import build_voice_state_packet
from voicelink.protocol.node import Node, NodeSendError

logger = logging.getLogger(__name__)

# Sends a gateway packet for the guild named in packet["d"]["guild_id"]
GatewaySend = Callable[[dict[str, Any]], Awaitable[None] | None]

VOICE_SERVER_UPDATE = "VOICE_SERVER_UPDATE"
VOICE_STATE_UPDATE = "VOICE_STATE_UPDATE"


class PlayerManagerError(Exception):
    """Base exception for player manager errors."""

    pass


class NoNodeAvailableError(PlayerManagerError):
    """No registered node matches the request, or none is connected."""

    pass


class InvalidGuildError(PlayerManagerError, ValueError):
    """A guild id is missing or unknown."""

    pass


class PlayerManager:
    """
    Routes guild playback sessions to playback nodes.

    Usage:
        manager = PlayerManager(gateway_send, user_id=bot_id, config=config)
        await manager.start()

        # Feed the platform's raw gateway dispatches
        await manager.handle_raw(packet)

        player = await manager.join("guild", "channel", self_deaf=True)
        await player.play(track)

    Attributes:
        config: Manager settings, including the initial node list.
        user_id: The bot's user id, sent to nodes and used to filter
            voice state updates.
        nodes: Registered nodes keyed by tag or host.
        players: Registry of players keyed by guild id.
        voice: Pending voice handshakes.
        events: Bus for manager events and re-published node.* events.
    """

    def __init__(
        self,
        send: GatewaySend,
        *,
        user_id: str | int,
        config: ManagerConfig | None = None,
        player_factory: PlayerFactory = Player,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        """
        Initialize the manager. Call start() to connect the configured nodes.

        Args:
            send: Gateway send capability for voice join/leave packets.
            user_id: The bot's user id.
            config: Manager settings (defaults when None).
            player_factory: Builds players; pass a Player subclass to customize.
            session: HTTP session for nodes; created (and owned) when None.
        """
        if not callable(send):
            raise TypeError("send must be callable")
        if not user_id:
            raise ValueError("user_id is required")

        self.config = config or ManagerConfig()
        self.user_id = str(user_id)
        self.nodes: dict[str, Node] = {}
        self.players = PlayerRegistry(player_factory)
        self.events = EventBus()
        self.voice = VoiceHandshake(
            self.config.voice_timeout,
            on_timeout=self._on_voice_timeout,
        )

        self._send = send
        self._session = session
        self._owns_session = session is None

    @property
    def shards(self) -> int:
        return self.config.shards

    @property
    def session(self) -> aiohttp.ClientSession:
        """HTTP session shared by all nodes."""
        if self._session is None:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def get(self, guild_id: str) -> Player | None:
        return self.players.get(guild_id)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Create every configured node and connect them concurrently."""
        nodes = [
            await self.create_node(node_config, connect=False)
            for node_config in self.config.nodes
            if node_config.key not in self.nodes
        ]
        if nodes:
            await asyncio.gather(*(node.connect() for node in nodes))
        logger.info(
            "Player manager started with %d node(s), %d connected",
            len(self.nodes),
            sum(1 for node in self.nodes.values() if node.connected),
        )

    async def close(self) -> None:
        """Destroy every player and node and release the HTTP session."""
        logger.info("Closing player manager...")
        self.voice.clear()

        for player in await self.players.clear():
            await player.events.clear()
            try:
                await player.destroy()
            except NodeSendError as e:
                logger.warning("Error destroying player %s: %s", player.id, e)

        for key in list(self.nodes):
            await self.remove_node(key)

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        logger.info("Player manager closed")

    async def __aenter__(self) -> "PlayerManager":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # =========================================================================
    # Nodes
    # =========================================================================

    async def create_node(self, config: NodeConfig, *, connect: bool = True) -> Node:
        """
        Register a node and start connecting to it.

        Args:
            config: Node settings; config.key (tag or host) is the node's key.
            connect: Open the connection right away.

        Returns:
            The new node.

        Raises:
            PlayerManagerError: If a node with the same key exists.
        """
        if config.key in self.nodes:
            raise PlayerManagerError(f"Node {config.key!r} is already registered")

        node = Node(self, config, self.session)
        await node.events.subscribe("*", self._forward_node_event)
        self.nodes[config.key] = node
        logger.info("Node registered: %s (%s)", config.key, config.ws_url)

        if connect:
            await node.connect()
        return node

    async def remove_node(self, key: str) -> bool:
        """
        Detach and destroy a node.

        Players bound to the node keep their binding; move them with
        switch().

        Returns:
            False if no node is registered under key.
        """
        node = self.nodes.pop(key, None)
        if node is None:
            return False

        await node.events.clear()
        await node.destroy()

        orphaned = self.players.on_node(node)
        if orphaned:
            logger.warning(
                "Node %s removed with %d player(s) still bound to it",
                key,
                len(orphaned),
            )
        logger.info("Node removed: %s", key)
        return True

    async def _forward_node_event(self, event: Event) -> None:
        await self.events.publish(event)

    @property
    def ideal_nodes(self) -> list[Node]:
        """Connected nodes, least loaded first."""
        return sorted(
            (node for node in self.nodes.values() if node.connected),
            key=lambda node: node.load,
        )

    def select_node(self, region: str | None = None) -> Node:
        """
        Pick a node for a new player.

        Prefers a connected node in the given region, then the least loaded
        connected node.

        Raises:
            NoNodeAvailableError: If no node is connected.
        """
        candidates = self.ideal_nodes
        if not candidates:
            raise NoNodeAvailableError("No connected node available")

        if region:
            region = region.lower()
            for node in candidates:
                if node.region == region:
                    return node

        return candidates[0]

    def _resolve_node(self, node: Node | str) -> Node:
        if isinstance(node, Node):
            if self.nodes.get(node.key) is not node:
                raise NoNodeAvailableError(f"Node {node.key!r} is not registered")
            return node

        resolved = self.nodes.get(node)
        if resolved is None:
            raise NoNodeAvailableError(f"No available node with {node!r}")
        return resolved

    # =========================================================================
    # Players
    # =========================================================================

    async def join(
        self,
        guild_id: str,
        channel_id: str,
        *,
        node: Node | str | None = None,
        region: str | None = None,
        self_mute: bool = False,
        self_deaf: bool = False,
        wait: bool = False,
    ) -> Player:
        """
        Join a voice channel and get the guild's player.

        Joining a guild that already has a player returns that player. The
        join packet is only re-sent when the channel changes.

        Args:
            guild_id: Guild to join in.
            channel_id: Voice channel to join.
            node: Node (or node key) to pin the player to. Otherwise a node
                is selected by region and load.
            region: Preferred node region for a new player.
            self_mute: Join muted.
            self_deaf: Join deafened.
            wait: Wait until the voice handshake completed.

        Returns:
            The guild's player.

        Raises:
            InvalidGuildError: If guild_id or channel_id is empty.
            NoNodeAvailableError: If the requested node is unknown or no
                node is connected.
            VoiceConnectionTimeout: If wait is set and the handshake does
                not complete in time.
        """
        if not guild_id:
            raise InvalidGuildError("guild_id is required")
        if not channel_id:
            raise InvalidGuildError("channel_id is required; use leave() to disconnect")
        guild_id = str(guild_id)
        channel_id = str(channel_id)

        player = self.players.get(guild_id)
        created = False
        if player is None:
            target = self._resolve_node(node) if node is not None else self.select_node(region)
            candidate = self.players.factory(
                target,
                PlayerOptions(guild_id=guild_id, channel_id=channel_id, pinned=node is not None),
            )
            player = await self.players.add(candidate)
            created = player is candidate

        if not created and player.channel == channel_id:
            return player

        if not created:
            logger.info("Player %s moving to channel %s", guild_id, channel_id)
        player.channel = channel_id

        waiter = self.voice.wait(guild_id) if wait else None
        try:
            await self.send_ws(
                build_voice_state_packet(
                    guild_id,
                    channel_id,
                    self_mute=self_mute,
                    self_deaf=self_deaf,
                )
            )
        except Exception:
            if created:
                await self.players.remove(guild_id)
            if waiter is not None:
                waiter.cancel()
            raise

        if waiter is not None:
            await waiter
        return player

    async def leave(self, guild_id: str) -> bool:
        """
        Leave the guild's voice channel and destroy its player.

        Returns:
            False (without sending anything) if the guild has no player.
        """
        guild_id = str(guild_id)
        player = self.players.get(guild_id)
        if player is None:
            return False

        await self.send_ws(build_voice_state_packet(guild_id, None))
        self.voice.discard(guild_id)
        await player.events.clear()

        try:
            await player.destroy()
        except NodeSendError as e:
            logger.warning("Error destroying player %s: %s", guild_id, e)

        await self.players.remove(guild_id)
        return True

    async def switch(self, player: Player, node: Node | str) -> Player:
        """
        Move a player to another node.

        The session is destroyed on the old node and rebuilt on the new one
        by replaying the voice update, the track (slightly ahead of the last
        reported position to make up for the handoff), volume and equalizer.
        This is best effort, not a gapless handoff.

        Returns:
            The same player, now bound to node.
        """
        target = self._resolve_node(node)
        if player.node is target:
            return player

        track = player.track
        paused = player.paused
        volume = player.state.volume
        equalizer = list(player.state.equalizer)
        voice_update_state = player.voice_update_state
        position = (player.state.position or 0) + self.config.switch_offset_ms

        logger.info("Switching player %s from node %s to %s", player.id, player.node.key, target.key)

        await player.destroy()
        player.node = target
        player.pinned = True

        if voice_update_state is not None:
            await player.connect(voice_update_state)
        if track:
            await player.play(
                track,
                start_time=position,
                volume=volume,
                pause=paused or None,
            )
        elif volume != DEFAULT_VOLUME:
            await player.volume(volume)
        if equalizer:
            await player.equalizer(equalizer)

        return player

    # =========================================================================
    # Voice handshake
    # =========================================================================

    async def handle_raw(self, packet: dict[str, Any]) -> bool:
        """
        Feed a raw gateway dispatch.

        Only VOICE_SERVER_UPDATE and VOICE_STATE_UPDATE are used.

        Returns:
            True if the packet completed a voice handshake.
        """
        event_type = packet.get("t")
        data = packet.get("d") or {}
        if event_type == VOICE_SERVER_UPDATE:
            return await self.voice_server_update(data)
        if event_type == VOICE_STATE_UPDATE:
            return await self.voice_state_update(data)
        return False

    async def voice_server_update(self, data: dict[str, Any]) -> bool:
        """
        Buffer a voice server update and try to connect the player.

        Returns:
            True if the player was told to connect.
        """
        guild_id = data.get("guild_id")
        if not guild_id:
            raise InvalidGuildError("Voice server update without guild_id")
        guild_id = str(guild_id)

        if not data.get("endpoint"):
            logger.debug("Voice server for guild %s unavailable, waiting for endpoint", guild_id)
            return False

        self.voice.set_server(guild_id, dict(data))
        return await self._attempt_connection(guild_id)

    async def voice_state_update(self, data: dict[str, Any]) -> bool:
        """
        Buffer the bot's voice state update and try to connect the player.

        A state without channel_id means the bot left or was disconnected;
        anything buffered for the guild is dropped.

        Returns:
            True if the player was told to connect.
        """
        if str(data.get("user_id")) != self.user_id:
            return False

        guild_id = data.get("guild_id")
        if not guild_id:
            raise InvalidGuildError("Voice state update without guild_id")
        guild_id = str(guild_id)

        channel_id = data.get("channel_id")
        if not channel_id:
            self.voice.discard(guild_id)
            logger.debug("Bot left voice in guild %s", guild_id)
            return False

        player = self.players.get(guild_id)
        if player is not None:
            player.channel = str(channel_id)

            # Mute/deafen toggles re-send the state of a live session
            current = player.voice_update_state
            if (
                current is not None
                and current.session_id == data.get("session_id")
                and guild_id not in self.voice
            ):
                logger.debug("Voice state for guild %s unchanged, session %s", guild_id, current.session_id)
                return False

        self.voice.set_state(guild_id, dict(data))
        return await self._attempt_connection(guild_id)

    async def _attempt_connection(self, guild_id: str) -> bool:
        player = self.players.get(guild_id)
        if player is None:
            return False

        fallback = player.voice_update_state.session_id if player.voice_update_state else None
        taken = self.voice.take(guild_id, fallback)
        if taken is None:
            return False

        entry, update = taken
        self._relocate_for_endpoint(player, update)

        try:
            sent = await player.connect(update)
        except Exception as e:
            entry.reject(e)
            raise

        if sent:
            entry.resolve(update)
        else:
            entry.reject(NoNodeAvailableError(f"Node {player.node.key!r} is not connected"))
        return sent

    def _relocate_for_endpoint(self, player: Player, update: VoiceUpdateState) -> None:
        """Move a fresh, unpinned player to a node in the endpoint's region."""
        if player.pinned or player.voice_update_state is not None:
            return

        region = self.config.regions.region_for(update.event.get("endpoint"))
        if region is None or player.node.region == region:
            return

        for node in self.ideal_nodes:
            if node.region == region:
                logger.info(
                    "Player %s moved to node %s for region %s",
                    player.id,
                    node.key,
                    region,
                )
                player.node = node
                return

    def _on_voice_timeout(self, entry: PendingVoice) -> None:
        self.events.publish_sync(
            VoiceTimeoutEvent(
                guild_id=entry.guild_id,
                has_server=entry.server is not None,
                has_state=entry.state is not None,
            )
        )

    # =========================================================================
    # Gateway
    # =========================================================================

    async def send_ws(self, packet: dict[str, Any]) -> None:
        """Deliver a packet to the chat platform's gateway."""
        logger.debug("Gateway <- %s", packet)
        result = self._send(packet)
        if inspect.isawaitable(result):
            await result
