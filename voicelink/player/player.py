"""
Player representation for voicelink.

This module defines the Player class, the playback session of one guild.
A Player translates playback calls into node control messages and keeps a
cache of what it last asked the node to do. The cache is optimistic: it is
corrected by the "playerUpdate" and "event" frames the node sends back, so
callers must treat it as eventually consistent.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any

from voicelink.core.events import (
    EventBus,
    PlayerEndEvent,
    PlayerErrorEvent,
    PlayerStartEvent,
    PlayerUpdateEvent,
    PlayerWarnEvent,
)
from voicelink.core.handshake import VoiceUpdateState
from voicelink.protocol.commands import (
    EqualizerBand,
    InboundOp,
    build_destroy,
    build_equalizer,
    build_pause,
    build_play,
    build_seek,
    build_stop,
    build_volume,
    build_voice_update,
)

if TYPE_CHECKING:
    from voicelink.manager import PlayerManager
    from voicelink.protocol.node import Node

logger = logging.getLogger(__name__)

DEFAULT_VOLUME = 100

# End reason sent when a new play command preempts the current track
REPLACED = "REPLACED"


@dataclass
class PlayerOptions:
    """Plain data a Player is constructed from."""

    guild_id: str
    channel_id: str | None = None
    # Node chosen explicitly by the caller; never migrated automatically
    pinned: bool = False


@dataclass
class PlayerState:
    """Cached playback state, merged from commands and playerUpdate frames."""

    volume: int = DEFAULT_VOLUME
    equalizer: list[dict[str, Any]] = field(default_factory=list)
    position: int | None = None
    time: int | None = None
    connected: bool | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, data: Mapping[str, Any]) -> None:
        """Update fields present in data; omitted fields keep their value."""
        known = {f.name for f in fields(self) if f.name != "extra"}
        for key, value in data.items():
            if key in known:
                setattr(self, key, value)
            else:
                self.extra[key] = value


class Player:
    """
    Playback session for a single guild.

    Each Player is bound to one Node at a time; the binding changes when the
    manager migrates it. Every command sends exactly one message and
    resolves to whether the node accepted the write. Commands on a player
    whose node is disconnected resolve to False instead of raising.

    Attributes:
        id: Guild id, the registry key.
        channel: Voice channel id.
        node: The Node the session lives on.
        state: Cached volume, equalizer and position.
        track: Base64 payload of the current track, if any.
        playing: Whether a track was started and has not ended.
        paused: Whether playback was paused.
        timestamp: time.time() of the last play command.
        voice_update_state: Last voice update sent to the node.
        events: Bus for player.* events.
    """

    def __init__(self, node: "Node", options: PlayerOptions) -> None:
        """
        Initialize a player.

        Args:
            node: The Node to bind the session to.
            options: Guild and channel of the session.
        """
        if not options.guild_id:
            raise ValueError("Player requires a guild id")

        self.node = node
        self.id = str(options.guild_id)
        self.channel = options.channel_id
        self.pinned = options.pinned

        self.state = PlayerState()
        self.track: str | None = None
        self.playing = False
        self.paused = False
        self.timestamp: float | None = None
        self.voice_update_state: VoiceUpdateState | None = None

        self.events = EventBus()

        logger.debug("Player created for guild %s on node %s", self.id, node.key)

    @property
    def manager(self) -> "PlayerManager":
        return self.node.manager

    @property
    def connected(self) -> bool:
        """Whether the player's node is connected."""
        return self.node.connected

    def __repr__(self) -> str:
        return (
            f"Player(id={self.id!r}, channel={self.channel!r}, node={self.node.key!r}, "
            f"playing={self.playing}, paused={self.paused})"
        )

    async def send(self, message: dict[str, Any]) -> bool:
        """
        Send a control message to the player's node.

        Returns:
            False if the node is not connected.

        Raises:
            NodeSendError: If the write fails on a connected node.
        """
        if not self.node.connected:
            logger.debug(
                "Player %s: node %s not connected, dropping %s",
                self.id,
                self.node.key,
                message.get("op"),
            )
            return False
        return await self.node.send(message)

    # =========================================================================
    # Playback Control Methods
    # =========================================================================

    async def play(
        self,
        track: str,
        *,
        start_time: int | None = None,
        end_time: int | None = None,
        volume: int | None = None,
        no_replace: bool | None = None,
        pause: bool | None = None,
    ) -> bool:
        """
        Start playing a track.

        Args:
            track: Base64 track payload.
            start_time: Start position in milliseconds.
            end_time: Stop position in milliseconds.
            volume: Volume to start at.
            no_replace: Keep the current track if one is playing.
            pause: Start paused.
        """
        message = build_play(
            self.id,
            track,
            start_time=start_time,
            end_time=end_time,
            volume=volume,
            no_replace=no_replace,
            pause=pause,
        )
        sent = await self.send(message)

        self.track = track
        self.playing = True
        self.timestamp = time.time()
        if volume is not None:
            self.state.volume = volume
        if pause is not None:
            self.paused = pause

        logger.info("Player %s: play (start=%s)", self.id, start_time)
        return sent

    async def stop(self) -> bool:
        """Stop playback and forget the current track."""
        sent = await self.send(build_stop(self.id))
        self.track = None
        self.playing = False
        self.timestamp = None
        logger.info("Player %s: stop", self.id)
        return sent

    async def pause(self, pause: bool = True) -> bool:
        """Pause (or with pause=False, resume) playback."""
        sent = await self.send(build_pause(self.id, pause))
        self.paused = pause
        return sent

    async def resume(self) -> bool:
        return await self.pause(False)

    async def volume(self, volume: int) -> bool:
        sent = await self.send(build_volume(self.id, volume))
        self.state.volume = volume
        return sent

    async def seek(self, position: int) -> bool:
        """Seek to a position in milliseconds."""
        return await self.send(build_seek(self.id, position))

    async def equalizer(self, bands: Iterable[EqualizerBand | Mapping[str, Any]]) -> bool:
        """
        Set equalizer bands.

        Args:
            bands: EqualizerBand instances or {"band", "gain"} mappings.
        """
        message = build_equalizer(self.id, bands)
        sent = await self.send(message)
        self.state.equalizer = message["bands"]
        return sent

    async def connect(self, voice_update_state: VoiceUpdateState) -> bool:
        """
        Hand the voice session to the node.

        Args:
            voice_update_state: Session id plus the voice server event.
        """
        self.voice_update_state = voice_update_state
        logger.info(
            "Player %s: voiceUpdate to node %s (endpoint %s)",
            self.id,
            self.node.key,
            voice_update_state.event.get("endpoint"),
        )
        return await self.send(
            build_voice_update(
                self.id,
                voice_update_state.session_id,
                voice_update_state.event,
            )
        )

    async def destroy(self) -> bool:
        """Destroy the session on the node. The registry entry is untouched."""
        logger.info("Player %s: destroy on node %s", self.id, self.node.key)
        return await self.send(build_destroy(self.id))

    # =========================================================================
    # Inbound
    # =========================================================================

    async def handle_message(self, payload: dict[str, Any]) -> None:
        """Dispatch a guild-scoped frame from the node by its op."""
        op = payload.get("op")
        if op == InboundOp.EVENT:
            await self._handle_event(payload)
        elif op == InboundOp.PLAYER_UPDATE:
            await self._handle_player_update(payload)
        else:
            logger.debug("Player %s: ignoring op %r", self.id, op)

    async def _handle_player_update(self, payload: dict[str, Any]) -> None:
        state = payload.get("state") or {}
        self.state.merge(state)
        await self.events.publish(PlayerUpdateEvent(guild_id=self.id, payload=payload))

    async def _handle_event(self, payload: dict[str, Any]) -> None:
        event_type = payload.get("type")

        if event_type == "TrackEndEvent":
            reason = str(payload.get("reason", ""))
            if reason.upper() == REPLACED:
                logger.debug("Player %s: track replaced", self.id)
                return
            track = self.track
            self.track = None
            self.playing = False
            self.timestamp = None
            await self.events.publish(
                PlayerEndEvent(guild_id=self.id, payload=payload, track=track, reason=reason)
            )

        elif event_type == "TrackStartEvent":
            await self.events.publish(
                PlayerStartEvent(guild_id=self.id, payload=payload, track=payload.get("track"))
            )

        elif event_type in ("TrackExceptionEvent", "WebSocketClosedEvent"):
            if not self.events.has_subscribers("player.error"):
                logger.debug("Player %s: unobserved %s", self.id, event_type)
                return
            error = payload.get("error") or payload.get("exception") or payload.get("reason") or ""
            if isinstance(error, dict):
                error = str(error.get("message", error))
            await self.events.publish(
                PlayerErrorEvent(guild_id=self.id, payload=payload, error=str(error))
            )

        elif event_type == "TrackStuckEvent":
            track = self.track
            await self.stop()
            await self.events.publish(
                PlayerEndEvent(
                    guild_id=self.id,
                    payload=payload,
                    track=track,
                    reason="STUCK",
                )
            )

        else:
            logger.warning("Player %s: unexpected event type %r", self.id, event_type)
            await self.events.publish(
                PlayerWarnEvent(
                    guild_id=self.id,
                    payload=payload,
                    message=f"Unexpected event type: {event_type}",
                )
            )
