"""
Node control commands for Client → Node communication.

This module builds the JSON control messages sent over a node's WebSocket,
plus the voice-channel packets sent to the chat platform's gateway. Every
player-scoped op carries the guild id as "guildId"; configureResuming is
node-scoped and does not.

All builders return plain dicts; serialization happens in Node.send().
"""

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

# Gateway opcode for voice state changes (join/move/leave)
GATEWAY_VOICE_STATE_OP = 4

EQUALIZER_BANDS = 15
EQUALIZER_MIN_GAIN = -0.25
EQUALIZER_MAX_GAIN = 1.0

VOLUME_MIN = 0
VOLUME_MAX = 1000


class NodeOp(str, Enum):
    """Outbound op codes."""

    PLAY = "play"
    STOP = "stop"
    PAUSE = "pause"
    VOLUME = "volume"
    SEEK = "seek"
    EQUALIZER = "equalizer"
    DESTROY = "destroy"
    VOICE_UPDATE = "voiceUpdate"
    CONFIGURE_RESUMING = "configureResuming"


class InboundOp(str, Enum):
    """Inbound op codes."""

    STATS = "stats"
    PLAYER_UPDATE = "playerUpdate"
    EVENT = "event"


@dataclass
class EqualizerBand:
    """Gain adjustment for one of the node's equalizer bands."""

    band: int
    gain: float = 0.0

    def __post_init__(self) -> None:
        if not 0 <= self.band < EQUALIZER_BANDS:
            raise ValueError(f"Equalizer band must be 0-{EQUALIZER_BANDS - 1}, got {self.band}")
        if not EQUALIZER_MIN_GAIN <= self.gain <= EQUALIZER_MAX_GAIN:
            raise ValueError(
                f"Equalizer gain must be {EQUALIZER_MIN_GAIN}-{EQUALIZER_MAX_GAIN}, got {self.gain}"
            )

    @classmethod
    def coerce(cls, value: "EqualizerBand | Mapping[str, Any]") -> "EqualizerBand":
        if isinstance(value, EqualizerBand):
            return value
        return cls(band=int(value["band"]), gain=float(value.get("gain", 0.0)))

    def to_dict(self) -> dict[str, Any]:
        return {"band": self.band, "gain": self.gain}


def _player_op(op: NodeOp, guild_id: str, **fields: Any) -> dict[str, Any]:
    return {"op": op.value, "guildId": guild_id, **fields}


def build_play(
    guild_id: str,
    track: str,
    *,
    start_time: int | None = None,
    end_time: int | None = None,
    volume: int | None = None,
    no_replace: bool | None = None,
    pause: bool | None = None,
) -> dict[str, Any]:
    """
    Build a play command.

    Args:
        guild_id: Guild of the player.
        track: Base64 track payload from the REST endpoint.
        start_time: Start position in milliseconds.
        end_time: Stop position in milliseconds.
        volume: Initial volume.
        no_replace: Ignore the command if a track is already playing.
        pause: Start paused.
    """
    if not track:
        raise ValueError("Track must not be empty")
    if start_time is not None and start_time < 0:
        raise ValueError(f"start_time must not be negative, got {start_time}")
    if end_time is not None and end_time < 0:
        raise ValueError(f"end_time must not be negative, got {end_time}")

    options = {
        "startTime": start_time,
        "endTime": end_time,
        "volume": volume,
        "noReplace": no_replace,
        "pause": pause,
    }
    if volume is not None:
        _check_volume(volume)

    return _player_op(
        NodeOp.PLAY,
        guild_id,
        track=track,
        **{key: value for key, value in options.items() if value is not None},
    )


def build_stop(guild_id: str) -> dict[str, Any]:
    return _player_op(NodeOp.STOP, guild_id)


def build_pause(guild_id: str, pause: bool = True) -> dict[str, Any]:
    return _player_op(NodeOp.PAUSE, guild_id, pause=bool(pause))


def _check_volume(volume: int) -> None:
    if not VOLUME_MIN <= volume <= VOLUME_MAX:
        raise ValueError(f"Volume must be {VOLUME_MIN}-{VOLUME_MAX}, got {volume}")


def build_volume(guild_id: str, volume: int) -> dict[str, Any]:
    _check_volume(volume)
    return _player_op(NodeOp.VOLUME, guild_id, volume=volume)


def build_seek(guild_id: str, position: int) -> dict[str, Any]:
    """Build a seek command. Position is in milliseconds."""
    if position < 0:
        raise ValueError(f"Seek position must not be negative, got {position}")
    return _player_op(NodeOp.SEEK, guild_id, position=position)


def build_equalizer(
    guild_id: str,
    bands: Iterable["EqualizerBand | Mapping[str, Any]"],
) -> dict[str, Any]:
    """
    Build an equalizer command.

    Args:
        guild_id: Guild of the player.
        bands: EqualizerBand instances or {"band", "gain"} mappings.

    Raises:
        ValueError: If a band index or gain is out of range.
    """
    return _player_op(
        NodeOp.EQUALIZER,
        guild_id,
        bands=[EqualizerBand.coerce(band).to_dict() for band in bands],
    )


def build_destroy(guild_id: str) -> dict[str, Any]:
    return _player_op(NodeOp.DESTROY, guild_id)


def build_voice_update(guild_id: str, session_id: str, event: Mapping[str, Any]) -> dict[str, Any]:
    """Build a voiceUpdate command from a session id and a voice server event."""
    return _player_op(NodeOp.VOICE_UPDATE, guild_id, sessionId=session_id, event=dict(event))


def build_configure_resuming(key: str, timeout: int) -> dict[str, Any]:
    """Build the node-scoped configureResuming command. Timeout is in seconds."""
    return {"op": NodeOp.CONFIGURE_RESUMING.value, "key": key, "timeout": timeout}


def build_voice_state_packet(
    guild_id: str,
    channel_id: str | None,
    *,
    self_mute: bool = False,
    self_deaf: bool = False,
) -> dict[str, Any]:
    """
    Build the gateway packet that joins, moves or leaves a voice channel.

    A channel_id of None leaves the guild's voice channel.
    """
    return {
        "op": GATEWAY_VOICE_STATE_OP,
        "d": {
            "guild_id": guild_id,
            "channel_id": channel_id,
            "self_mute": self_mute,
            "self_deaf": self_deaf,
        },
    }
