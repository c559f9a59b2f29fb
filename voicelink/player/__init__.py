"""
Player management for voicelink.

This package handles per-guild playback sessions and the registry that
maps guild ids to them.
"""

from voicelink.player.player import Player, PlayerOptions, PlayerState
from voicelink.player.registry import PlayerRegistry

__all__ = [
    "Player",
    "PlayerOptions",
    "PlayerRegistry",
    "PlayerState",
]
