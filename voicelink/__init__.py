"""
voicelink - An asyncio client for remote audio-playback nodes.

voicelink keeps persistent WebSocket control connections to one or more
playback nodes, routes per-guild playback commands to the node that owns
each guild's player, and pairs the chat platform's voice-server and
voice-state updates before telling a player to connect.
"""

__version__ = "0.1.0"
__author__ = "voicelink Contributors"
__license__ = "MIT"

from voicelink.config import ManagerConfig, NodeConfig, RegionTable
from voicelink.manager import PlayerManager
from voicelink.player.player import Player
from voicelink.protocol.node import Node

__all__ = [
    "ManagerConfig",
    "Node",
    "NodeConfig",
    "Player",
    "PlayerManager",
    "RegionTable",
    "__version__",
]
