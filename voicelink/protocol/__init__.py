"""
Playback node protocol for voicelink.

This package contains the node-facing side of the library:
- commands: builders for outbound JSON control messages
- node: the WebSocket control connection with reconnect and resuming
- rest: the REST track-resolution client
"""

from voicelink.protocol.node import Node, NodeStats

__all__ = ["Node", "NodeStats"]
