"""
Core building blocks shared by the node, player and manager layers.

- events: per-component async pub/sub bus and typed event dataclasses
- handshake: per-guild buffer pairing voice server and voice state updates

Consumers should usually import from the specific module they need
(e.g. `voicelink.core.events`).
"""

from __future__ import annotations

__all__: list[str] = []
