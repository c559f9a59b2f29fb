"""
Event Bus for voicelink.

This module provides a simple pub/sub event system. Every Node, Player and
PlayerManager owns its own EventBus; the manager re-publishes the events of
its nodes so applications can subscribe in a single place.

Event types:
- node.ready: A node's WebSocket opened and resuming was configured
- node.disconnect: A node's WebSocket closed
- node.reconnecting: A node is about to reconnect
- node.error: Transport or protocol error on a node
- node.message: Raw inbound payload from a node
- player.start: A track started playing
- player.end: A track ended (finished, stopped, stuck or failed to load)
- player.error: Track exception or voice WebSocket closed
- player.warn: Unrecognized event type from the node
- player.update: Player state update from the node
- voice.timeout: A voice handshake did not complete in time

Usage:
    async def on_end(event: PlayerEndEvent) -> None:
        print(f"Track ended in {event.guild_id}: {event.reason}")

    await player.events.subscribe("player.end", on_end)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Coroutine

logger = logging.getLogger(__name__)

# Type alias for event handlers
EventHandler = Callable[["Event"], Coroutine[Any, Any, None]]


@dataclass
class Event:
    """Base class for all events."""

    event_type: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert event to dictionary for JSON serialization."""
        return {"type": self.event_type}


# -----------------------------------------------------------------------------
# Node events
# -----------------------------------------------------------------------------


@dataclass
class NodeEvent(Event):
    """Base class for events raised by a Node."""

    node_key: str = ""
    node: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.event_type, "node": self.node_key}


@dataclass
class NodeReadyEvent(NodeEvent):
    """Fired when a node's WebSocket opens."""

    event_type: str = field(default="node.ready", init=False)
    resume_key: str | None = None


@dataclass
class NodeDisconnectEvent(NodeEvent):
    """Fired when a node's WebSocket closes."""

    event_type: str = field(default="node.disconnect", init=False)
    code: int | None = None
    reason: str = ""
    will_reconnect: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "node": self.node_key,
            "code": self.code,
            "reason": self.reason,
            "will_reconnect": self.will_reconnect,
        }


@dataclass
class NodeReconnectingEvent(NodeEvent):
    """Fired right before a node attempts to reconnect."""

    event_type: str = field(default="node.reconnecting", init=False)


@dataclass
class NodeErrorEvent(NodeEvent):
    """Fired for transport errors and malformed inbound frames."""

    event_type: str = field(default="node.error", init=False)
    error: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "node": self.node_key,
            "error": repr(self.error),
        }


@dataclass
class NodeMessageEvent(NodeEvent):
    """Fired for every parsed inbound payload."""

    event_type: str = field(default="node.message", init=False)
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "node": self.node_key,
            "payload": self.payload,
        }


# -----------------------------------------------------------------------------
# Player events
# -----------------------------------------------------------------------------


@dataclass
class PlayerEvent(Event):
    """Base class for events raised by a Player."""

    guild_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "guild_id": self.guild_id,
            "payload": self.payload,
        }


@dataclass
class PlayerStartEvent(PlayerEvent):
    """Fired when the node starts playing a track."""

    event_type: str = field(default="player.start", init=False)
    track: str | None = None


@dataclass
class PlayerEndEvent(PlayerEvent):
    """Fired when a track ends for any reason other than being replaced."""

    event_type: str = field(default="player.end", init=False)
    track: str | None = None
    reason: str = ""


@dataclass
class PlayerErrorEvent(PlayerEvent):
    """Fired on TrackExceptionEvent and WebSocketClosedEvent."""

    event_type: str = field(default="player.error", init=False)
    error: str = ""


@dataclass
class PlayerWarnEvent(PlayerEvent):
    """Fired for event types this client does not know."""

    event_type: str = field(default="player.warn", init=False)
    message: str = ""


@dataclass
class PlayerUpdateEvent(PlayerEvent):
    """Fired after a playerUpdate has been merged into the cached state."""

    event_type: str = field(default="player.update", init=False)


# -----------------------------------------------------------------------------
# Manager events
# -----------------------------------------------------------------------------


@dataclass
class VoiceTimeoutEvent(Event):
    """Fired when a voice handshake expires before both halves arrived."""

    event_type: str = field(default="voice.timeout", init=False)
    guild_id: str = ""
    has_server: bool = False
    has_state: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.event_type,
            "guild_id": self.guild_id,
            "has_server": self.has_server,
            "has_state": self.has_state,
        }


class EventBus:
    """
    Simple async pub/sub event bus.

    Supports:
    - Multiple handlers per event type
    - Wildcard subscriptions (e.g., "player.*")
    - Async handlers
    - Error isolation (one handler failing doesn't affect others)
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[EventHandler]] = {}
        self._lock = asyncio.Lock()

    async def subscribe(self, event_type: str, handler: EventHandler) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Event type to subscribe to. Use "*" suffix for wildcards.
            handler: Async function to call when event is published.
        """
        async with self._lock:
            if event_type not in self._handlers:
                self._handlers[event_type] = []
            self._handlers[event_type].append(handler)
            logger.debug("Subscribed to %s: %s", event_type, handler)

    async def unsubscribe(self, event_type: str, handler: EventHandler) -> bool:
        """
        Unsubscribe a handler from an event type.

        Returns True if handler was found and removed.
        """
        async with self._lock:
            if event_type in self._handlers:
                try:
                    self._handlers[event_type].remove(handler)
                    logger.debug("Unsubscribed from %s: %s", event_type, handler)
                    return True
                except ValueError:
                    pass
            return False

    def _matching(self, event_type: str) -> list[EventHandler]:
        matching_handlers: list[EventHandler] = []

        # Exact match
        if event_type in self._handlers:
            matching_handlers.extend(self._handlers[event_type])

        # Wildcard matches (e.g., "player.*" matches "player.status")
        for pattern, handlers in self._handlers.items():
            if pattern.endswith(".*"):
                prefix = pattern[:-2]
                if event_type.startswith(prefix + "."):
                    matching_handlers.extend(handlers)
            elif pattern == "*":
                matching_handlers.extend(handlers)

        return matching_handlers

    def has_subscribers(self, event_type: str) -> bool:
        """Check whether publishing event_type would reach any handler."""
        return bool(self._matching(event_type))

    async def publish(self, event: Event) -> int:
        """
        Publish an event to all subscribed handlers.

        Args:
            event: The event to publish.

        Returns:
            Number of handlers that received the event.
        """
        event_type = event.event_type
        handlers_called = 0

        async with self._lock:
            matching_handlers = self._matching(event_type)

        # Call handlers outside of lock
        for handler in matching_handlers:
            try:
                await handler(event)
                handlers_called += 1
            except Exception as e:
                logger.exception("Error in event handler for %s: %s", event_type, e)

        if handlers_called > 0:
            logger.debug("Published %s to %d handlers", event_type, handlers_called)

        return handlers_called

    def publish_sync(self, event: Event) -> None:
        """
        Schedule event publication from synchronous code.

        Useful for timer callbacks that cannot await.
        """
        try:
            loop = asyncio.get_running_loop()
            loop.create_task(self.publish(event))
        except RuntimeError:
            logger.warning("Cannot publish event %s: no running event loop", event.event_type)

    async def clear(self) -> None:
        """Remove all subscriptions."""
        async with self._lock:
            self._handlers.clear()
            logger.debug("Cleared all event subscriptions")
