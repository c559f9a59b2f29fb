"""
Voice handshake buffer for voicelink.

Before a player can connect, the playback node needs two pieces of
information that the chat platform delivers independently and in no
particular order:

- VOICE_SERVER_UPDATE: token, guild_id and endpoint of the voice server
- VOICE_STATE_UPDATE: the session id of the bot's voice connection

The VoiceHandshake buffers whichever half arrives first, per guild, until
the pair is complete. A completed pair is taken out of the buffer in one
step so it can never be replayed into a later connect. Every pending entry
expires after a timeout so an abandoned join does not leak.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger(__name__)


class VoiceConnectionTimeout(asyncio.TimeoutError):
    """The voice handshake for a guild did not complete in time."""

    def __init__(self, guild_id: str, timeout: float) -> None:
        super().__init__(f"Voice connection for guild {guild_id} timed out after {timeout:g}s")
        self.guild_id = guild_id
        self.timeout = timeout


@dataclass
class VoiceUpdateState:
    """The voice session/server pair sent to a node in a voiceUpdate op."""

    session_id: str
    event: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return {"sessionId": self.session_id, "event": dict(self.event)}


@dataclass
class PendingVoice:
    """Buffered handshake halves for one guild."""

    guild_id: str
    server: dict[str, Any] | None = None
    state: dict[str, Any] | None = None
    created_at: float = field(default_factory=time.monotonic)
    timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    waiters: list[asyncio.Future[VoiceUpdateState]] = field(default_factory=list, repr=False)

    def resolve(self, result: VoiceUpdateState) -> None:
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_result(result)
        self.waiters.clear()

    def reject(self, error: BaseException) -> None:
        for waiter in self.waiters:
            if not waiter.done():
                waiter.set_exception(error)
        self.waiters.clear()

    def cancel(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None
        for waiter in self.waiters:
            waiter.cancel()
        self.waiters.clear()


def _consume_exception(future: asyncio.Future[Any]) -> None:
    # Waiters are optional; nobody may ever await a rejected one.
    if not future.cancelled():
        future.exception()


class VoiceHandshake:
    """
    Per-guild buffer pairing voice server and voice state updates.

    All methods must be called from the event loop thread.
    """

    def __init__(
        self,
        timeout: float,
        on_timeout: Callable[[PendingVoice], None] | None = None,
    ) -> None:
        """
        Initialize the handshake buffer.

        Args:
            timeout: Seconds before a pending entry expires.
            on_timeout: Called with the expired entry after it was removed.
        """
        self.timeout = timeout
        self._on_timeout = on_timeout
        self._pending: dict[str, PendingVoice] = {}

    def _entry(self, guild_id: str) -> PendingVoice:
        entry = self._pending.get(guild_id)
        if entry is None:
            entry = PendingVoice(guild_id=guild_id)
            loop = asyncio.get_running_loop()
            entry.timer = loop.call_later(self.timeout, self._expire, guild_id)
            self._pending[guild_id] = entry
        return entry

    def set_server(self, guild_id: str, data: dict[str, Any]) -> PendingVoice:
        """Buffer the latest voice server update for a guild."""
        entry = self._entry(guild_id)
        entry.server = data
        return entry

    def set_state(self, guild_id: str, data: dict[str, Any]) -> PendingVoice:
        """Buffer the latest voice state update for a guild."""
        entry = self._entry(guild_id)
        entry.state = data
        return entry

    def get(self, guild_id: str) -> PendingVoice | None:
        return self._pending.get(guild_id)

    def take(
        self,
        guild_id: str,
        fallback_session_id: str | None = None,
    ) -> tuple[PendingVoice, VoiceUpdateState] | None:
        """
        Remove and return a completed pair for a guild.

        A pair is complete once a server update is buffered and a session id
        is known, either from a buffered state update or from the fallback
        (the session id of the player's previous connection).

        Args:
            guild_id: The guild to pair.
            fallback_session_id: Session id to use when no state is buffered.

        Returns:
            The removed entry and the voice update to send, or None if the
            pair is not complete yet (the entry stays buffered).
        """
        entry = self._pending.get(guild_id)
        if entry is None or entry.server is None:
            return None

        session_id = entry.state.get("session_id") if entry.state else None
        session_id = session_id or fallback_session_id
        if not session_id:
            return None

        del self._pending[guild_id]
        if entry.timer is not None:
            entry.timer.cancel()
            entry.timer = None

        return entry, VoiceUpdateState(session_id=session_id, event=dict(entry.server))

    def wait(self, guild_id: str) -> asyncio.Future[VoiceUpdateState]:
        """
        Get a future resolved when the guild's handshake completes.

        The future is rejected with VoiceConnectionTimeout if the pending
        entry expires first.
        """
        entry = self._entry(guild_id)
        future: asyncio.Future[VoiceUpdateState] = asyncio.get_running_loop().create_future()
        future.add_done_callback(_consume_exception)
        entry.waiters.append(future)
        return future

    def discard(self, guild_id: str) -> bool:
        """
        Drop any buffered halves for a guild and cancel its waiters.

        Returns:
            True if an entry existed.
        """
        entry = self._pending.pop(guild_id, None)
        if entry is None:
            return False
        entry.cancel()
        logger.debug("Discarded pending voice handshake for guild %s", guild_id)
        return True

    def clear(self) -> None:
        """Drop every pending entry."""
        for guild_id in list(self._pending):
            self.discard(guild_id)

    def _expire(self, guild_id: str) -> None:
        entry = self._pending.pop(guild_id, None)
        if entry is None:
            return

        entry.timer = None
        logger.warning(
            "Voice handshake for guild %s timed out (server=%s, state=%s)",
            guild_id,
            entry.server is not None,
            entry.state is not None,
        )
        entry.reject(VoiceConnectionTimeout(guild_id, self.timeout))

        if self._on_timeout is not None:
            self._on_timeout(entry)

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, guild_id: object) -> bool:
        return guild_id in self._pending
