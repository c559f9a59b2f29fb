"""
Player Registry - Central repository for guild players.

The registry maps guild ids to their Player. It only knows how to add,
look up and remove players; routing and voice handling live in the
PlayerManager.
"""

import asyncio
import logging
from collections.abc import Callable, Iterator
from typing import TYPE_CHECKING

from voicelink.player.player import Player, PlayerOptions

if TYPE_CHECKING:
    from voicelink.protocol.node import Node

logger = logging.getLogger(__name__)

# Builds a Player (or subclass) for a node from plain options
PlayerFactory = Callable[["Node", PlayerOptions], Player]


class PlayerRegistry:
    """
    Registry of all players, keyed by guild id.

    Entries are added either as plain PlayerOptions, built with the
    registry's factory, or as ready-made Player instances, which lets an
    application use its own Player subclass.

    Thread-safety: Mutations are serialized with an asyncio lock; lookups
    are synchronous so the node listener can route frames without awaiting.
    """

    def __init__(self, factory: PlayerFactory = Player) -> None:
        """
        Initialize an empty player registry.

        Args:
            factory: Callable building a Player from a node and options.
        """
        self.factory = factory
        self._players: dict[str, Player] = {}
        self._lock = asyncio.Lock()

    async def add(
        self,
        entry: Player | PlayerOptions,
        node: "Node | None" = None,
        *,
        replace: bool = False,
    ) -> Player:
        """
        Add a player to the registry.

        If a player for the guild already exists it is returned unchanged,
        unless replace is set.

        Args:
            entry: A Player, or options to build one from.
            node: Node for a player built from options.
            replace: Replace an existing player for the same guild.

        Returns:
            The registered player.
        """
        guild_id = entry.id if isinstance(entry, Player) else str(entry.guild_id)
        if not guild_id:
            raise ValueError("Player entry has no guild id")

        async with self._lock:
            existing = self._players.get(guild_id)
            if existing is not None and not replace:
                return existing

            if isinstance(entry, Player):
                player = entry
            else:
                if node is None:
                    raise ValueError(f"A node is required to build the player for {guild_id}")
                player = self.factory(node, entry)

            self._players[guild_id] = player
            logger.info(
                "Player registered: %s (node %s)",
                guild_id,
                player.node.key,
            )
            return player

    async def remove(self, guild_id: str) -> Player | None:
        """
        Remove a player from the registry.

        Args:
            guild_id: The guild of the player to remove.

        Returns:
            The removed player, or None if not found.
        """
        async with self._lock:
            player = self._players.pop(guild_id, None)
            if player:
                logger.info("Player unregistered: %s", guild_id)
            return player

    def get(self, guild_id: str) -> Player | None:
        """Look up a player by guild id."""
        return self._players.get(guild_id)

    def on_node(self, node: "Node") -> list[Player]:
        """Get the players currently bound to a node."""
        return [player for player in self._players.values() if player.node is node]

    async def get_all(self) -> list[Player]:
        """
        Get a list of all players.

        Returns:
            A list of all registered players (copy, safe to iterate).
        """
        async with self._lock:
            return list(self._players.values())

    async def clear(self) -> list[Player]:
        """Remove every player and return them."""
        async with self._lock:
            players = list(self._players.values())
            self._players.clear()
        logger.info("All players unregistered (%d total)", len(players))
        return players

    def __len__(self) -> int:
        """Return the number of players."""
        return len(self._players)

    def __contains__(self, guild_id: object) -> bool:
        """Check if a player for the given guild is registered."""
        return guild_id in self._players

    def __iter__(self) -> Iterator[str]:
        """Iterate over registered guild ids."""
        return iter(self._players)

    def __bool__(self) -> bool:
        """A registry instance is always truthy, even when empty."""
        return True
