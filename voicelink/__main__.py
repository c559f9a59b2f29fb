"""
voicelink - Diagnostic entry point

Run with: python -m voicelink probe --host localhost
     or: python -m voicelink search "ytsearch: some song"
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from voicelink import __version__
from voicelink.config import ConfigError, ManagerConfig, NodeConfig, load_manager_config
from voicelink.core.events import Event, NodeErrorEvent, NodeMessageEvent
from voicelink.manager import PlayerManager
from voicelink.protocol.rest import RestError

# Probe user id; nodes only use it to scope sessions
PROBE_USER_ID = "0"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO

    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    # Reduce noise from third-party libraries
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        prog="voicelink",
        description="voicelink - check playback nodes and resolve tracks",
    )

    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="TOML file with [manager] and [[nodes]] tables",
    )
    parser.add_argument("--host", type=str, default="localhost", help="Node host (default: localhost)")
    parser.add_argument("-p", "--port", type=int, default=2333, help="Node port (default: 2333)")
    parser.add_argument(
        "--password",
        type=str,
        default="youshallnotpass",
        help="Node password",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=10.0,
        help="Seconds to wait for the node (default: 10)",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("probe", help="Connect to every node and print its first stats frame")
    search = commands.add_parser("search", help="Resolve an identifier on the first node")
    search.add_argument("identifier", help='URL or search query, e.g. "ytsearch: song"')

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ManagerConfig:
    """Build the manager config from --config or the single-node options."""
    if args.config is not None:
        return load_manager_config(args.config)
    return ManagerConfig(nodes=[NodeConfig(host=args.host, port=args.port, password=args.password)])


async def _no_gateway(packet: dict) -> None:
    return None


async def probe(config: ManagerConfig, timeout: float) -> int:
    """Connect to every node and wait for a stats frame from each."""
    logger = logging.getLogger(__name__)
    pending = {node.key for node in config.nodes}
    done = asyncio.Event()

    async def on_message(event: Event) -> None:
        if not isinstance(event, NodeMessageEvent):
            return
        if event.payload.get("op") == "stats" and event.node_key in pending:
            stats = event.node.stats
            logger.info(
                "Node %s: %d player(s), %d playing, load %.1f%%",
                event.node_key,
                stats.players,
                stats.playing_players,
                stats.load,
            )
            pending.discard(event.node_key)
            if not pending:
                done.set()

    async def on_error(event: Event) -> None:
        if not isinstance(event, NodeErrorEvent):
            return
        logger.error("Node %s: %s", event.node_key, event.error)

    async with PlayerManager(_no_gateway, user_id=PROBE_USER_ID, config=config) as manager:
        await manager.events.subscribe("node.message", on_message)
        await manager.events.subscribe("node.error", on_error)
        try:
            await asyncio.wait_for(done.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error("No stats from: %s", ", ".join(sorted(pending)))
            return 1
    return 0


async def search(config: ManagerConfig, identifier: str) -> int:
    """Resolve an identifier and print the tracks found."""
    if not config.nodes:
        raise ConfigError("No nodes configured")

    manager = PlayerManager(_no_gateway, user_id=PROBE_USER_ID, config=config)
    try:
        node = await manager.create_node(config.nodes[0], connect=False)
        result = await node.load_tracks(identifier)
    finally:
        await manager.close()

    print(f"{result.load_type}: {len(result)} track(s)")
    for track in result:
        print(f"  {track.title} - {track.author} ({track.length // 1000}s)")
    return 0 if result.tracks else 1


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the application."""
    args = parse_args(argv)
    setup_logging(verbose=args.verbose)

    logger = logging.getLogger(__name__)

    try:
        config = build_config(args)
        if args.command == "probe":
            return asyncio.run(probe(config, args.timeout))
        return asyncio.run(search(config, args.identifier))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    except (ConfigError, RestError) as e:
        logger.error("%s", e)
        return 1
    except Exception as e:
        logger.exception("Fatal error: %s", e)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
