"""
Tests for the command line entry point.
"""

import asyncio
from pathlib import Path

import pytest

from voicelink.__main__ import build_config, main, parse_args, probe
from voicelink.config import ManagerConfig, NodeConfig
from tests.conftest import FakeSession, settle

STATS_FRAME = {
    "op": "stats",
    "players": 2,
    "playingPlayers": 1,
    "uptime": 1000,
    "cpu": {"cores": 2, "systemLoad": 0.5, "lavalinkLoad": 0.1},
}


class TestParseArgs:
    """Tests for argument parsing."""

    def test_probe_defaults(self) -> None:
        args = parse_args(["probe"])
        assert args.command == "probe"
        assert args.host == "localhost"
        assert args.port == 2333
        assert args.timeout == 10.0
        assert args.config is None

    def test_search(self) -> None:
        args = parse_args(["-v", "--host", "lava", "-p", "2444", "search", "ytsearch: song"])
        assert args.verbose is True
        assert args.command == "search"
        assert args.identifier == "ytsearch: song"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            parse_args([])


class TestBuildConfig:
    """Tests for build_config()."""

    def test_single_node_from_options(self) -> None:
        config = build_config(parse_args(["--host", "lava", "--password", "pw", "probe"]))
        assert len(config.nodes) == 1
        assert config.nodes[0].host == "lava"
        assert config.nodes[0].password == "pw"

    def test_config_file(self, tmp_path: Path) -> None:
        path = tmp_path / "nodes.toml"
        path.write_text('[[nodes]]\nhost = "a"\n\n[[nodes]]\nhost = "b"\n')

        config = build_config(parse_args(["-c", str(path), "probe"]))
        assert [node.key for node in config.nodes] == ["a", "b"]


class TestProbe:
    """Tests for the probe command."""

    @pytest.fixture
    def sessions(self, monkeypatch: pytest.MonkeyPatch) -> list[FakeSession]:
        """Replace the HTTP session the manager creates with fakes."""
        created: list[FakeSession] = []

        def make_session() -> FakeSession:
            session = FakeSession()
            created.append(session)
            return session

        monkeypatch.setattr("voicelink.manager.aiohttp.ClientSession", make_session)
        return created

    @pytest.mark.asyncio
    async def test_probe_waits_for_stats(self, sessions: list[FakeSession]) -> None:
        config = ManagerConfig(nodes=[NodeConfig(host="lava")])
        task = asyncio.create_task(probe(config, timeout=1.0))
        await settle()

        ws = sessions[0].sockets[0]
        ws.feed({"op": "playerUpdate", "guildId": "G1", "state": {}})
        ws.feed(STATS_FRAME)

        assert await task == 0
        assert sessions[0].closed

    @pytest.mark.asyncio
    async def test_probe_times_out(self, sessions: list[FakeSession]) -> None:
        config = ManagerConfig(nodes=[NodeConfig(host="lava")])
        assert await probe(config, timeout=0.05) == 1


def test_main_reports_config_errors(tmp_path: Path) -> None:
    path = tmp_path / "nodes.toml"
    path.write_text('[[nodes]]\nhost = ""\n')

    assert main(["-c", str(path), "probe"]) == 1
