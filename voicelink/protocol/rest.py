"""
REST track resolution for voicelink.

Tracks are resolved through a node's HTTP endpoint:

    GET {rest_url}/loadtracks?identifier=<identifier>
    Authorization: <password>

Older nodes answer with a bare list of {"track", "info"} objects; newer
ones wrap the list in an object carrying "loadType", "playlistInfo" and
"tracks". Both shapes are accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import aiohttp

if TYPE_CHECKING:
    from voicelink.config import NodeConfig

logger = logging.getLogger(__name__)

LOAD_TRACKS_PATH = "/loadtracks"


class RestError(Exception):
    """The node's REST endpoint returned an error or an unusable body."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


@dataclass
class Track:
    """A resolved track: the opaque base64 payload plus its metadata."""

    track: str
    info: dict[str, Any] = field(default_factory=dict)

    @property
    def title(self) -> str:
        return str(self.info.get("title", ""))

    @property
    def author(self) -> str:
        return str(self.info.get("author", ""))

    @property
    def length(self) -> int:
        """Length in milliseconds (0 for streams)."""
        return int(self.info.get("length", 0))

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "Track":
        try:
            return cls(track=data["track"], info=dict(data.get("info") or {}))
        except (KeyError, TypeError) as e:
            raise RestError(f"Malformed track entry: {data!r}") from e


@dataclass
class LoadResult:
    """Result of a loadtracks request."""

    load_type: str = "UNKNOWN"
    tracks: list[Track] = field(default_factory=list)
    playlist_info: dict[str, Any] = field(default_factory=dict)
    exception: dict[str, Any] | None = None

    def __len__(self) -> int:
        return len(self.tracks)

    def __iter__(self):
        return iter(self.tracks)

    @classmethod
    def from_payload(cls, data: Any) -> "LoadResult":
        if isinstance(data, list):
            tracks = [Track.from_payload(entry) for entry in data]
            return cls(
                load_type="SEARCH_RESULT" if tracks else "NO_MATCHES",
                tracks=tracks,
            )

        if not isinstance(data, dict):
            raise RestError(f"Unexpected loadtracks response: {data!r}")

        return cls(
            load_type=str(data.get("loadType", "UNKNOWN")),
            tracks=[Track.from_payload(entry) for entry in data.get("tracks") or []],
            playlist_info=dict(data.get("playlistInfo") or {}),
            exception=data.get("exception"),
        )


async def load_tracks(
    session: aiohttp.ClientSession,
    config: "NodeConfig",
    identifier: str,
) -> LoadResult:
    """
    Resolve an identifier (URL or search query) into tracks.

    Args:
        session: HTTP session to issue the request with.
        config: Node whose REST endpoint is used.
        identifier: Anything the node accepts, e.g. "ytsearch: song name".

    Returns:
        The parsed LoadResult.

    Raises:
        RestError: On a non-200 status or an unparseable body.
        aiohttp.ClientError: On transport failure.
    """
    if not identifier:
        raise ValueError("Identifier must not be empty")

    url = f"{config.rest_url}{LOAD_TRACKS_PATH}"
    logger.debug("Loading tracks from %s: %r", config.key, identifier)

    async with session.get(
        url,
        params={"identifier": identifier},
        headers={"Authorization": config.password},
    ) as resp:
        if resp.status != 200:
            raise RestError(
                f"loadtracks on {config.key} failed with HTTP {resp.status}",
                status=resp.status,
            )
        try:
            data = await resp.json(content_type=None)
        except ValueError as e:
            raise RestError(f"loadtracks on {config.key} returned invalid JSON") from e

    result = LoadResult.from_payload(data)
    logger.debug(
        "Loaded %d track(s) from %s (%s)",
        len(result.tracks),
        config.key,
        result.load_type,
    )
    return result
