import logging
from collections.abc import Sequence
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from owl_mcp.registry.curated import CURATED_SERVERS
from owl_mcp.shared._httpx_utils import HttpClientFactory, create_http_client
from owl_mcp.types import RemoteMCPServer

logger = logging.getLogger(__name__)


class DirectorySourceError(Exception):
    """Raised when a live directory cannot be fetched or parsed."""


class DirectorySource(Protocol):
    """Something that can produce the live server directory."""

    async def fetch_servers(self) -> list[RemoteMCPServer]:
        """Return the current server list, raising DirectorySourceError on failure."""
        ...


class CuratedDirectorySource:
    """Serves the built-in curated list; used when no remote directory is configured."""

    def __init__(self, servers: Sequence[RemoteMCPServer] = CURATED_SERVERS):
        self._servers = list(servers)

    async def fetch_servers(self) -> list[RemoteMCPServer]:
        return list(self._servers)


class HttpDirectorySource:
    """
    Fetches a JSON server listing over HTTP.

    The document may be a bare list of server objects or an object with a
    ``servers`` list. Entries that fail validation are skipped with a warning so
    one bad entry does not hide the rest of the directory.
    """

    def __init__(
        self,
        url: str,
        httpx_client_factory: HttpClientFactory = create_http_client,
        timeout: float = 10.0,
    ):
        self.url = url
        self._httpx_client_factory = httpx_client_factory
        self._timeout = timeout

    async def fetch_servers(self) -> list[RemoteMCPServer]:
        try:
            async with self._httpx_client_factory(
                headers={"Accept": "application/json"}, timeout=httpx.Timeout(self._timeout)
            ) as client:
                response = await client.get(self.url)
                response.raise_for_status()
                document = response.json()
        except httpx.HTTPError as e:
            raise DirectorySourceError(f"Failed to fetch server directory from {self.url}: {e}") from e
        except ValueError as e:
            raise DirectorySourceError(f"Server directory at {self.url} is not valid JSON") from e

        return self._parse(document)

    def _parse(self, document: Any) -> list[RemoteMCPServer]:
        if isinstance(document, dict):
            document = document.get("servers")
        if not isinstance(document, list):
            raise DirectorySourceError(f"Server directory at {self.url} does not contain a server list")

        servers: list[RemoteMCPServer] = []
        for index, entry in enumerate(document):
            try:
                servers.append(RemoteMCPServer.model_validate(entry))
            except ValidationError as e:
                logger.warning(f"Skipping invalid directory entry #{index} from {self.url}: {e.error_count()} errors")
        logger.debug(f"Fetched {len(servers)} servers from {self.url}")
        return servers
