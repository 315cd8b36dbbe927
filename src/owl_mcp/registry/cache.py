import logging
import os
import tempfile
from collections.abc import Sequence
from datetime import datetime, timedelta, timezone
from pathlib import Path

from pydantic import ValidationError

from owl_mcp.types import DirectoryCache, DirectoryCacheStatus, DirectorySourceKind, RemoteMCPServer

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class RegistryCache:
    """
    JSON file holding the last known server directory.

    A missing or unreadable file is treated as an empty cache. Staleness is only
    advisory: stale entries are still served until a refresh replaces them.
    """

    def __init__(self, path: Path, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.path = Path(path)
        self.ttl = timedelta(seconds=ttl_seconds)

    def load(self) -> DirectoryCache | None:
        try:
            content = self.path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.debug(f"Could not read directory cache {self.path}: {e}")
            return None

        try:
            cache = DirectoryCache.model_validate_json(content)
        except ValidationError as e:
            logger.debug(f"Ignoring corrupt directory cache {self.path}: {e.error_count()} validation errors")
            return None

        if cache.last_updated.tzinfo is None:
            cache.last_updated = cache.last_updated.replace(tzinfo=timezone.utc)
        return cache

    def save(
        self,
        servers: Sequence[RemoteMCPServer],
        timestamp: datetime,
        source: DirectorySourceKind = "live",
    ) -> DirectoryCache:
        """
        Replace the cache file with the given directory.

        The file is written to a temporary sibling first and renamed into place,
        so readers never observe a partially written cache.

        Raises:
            OSError: If the cache directory or file cannot be written
        """
        cache = DirectoryCache(servers=list(servers), source=source, last_updated=timestamp)
        self.path.parent.mkdir(parents=True, exist_ok=True)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(cache.model_dump_json(by_alias=True, exclude_none=True, indent=2))
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

        logger.debug(f"Cached {len(cache.servers)} servers to {self.path}")
        return cache

    def is_stale(self, cache: DirectoryCache, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now - cache.last_updated >= self.ttl

    def status(self, now: datetime | None = None) -> DirectoryCacheStatus:
        cache = self.load()
        if cache is None:
            return DirectoryCacheStatus(is_cached=False, is_stale=True, server_count=0)
        return DirectoryCacheStatus(
            is_cached=True,
            is_stale=self.is_stale(cache, now),
            server_count=len(cache.servers),
            last_updated=cache.last_updated,
        )
