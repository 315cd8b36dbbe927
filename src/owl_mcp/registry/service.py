import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from datetime import datetime, timezone

from owl_mcp.probe.connection import DEFAULT_TIMEOUT_MS, ConnectionTester
from owl_mcp.registry.cache import RegistryCache
from owl_mcp.registry.curated import CURATED_SERVERS
from owl_mcp.registry.sources import CuratedDirectorySource, DirectorySource, HttpDirectorySource
from owl_mcp.security.assessment import ProbeSignals, assess_server, generate_warnings
from owl_mcp.settings import OwlMCPSettings, RiskPolicy
from owl_mcp.shared._httpx_utils import HttpClientFactory, client_factory_for
from owl_mcp.types import (
    BatchTestProgress,
    BatchTestResult,
    ConnectionTestResult,
    DirectoryCacheStatus,
    DirectoryResult,
    RemoteMCPCategory,
    RemoteMCPServer,
    RemoteServerFilters,
    ServerDetails,
    Transport,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[BatchTestProgress], Awaitable[None]]


def merge_directories(curated: Sequence[RemoteMCPServer], others: Iterable[RemoteMCPServer]) -> list[RemoteMCPServer]:
    """Curated servers first, in curated order, followed by every other server whose id is new."""
    merged = list(curated)
    seen = {server.id for server in merged}
    for server in others:
        if server.id not in seen:
            merged.append(server)
            seen.add(server.id)
    return merged


def _is_active(value: str | None) -> bool:
    return value is not None and value != "all"


def matches_filters(server: RemoteMCPServer, filters: RemoteServerFilters) -> bool:
    if filters.search:
        query = filters.search.lower()
        haystack = [server.name, server.description, server.provider, *server.tags]
        if not any(query in text.lower() for text in haystack):
            return False
    if _is_active(filters.category) and server.category != filters.category:
        return False
    if _is_active(filters.auth_type) and server.auth_type != filters.auth_type:
        return False
    if _is_active(filters.transport) and server.transport != filters.transport:
        return False
    if filters.verified_only and not server.verified:
        return False
    return True


class ServerRegistryService:
    """
    Owns the remote server directory.

    The directory is the curated list merged with whatever the live source
    returns. Reads are served from memory, then from the on-disk cache, and only
    go to the live source when nothing is cached or a refresh is forced. A
    failed refresh never raises: it degrades to the previous directory with
    ``source="cache"``.
    """

    def __init__(
        self,
        cache: RegistryCache,
        live_source: DirectorySource | None = None,
        connection_tester: ConnectionTester | None = None,
        curated_servers: Sequence[RemoteMCPServer] = CURATED_SERVERS,
        risk_policy: RiskPolicy | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        clock: Callable[[], datetime] | None = None,
    ):
        self._cache = cache
        self._curated = list(curated_servers)
        self._live_source = live_source or CuratedDirectorySource(self._curated)
        self._tester = connection_tester or ConnectionTester()
        self._risk_policy = risk_policy or RiskPolicy()
        self._default_timeout_ms = default_timeout_ms
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._directory: DirectoryResult | None = None

    @classmethod
    def from_settings(
        cls,
        settings: OwlMCPSettings | None = None,
        httpx_client_factory: HttpClientFactory | None = None,
    ) -> "ServerRegistryService":
        settings = settings or OwlMCPSettings()
        httpx_client_factory = httpx_client_factory or client_factory_for(settings.user_agent)
        live_source: DirectorySource | None = None
        if settings.directory_url:
            live_source = HttpDirectorySource(
                settings.directory_url,
                httpx_client_factory=httpx_client_factory,
                timeout=settings.discovery_timeout_seconds,
            )
        return cls(
            cache=RegistryCache(settings.cache_path, ttl_seconds=settings.cache_ttl_seconds),
            live_source=live_source,
            connection_tester=ConnectionTester(httpx_client_factory=httpx_client_factory),
            risk_policy=settings.risk_policy,
            default_timeout_ms=settings.connection_timeout_ms,
        )

    @property
    def cache(self) -> RegistryCache:
        return self._cache

    async def fetch_server_directory(self, force_refresh: bool = False) -> DirectoryResult:
        logger.debug(f"Fetching server directory, force_refresh={force_refresh}")

        if not force_refresh:
            if self._directory is not None:
                return self._directory.model_copy(update={"source": "cache"})

            cached = self._cache.load()
            if cached is not None:
                if self._cache.is_stale(cached, self._clock()):
                    logger.debug("Directory cache is stale, a refresh is recommended")
                self._directory = DirectoryResult(
                    servers=merge_directories(self._curated, cached.servers),
                    source="cache",
                    last_updated=cached.last_updated,
                )
                return self._directory

        return await self._refresh()

    async def _refresh(self) -> DirectoryResult:
        try:
            live_servers = await self._live_source.fetch_servers()
        except Exception as e:
            logger.warning(f"Live directory fetch failed, serving cached directory: {e}")
            return self._fallback()

        servers = merge_directories(self._curated, live_servers)
        now = self._clock()
        try:
            self._cache.save(servers, now)
        except OSError as e:
            logger.warning(f"Failed to write directory cache {self._cache.path}: {e}")

        self._directory = DirectoryResult(servers=servers, source="live", last_updated=now)
        logger.debug(f"Fetched fresh directory with {len(servers)} servers")
        return self._directory

    def _fallback(self) -> DirectoryResult:
        if self._directory is not None:
            return self._directory.model_copy(update={"source": "cache"})

        cached = self._cache.load()
        if cached is not None:
            servers = merge_directories(self._curated, cached.servers)
            last_updated = cached.last_updated
        else:
            servers = list(self._curated)
            last_updated = self._clock()

        self._directory = DirectoryResult(servers=servers, source="cache", last_updated=last_updated)
        return self._directory

    async def search_servers(self, filters: RemoteServerFilters | None = None) -> list[RemoteMCPServer]:
        filters = filters or RemoteServerFilters()
        directory = await self.fetch_server_directory()
        found = [server for server in directory.servers if matches_filters(server, filters)]
        logger.debug(f"Found {len(found)} servers matching filters")
        return found

    async def get_server(self, server_id: str) -> RemoteMCPServer | None:
        directory = await self.fetch_server_directory()
        return next((server for server in directory.servers if server.id == server_id), None)

    async def get_server_details(self, server_id: str, verify_connection: bool = False) -> ServerDetails | None:
        server = await self.get_server(server_id)
        if server is None:
            return None

        signals = None
        if verify_connection:
            result = await self.test_remote_connection(server.endpoint, server.transport)
            signals = ProbeSignals.from_connection_result(result)

        context = assess_server(server, signals, self._risk_policy)
        return ServerDetails(
            server=server,
            security_context=context,
            warnings=generate_warnings(server, context, self._risk_policy),
        )

    async def test_remote_connection(
        self,
        url: str,
        transport: Transport = "http",
        timeout_ms: int | None = None,
    ) -> ConnectionTestResult:
        if timeout_ms is None:
            timeout_ms = self._default_timeout_ms
        return await self._tester.test_connection(url, transport, timeout_ms)

    async def test_servers(
        self,
        server_ids: Sequence[str],
        on_progress: ProgressCallback | None = None,
    ) -> list[BatchTestResult]:
        """Probe servers one at a time, reporting progress before each probe starts."""
        directory = await self.fetch_server_directory()
        by_id = {server.id: server for server in directory.servers}

        results: list[BatchTestResult] = []
        total = len(server_ids)
        for index, server_id in enumerate(server_ids, start=1):
            if on_progress is not None:
                await on_progress(BatchTestProgress(server_id=server_id, index=index, total=total))

            server = by_id.get(server_id)
            if server is None:
                result = ConnectionTestResult(
                    success=False, error=f"Server not found: {server_id}", error_code="NOT_FOUND"
                )
            else:
                result = await self.test_remote_connection(server.endpoint, server.transport)
            results.append(BatchTestResult(server_id=server_id, result=result))
        return results

    async def get_cache_status(self) -> DirectoryCacheStatus:
        return self._cache.status(self._clock())

    async def get_categories(self) -> list[RemoteMCPCategory]:
        directory = await self.fetch_server_directory()
        return sorted({server.category for server in directory.servers})
