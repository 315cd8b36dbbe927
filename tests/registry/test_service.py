from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from owl_mcp.probe.connection import TLS_STEP, ConnectionTester
from owl_mcp.registry.cache import RegistryCache
from owl_mcp.registry.curated import CURATED_SERVERS
from owl_mcp.registry.service import ServerRegistryService, matches_filters, merge_directories
from owl_mcp.registry.sources import DirectorySourceError
from owl_mcp.security.assessment import INVALID_TLS
from owl_mcp.types import ConnectionTestResult, ConnectionTestStep, RemoteMCPServer, RemoteServerFilters

pytestmark = pytest.mark.anyio

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


class FakeSource:
    def __init__(self, servers: list[RemoteMCPServer] | None = None):
        self.servers = servers or []
        self.fail = False
        self.calls = 0

    async def fetch_servers(self) -> list[RemoteMCPServer]:
        self.calls += 1
        if self.fail:
            raise DirectorySourceError("directory unavailable")
        return list(self.servers)


@pytest.fixture
def community_server(make_server):
    return make_server(
        id="acme-db",
        name="Acme DB",
        description="Query Acme databases",
        auth_type="api-key",
        provider="Acme",
        verified=False,
        category="databases",
        source="community",
        tags=["ledger"],
    )


@pytest.fixture
def source(community_server):
    return FakeSource([community_server])


@pytest.fixture
def cache(tmp_path):
    return RegistryCache(tmp_path / "remote-mcp-servers.json")


@pytest.fixture
def tester():
    tester = AsyncMock(spec=ConnectionTester)
    tester.test_connection.return_value = ConnectionTestResult(success=True, latency_ms=42, http_status=200)
    return tester


@pytest.fixture
def service(cache, source, tester):
    return ServerRegistryService(cache, live_source=source, connection_tester=tester, clock=lambda: NOW)


def test_merge_keeps_curated_first_and_wins_on_conflict(make_server):
    impostor = make_server(id="github", name="Not GitHub", verified=False)
    extra = make_server(id="extra")

    merged = merge_directories(CURATED_SERVERS, [impostor, extra, extra])

    assert [s.id for s in merged] == [s.id for s in CURATED_SERVERS] + ["extra"]
    assert merged[0].name == "GitHub MCP"


def test_all_filter_values_match_everything(make_server):
    server = make_server()
    filters = RemoteServerFilters(category="all", auth_type="all", transport="all")

    assert matches_filters(server, filters)


async def test_first_fetch_goes_live_and_writes_cache(service, cache, source):
    directory = await service.fetch_server_directory()

    assert directory.source == "live"
    assert directory.last_updated == NOW
    assert [s.id for s in directory.servers][: len(CURATED_SERVERS)] == [s.id for s in CURATED_SERVERS]
    assert directory.servers[-1].id == "acme-db"
    assert source.calls == 1
    assert cache.load().servers == directory.servers


async def test_repeated_fetches_are_served_from_memory(service, source):
    first = await service.fetch_server_directory()
    second = await service.fetch_server_directory()

    assert second.source == "cache"
    assert second.servers == first.servers
    assert source.calls == 1


async def test_new_service_reads_disk_cache(service, cache, source, tester):
    await service.fetch_server_directory()

    restarted = ServerRegistryService(cache, live_source=source, connection_tester=tester, clock=lambda: NOW)
    directory = await restarted.fetch_server_directory()

    assert directory.source == "cache"
    assert "acme-db" in {s.id for s in directory.servers}
    assert source.calls == 1


async def test_stale_cache_is_still_served(cache, source, tester):
    cache.save([*CURATED_SERVERS], NOW - timedelta(days=3))
    service = ServerRegistryService(cache, live_source=source, connection_tester=tester, clock=lambda: NOW)

    directory = await service.fetch_server_directory()

    assert directory.source == "cache"
    assert directory.last_updated == NOW - timedelta(days=3)
    assert source.calls == 0


async def test_failed_forced_refresh_returns_cached_directory(service, source):
    live = await service.fetch_server_directory()
    source.fail = True

    refreshed = await service.fetch_server_directory(force_refresh=True)

    assert refreshed.source == "cache"
    assert refreshed.servers == live.servers
    assert refreshed.last_updated == live.last_updated


async def test_failed_refresh_without_cache_falls_back_to_curated(service, source):
    source.fail = True

    directory = await service.fetch_server_directory()

    assert directory.source == "cache"
    assert [s.id for s in directory.servers] == [s.id for s in CURATED_SERVERS]


async def test_undecodable_cache_file_goes_live(service, cache, source):
    cache.path.write_bytes(b"\xff\xfe\x00garbage")

    directory = await service.fetch_server_directory()

    assert directory.source == "live"
    assert source.calls == 1
    assert cache.load() is not None


async def test_undecodable_cache_file_with_failing_source_serves_curated(service, cache, source):
    cache.path.write_bytes(b"\xff\xfe\x00garbage")
    source.fail = True

    directory = await service.fetch_server_directory(force_refresh=True)

    assert directory.source == "cache"
    assert [s.id for s in directory.servers] == [s.id for s in CURATED_SERVERS]


async def test_unwritable_cache_does_not_fail_refresh(tmp_path, source, tester):
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    service = ServerRegistryService(
        RegistryCache(blocker / "cache.json"), live_source=source, connection_tester=tester, clock=lambda: NOW
    )

    directory = await service.fetch_server_directory(force_refresh=True)

    assert directory.source == "live"


async def test_search_finds_github(service):
    found = await service.search_servers(RemoteServerFilters(search="GitHub"))

    assert "github" in [s.id for s in found]


async def test_search_matches_tags_and_provider(service):
    assert [s.id for s in await service.search_servers(RemoteServerFilters(search="LEDGER"))] == ["acme-db"]
    assert [s.id for s in await service.search_servers(RemoteServerFilters(search="acme"))] == ["acme-db"]


async def test_search_filters_combine_with_and(service):
    directory = await service.fetch_server_directory()
    filters = RemoteServerFilters(category="utilities", auth_type="open", verified_only=True)

    found = await service.search_servers(filters)

    assert found
    assert set(s.id for s in found) <= set(s.id for s in directory.servers)
    for server in found:
        assert server.category == "utilities"
        assert server.auth_type == "open"
        assert server.verified


async def test_search_without_filters_returns_everything(service):
    directory = await service.fetch_server_directory()

    assert await service.search_servers() == directory.servers


async def test_get_server_details_for_unknown_id(service):
    assert await service.get_server_details("does-not-exist") is None


async def test_get_server_details_without_probe(service, tester):
    details = await service.get_server_details("github")

    assert details.server.id == "github"
    assert details.security_context.risk_level == "low"
    assert details.warnings == []
    tester.test_connection.assert_not_awaited()


async def test_get_server_details_uses_probe_signals(service, tester):
    tester.test_connection.return_value = ConnectionTestResult(
        success=True,
        steps=[ConnectionTestStep(name=TLS_STEP, status="warning", details="Certificate expired on 2024-01-01")],
    )

    details = await service.get_server_details("notion", verify_connection=True)

    tester.test_connection.assert_awaited_once_with("https://mcp.notion.com/mcp", "http", 10_000)
    assert not details.security_context.has_valid_tls
    assert INVALID_TLS in details.security_context.risk_factors
    assert details.security_context.risk_level == "high"


async def test_test_remote_connection_uses_default_timeout(cache, source, tester):
    service = ServerRegistryService(cache, live_source=source, connection_tester=tester, default_timeout_ms=2500)

    await service.test_remote_connection("https://mcp.example.com/mcp")
    await service.test_remote_connection("https://mcp.example.com/sse", "sse", timeout_ms=500)

    assert [c.args for c in tester.test_connection.await_args_list] == [
        ("https://mcp.example.com/mcp", "http", 2500),
        ("https://mcp.example.com/sse", "sse", 500),
    ]


async def test_explicit_zero_timeout_is_passed_through(cache, source, tester):
    service = ServerRegistryService(cache, live_source=source, connection_tester=tester, default_timeout_ms=2500)

    await service.test_remote_connection("https://mcp.example.com/mcp", timeout_ms=0)

    tester.test_connection.assert_awaited_once_with("https://mcp.example.com/mcp", "http", 0)


async def test_test_servers_reports_progress(service):
    progress = []

    async def on_progress(update):
        progress.append((update.server_id, update.index, update.total))

    results = await service.test_servers(["github", "missing", "deepwiki"], on_progress)

    assert progress == [("github", 1, 3), ("missing", 2, 3), ("deepwiki", 3, 3)]
    assert [r.server_id for r in results] == ["github", "missing", "deepwiki"]
    assert results[0].result.success
    assert not results[1].result.success
    assert results[1].result.error_code == "NOT_FOUND"


async def test_cache_status_reflects_refresh(service):
    before = await service.get_cache_status()
    await service.fetch_server_directory()
    after = await service.get_cache_status()

    assert not before.is_cached
    assert after.is_cached
    assert not after.is_stale
    assert after.server_count == len(CURATED_SERVERS) + 1


async def test_categories_are_sorted_and_unique(service):
    categories = await service.get_categories()

    assert categories == sorted(set(categories))
    assert "databases" in categories
