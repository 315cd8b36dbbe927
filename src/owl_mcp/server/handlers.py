"""
Request/response handlers exposing remote MCP discovery to the host application.

Every handler takes a pydantic request model and returns a response model with
``success``, ``error`` and ``error_code``. Expected failures are reported in the
response; unexpected exceptions are logged and turned into ``success=False``.
"""

import functools
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, TypeVar

from pydantic import Field, SecretStr, ValidationError

from owl_mcp.client.auth_discovery import AuthDiscoveryProber
from owl_mcp.client.negotiation import (
    AuthNegotiationFlow,
    NegotiationAction,
    NegotiationRegistry,
    NegotiationStatus,
)
from owl_mcp.errors import ConnectionErrorCode, OwlMCPError, field_errors, stringify_pydantic_error
from owl_mcp.host.claude_cli import ClaudeCLIBridge, HostBridge
from owl_mcp.registry.service import ServerRegistryService
from owl_mcp.security.assessment import risk_summary, should_show_security_dialog
from owl_mcp.settings import OwlMCPSettings
from owl_mcp.shared._httpx_utils import HttpClientFactory, client_factory_for
from owl_mcp.types import (
    BatchTestResult,
    ConnectionTestResult,
    DirectoryCacheStatus,
    DirectorySourceKind,
    DiscoverAuthResponse,
    MCPAuthCredentials,
    MCPAuthStatus,
    MCPScope,
    OwlModel,
    RemoteMCPAuthType,
    RemoteMCPCategory,
    RemoteMCPServer,
    RemoteServerFilters,
    SecurityContext,
    SecurityWarning,
    Transport,
)

logger = logging.getLogger(__name__)


class HandlerResponse(OwlModel):
    success: bool = True
    error: str | None = None
    error_code: ConnectionErrorCode | None = None


# ---------------------------------------------------------------------------
# Requests and responses
# ---------------------------------------------------------------------------


class FetchDirectoryRequest(OwlModel):
    force_refresh: bool = False
    filters: RemoteServerFilters | None = None


class FetchDirectoryResponse(HandlerResponse):
    servers: list[RemoteMCPServer] = Field(default_factory=list)
    source: DirectorySourceKind = "cache"
    last_updated: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class SearchServersRequest(OwlModel):
    query: str | None = None
    category: RemoteMCPCategory | None = None
    auth_type: RemoteMCPAuthType | None = None
    transport: Transport | None = None
    verified_only: bool = False
    limit: int | None = Field(default=None, gt=0)


class SearchServersResponse(HandlerResponse):
    servers: list[RemoteMCPServer] = Field(default_factory=list)
    total_count: int = 0


class GetServerDetailsRequest(OwlModel):
    server_id: str
    verify_connection: bool = False


class GetServerDetailsResponse(HandlerResponse):
    server: RemoteMCPServer | None = None
    security_context: SecurityContext | None = None
    warnings: list[SecurityWarning] = Field(default_factory=list)
    risk_summary: str | None = None
    show_security_dialog: bool = False


class ConnectionTestRequest(OwlModel):
    url: str
    transport: Transport = "http"
    timeout_ms: int | None = Field(default=None, gt=0)


class ConnectionTestResponse(HandlerResponse):
    result: ConnectionTestResult | None = None


class BatchConnectionTestRequest(OwlModel):
    server_ids: list[str]


class BatchConnectionTestResponse(HandlerResponse):
    results: list[BatchTestResult] = Field(default_factory=list)
    success_count: int = 0
    failed_count: int = 0
    total_time_ms: int = 0


class CacheStatusResponse(HandlerResponse):
    cache_status: DirectoryCacheStatus | None = None


class DiscoverAuthRequest(OwlModel):
    endpoint: str
    declared_auth_type: RemoteMCPAuthType | None = None


class AddRemoteServerRequest(OwlModel):
    server: RemoteMCPServer
    scope: MCPScope = "user"
    project_path: str | None = None
    custom_name: str | None = None


class ConfigureApiKeyRequest(OwlModel):
    server: RemoteMCPServer
    env_var_name: str
    api_key_value: SecretStr
    scope: MCPScope = "user"
    project_path: str | None = None
    custom_name: str | None = None


class LaunchOAuthFlowRequest(OwlModel):
    server_name: str
    server_url: str
    transport: Transport = "http"
    project_path: str | None = None


class HostResponse(HandlerResponse):
    message: str | None = None
    field_errors: dict[str, str] = Field(default_factory=dict)


class CheckAuthStatusRequest(OwlModel):
    server_name: str


class CheckAuthStatusResponse(HandlerResponse):
    auth_status: MCPAuthStatus = "unknown"
    is_installed: bool = False
    config_location: str | None = None


class BeginNegotiationRequest(OwlModel):
    server_id: str
    scope: MCPScope = "user"
    project_path: str | None = None
    custom_name: str | None = None


class NegotiationActionRequest(OwlModel):
    server_id: str
    action: NegotiationAction
    env_var_name: str | None = None
    api_key_value: SecretStr | None = None


class NegotiationResponse(HandlerResponse):
    negotiation: NegotiationStatus | None = None


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

ResponseT = TypeVar("ResponseT", bound=HandlerResponse)


def _boundary(
    response_type: type[ResponseT], message: str
) -> Callable[[Callable[..., Awaitable[ResponseT]]], Callable[..., Awaitable[ResponseT]]]:
    """Turn unexpected exceptions escaping a handler into a failed response of ``response_type``."""

    def decorator(func: Callable[..., Awaitable[ResponseT]]) -> Callable[..., Awaitable[ResponseT]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> ResponseT:
            try:
                return await func(*args, **kwargs)
            except OwlMCPError as e:
                logger.warning(f"{message}: {e.message}")
                return response_type(success=False, error=e.message, error_code=e.error_code)
            except Exception as e:
                logger.exception(message)
                return response_type(success=False, error=str(e) or message)

        return wrapper

    return decorator


class RemoteMCPHandlers:
    def __init__(
        self,
        registry: ServerRegistryService,
        host: HostBridge,
        prober: AuthDiscoveryProber | None = None,
        negotiations: NegotiationRegistry | None = None,
    ):
        self.registry = registry
        self.host = host
        self.prober = prober or AuthDiscoveryProber()
        self.negotiations = negotiations or NegotiationRegistry()

    @classmethod
    def from_settings(
        cls,
        settings: OwlMCPSettings | None = None,
        httpx_client_factory: HttpClientFactory | None = None,
    ) -> "RemoteMCPHandlers":
        settings = settings or OwlMCPSettings()
        httpx_client_factory = httpx_client_factory or client_factory_for(settings.user_agent)
        return cls(
            registry=ServerRegistryService.from_settings(settings, httpx_client_factory),
            host=ClaudeCLIBridge(settings.claude_executable),
            prober=AuthDiscoveryProber(httpx_client_factory, timeout=settings.discovery_timeout_seconds),
        )

    @_boundary(FetchDirectoryResponse, "Failed to fetch directory")
    async def fetch_directory(self, request: FetchDirectoryRequest) -> FetchDirectoryResponse:
        logger.debug(f"Fetch directory request: force_refresh={request.force_refresh}")
        directory = await self.registry.fetch_server_directory(request.force_refresh)
        servers = directory.servers
        if request.filters is not None:
            servers = await self.registry.search_servers(request.filters)
        return FetchDirectoryResponse(servers=servers, source=directory.source, last_updated=directory.last_updated)

    @_boundary(FetchDirectoryResponse, "Failed to refresh directory")
    async def refresh_directory(self) -> FetchDirectoryResponse:
        directory = await self.registry.fetch_server_directory(force_refresh=True)
        return FetchDirectoryResponse(
            servers=directory.servers, source=directory.source, last_updated=directory.last_updated
        )

    @_boundary(SearchServersResponse, "Failed to search servers")
    async def search_servers(self, request: SearchServersRequest) -> SearchServersResponse:
        filters = RemoteServerFilters(
            search=request.query,
            category=request.category,
            auth_type=request.auth_type,
            transport=request.transport,
            verified_only=request.verified_only,
        )
        servers = await self.registry.search_servers(filters)
        limited = servers[: request.limit] if request.limit else servers
        logger.debug(f"Search returned {len(limited)} of {len(servers)} servers")
        return SearchServersResponse(servers=limited, total_count=len(servers))

    @_boundary(GetServerDetailsResponse, "Failed to get server details")
    async def get_server_details(self, request: GetServerDetailsRequest) -> GetServerDetailsResponse:
        details = await self.registry.get_server_details(request.server_id, request.verify_connection)
        if details is None:
            return GetServerDetailsResponse(
                success=False, error=f"Server not found: {request.server_id}", error_code="NOT_FOUND"
            )
        return GetServerDetailsResponse(
            server=details.server,
            security_context=details.security_context,
            warnings=details.warnings,
            risk_summary=risk_summary(details.security_context),
            show_security_dialog=should_show_security_dialog(details.security_context),
        )

    @_boundary(ConnectionTestResponse, "Connection test failed")
    async def test_connection(self, request: ConnectionTestRequest) -> ConnectionTestResponse:
        result = await self.registry.test_remote_connection(request.url, request.transport, request.timeout_ms)
        logger.debug(f"Test connection to {request.url}: success={result.success}, latency={result.latency_ms}ms")
        return ConnectionTestResponse(result=result)

    @_boundary(BatchConnectionTestResponse, "Batch test failed")
    async def test_all_connections(self, request: BatchConnectionTestRequest) -> BatchConnectionTestResponse:
        started = time.perf_counter()
        results = await self.registry.test_servers(request.server_ids)
        success_count = sum(1 for r in results if r.result.success)
        return BatchConnectionTestResponse(
            results=results,
            success_count=success_count,
            failed_count=len(results) - success_count,
            total_time_ms=int((time.perf_counter() - started) * 1000),
        )

    @_boundary(CacheStatusResponse, "Failed to read cache status")
    async def get_cache_status(self) -> CacheStatusResponse:
        return CacheStatusResponse(cache_status=await self.registry.get_cache_status())

    async def discover_auth(self, request: DiscoverAuthRequest) -> DiscoverAuthResponse:
        try:
            return await self.prober.discover_auth(request.endpoint, request.declared_auth_type)
        except Exception as e:
            logger.exception(f"Auth discovery for {request.endpoint} failed")
            return DiscoverAuthResponse(endpoint=request.endpoint, error=str(e) or "Auth discovery failed")

    @_boundary(HostResponse, "Failed to add remote server")
    async def add_remote_server(self, request: AddRemoteServerRequest) -> HostResponse:
        result = await self.host.add_remote_server(
            request.server, request.scope, request.project_path, request.custom_name
        )
        return HostResponse(
            success=result.success,
            message=result.message or (f"Successfully added {request.server.name}" if result.success else None),
            error=result.error,
        )

    @_boundary(HostResponse, "Failed to configure API key")
    async def configure_api_key(self, request: ConfigureApiKeyRequest) -> HostResponse:
        credential_type = "header" if request.server.auth_type == "header" else "api-key"
        try:
            credentials = MCPAuthCredentials.model_validate(
                {"type": credential_type, "envVarName": request.env_var_name, "apiKeyValue": request.api_key_value}
            )
        except ValidationError as e:
            return HostResponse(
                success=False,
                error=stringify_pydantic_error(e),
                error_code="VALIDATION_ERROR",
                field_errors=field_errors(e),
            )

        result = await self.host.configure_api_key(
            request.server, credentials, request.scope, request.project_path, request.custom_name
        )
        return HostResponse(success=result.success, message=result.message, error=result.error)

    @_boundary(HostResponse, "Failed to launch OAuth flow")
    async def launch_oauth_flow(self, request: LaunchOAuthFlowRequest) -> HostResponse:
        result = await self.host.launch_oauth_flow(
            request.server_name, request.server_url, request.transport, request.project_path
        )
        return HostResponse(success=result.success, message=result.message, error=result.error)

    @_boundary(CheckAuthStatusResponse, "Failed to check auth status")
    async def check_auth_status(self, request: CheckAuthStatusRequest) -> CheckAuthStatusResponse:
        status = await self.host.check_auth_status(request.server_name)
        return CheckAuthStatusResponse(
            auth_status=status.auth_status,
            is_installed=status.is_installed,
            config_location=status.config_location,
        )

    @_boundary(NegotiationResponse, "Failed to start authentication")
    async def begin_negotiation(self, request: BeginNegotiationRequest) -> NegotiationResponse:
        server = await self.registry.get_server(request.server_id)
        if server is None:
            return NegotiationResponse(
                success=False, error=f"Server not found: {request.server_id}", error_code="NOT_FOUND"
            )

        flow = self.negotiations.begin(
            AuthNegotiationFlow(
                server,
                self.host,
                prober=self.prober,
                scope=request.scope,
                project_path=request.project_path,
                custom_name=request.custom_name,
            )
        )
        await flow.start()
        return NegotiationResponse(negotiation=flow.status())

    @_boundary(NegotiationResponse, "Authentication step failed")
    async def negotiation_action(self, request: NegotiationActionRequest) -> NegotiationResponse:
        flow = self.negotiations.get(request.server_id)
        if flow is None:
            return NegotiationResponse(
                success=False,
                error=f"No authentication in progress for {request.server_id}",
                error_code="NOT_FOUND",
            )

        action = request.action
        if action == NegotiationAction.CONFIGURE:
            flow.configure()
        elif action == NegotiationAction.USE_API_KEY:
            flow.use_api_key()
        elif action == NegotiationAction.ADD_SERVER:
            await flow.add_server()
        elif action == NegotiationAction.AUTHENTICATE:
            await flow.authenticate()
        elif action == NegotiationAction.SUBMIT_API_KEY:
            await flow.submit_api_key(request.env_var_name or "", request.api_key_value or "")
        else:
            self.negotiations.discard(request.server_id)

        status = flow.status()
        error_code: ConnectionErrorCode | None = "VALIDATION_ERROR" if status.field_errors else None
        return NegotiationResponse(
            success=status.error is None and not status.field_errors,
            error=status.error,
            error_code=error_code,
            negotiation=status,
        )
