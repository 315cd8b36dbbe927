"""
Authentication discovery for remote MCP servers.

Follows the MCP authorization flow far enough to learn what a server expects,
without registering a client or requesting any token:

1. Probe the MCP endpoint. A 2xx answer means no authentication is needed.
2. On 401/403, read ``resource_metadata`` from ``WWW-Authenticate`` and fetch the
   RFC 9728 protected resource metadata, falling back to the well-known paths.
3. Fetch RFC 8414 metadata from the first authorization server. A
   ``registration_endpoint`` means Dynamic Client Registration is available.

Discovery is best effort. Network failures end up in ``error`` next to a guess
derived from the server's declared auth type; nothing here raises for them.
"""

import logging
import re
from dataclasses import dataclass, field
from urllib.parse import urlparse

import httpx
from pydantic import ValidationError

from owl_mcp.probe.connection import LATEST_PROTOCOL_VERSION, MCP_PROTOCOL_VERSION_HEADER
from owl_mcp.shared._httpx_utils import HttpClientFactory, create_http_client
from owl_mcp.shared.auth import OAuthMetadata, ProtectedResourceMetadata
from owl_mcp.types import DiscoverAuthResponse, DiscoveredAuthType, RemoteMCPAuthType

logger = logging.getLogger(__name__)

RESOURCE_METADATA_PATTERN = re.compile(r'resource_metadata="([^"]+)"')

_DECLARED_GUESS: dict[RemoteMCPAuthType, DiscoveredAuthType] = {
    "oauth": "oauth-dcr",
    "api-key": "api-key",
    "header": "api-key",
    "open": "open",
}


def guess_auth_type(declared_auth_type: RemoteMCPAuthType | None) -> DiscoveredAuthType:
    """Best guess used when the server could not be probed."""
    if declared_auth_type is None:
        return "unknown"
    return _DECLARED_GUESS[declared_auth_type]


def extract_resource_metadata_url(www_authenticate: str | None) -> str | None:
    if not www_authenticate:
        return None
    match = RESOURCE_METADATA_PATTERN.search(www_authenticate)
    return match.group(1) if match else None


def protected_resource_metadata_urls(endpoint: str, resource_metadata_url: str | None = None) -> list[str]:
    """
    Candidate locations of the protected resource metadata, in the order they are tried.

    An explicit ``resource_metadata`` URL comes first. Endpoints with a path get
    the path-suffixed well-known URL before the bare one, e.g.
    ``https://api.example.com/mcp`` -> ``/.well-known/oauth-protected-resource/mcp``.
    """
    urls: list[str] = []
    if resource_metadata_url:
        urls.append(resource_metadata_url)

    parsed = urlparse(endpoint)
    origin = f"{parsed.scheme}://{parsed.netloc}"
    path = parsed.path.rstrip("/")
    if path:
        urls.append(f"{origin}/.well-known/oauth-protected-resource{path}")
    urls.append(f"{origin}/.well-known/oauth-protected-resource")
    return urls


def authorization_server_metadata_urls(authorization_server: str) -> list[str]:
    base = authorization_server.rstrip("/")
    urls = [f"{base}/.well-known/oauth-authorization-server", f"{base}/.well-known/openid-configuration"]

    parsed = urlparse(base)
    if parsed.path not in ("", "/"):
        origin = f"{parsed.scheme}://{parsed.netloc}"
        urls.append(f"{origin}/.well-known/oauth-authorization-server")
        urls.append(f"{origin}/.well-known/openid-configuration")
    return urls


@dataclass
class _DiscoveryContext:
    endpoint: str
    client: httpx.AsyncClient
    steps: list[str] = field(default_factory=list)
    # last network failure of the current metadata lookup, None when every URL answered
    transport_error: str | None = None

    def record(self, step: str) -> None:
        logger.debug(f"[{self.endpoint}] {step}")
        self.steps.append(step)


class AuthDiscoveryProber:
    def __init__(
        self,
        httpx_client_factory: HttpClientFactory = create_http_client,
        timeout: float = 10.0,
    ):
        self._httpx_client_factory = httpx_client_factory
        self._timeout = timeout

    async def discover_auth(
        self,
        endpoint: str,
        declared_auth_type: RemoteMCPAuthType | None = None,
    ) -> DiscoverAuthResponse:
        result = DiscoverAuthResponse(endpoint=endpoint)
        parsed = urlparse(endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            result.error = "Invalid URL format"
            result.auth_type = guess_auth_type(declared_auth_type)
            return result

        async with self._httpx_client_factory(
            headers={MCP_PROTOCOL_VERSION_HEADER: LATEST_PROTOCOL_VERSION},
            timeout=httpx.Timeout(self._timeout),
        ) as client:
            context = _DiscoveryContext(endpoint=endpoint, client=client, steps=result.discovery_steps)
            try:
                await self._discover(context, result, declared_auth_type)
            except (httpx.HTTPError, TimeoutError) as e:
                message = str(e) or type(e).__name__
                context.record(f"Discovery failed: {message}")
                self._fail_softly(result, message)
                result.auth_type = guess_auth_type(declared_auth_type)
        return result

    async def _discover(
        self,
        context: _DiscoveryContext,
        result: DiscoverAuthResponse,
        declared_auth_type: RemoteMCPAuthType | None,
    ) -> None:
        context.record(f"Probing MCP endpoint: {context.endpoint}")
        # the body is never read, so an open event stream does not hold the probe
        async with context.client.stream("GET", context.endpoint, headers={"Accept": "application/json"}) as response:
            status = response.status_code
            www_authenticate = response.headers.get("www-authenticate")

        if 200 <= status < 300:
            context.record(f"Server returned {status} - no authentication required")
            result.success = True
            result.requires_auth = False
            result.auth_type = "open"
            return

        if status not in (401, 403):
            context.record(f"Unexpected status code: {status}")
            result.error = f"Unexpected response: {status}"
            result.auth_type = guess_auth_type(declared_auth_type)
            return

        context.record(f"Server returned {status} - authentication required")
        result.requires_auth = True

        resource_metadata_url = None
        if www_authenticate:
            context.record(f"WWW-Authenticate header: {www_authenticate[:200]}")
            resource_metadata_url = extract_resource_metadata_url(www_authenticate)
            if resource_metadata_url:
                context.record(f"Found resource_metadata URL: {resource_metadata_url}")

        protected_resource = await self._fetch_protected_resource(context, resource_metadata_url)
        result.success = True

        if protected_resource is None and context.transport_error is not None:
            context.record("Protected resource metadata unreachable - using the declared auth type")
            self._fail_softly(result, f"Could not reach protected resource metadata: {context.transport_error}")
            result.auth_type = guess_auth_type(declared_auth_type)
            return

        if protected_resource is None:
            context.record("No protected resource metadata found - assuming API key auth")
            result.auth_type = "open" if declared_auth_type == "open" else "api-key"
            return

        result.protected_resource = protected_resource
        result.scopes = list(protected_resource.scopes_supported or [])

        if not protected_resource.authorization_servers:
            context.record("No authorization_servers in protected resource metadata")
            result.auth_type = "api-key"
            return

        authorization_server_url = str(protected_resource.authorization_servers[0])
        context.record(f"Checking authorization server: {authorization_server_url}")
        authorization_server = await self._fetch_authorization_server(context, authorization_server_url)

        if authorization_server is None:
            context.record("Authorization server metadata not available")
            if context.transport_error is not None:
                self._fail_softly(
                    result, f"Could not reach authorization server metadata: {context.transport_error}"
                )
            result.auth_type = "oauth-static"
            return

        result.authorization_server = authorization_server
        if authorization_server.supports_dcr:
            registration_endpoint = authorization_server.registration_endpoint
            context.record(f"DCR supported: registration_endpoint found at {registration_endpoint}")
            result.supports_dcr = True
            result.auth_type = "oauth-dcr"
        else:
            context.record("No registration_endpoint found - DCR not supported")
            result.supports_dcr = False
            result.auth_type = "oauth-static"

        if not result.scopes and authorization_server.scopes_supported:
            result.scopes = list(authorization_server.scopes_supported)

    @staticmethod
    def _fail_softly(result: DiscoverAuthResponse, message: str) -> None:
        result.success = False
        result.error = message

    async def _fetch_protected_resource(
        self, context: _DiscoveryContext, resource_metadata_url: str | None
    ) -> ProtectedResourceMetadata | None:
        context.transport_error = None
        for url in protected_resource_metadata_urls(context.endpoint, resource_metadata_url):
            context.record(f"Fetching protected resource metadata: {url}")
            content = await self._fetch_json(context, url)
            if content is None:
                continue
            try:
                metadata = ProtectedResourceMetadata.model_validate_json(content)
            except ValidationError as e:
                context.record(f"Invalid protected resource metadata at {url}: {e.error_count()} errors")
                continue
            context.record(f"Found protected resource metadata: {metadata.display_name}")
            return metadata
        return None

    async def _fetch_authorization_server(
        self, context: _DiscoveryContext, authorization_server_url: str
    ) -> OAuthMetadata | None:
        context.transport_error = None
        for url in authorization_server_metadata_urls(authorization_server_url):
            context.record(f"Fetching authorization server metadata: {url}")
            content = await self._fetch_json(context, url)
            if content is None:
                continue
            try:
                metadata = OAuthMetadata.model_validate_json(content)
            except ValidationError as e:
                context.record(f"Invalid authorization server metadata at {url}: {e.error_count()} errors")
                continue
            context.record(f"Found authorization server metadata: {metadata.issuer}")
            return metadata
        return None

    async def _fetch_json(self, context: _DiscoveryContext, url: str) -> bytes | None:
        try:
            response = await context.client.get(url, headers={"Accept": "application/json"})
        except httpx.HTTPError as e:
            context.record(f"Failed to fetch {url}: {e}")
            context.transport_error = str(e) or type(e).__name__
            return None
        if response.status_code != 200:
            context.record(f"{url} returned {response.status_code}")
            return None
        return response.content
