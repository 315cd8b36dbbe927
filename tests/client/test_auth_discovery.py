"""
Tests for authentication discovery against a fake MCP server.

The server is a small Starlette app reached through httpx.ASGITransport, so the
prober exercises real HTTP semantics without opening sockets.
"""

from typing import Any

import httpx
import pytest
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from owl_mcp.client.auth_discovery import (
    AuthDiscoveryProber,
    authorization_server_metadata_urls,
    extract_resource_metadata_url,
    guess_auth_type,
    protected_resource_metadata_urls,
)

pytestmark = pytest.mark.anyio

ENDPOINT = "https://mcp.example.com/mcp"
RESOURCE_METADATA_URL = "https://mcp.example.com/.well-known/oauth-protected-resource/mcp"

PROTECTED_RESOURCE = {
    "resource": ENDPOINT,
    "resource_name": "Example MCP",
    "authorization_servers": ["https://mcp.example.com/"],
    "scopes_supported": ["read", "write"],
}

AUTHORIZATION_SERVER = {
    "issuer": "https://mcp.example.com/",
    "authorization_endpoint": "https://mcp.example.com/authorize",
    "token_endpoint": "https://mcp.example.com/token",
    "registration_endpoint": "https://mcp.example.com/register",
    "response_types_supported": ["code"],
    "scopes_supported": ["openid", "profile"],
}


def build_app(
    status: int = 401,
    challenge: bool = True,
    protected_resource: dict[str, Any] | None = PROTECTED_RESOURCE,
    authorization_server: dict[str, Any] | None = AUTHORIZATION_SERVER,
) -> Starlette:
    async def mcp(request: Request) -> Response:
        if status == 200:
            return JSONResponse({"ok": True})
        headers = {"WWW-Authenticate": f'Bearer resource_metadata="{RESOURCE_METADATA_URL}"'} if challenge else {}
        return Response(status_code=status, headers=headers)

    async def resource_metadata(request: Request) -> Response:
        if protected_resource is None:
            return Response(status_code=404)
        return JSONResponse(protected_resource)

    async def authorization_server_metadata(request: Request) -> Response:
        if authorization_server is None:
            return Response(status_code=404)
        return JSONResponse(authorization_server)

    return Starlette(
        routes=[
            Route("/mcp", mcp),
            Route("/.well-known/oauth-protected-resource/mcp", resource_metadata),
            Route("/.well-known/oauth-authorization-server", authorization_server_metadata),
        ]
    )


@pytest.fixture
def prober_for(client_factory):
    def make(app: Starlette) -> AuthDiscoveryProber:
        return AuthDiscoveryProber(client_factory(httpx.ASGITransport(app=app)), timeout=5.0)

    return make


def test_extract_resource_metadata_url():
    header = f'Bearer error="invalid_token", resource_metadata="{RESOURCE_METADATA_URL}"'

    assert extract_resource_metadata_url(header) == RESOURCE_METADATA_URL
    assert extract_resource_metadata_url('Bearer realm="mcp"') is None
    assert extract_resource_metadata_url(None) is None


def test_protected_resource_metadata_urls_order():
    assert protected_resource_metadata_urls("https://api.example.com/v1/mcp/", "https://rm.example.com/meta") == [
        "https://rm.example.com/meta",
        "https://api.example.com/.well-known/oauth-protected-resource/v1/mcp",
        "https://api.example.com/.well-known/oauth-protected-resource",
    ]
    assert protected_resource_metadata_urls("https://api.example.com") == [
        "https://api.example.com/.well-known/oauth-protected-resource"
    ]


def test_authorization_server_metadata_urls_for_issuer_with_path():
    assert authorization_server_metadata_urls("https://auth.example.com/tenant/") == [
        "https://auth.example.com/tenant/.well-known/oauth-authorization-server",
        "https://auth.example.com/tenant/.well-known/openid-configuration",
        "https://auth.example.com/.well-known/oauth-authorization-server",
        "https://auth.example.com/.well-known/openid-configuration",
    ]


@pytest.mark.parametrize(
    ("declared", "expected"),
    [("oauth", "oauth-dcr"), ("api-key", "api-key"), ("header", "api-key"), ("open", "open"), (None, "unknown")],
)
def test_guess_auth_type(declared, expected):
    assert guess_auth_type(declared) == expected


async def test_dynamic_client_registration_detected(prober_for):
    result = await prober_for(build_app()).discover_auth(ENDPOINT, "oauth")

    assert result.success
    assert result.error is None
    assert result.requires_auth
    assert result.auth_type == "oauth-dcr"
    assert result.supports_dcr
    assert result.scopes == ["read", "write"]
    assert result.protected_resource.display_name == "Example MCP"
    assert str(result.authorization_server.registration_endpoint) == "https://mcp.example.com/register"
    assert result.discovery_steps[0] == f"Probing MCP endpoint: {ENDPOINT}"
    assert f"Found resource_metadata URL: {RESOURCE_METADATA_URL}" in result.discovery_steps


async def test_static_oauth_without_registration_endpoint(prober_for):
    authorization_server = {k: v for k, v in AUTHORIZATION_SERVER.items() if k != "registration_endpoint"}
    protected_resource = {k: v for k, v in PROTECTED_RESOURCE.items() if k != "scopes_supported"}

    result = await prober_for(
        build_app(protected_resource=protected_resource, authorization_server=authorization_server)
    ).discover_auth(ENDPOINT, "oauth")

    assert result.auth_type == "oauth-static"
    assert not result.supports_dcr
    assert result.scopes == ["openid", "profile"]


async def test_missing_authorization_server_metadata_means_static_oauth(prober_for):
    result = await prober_for(build_app(authorization_server=None)).discover_auth(ENDPOINT, "oauth")

    assert result.success
    assert result.auth_type == "oauth-static"
    assert result.authorization_server is None


async def test_resource_without_authorization_servers_uses_api_key(prober_for):
    protected_resource = {"resource": ENDPOINT, "bearer_methods_supported": ["header"]}

    result = await prober_for(build_app(protected_resource=protected_resource)).discover_auth(ENDPOINT)

    assert result.auth_type == "api-key"
    assert result.protected_resource is not None


async def test_unauthorized_without_metadata_is_api_key(prober_for):
    result = await prober_for(build_app(challenge=False, protected_resource=None)).discover_auth(ENDPOINT, "oauth")

    assert result.success
    assert result.requires_auth
    assert result.auth_type == "api-key"
    assert result.protected_resource is None


async def test_well_known_fallback_without_challenge(prober_for):
    result = await prober_for(build_app(status=403, challenge=False)).discover_auth(ENDPOINT)

    assert result.auth_type == "oauth-dcr"
    assert f"Fetching protected resource metadata: {RESOURCE_METADATA_URL}" in result.discovery_steps


async def test_open_server(prober_for):
    result = await prober_for(build_app(status=200)).discover_auth(ENDPOINT, "oauth")

    assert result.success
    assert not result.requires_auth
    assert result.auth_type == "open"


async def test_unexpected_status_falls_back_to_declared_type(prober_for):
    result = await prober_for(build_app(status=500)).discover_auth(ENDPOINT, "api-key")

    assert not result.success
    assert result.error == "Unexpected response: 500"
    assert result.auth_type == "api-key"


async def test_network_failure_is_reported_not_raised(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("Connection refused", request=request)

    prober = AuthDiscoveryProber(client_factory(httpx.MockTransport(handler)))

    result = await prober.discover_auth(ENDPOINT, "oauth")

    assert not result.success
    assert result.error == "Connection refused"
    assert result.auth_type == "oauth-dcr"
    assert result.discovery_steps[-1] == "Discovery failed: Connection refused"


async def test_unreachable_protected_resource_metadata_is_reported(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == ENDPOINT:
            return httpx.Response(
                401, headers={"WWW-Authenticate": f'Bearer resource_metadata="{RESOURCE_METADATA_URL}"'}
            )
        raise httpx.ConnectError("Connection refused", request=request)

    prober = AuthDiscoveryProber(client_factory(httpx.MockTransport(handler)))

    result = await prober.discover_auth(ENDPOINT, "oauth")

    assert not result.success
    assert result.requires_auth
    assert result.error == "Could not reach protected resource metadata: Connection refused"
    assert result.auth_type == "oauth-dcr"
    assert result.protected_resource is None


async def test_unreachable_authorization_server_is_reported(client_factory):
    def handler(request: httpx.Request) -> httpx.Response:
        if str(request.url) == ENDPOINT:
            return httpx.Response(401)
        if request.url.host == "mcp.example.com":
            metadata = {**PROTECTED_RESOURCE, "authorization_servers": ["https://auth.example.com/"]}
            return httpx.Response(200, json=metadata)
        raise httpx.ConnectError("Connection refused", request=request)

    prober = AuthDiscoveryProber(client_factory(httpx.MockTransport(handler)))

    result = await prober.discover_auth(ENDPOINT, "oauth")

    assert not result.success
    assert result.error == "Could not reach authorization server metadata: Connection refused"
    assert result.auth_type == "oauth-static"
    assert result.protected_resource.display_name == "Example MCP"


async def test_missing_metadata_documents_are_not_errors(prober_for):
    result = await prober_for(build_app(protected_resource=None)).discover_auth(ENDPOINT, "oauth")

    assert result.success
    assert result.error is None


async def test_invalid_endpoint(prober_for):
    result = await prober_for(build_app()).discover_auth("not a url", "header")

    assert not result.success
    assert result.error == "Invalid URL format"
    assert result.auth_type == "api-key"
    assert result.discovery_steps == []


async def test_probe_sends_protocol_version_header(client_factory):
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200)

    await AuthDiscoveryProber(client_factory(httpx.MockTransport(handler))).discover_auth(ENDPOINT)

    assert seen[0].method == "GET"
    assert seen[0].headers["MCP-Protocol-Version"] == "2025-06-18"
