from collections.abc import Callable
from typing import Any

import httpx
import pytest

from owl_mcp.shared._httpx_utils import HttpClientFactory
from owl_mcp.types import RemoteMCPServer


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def client_factory() -> Callable[[httpx.AsyncBaseTransport], HttpClientFactory]:
    """Build an httpx client factory that sends every request through ``transport``."""

    def make(transport: httpx.AsyncBaseTransport) -> HttpClientFactory:
        def factory(
            headers: dict[str, str] | None = None,
            timeout: httpx.Timeout | None = None,
            auth: httpx.Auth | None = None,
        ) -> httpx.AsyncClient:
            return httpx.AsyncClient(
                transport=transport,
                headers=headers,
                timeout=timeout or httpx.Timeout(10.0),
                auth=auth,
            )

        return factory

    return make


@pytest.fixture
def make_server() -> Callable[..., RemoteMCPServer]:
    def make(**overrides: Any) -> RemoteMCPServer:
        data: dict[str, Any] = {
            "id": "example",
            "name": "Example MCP",
            "description": "Example remote server",
            "endpoint": "https://mcp.example.com/mcp",
            "transport": "http",
            "auth_type": "oauth",
            "provider": "Example",
            "verified": True,
            "category": "developer-tools",
            "source": "mcpservers.org",
        }
        data.update(overrides)
        return RemoteMCPServer.model_validate(data)

    return make
