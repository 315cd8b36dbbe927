"""Utilities for creating standardized httpx AsyncClient instances."""

import functools
from typing import Any, Protocol

import httpx

__all__ = ["create_http_client", "client_factory_for", "HttpClientFactory", "DEFAULT_USER_AGENT"]

DEFAULT_USER_AGENT = "Claude-Owl/1.0"


class HttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        auth: httpx.Auth | None = None,
    ) -> httpx.AsyncClient: ...


def create_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    auth: httpx.Auth | None = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> httpx.AsyncClient:
    """Create a standardized httpx AsyncClient for probing remote servers.

    Redirects are not followed so that probes report the status the endpoint
    actually returned.

    Args:
        headers: Optional headers to include with all requests.
        timeout: Request timeout as httpx.Timeout object.
            Defaults to 10 seconds if not specified.
        auth: Optional authentication handler.
        user_agent: User-Agent sent unless the headers override it.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    kwargs: dict[str, Any] = {"follow_redirects": False}

    if timeout is None:
        kwargs["timeout"] = httpx.Timeout(10.0)
    else:
        kwargs["timeout"] = timeout

    merged_headers = {"User-Agent": user_agent}
    if headers is not None:
        merged_headers.update(headers)
    kwargs["headers"] = merged_headers

    if auth is not None:
        kwargs["auth"] = auth

    return httpx.AsyncClient(**kwargs)


def client_factory_for(user_agent: str) -> HttpClientFactory:
    """A ``create_http_client`` that identifies itself with ``user_agent``."""
    if user_agent == DEFAULT_USER_AGENT:
        return create_http_client
    return functools.partial(create_http_client, user_agent=user_agent)
