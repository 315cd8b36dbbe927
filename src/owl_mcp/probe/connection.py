"""
Multi-step connectivity probe for remote MCP endpoints.

A probe runs four ordered steps against an endpoint and records each one:

1. DNS resolution of the host
2. TLS certificate inspection (https only)
3. HTTP reachability
4. MCP protocol detection

The whole probe shares a single time budget. Each step gets a weighted share of
whatever is left, so time a fast step does not use rolls forward to the later
ones. DNS and HTTP are hard steps: failing either aborts the probe. TLS and MCP
detection are best effort and degrade to a warning, unless they run into the
overall deadline, which aborts the probe with TIMEOUT.
"""

import hashlib
import json
import logging
import socket
import ssl
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlparse

import anyio
import httpx
from anyio.streams.tls import TLSAttribute
from httpx_sse import EventSource, aconnect_sse
from pydantic import ValidationError

from owl_mcp.errors import ConnectionErrorCode
from owl_mcp.shared._httpx_utils import HttpClientFactory, create_http_client
from owl_mcp.shared.sse import read_endpoint_event, read_first_json_message
from owl_mcp.types import (
    ConnectionTestResult,
    ConnectionTestStep,
    DiscoveredServerInfo,
    TLSCertificateInfo,
    Transport,
)

logger = logging.getLogger(__name__)

DNS_STEP = "DNS Resolution"
TLS_STEP = "TLS/SSL Verification"
HTTP_STEP = "HTTP Reachability"
MCP_STEP = "MCP Protocol Detection"

DEFAULT_TIMEOUT_MS = 10_000
LATEST_PROTOCOL_VERSION = "2025-06-18"
MCP_PROTOCOL_VERSION_HEADER = "MCP-Protocol-Version"
MCP_SESSION_ID_HEADER = "mcp-session-id"

STEP_WEIGHTS: dict[str, int] = {DNS_STEP: 1, TLS_STEP: 2, HTTP_STEP: 4, MCP_STEP: 3}
# timers may fire marginally before the deadline they were armed for
_DEADLINE_SLACK = 0.001

Resolver = Callable[[str, int], Awaitable[list[str]]]
TLSInspector = Callable[[str, int], Awaitable[TLSCertificateInfo]]


@dataclass(frozen=True)
class ProbeTarget:
    url: str
    scheme: str
    host: str
    port: int

    @property
    def is_tls(self) -> bool:
        return self.scheme == "https"


def parse_endpoint(url: str) -> ProbeTarget | None:
    """Split an endpoint URL into the parts the probe needs, or None if it is not a usable http(s) URL."""
    if not isinstance(url, str) or not url.strip():
        return None
    try:
        parsed = urlparse(url.strip())
        port = parsed.port
    except ValueError:
        return None
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        return None
    if port is None:
        port = 443 if parsed.scheme == "https" else 80
    return ProbeTarget(url=url.strip(), scheme=parsed.scheme, host=parsed.hostname, port=port)


async def resolve_host(host: str, port: int) -> list[str]:
    """Resolve a host name to its distinct addresses, in resolver order."""
    infos = await anyio.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    addresses: list[str] = []
    for _family, _type, _proto, _canonname, sockaddr in infos:
        address = str(sockaddr[0])
        if address not in addresses:
            addresses.append(address)
    return addresses


def _cert_name(name: Any) -> str | None:
    # getpeercert() returns names as a tuple of RDNs, each a tuple of (key, value) pairs
    fields: dict[str, str] = {}
    for rdn in name or ():
        for key, value in rdn:
            fields.setdefault(key, value)
    return fields.get("organizationName") or fields.get("commonName")


def _cert_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromtimestamp(ssl.cert_time_to_seconds(value), tz=timezone.utc)


async def inspect_tls_certificate(host: str, port: int = 443) -> TLSCertificateInfo:
    """
    Complete a verified TLS handshake with the host and describe its certificate.

    Raises:
        ssl.SSLCertVerificationError: If the certificate does not verify
        OSError: If the connection cannot be established
    """
    stream = await anyio.connect_tcp(host, port, tls=True, tls_standard_compatible=False)
    try:
        cert = stream.extra(TLSAttribute.peer_certificate) or {}
        cert_binary = stream.extra(TLSAttribute.peer_certificate_binary)
    finally:
        await stream.aclose()

    return TLSCertificateInfo(
        issuer=_cert_name(cert.get("issuer")) or "Unknown",
        subject=_cert_name(cert.get("subject")),
        valid_from=_cert_time(cert.get("notBefore")),
        valid_to=_cert_time(cert.get("notAfter")),
        fingerprint=hashlib.sha256(cert_binary).hexdigest() if cert_binary else None,
    )


class _Budget:
    """Splits the remaining probe time between the steps still to run."""

    def __init__(self, total_seconds: float):
        self._deadline = anyio.current_time() + total_seconds
        self._pending_weight = sum(STEP_WEIGHTS.values())

    def share(self, step: str) -> float:
        weight = STEP_WEIGHTS[step]
        remaining = max(self._deadline - anyio.current_time(), 0.0)
        if self._pending_weight <= weight:
            share = remaining
        else:
            share = remaining * weight / self._pending_weight
        self._pending_weight -= weight
        return share

    @property
    def exhausted(self) -> bool:
        return anyio.current_time() >= self._deadline - _DEADLINE_SLACK


class _BudgetExhausted(Exception):
    """A best-effort step ran into the overall probe deadline."""

    def __init__(self, step: str):
        super().__init__(step)
        self.step = step


def _initialize_request() -> dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "id": 1,
        "method": "initialize",
        "params": {
            "protocolVersion": LATEST_PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": "claude-owl", "version": "1.0"},
        },
    }


def _has_resource_metadata_challenge(response: httpx.Response) -> bool:
    return response.status_code in (401, 403) and "resource_metadata" in response.headers.get("www-authenticate", "")


def _str_or_none(value: Any) -> str | None:
    return value if isinstance(value, str) else None


def _server_info_from_jsonrpc(message: Any) -> DiscoveredServerInfo | None:
    if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
        return None
    result = message.get("result")
    if not isinstance(result, dict):
        return DiscoveredServerInfo()
    # a JSON-RPC reply is enough to detect MCP even when the initialize result is malformed
    server_info = result.get("serverInfo")
    if not isinstance(server_info, dict):
        server_info = {}
    capabilities = result.get("capabilities")
    return DiscoveredServerInfo(
        protocol_version=_str_or_none(result.get("protocolVersion")),
        server_name=_str_or_none(server_info.get("name")),
        server_version=_str_or_none(server_info.get("version")),
        capabilities=sorted(str(c) for c in capabilities) if isinstance(capabilities, dict) else [],
        requires_auth=False,
    )


@dataclass
class _Detection:
    detected: bool
    server_info: DiscoveredServerInfo | None = None


class ConnectionTester:
    """
    Runs the connectivity probe.

    The resolver, TLS inspector and HTTP client factory are injectable so the
    probe can be exercised without touching the network.
    """

    def __init__(
        self,
        resolver: Resolver = resolve_host,
        tls_inspector: TLSInspector = inspect_tls_certificate,
        httpx_client_factory: HttpClientFactory = create_http_client,
    ):
        self._resolver = resolver
        self._tls_inspector = tls_inspector
        self._httpx_client_factory = httpx_client_factory

    async def test_connection(
        self,
        url: str,
        transport: Transport = "http",
        timeout_ms: int = DEFAULT_TIMEOUT_MS,
    ) -> ConnectionTestResult:
        if timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {timeout_ms}")

        target = parse_endpoint(url)
        if target is None:
            logger.debug(f"Rejecting invalid endpoint URL: {url!r}")
            return ConnectionTestResult(
                success=False,
                error="Invalid URL format",
                error_code="INVALID_URL",
                suggestions=["Check that the server URL is an absolute http:// or https:// URL"],
            )

        logger.debug(f"Testing connection to {target.url} over {transport} with {timeout_ms}ms budget")
        steps: list[ConnectionTestStep] = []
        try:
            return await self._run(target, transport, timeout_ms, steps)
        except Exception as e:
            logger.exception(f"Unexpected failure while testing {target.url}")
            return ConnectionTestResult(
                success=False,
                error=str(e) or type(e).__name__,
                error_code="NETWORK_ERROR",
                steps=steps,
                suggestions=["An unexpected error occurred", "Try again in a few minutes"],
            )

    async def _run(
        self,
        target: ProbeTarget,
        transport: Transport,
        timeout_ms: int,
        steps: list[ConnectionTestStep],
    ) -> ConnectionTestResult:
        budget = _Budget(timeout_ms / 1000)

        failure = await self._resolve(target, budget.share(DNS_STEP), steps)
        if failure is not None:
            return failure

        tls_info: TLSCertificateInfo | None = None
        try:
            tls_info = await self._verify_tls(target, budget, steps)

            async with self._httpx_client_factory() as client:
                http_status, latency_ms, failure = await self._check_reachability(
                    client, target, budget.share(HTTP_STEP), steps
                )
                if failure is not None:
                    failure.tls_certificate_info = tls_info
                    return failure

                detection = await self._detect_mcp(client, target, transport, budget, steps)
        except _BudgetExhausted as e:
            logger.debug(f"Probe of {target.url} ran out of time during {e.step}")
            return ConnectionTestResult(
                success=False,
                error=f"Connection test did not finish within {timeout_ms}ms",
                error_code="TIMEOUT",
                steps=steps,
                tls_certificate_info=tls_info,
                suggestions=["The server may be slow or unresponsive", "Try increasing the timeout"],
            )

        suggestions: list[str] = []
        if http_status == 429:
            suggestions.append("Wait a few minutes before trying again")
        elif http_status is not None and http_status >= 500:
            suggestions.extend(["The server may be experiencing issues", "Check the server documentation"])
        elif http_status == 404:
            suggestions.append("Check that the endpoint path is correct")

        server_info = detection.server_info
        if http_status in (401, 403):
            server_info = (server_info or DiscoveredServerInfo()).model_copy(update={"requires_auth": True})

        return ConnectionTestResult(
            success=True,
            latency_ms=latency_ms,
            http_status=http_status,
            steps=steps,
            server_info=server_info,
            tls_certificate_info=tls_info,
            suggestions=suggestions,
        )

    async def _resolve(
        self, target: ProbeTarget, timeout: float, steps: list[ConnectionTestStep]
    ) -> ConnectionTestResult | None:
        error_code: ConnectionErrorCode
        try:
            with anyio.fail_after(timeout):
                addresses = await self._resolver(target.host, target.port)
        except TimeoutError:
            details = f"DNS lookup for {target.host} timed out"
            error_code = "TIMEOUT"
        except socket.gaierror as e:
            details = f"DNS resolution failed: {e}"
            error_code = "DNS_ERROR"
        except OSError as e:
            details = f"Could not resolve {target.host}: {e}"
            error_code = "NETWORK_ERROR"
        else:
            if addresses:
                steps.append(
                    ConnectionTestStep(name=DNS_STEP, status="success", details=f"Resolved to {', '.join(addresses)}")
                )
                return None
            details = f"No addresses found for {target.host}"
            error_code = "DNS_ERROR"

        logger.debug(f"DNS step failed for {target.host}: {details}")
        steps.append(ConnectionTestStep(name=DNS_STEP, status="error", details=details))
        return ConnectionTestResult(
            success=False,
            error=details,
            error_code=error_code,
            steps=steps,
            suggestions=[
                "Check that the server URL is correct",
                "Verify your internet connection",
                "The server may be temporarily unavailable",
            ],
        )

    async def _verify_tls(
        self, target: ProbeTarget, budget: _Budget, steps: list[ConnectionTestStep]
    ) -> TLSCertificateInfo | None:
        timeout = budget.share(TLS_STEP)
        if not target.is_tls:
            steps.append(
                ConnectionTestStep(
                    name=TLS_STEP, status="warning", details="Endpoint does not use TLS; traffic is unencrypted"
                )
            )
            return None

        try:
            with anyio.fail_after(timeout):
                info = await self._tls_inspector(target.host, target.port)
        except TimeoutError:
            if budget.exhausted:
                steps.append(ConnectionTestStep(name=TLS_STEP, status="error", details="Certificate check timed out"))
                raise _BudgetExhausted(TLS_STEP)
            details = "Certificate check timed out"
        except ssl.SSLCertVerificationError as e:
            details = f"Certificate verification failed: {getattr(e, 'verify_message', None) or e}"
        except (ssl.SSLError, OSError) as e:
            details = f"TLS handshake failed: {e}"
        else:
            if info.valid_to is not None and info.valid_to < datetime.now(timezone.utc):
                steps.append(
                    ConnectionTestStep(
                        name=TLS_STEP,
                        status="warning",
                        details=f"Certificate expired on {info.valid_to:%Y-%m-%d}, Issuer: {info.issuer}",
                    )
                )
            else:
                expires = f"{info.valid_to:%Y-%m-%d}" if info.valid_to else "unknown"
                steps.append(
                    ConnectionTestStep(
                        name=TLS_STEP,
                        status="success",
                        details=f"Valid certificate (expires: {expires}), Issuer: {info.issuer}",
                    )
                )
            return info

        # some internal servers use self-signed certificates; the probe carries on
        logger.debug(f"TLS step degraded for {target.host}: {details}")
        steps.append(ConnectionTestStep(name=TLS_STEP, status="warning", details=details))
        return None

    async def _check_reachability(
        self,
        client: httpx.AsyncClient,
        target: ProbeTarget,
        timeout: float,
        steps: list[ConnectionTestStep],
    ) -> tuple[int | None, int | None, ConnectionTestResult | None]:
        headers = {"Accept": "application/json"}
        error_code: ConnectionErrorCode
        started = time.perf_counter()
        try:
            with anyio.fail_after(timeout):
                response = await client.head(target.url, headers=headers, timeout=timeout)
                status = response.status_code
                if status in (405, 501):
                    async with client.stream("GET", target.url, headers=headers, timeout=timeout) as response:
                        status = response.status_code
        except (TimeoutError, httpx.TimeoutException):
            details = "Request timeout"
            error = f"Server did not respond within {int(timeout * 1000)}ms"
            error_code = "TIMEOUT"
            suggestions = [
                "The server may be slow or unresponsive",
                "Try increasing the timeout",
                "Check your network connection",
            ]
        except httpx.HTTPError as e:
            details = str(e) or type(e).__name__
            error = details
            error_code = "SSL_ERROR" if "CERTIFICATE_VERIFY_FAILED" in details else "NETWORK_ERROR"
            suggestions = [
                "The server may be temporarily unavailable",
                "Check if a VPN or firewall is blocking the connection",
                "Try again in a few minutes",
            ]
        else:
            latency_ms = int((time.perf_counter() - started) * 1000)
            if status in (401, 403):
                step = ConnectionTestStep(
                    name=HTTP_STEP,
                    status="success",
                    details=f"Response: {status} (expected - requires authentication), Latency: {latency_ms}ms",
                )
            elif 200 <= status < 400:
                step = ConnectionTestStep(
                    name=HTTP_STEP, status="success", details=f"Response: {status} OK, Latency: {latency_ms}ms"
                )
            elif status == 429:
                step = ConnectionTestStep(name=HTTP_STEP, status="warning", details=f"Rate limited ({status})")
            else:
                step = ConnectionTestStep(
                    name=HTTP_STEP,
                    status="warning",
                    details=f"Server returned {status} {httpx.codes.get_reason_phrase(status)}".rstrip(),
                )
            steps.append(step)
            return status, latency_ms, None

        logger.debug(f"HTTP step failed for {target.url}: {details}")
        steps.append(ConnectionTestStep(name=HTTP_STEP, status="error", details=details))
        return (
            None,
            None,
            ConnectionTestResult(
                success=False, error=error, error_code=error_code, steps=steps, suggestions=suggestions
            ),
        )

    async def _detect_mcp(
        self,
        client: httpx.AsyncClient,
        target: ProbeTarget,
        transport: Transport,
        budget: _Budget,
        steps: list[ConnectionTestStep],
    ) -> _Detection:
        timeout = budget.share(MCP_STEP)
        try:
            with anyio.fail_after(timeout):
                if transport == "sse":
                    detection = await self._detect_sse(client, target, timeout)
                else:
                    detection = await self._detect_streamable_http(client, target, timeout)
        except TimeoutError:
            if budget.exhausted:
                steps.append(ConnectionTestStep(name=MCP_STEP, status="error", details="MCP detection timed out"))
                raise _BudgetExhausted(MCP_STEP)
            steps.append(ConnectionTestStep(name=MCP_STEP, status="warning", details="MCP detection timed out"))
            return _Detection(detected=False)
        except (httpx.HTTPError, ValueError, ValidationError) as e:
            # JSONDecodeError and UnicodeDecodeError are ValueErrors
            logger.debug(f"MCP detection failed for {target.url}: {e}")
            detection = _Detection(detected=False)

        if detection.detected:
            details = f"MCP detected, Transport: {transport.upper()}"
            if detection.server_info and detection.server_info.server_name:
                details += f", Server: {detection.server_info.server_name}"
            steps.append(ConnectionTestStep(name=MCP_STEP, status="success", details=details))
        else:
            steps.append(
                ConnectionTestStep(
                    name=MCP_STEP,
                    status="warning",
                    details="Could not confirm MCP protocol (server may still work)",
                )
            )
        return detection

    async def _detect_streamable_http(
        self, client: httpx.AsyncClient, target: ProbeTarget, timeout: float
    ) -> _Detection:
        headers = {
            "Accept": "application/json, text/event-stream",
            "Content-Type": "application/json",
            MCP_PROTOCOL_VERSION_HEADER: LATEST_PROTOCOL_VERSION,
        }
        async with client.stream(
            "POST", target.url, json=_initialize_request(), headers=headers, timeout=timeout
        ) as response:
            if _has_resource_metadata_challenge(response):
                return _Detection(detected=True, server_info=DiscoveredServerInfo(requires_auth=True))

            session_header = MCP_SESSION_ID_HEADER in response.headers
            message: Any = None
            if response.is_success:
                content_type = response.headers.get("content-type", "").lower()
                if content_type.startswith("application/json"):
                    message = json.loads(await response.aread())
                elif content_type.startswith("text/event-stream"):
                    message = await read_first_json_message(EventSource(response))

            server_info = _server_info_from_jsonrpc(message)
            if server_info is not None or session_header:
                return _Detection(detected=True, server_info=server_info)
            return _Detection(detected=False)

    async def _detect_sse(self, client: httpx.AsyncClient, target: ProbeTarget, timeout: float) -> _Detection:
        headers = {MCP_PROTOCOL_VERSION_HEADER: LATEST_PROTOCOL_VERSION}
        async with aconnect_sse(client, "GET", target.url, headers=headers, timeout=timeout) as event_source:
            response = event_source.response
            if _has_resource_metadata_challenge(response):
                return _Detection(detected=True, server_info=DiscoveredServerInfo(requires_auth=True))
            content_type = response.headers.get("content-type", "").lower()
            if not response.is_success or not content_type.startswith("text/event-stream"):
                return _Detection(detected=False)

            endpoint_url = await read_endpoint_event(event_source, target.url)
            if endpoint_url is None:
                return _Detection(detected=False)
            logger.debug(f"SSE endpoint event received for {target.url}: {endpoint_url}")
            return _Detection(detected=True, server_info=DiscoveredServerInfo())
