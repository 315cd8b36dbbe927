from .client.auth_discovery import AuthDiscoveryProber
from .client.negotiation import AuthNegotiationFlow, NegotiationAction, NegotiationState
from .errors import NegotiationTransitionError, OwlMCPError
from .host.claude_cli import ClaudeCLIBridge, HostBridge
from .probe.connection import ConnectionTester
from .registry.cache import RegistryCache
from .registry.service import ServerRegistryService
from .security.assessment import assess_server, generate_warnings
from .server.handlers import RemoteMCPHandlers
from .settings import OwlMCPSettings, RiskPolicy
from .types import (
    ConnectionTestResult,
    DirectoryResult,
    DiscoverAuthResponse,
    MCPAuthCredentials,
    RemoteMCPServer,
    RemoteServerFilters,
    SecurityContext,
)

__all__ = [
    "AuthDiscoveryProber",
    "AuthNegotiationFlow",
    "ClaudeCLIBridge",
    "ConnectionTestResult",
    "ConnectionTester",
    "DirectoryResult",
    "DiscoverAuthResponse",
    "HostBridge",
    "MCPAuthCredentials",
    "NegotiationAction",
    "NegotiationState",
    "NegotiationTransitionError",
    "OwlMCPError",
    "OwlMCPSettings",
    "RegistryCache",
    "RemoteMCPHandlers",
    "RemoteMCPServer",
    "RemoteServerFilters",
    "RiskPolicy",
    "SecurityContext",
    "ServerRegistryService",
    "assess_server",
    "generate_warnings",
]
