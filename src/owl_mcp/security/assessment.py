"""
Risk scoring for remote MCP servers.

Everything here is a pure function of a server descriptor, optional probe
signals and a ``RiskPolicy``. Nothing is cached: TLS validity can change between
two requests, so callers assess again every time they need a context.
"""

import logging
import re
from dataclasses import dataclass
from urllib.parse import urlparse

from owl_mcp.probe.connection import TLS_STEP
from owl_mcp.settings import RiskPolicy
from owl_mcp.types import (
    ConnectionTestResult,
    RemoteMCPCategory,
    RemoteMCPServer,
    SecurityContext,
    SecurityRiskLevel,
    SecurityWarning,
    StepStatus,
    TLSCertificateInfo,
)

logger = logging.getLogger(__name__)

UNVERIFIED_PROVIDER = "Unverified Provider"
COMMUNITY_SERVER = "Community-submitted server"
INVALID_TLS = "Missing or invalid TLS certificate"
OPEN_ACCESS = "Open access (no authentication)"

_SCOPE_SEPARATORS = re.compile(r"[^a-z0-9]+")

_SEVERITY_ORDER: dict[SecurityRiskLevel, int] = {"low": 0, "medium": 1, "high": 2}

_CATEGORY_ACCESS: dict[RemoteMCPCategory, str] = {
    "developer-tools": "Access to development tools and workflows",
    "databases": "Access to database operations and data",
    "productivity": "Access to productivity tools and documents",
    "payments": "Access to payment and financial information",
    "content": "Access to content and media",
    "utilities": "Access to utility functions",
    "security": "Access to security scanning tools",
    "analytics": "Access to analytics and metrics",
}


@dataclass(frozen=True)
class ProbeSignals:
    """What a connection test revealed that matters for risk scoring."""

    tls_status: StepStatus | None = None
    tls_certificate_info: TLSCertificateInfo | None = None

    @classmethod
    def from_connection_result(cls, result: ConnectionTestResult) -> "ProbeSignals":
        step = result.step(TLS_STEP)
        return cls(tls_status=step.status if step else None, tls_certificate_info=result.tls_certificate_info)

    @property
    def tls_problem(self) -> bool:
        return self.tls_status in ("warning", "error")


@dataclass(frozen=True)
class _RiskFactor:
    description: str
    severity: SecurityRiskLevel


def _is_sensitive(scope: str, patterns: set[str]) -> bool:
    scope = scope.lower()
    return scope in patterns or not patterns.isdisjoint(_SCOPE_SEPARATORS.split(scope))


def sensitive_scopes(scopes: list[str], policy: RiskPolicy) -> list[str]:
    """Scopes where a policy pattern is the whole scope or one of its parts, e.g. ``all`` in ``content.all``."""
    patterns = {p.lower() for p in policy.sensitive_scope_patterns}
    return [scope for scope in scopes if _is_sensitive(scope, patterns)]


def _broad_scope_factor(scopes: list[str], policy: RiskPolicy) -> _RiskFactor | None:
    sensitive = sensitive_scopes(scopes, policy)
    if sensitive:
        return _RiskFactor(f"Requests sensitive permissions: {', '.join(sensitive)}", "medium")
    if len(scopes) > policy.max_scope_count:
        return _RiskFactor(f"Requests broad permissions ({len(scopes)} scopes): {', '.join(scopes)}", "medium")
    return None


def _uses_plain_http(server: RemoteMCPServer) -> bool:
    return urlparse(server.endpoint).scheme != "https"


def _data_access_description(server: RemoteMCPServer) -> str:
    descriptions = [_CATEGORY_ACCESS[server.category]] if server.category in _CATEGORY_ACCESS else []

    scopes = server.required_scopes
    if any("repo" in s for s in scopes):
        descriptions.append("Read and write to repositories")
    if any("workflow" in s for s in scopes):
        descriptions.append("Manage workflows and automations")
    if any("admin" in s for s in scopes):
        descriptions.append("Administrative access")

    return ". ".join(descriptions) or "General access to server features"


def assess_server(
    server: RemoteMCPServer,
    signals: ProbeSignals | None = None,
    policy: RiskPolicy | None = None,
) -> SecurityContext:
    """
    Compute the security context of a server.

    Each rule contributes at most one risk factor, always in the same order.
    The risk level is the highest severity among the triggered factors and
    ``low`` when nothing triggers.
    """
    signals = signals or ProbeSignals()
    policy = policy or RiskPolicy()

    factors: list[_RiskFactor] = []
    if not server.verified:
        factors.append(_RiskFactor(UNVERIFIED_PROVIDER, "medium"))
    if server.source == "community":
        factors.append(_RiskFactor(COMMUNITY_SERVER, "medium"))

    has_valid_tls = not (_uses_plain_http(server) or signals.tls_problem)
    if not has_valid_tls:
        factors.append(_RiskFactor(INVALID_TLS, "high"))

    scope_factor = _broad_scope_factor(server.required_scopes, policy)
    if scope_factor is not None:
        factors.append(scope_factor)
    if server.auth_type == "open":
        factors.append(_RiskFactor(OPEN_ACCESS, "low"))

    risk_level: SecurityRiskLevel = "low"
    for factor in factors:
        if _SEVERITY_ORDER[factor.severity] > _SEVERITY_ORDER[risk_level]:
            risk_level = factor.severity

    logger.debug(f"Assessed {server.id}: risk={risk_level}, factors={len(factors)}")
    return SecurityContext(
        risk_level=risk_level,
        is_verified_provider=server.verified,
        is_official_server=server.source == "mcpservers.org",
        has_valid_tls=has_valid_tls,
        risk_factors=[factor.description for factor in factors],
        requested_scopes=server.required_scopes,
        data_access_description=_data_access_description(server),
        tls_certificate_info=signals.tls_certificate_info,
    )


def generate_warnings(
    server: RemoteMCPServer,
    context: SecurityContext,
    policy: RiskPolicy | None = None,
) -> list[SecurityWarning]:
    policy = policy or RiskPolicy()
    warnings: list[SecurityWarning] = []

    if not context.is_verified_provider:
        warnings.append(
            SecurityWarning(
                severity="warning",
                title="Unverified Provider",
                description=(
                    "This server is not from a verified provider. "
                    "Exercise caution when granting access to sensitive data."
                ),
                recommendation="Review the server's documentation and only proceed if you trust the provider.",
            )
        )

    if server.source == "community":
        warnings.append(
            SecurityWarning(
                severity="warning",
                title="Community Server",
                description="This server was submitted by the community and has not been officially reviewed.",
                recommendation="Verify the server source and review any available documentation before connecting.",
            )
        )

    if server.auth_type == "open":
        warnings.append(
            SecurityWarning(
                severity="info",
                title="Open Access",
                description=(
                    "This server allows open access without authentication. "
                    "Data sent to this server may not be encrypted end-to-end."
                ),
                recommendation="Avoid sending sensitive or personal data through this server.",
            )
        )

    sensitive = sensitive_scopes(context.requested_scopes, policy)
    if sensitive:
        warnings.append(
            SecurityWarning(
                severity="warning",
                title="Sensitive Permissions",
                description=(
                    f"This server requests access to: {', '.join(sensitive)}. "
                    "These permissions allow significant access to your data."
                ),
                recommendation="Only grant access if you understand and need these capabilities.",
            )
        )

    if not context.has_valid_tls:
        warnings.append(
            SecurityWarning(
                severity="critical",
                title="TLS Certificate Issue",
                description="The server has a TLS certificate issue. Your connection may not be secure.",
                recommendation="Do not proceed unless you understand the security implications.",
            )
        )

    if context.risk_level == "high":
        warnings.append(
            SecurityWarning(
                severity="critical",
                title="High Risk Server",
                description=(
                    "Multiple risk factors have been identified with this server. Proceed with extreme caution."
                ),
                recommendation="Consider whether you really need this server and if there are safer alternatives.",
            )
        )

    return warnings


def risk_summary(context: SecurityContext) -> str:
    if context.risk_level == "low":
        return "This server appears to be safe. It is from a verified provider with standard permissions."
    if context.risk_level == "medium":
        return "This server has some risk factors. Review the warnings before proceeding."
    return "This server has significant risk factors. Exercise extreme caution."


def should_show_security_dialog(context: SecurityContext) -> bool:
    return context.risk_level != "low" or bool(context.risk_factors)
