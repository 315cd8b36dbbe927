"""
Data model for remote MCP server discovery, connection verification and
authentication negotiation.

Models that cross the application boundary serialize with camelCase aliases
(``latencyMs``, ``lastUpdated``) and accept either spelling on input.
"""

import re
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, SecretStr, field_validator, model_validator
from pydantic.alias_generators import to_camel

from owl_mcp.errors import ConnectionErrorCode
from owl_mcp.shared.auth import OAuthMetadata, ProtectedResourceMetadata

Transport = Literal["http", "sse"]
RemoteMCPAuthType = Literal["oauth", "api-key", "header", "open"]
RemoteMCPCategory = Literal[
    "developer-tools",
    "databases",
    "productivity",
    "payments",
    "content",
    "utilities",
    "security",
    "analytics",
]
RemoteMCPSource = Literal["mcpservers.org", "claude-owl", "community"]
RemoteMCPHealthStatus = Literal["healthy", "degraded", "offline", "unknown"]
DirectorySourceKind = Literal["live", "cache"]
StepStatus = Literal["pending", "success", "warning", "error"]
SecurityRiskLevel = Literal["low", "medium", "high"]
DiscoveredAuthType = Literal["oauth-dcr", "oauth-static", "api-key", "open", "unknown"]
MCPScope = Literal["local", "user", "project"]
MCPAuthStatus = Literal["authenticated", "not_authenticated", "not_required", "unknown"]

ENV_VAR_NAME_PATTERN = re.compile(r"^[A-Z][A-Z0-9_]*$")


class OwlModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Server descriptors
# ---------------------------------------------------------------------------


class OAuthAuthConfig(OwlModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["oauth"] = "oauth"
    oauth_provider: str | None = None
    oauth_url: str | None = None
    required_scopes: list[str] = Field(default_factory=list)


class ApiKeyAuthConfig(OwlModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["api-key"] = "api-key"
    api_key_header: str | None = None
    api_key_env_var: str | None = None
    api_key_url: str | None = None
    api_key_instructions: str | None = None


class HeaderAuthConfig(OwlModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["header"] = "header"
    header_name: str | None = None
    api_key_env_var: str | None = None
    api_key_instructions: str | None = None


class OpenAuthConfig(OwlModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["open"] = "open"


AuthConfig = Annotated[
    OAuthAuthConfig | ApiKeyAuthConfig | HeaderAuthConfig | OpenAuthConfig,
    Field(discriminator="type"),
]


class RemoteMCPServer(OwlModel):
    """
    Static metadata describing a remote MCP server.

    ``auth_config`` is a tagged union keyed on ``type``; a config without a
    ``type`` inherits the server's ``auth_type`` and a config of a different
    variant is rejected.
    """

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    name: str
    description: str = ""
    endpoint: str
    transport: Transport = "http"
    auth_type: RemoteMCPAuthType
    auth_config: AuthConfig | None = None
    provider: str
    verified: bool = False
    category: RemoteMCPCategory
    tags: list[str] = Field(default_factory=list)
    documentation_url: str | None = None
    logo_url: str | None = None
    source: RemoteMCPSource = "community"
    last_verified: str | None = None
    health_status: RemoteMCPHealthStatus | None = None

    @model_validator(mode="before")
    @classmethod
    def _tag_auth_config(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        auth_type = data.get("auth_type", data.get("authType"))
        key = "auth_config" if "auth_config" in data else "authConfig"
        config = data.get(key)
        if isinstance(config, dict) and "type" not in config and auth_type is not None:
            data = {**data, key: {**config, "type": auth_type}}
        return data

    @model_validator(mode="after")
    def _check_auth_config(self) -> "RemoteMCPServer":
        if self.auth_config is not None and self.auth_config.type != self.auth_type:
            raise ValueError(
                f"auth_config of type {self.auth_config.type!r} does not match auth_type {self.auth_type!r}"
            )
        return self

    @property
    def required_scopes(self) -> list[str]:
        if isinstance(self.auth_config, OAuthAuthConfig):
            return list(self.auth_config.required_scopes)
        return []

    @property
    def credential_header(self) -> str | None:
        if isinstance(self.auth_config, ApiKeyAuthConfig):
            return self.auth_config.api_key_header
        if isinstance(self.auth_config, HeaderAuthConfig):
            return self.auth_config.header_name
        return None

    def suggested_env_var_name(self) -> str:
        """Environment variable name to offer in the API key form."""
        if isinstance(self.auth_config, ApiKeyAuthConfig | HeaderAuthConfig) and self.auth_config.api_key_env_var:
            return self.auth_config.api_key_env_var
        base = re.sub(r"[^A-Z0-9]", "_", (self.id or self.name).upper())
        if not base[:1].isalpha():
            base = f"MCP_{base}"
        return f"{base}_API_KEY"


class RemoteServerFilters(OwlModel):
    search: str | None = None
    category: RemoteMCPCategory | Literal["all"] | None = None
    auth_type: RemoteMCPAuthType | Literal["all"] | None = None
    transport: Transport | Literal["all"] | None = None
    verified_only: bool = False


# ---------------------------------------------------------------------------
# Directory cache
# ---------------------------------------------------------------------------


class DirectoryCache(OwlModel):
    """On-disk shape of the server directory cache."""

    servers: list[RemoteMCPServer]
    source: DirectorySourceKind = "live"
    # files written by the desktop app store the time under "timestamp"
    last_updated: datetime = Field(validation_alias=AliasChoices("lastUpdated", "last_updated", "timestamp"))


class DirectoryCacheStatus(OwlModel):
    is_cached: bool
    is_stale: bool
    server_count: int
    last_updated: datetime | None = None


class DirectoryResult(OwlModel):
    servers: list[RemoteMCPServer]
    source: DirectorySourceKind
    last_updated: datetime


# ---------------------------------------------------------------------------
# Connection testing
# ---------------------------------------------------------------------------


class ConnectionTestStep(OwlModel):
    name: str
    status: StepStatus
    details: str | None = None


class DiscoveredServerInfo(OwlModel):
    protocol_version: str | None = None
    server_name: str | None = None
    server_version: str | None = None
    capabilities: list[str] = Field(default_factory=list)
    requires_auth: bool | None = None


class TLSCertificateInfo(OwlModel):
    issuer: str
    subject: str | None = None
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    fingerprint: str | None = None


class ConnectionTestResult(OwlModel):
    success: bool
    latency_ms: int | None = None
    http_status: int | None = None
    error: str | None = None
    error_code: ConnectionErrorCode | None = None
    steps: list[ConnectionTestStep] = Field(default_factory=list)
    server_info: DiscoveredServerInfo | None = None
    tls_certificate_info: TLSCertificateInfo | None = None
    suggestions: list[str] = Field(default_factory=list)

    def step(self, name: str) -> ConnectionTestStep | None:
        return next((s for s in self.steps if s.name == name), None)


class BatchTestProgress(OwlModel):
    server_id: str
    index: int
    total: int


class BatchTestResult(OwlModel):
    server_id: str
    result: ConnectionTestResult


# ---------------------------------------------------------------------------
# Security assessment
# ---------------------------------------------------------------------------


class SecurityContext(OwlModel):
    risk_level: SecurityRiskLevel
    is_verified_provider: bool
    is_official_server: bool
    has_valid_tls: bool
    risk_factors: list[str] = Field(default_factory=list)
    requested_scopes: list[str] = Field(default_factory=list)
    data_access_description: str
    tls_certificate_info: TLSCertificateInfo | None = None


class SecurityWarning(OwlModel):
    severity: Literal["info", "warning", "critical"]
    title: str
    description: str
    recommendation: str


class ServerDetails(OwlModel):
    server: RemoteMCPServer
    security_context: SecurityContext
    warnings: list[SecurityWarning] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class DiscoverAuthResponse(OwlModel):
    success: bool = False
    endpoint: str
    requires_auth: bool = False
    auth_type: DiscoveredAuthType = "unknown"
    supports_dcr: bool = False
    scopes: list[str] = Field(default_factory=list)
    protected_resource: ProtectedResourceMetadata | None = None
    authorization_server: OAuthMetadata | None = None
    error: str | None = None
    discovery_steps: list[str] = Field(default_factory=list)


class MCPAuthCredentials(OwlModel):
    """
    User supplied secret material for API key and header authentication.

    The key is held as a ``SecretStr`` so it never appears in reprs, logs or
    serialized output.
    """

    type: Literal["api-key", "header"] = "api-key"
    env_var_name: str
    api_key_value: SecretStr

    @field_validator("env_var_name", mode="before")
    @classmethod
    def _check_env_var_name(cls, value: Any) -> Any:
        if not isinstance(value, str):
            return value
        value = value.strip()
        if not value:
            raise ValueError("Environment variable name is required")
        if not ENV_VAR_NAME_PATTERN.match(value):
            raise ValueError("Must start with a letter and contain only uppercase letters, numbers, and underscores")
        return value

    @field_validator("api_key_value", mode="before")
    @classmethod
    def _check_api_key(cls, value: Any) -> Any:
        if isinstance(value, SecretStr):
            value = value.get_secret_value()
        if isinstance(value, str):
            value = value.strip()
            if not value:
                raise ValueError("API key is required")
        return value


class HostResult(OwlModel):
    """Outcome of a call into the host application's persistence boundary."""

    success: bool
    message: str | None = None
    error: str | None = None


class AuthStatusResult(OwlModel):
    auth_status: MCPAuthStatus = "unknown"
    is_installed: bool = False
    config_location: str | None = None
