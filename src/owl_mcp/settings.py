from pathlib import Path

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from owl_mcp.shared._httpx_utils import DEFAULT_USER_AGENT


class RiskPolicy(BaseModel):
    """Thresholds used by the security assessment."""

    max_scope_count: int = 5
    sensitive_scope_patterns: list[str] = Field(
        default_factory=lambda: ["write", "delete", "admin", "manage", "full", "all", "workflow", "execute"]
    )


class OwlMCPSettings(BaseSettings):
    """Settings for remote MCP discovery, read from ``OWL_MCP_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="OWL_MCP_", env_nested_delimiter="__")

    cache_dir: Path = Path.home() / ".claude-owl" / "cache"
    cache_file_name: str = "remote-mcp-servers.json"
    cache_ttl_seconds: int = 24 * 60 * 60

    # Optional JSON listing merged with the curated directory on refresh
    directory_url: str | None = None

    connection_timeout_ms: int = 10_000
    discovery_timeout_seconds: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT

    claude_executable: str = "claude"

    risk_policy: RiskPolicy = Field(default_factory=RiskPolicy)

    @property
    def cache_path(self) -> Path:
        return self.cache_dir / self.cache_file_name
