"""Hand-maintained list of well known remote MCP servers, based on mcpservers.org."""

from owl_mcp.types import ApiKeyAuthConfig, OAuthAuthConfig, RemoteMCPServer


def _oauth(provider: str, *scopes: str) -> OAuthAuthConfig:
    return OAuthAuthConfig(oauth_provider=provider, required_scopes=list(scopes))


CURATED_SERVERS: tuple[RemoteMCPServer, ...] = (
    RemoteMCPServer(
        id="github",
        name="GitHub MCP",
        description="GitHub's official MCP Server for repository access",
        endpoint="https://api.githubcopilot.com/mcp/",
        transport="http",
        auth_type="api-key",
        auth_config=ApiKeyAuthConfig(
            api_key_header="Authorization",
            api_key_env_var="GITHUB_PERSONAL_ACCESS_TOKEN",
            api_key_url="https://github.com/settings/tokens?type=beta",
            api_key_instructions=(
                'Create a Fine-grained Personal Access Token with "Contents" and "Metadata" read permissions '
                "for the repositories you want to access."
            ),
        ),
        provider="GitHub",
        verified=True,
        category="developer-tools",
        tags=["git", "repositories", "issues", "pull-requests"],
        documentation_url="https://github.com/github/github-mcp-server",
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="notion",
        name="Notion MCP",
        description="Collaboration and productivity tool integration",
        endpoint="https://mcp.notion.com/mcp",
        auth_type="oauth",
        auth_config=_oauth("Notion"),
        provider="Notion",
        verified=True,
        category="productivity",
        tags=["notes", "wiki", "documents", "collaboration"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="figma",
        name="Figma MCP",
        description="Collaborative design and prototyping platform",
        endpoint="https://mcp.figma.com/mcp",
        auth_type="oauth",
        auth_config=_oauth("Figma"),
        provider="Figma",
        verified=True,
        category="developer-tools",
        tags=["design", "prototyping", "ui", "collaboration"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="linear",
        name="Linear MCP",
        description="Project management tool for software teams",
        endpoint="https://mcp.linear.app/sse",
        transport="sse",
        auth_type="oauth",
        auth_config=_oauth("Linear"),
        provider="Linear",
        verified=True,
        category="developer-tools",
        tags=["project-management", "issues", "sprints", "agile"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="supabase",
        name="Supabase MCP",
        description="Open-source Firebase alternative with PostgreSQL",
        endpoint="https://mcp.supabase.com/mcp",
        auth_type="oauth",
        auth_config=_oauth("Supabase"),
        provider="Supabase",
        verified=True,
        category="databases",
        tags=["database", "postgresql", "authentication", "storage"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="neon",
        name="Neon MCP",
        description="Serverless PostgreSQL database",
        endpoint="https://mcp.neon.tech/sse",
        transport="sse",
        auth_type="oauth",
        auth_config=_oauth("Neon"),
        provider="Neon",
        verified=True,
        category="databases",
        tags=["database", "postgresql", "serverless"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="fetch",
        name="Fetch MCP",
        description="Web content retrieval, converts HTML to markdown",
        endpoint="https://remote.mcpservers.org/fetch/mcp",
        auth_type="open",
        provider="MCP Servers",
        verified=True,
        category="utilities",
        tags=["web", "scraping", "markdown", "fetch"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="sequential-thinking",
        name="Sequential Thinking MCP",
        description="Structured thinking process for problem-solving",
        endpoint="https://remote.mcpservers.org/sequentialthinking/mcp",
        auth_type="open",
        provider="MCP Servers",
        verified=True,
        category="utilities",
        tags=["thinking", "reasoning", "problem-solving"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="sentry",
        name="Sentry MCP",
        description="Error tracking and performance monitoring",
        endpoint="https://mcp.sentry.dev/sse",
        transport="sse",
        auth_type="oauth",
        auth_config=_oauth("Sentry"),
        provider="Sentry",
        verified=True,
        category="developer-tools",
        tags=["errors", "monitoring", "debugging", "performance"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="paypal",
        name="PayPal MCP",
        description="Global online payment system integration",
        endpoint="https://mcp.paypal.com/sse",
        transport="sse",
        auth_type="oauth",
        auth_config=_oauth("PayPal"),
        provider="PayPal",
        verified=True,
        category="payments",
        tags=["payments", "transactions", "commerce"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="asana",
        name="Asana MCP",
        description="Work management platform for teams",
        endpoint="https://mcp.asana.com/mcp",
        auth_type="oauth",
        auth_config=_oauth("Asana"),
        provider="Asana",
        verified=True,
        category="productivity",
        tags=["tasks", "projects", "teams", "workflow"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="atlassian",
        name="Atlassian MCP",
        description="Jira, Confluence, and Atlassian tools integration",
        endpoint="https://mcp.atlassian.com/mcp",
        auth_type="oauth",
        auth_config=_oauth("Atlassian", "read:jira-work", "write:jira-work", "read:confluence-content.all"),
        provider="Atlassian",
        verified=True,
        category="developer-tools",
        tags=["jira", "confluence", "project-management", "documentation"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="semgrep",
        name="Semgrep MCP",
        description="Static code analysis and security scanning",
        endpoint="https://mcp.semgrep.dev/sse",
        transport="sse",
        auth_type="open",
        provider="Semgrep",
        verified=True,
        category="security",
        tags=["security", "code-analysis", "vulnerabilities", "sast"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="deepwiki",
        name="DeepWiki MCP",
        description="Wikipedia and knowledge base access",
        endpoint="https://mcp.deepwiki.com/mcp",
        auth_type="open",
        provider="DeepWiki",
        verified=True,
        category="content",
        tags=["wikipedia", "knowledge", "research", "information"],
        source="mcpservers.org",
    ),
    RemoteMCPServer(
        id="intercom",
        name="Intercom MCP",
        description="Customer messaging platform",
        endpoint="https://mcp.intercom.io/mcp",
        auth_type="oauth",
        auth_config=_oauth("Intercom"),
        provider="Intercom",
        verified=True,
        category="content",
        tags=["customer-support", "messaging", "chat", "crm"],
        source="mcpservers.org",
    ),
)

CURATED_SERVER_IDS: frozenset[str] = frozenset(server.id for server in CURATED_SERVERS)
