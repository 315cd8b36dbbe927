"""
Command line front end for remote MCP discovery.

Usage:
    owl-mcp list --category databases
    owl-mcp test https://mcp.notion.com/mcp
    owl-mcp add notion --scope user
"""

import logging
import sys
from typing import Any, NoReturn

import anyio
import click
from pydantic import BaseModel

from owl_mcp.client.negotiation import NegotiationAction, NegotiationState, NegotiationStatus
from owl_mcp.server.handlers import (
    BatchConnectionTestRequest,
    BeginNegotiationRequest,
    ConnectionTestRequest,
    DiscoverAuthRequest,
    FetchDirectoryRequest,
    GetServerDetailsRequest,
    NegotiationActionRequest,
    NegotiationResponse,
    RemoteMCPHandlers,
    SearchServersRequest,
)
from owl_mcp.settings import OwlMCPSettings
from owl_mcp.types import RemoteMCPServer

logger = logging.getLogger(__name__)

CATEGORIES = [
    "developer-tools",
    "databases",
    "productivity",
    "payments",
    "content",
    "utilities",
    "security",
    "analytics",
]
AUTH_TYPES = ["oauth", "api-key", "header", "open"]


def _echo_model(model: BaseModel) -> None:
    click.echo(model.model_dump_json(by_alias=True, exclude_none=True, indent=2))


def _echo_servers(servers: list[RemoteMCPServer]) -> None:
    for server in servers:
        badge = "verified" if server.verified else "unverified"
        click.echo(f"{server.id:<22} {server.auth_type:<8} {server.category:<16} {badge:<10} {server.endpoint}")


def _fail(message: str | None) -> NoReturn:
    raise click.ClickException(message or "unknown error")


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx: click.Context, verbose: bool) -> None:
    """Discover, verify and add remote MCP servers."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    if ctx.obj is None:
        ctx.obj = RemoteMCPHandlers.from_settings(OwlMCPSettings())


@cli.command("list")
@click.option("--refresh", is_flag=True, help="Fetch the live directory instead of the cache")
@click.option("--category", type=click.Choice(CATEGORIES), help="Only show this category")
@click.pass_obj
def list_servers(handlers: RemoteMCPHandlers, refresh: bool, category: str | None) -> None:
    """List the server directory."""

    async def run() -> None:
        request = FetchDirectoryRequest.model_validate(
            {"forceRefresh": refresh, "filters": {"category": category} if category else None}
        )
        response = await handlers.fetch_directory(request)
        if not response.success:
            _fail(response.error)
        _echo_servers(response.servers)
        updated = f"{response.last_updated:%Y-%m-%d %H:%M}"
        click.echo(f"\n{len(response.servers)} servers ({response.source}, updated {updated})")

    anyio.run(run)


@cli.command()
@click.argument("query", required=False)
@click.option("--category", type=click.Choice(CATEGORIES))
@click.option("--auth-type", type=click.Choice(AUTH_TYPES))
@click.option("--transport", type=click.Choice(["http", "sse"]))
@click.option("--verified-only", is_flag=True)
@click.option("--limit", type=click.IntRange(min=1))
@click.pass_obj
def search(
    handlers: RemoteMCPHandlers,
    query: str | None,
    category: str | None,
    auth_type: str | None,
    transport: str | None,
    verified_only: bool,
    limit: int | None,
) -> None:
    """Search servers by text and filters."""

    async def run() -> None:
        request = SearchServersRequest.model_validate(
            {
                "query": query,
                "category": category,
                "authType": auth_type,
                "transport": transport,
                "verifiedOnly": verified_only,
                "limit": limit,
            }
        )
        response = await handlers.search_servers(request)
        if not response.success:
            _fail(response.error)
        _echo_servers(response.servers)
        click.echo(f"\n{len(response.servers)} of {response.total_count} matching servers")

    anyio.run(run)


@cli.command()
@click.argument("server_id")
@click.option("--verify", is_flag=True, help="Probe the endpoint so TLS problems are taken into account")
@click.pass_obj
def details(handlers: RemoteMCPHandlers, server_id: str, verify: bool) -> None:
    """Show a server with its security assessment."""

    async def run() -> None:
        response = await handlers.get_server_details(
            GetServerDetailsRequest(server_id=server_id, verify_connection=verify)
        )
        if not response.success:
            _fail(response.error)
        _echo_model(response)

    anyio.run(run)


@cli.command()
@click.argument("url")
@click.option("--transport", type=click.Choice(["http", "sse"]), default="http", show_default=True)
@click.option("--timeout-ms", type=click.IntRange(min=1), help="Overall time budget of the probe")
@click.pass_obj
def test(handlers: RemoteMCPHandlers, url: str, transport: str, timeout_ms: int | None) -> None:
    """Run the connectivity probe against an endpoint."""

    async def run() -> None:
        response = await handlers.test_connection(
            ConnectionTestRequest.model_validate({"url": url, "transport": transport, "timeoutMs": timeout_ms})
        )
        if response.result is None:
            _fail(response.error)
        result = response.result
        for step in result.steps:
            click.echo(f"[{step.status:>7}] {step.name}: {step.details or ''}")
        if result.success:
            click.echo(f"OK ({result.latency_ms}ms, HTTP {result.http_status})")
        else:
            click.echo(f"FAILED {result.error_code}: {result.error}")
        for suggestion in result.suggestions:
            click.echo(f"  - {suggestion}")
        if not result.success:
            sys.exit(1)

    anyio.run(run)


@cli.command("test-all")
@click.argument("server_ids", nargs=-1)
@click.pass_obj
def test_all(handlers: RemoteMCPHandlers, server_ids: tuple[str, ...]) -> None:
    """Probe several servers, or the whole directory when no ids are given."""

    async def run() -> None:
        ids = list(server_ids)
        if not ids:
            directory = await handlers.fetch_directory(FetchDirectoryRequest())
            ids = [server.id for server in directory.servers]

        response = await handlers.test_all_connections(BatchConnectionTestRequest(server_ids=ids))
        if not response.success:
            _fail(response.error)
        for item in response.results:
            outcome = "ok" if item.result.success else (item.result.error_code or "failed")
            latency = f"{item.result.latency_ms}ms" if item.result.latency_ms is not None else "-"
            click.echo(f"{item.server_id:<22} {outcome:<14} {latency}")
        click.echo(
            f"\n{response.success_count} reachable, {response.failed_count} failed in {response.total_time_ms}ms"
        )

    anyio.run(run)


@cli.command()
@click.argument("endpoint")
@click.option("--declared", type=click.Choice(AUTH_TYPES), help="Auth type the directory declares")
@click.option("--steps", "show_steps", is_flag=True, help="Print every discovery step")
@click.pass_obj
def discover(handlers: RemoteMCPHandlers, endpoint: str, declared: str | None, show_steps: bool) -> None:
    """Find out which authentication an endpoint expects."""

    async def run() -> None:
        response = await handlers.discover_auth(
            DiscoverAuthRequest.model_validate({"endpoint": endpoint, "declaredAuthType": declared})
        )
        if show_steps:
            for step in response.discovery_steps:
                click.echo(f"  {step}")
        click.echo(f"Auth type: {response.auth_type}")
        click.echo(f"Requires auth: {response.requires_auth}")
        if response.scopes:
            click.echo(f"Scopes: {', '.join(response.scopes)}")
        if response.error:
            click.echo(f"Discovery error: {response.error}", err=True)

    anyio.run(run)


@cli.command("cache-status")
@click.pass_obj
def cache_status(handlers: RemoteMCPHandlers) -> None:
    """Show the state of the on-disk directory cache."""

    async def run() -> None:
        response = await handlers.get_cache_status()
        if response.cache_status is None:
            _fail(response.error)
        _echo_model(response.cache_status)

    anyio.run(run)


def _next_action(status: NegotiationStatus, prefer_api_key: bool) -> NegotiationAction | None:
    """Pick what the user would click next; None means the API key form has to be filled in."""
    allowed = set(status.allowed_actions)
    if status.state == NegotiationState.API_KEY_FORM:
        return None
    if prefer_api_key and NegotiationAction.USE_API_KEY in allowed:
        return NegotiationAction.USE_API_KEY
    for action in (NegotiationAction.ADD_SERVER, NegotiationAction.CONFIGURE, NegotiationAction.AUTHENTICATE):
        if action in allowed:
            return action
    return NegotiationAction.CANCEL


@cli.command()
@click.argument("server_id")
@click.option("--scope", type=click.Choice(["local", "user", "project"]), default="user", show_default=True)
@click.option("--project-path", type=click.Path(file_okay=False), help="Project directory for --scope project")
@click.option("--name", "custom_name", help="Name to register the server under")
@click.option("--api-key", "prefer_api_key", is_flag=True, help="Use an API key even if OAuth is available")
@click.option("-y", "--yes", is_flag=True, help="Do not ask for confirmation of security warnings")
@click.pass_obj
def add(
    handlers: RemoteMCPHandlers,
    server_id: str,
    scope: str,
    project_path: str | None,
    custom_name: str | None,
    prefer_api_key: bool,
    yes: bool,
) -> None:
    """Add a server, negotiating its authentication interactively."""

    async def run() -> None:
        details = await handlers.get_server_details(GetServerDetailsRequest(server_id=server_id))
        if not details.success:
            _fail(details.error)
        if details.show_security_dialog and not yes:
            click.echo(details.risk_summary)
            for warning in details.warnings:
                click.echo(f"  [{warning.severity}] {warning.title}: {warning.description}")
            if not click.confirm("Add this server anyway?", default=False):
                click.echo("Cancelled")
                sys.exit(1)

        response = await handlers.begin_negotiation(
            BeginNegotiationRequest.model_validate(
                {"serverId": server_id, "scope": scope, "projectPath": project_path, "customName": custom_name}
            )
        )
        await _drive(handlers, server_id, response, prefer_api_key)

    anyio.run(run)


async def _drive(
    handlers: RemoteMCPHandlers, server_id: str, response: NegotiationResponse, prefer_api_key: bool
) -> None:
    while True:
        status = response.negotiation
        if status is None:
            _fail(response.error)
        if status.state == NegotiationState.COMPLETE:
            click.echo(status.message or "Server added")
            return
        if status.state == NegotiationState.CANCELLED:
            _fail(status.error or "Authentication cancelled")
        if status.error and not status.field_errors:
            click.echo(f"Error: {status.error}", err=True)
            await handlers.negotiation_action(
                NegotiationActionRequest(server_id=server_id, action=NegotiationAction.CANCEL)
            )
            sys.exit(1)

        request: dict[str, Any] = {"serverId": server_id}
        action = _next_action(status, prefer_api_key)
        if action is None:
            for field, message in status.field_errors.items():
                click.echo(f"  {field}: {message}", err=True)
            request["envVarName"] = click.prompt("Environment variable name", default=status.suggested_env_var_name)
            request["apiKeyValue"] = click.prompt("API key", hide_input=True)
            action = NegotiationAction.SUBMIT_API_KEY
        elif action == NegotiationAction.AUTHENTICATE:
            click.echo("Server added. Opening a terminal to complete OAuth.")
        request["action"] = action
        response = await handlers.negotiation_action(NegotiationActionRequest.model_validate(request))


def main() -> None:
    cli()
