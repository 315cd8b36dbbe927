import json
import logging
import subprocess
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import SecretStr

from owl_mcp.host.claude_cli import ClaudeCLIBridge, credential_header_value
from owl_mcp.types import MCPAuthCredentials

pytestmark = pytest.mark.anyio

API_KEY = "sk-live-0123456789"


def completed(returncode: int = 0, stdout: str = "", stderr: str = "") -> subprocess.CompletedProcess[bytes]:
    return subprocess.CompletedProcess(["claude"], returncode, stdout=stdout.encode(), stderr=stderr.encode())


@pytest.fixture
def run_process():
    with patch("owl_mcp.host.claude_cli.anyio.run_process", new_callable=AsyncMock) as run_process:
        run_process.return_value = completed(stdout="Added HTTP MCP server")
        yield run_process


@pytest.fixture
def bridge():
    return ClaudeCLIBridge(platform="linux")


@pytest.fixture
def credentials():
    return MCPAuthCredentials(env_var_name="EXAMPLE_API_KEY", api_key_value=SecretStr(API_KEY))


def test_credential_header_value():
    assert credential_header_value("Authorization", "abc") == "Bearer abc"
    assert credential_header_value("authorization", "abc") == "Bearer abc"
    assert credential_header_value("X-API-Key", "abc") == "abc"


async def test_add_remote_server(bridge, run_process, make_server):
    result = await bridge.add_remote_server(make_server(), scope="user")

    assert result.success
    assert result.message == "Successfully added MCP server: example"
    run_process.assert_awaited_once_with(
        ["claude", "mcp", "add", "--transport", "http", "--scope", "user", "example", "https://mcp.example.com/mcp"],
        cwd=None,
        check=False,
    )


async def test_add_remote_server_project_scope_runs_in_project(bridge, run_process, make_server, tmp_path):
    await bridge.add_remote_server(make_server(transport="sse"), "project", str(tmp_path), custom_name="mine")

    args = run_process.await_args.args[0]
    assert args[3:] == ["--transport", "sse", "--scope", "project", "mine", "https://mcp.example.com/mcp"]
    assert run_process.await_args.kwargs["cwd"] == str(tmp_path)


async def test_project_scope_requires_path(bridge, run_process, make_server, credentials):
    added = await bridge.add_remote_server(make_server(), scope="project")
    configured = await bridge.configure_api_key(make_server(), credentials, scope="project")

    assert not added.success
    assert added.error == 'projectPath is required when scope is "project"'
    assert not configured.success
    run_process.assert_not_awaited()


async def test_add_remote_server_failure(bridge, run_process, make_server):
    run_process.return_value = completed(1, stderr="Error: MCP server example already exists in user config")

    result = await bridge.add_remote_server(make_server())

    assert not result.success
    assert "already exists" in result.error


async def test_missing_executable(bridge, run_process, make_server):
    run_process.side_effect = FileNotFoundError(2, "No such file or directory", "claude")

    result = await bridge.add_remote_server(make_server())

    assert not result.success
    assert result.error.startswith("Failed to add MCP server")


async def test_configure_api_key_passes_bearer_header(bridge, run_process, make_server, credentials):
    result = await bridge.configure_api_key(make_server(auth_type="api-key"), credentials, custom_name="ex")

    assert result.success
    args = run_process.await_args.args[0]
    assert args[:4] == ["claude", "mcp", "add-json", "ex"]
    assert args[5:] == ["--scope", "user"]
    assert json.loads(args[4]) == {
        "type": "http",
        "url": "https://mcp.example.com/mcp",
        "headers": {"Authorization": f"Bearer {API_KEY}"},
    }


async def test_configure_api_key_uses_declared_header(bridge, run_process, make_server, credentials):
    server = make_server(auth_type="header", auth_config={"headerName": "X-Example-Key"})

    await bridge.configure_api_key(server, credentials)

    config = json.loads(run_process.await_args.args[0][4])
    assert config["headers"] == {"X-Example-Key": API_KEY}


async def test_configure_api_key_never_logs_the_key(bridge, run_process, make_server, credentials, caplog):
    run_process.return_value = completed(1, stderr="Error: rejected")

    with caplog.at_level(logging.DEBUG, logger="owl_mcp"):
        result = await bridge.configure_api_key(make_server(auth_type="api-key"), credentials)

    assert not result.success
    assert caplog.records
    assert API_KEY not in caplog.text
    assert API_KEY not in repr(credentials)


@pytest.mark.parametrize(
    ("stdout", "status", "location"),
    [
        ("example:\n  Scope: User config\n  Status: ✓ Connected\n  Type: http\n", "authenticated", "User config"),
        ("example:\n  Scope: Local config\n  Status: ⚠ Needs authentication\n", "not_authenticated", "Local config"),
        ("example:\n  Type: stdio\n  Command: npx example\n", "not_required", None),
        ("example:\n  URL: https://mcp.example.com/mcp\n", "unknown", None),
    ],
)
async def test_check_auth_status(bridge, run_process, stdout, status, location):
    run_process.return_value = completed(stdout=stdout)

    result = await bridge.check_auth_status("example")

    assert result.is_installed
    assert result.auth_status == status
    assert result.config_location == location
    assert run_process.await_args.args[0] == ["claude", "mcp", "get", "example"]


async def test_check_auth_status_for_unknown_server(bridge, run_process):
    run_process.return_value = completed(1, stderr="No MCP server found with name: example")

    result = await bridge.check_auth_status("example")

    assert not result.is_installed
    assert result.auth_status == "unknown"


async def test_launch_oauth_flow_on_macos(run_process):
    bridge = ClaudeCLIBridge(platform="darwin")

    result = await bridge.launch_oauth_flow("example", "https://mcp.example.com/mcp", project_path="/work/my app")

    assert result.success
    args = run_process.await_args.args[0]
    assert args[:2] == ["osascript", "-e"]
    assert "cd '/work/my app' && claude /mcp" in args[2]


async def test_launch_oauth_flow_on_windows(run_process):
    bridge = ClaudeCLIBridge(platform="win32")

    result = await bridge.launch_oauth_flow("example", "https://mcp.example.com/mcp")

    assert result.success
    assert run_process.await_args.args[0] == ["cmd", "/c", "start", "cmd", "/k", "claude /mcp"]


async def test_launch_oauth_flow_on_linux_uses_first_terminal(bridge):
    def which(name: str) -> str | None:
        return "/usr/bin/xterm" if name == "xterm" else None

    with (
        patch("owl_mcp.host.claude_cli.shutil.which", side_effect=which),
        patch("owl_mcp.host.claude_cli.anyio.open_process", new_callable=AsyncMock) as open_process,
    ):
        result = await bridge.launch_oauth_flow("example", "https://mcp.example.com/mcp")

    assert result.success
    assert 'Select "example"' in result.message
    command = open_process.await_args.args[0]
    assert command[:4] == ["xterm", "-e", "bash", "-c"]
    assert command[4].startswith("claude /mcp;")
    assert open_process.await_args.kwargs["start_new_session"] is True


async def test_launch_oauth_flow_without_terminal(bridge):
    with patch("owl_mcp.host.claude_cli.shutil.which", return_value=None):
        result = await bridge.launch_oauth_flow("example", "https://mcp.example.com/mcp")

    assert not result.success
    assert "claude /mcp" in result.error
