"""
Bridge to the assistant CLI, which owns the MCP configuration files.

Nothing in this package writes configuration or secrets itself; every change is
made by running ``claude mcp ...`` and reporting what it said.
"""

import json
import logging
import shlex
import shutil
import subprocess
import sys
from collections.abc import Sequence
from typing import Protocol

import anyio

from owl_mcp.types import (
    AuthStatusResult,
    HostResult,
    MCPAuthCredentials,
    MCPAuthStatus,
    MCPScope,
    RemoteMCPServer,
    Transport,
)

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_HEADER = "Authorization"
LINUX_TERMINALS = ("gnome-terminal", "konsole", "xterm", "x-terminal-emulator")
REDACTED = "********"


class HostBridge(Protocol):
    """Persistence boundary of the host application."""

    async def add_remote_server(
        self,
        server: RemoteMCPServer,
        scope: MCPScope = "user",
        project_path: str | None = None,
        custom_name: str | None = None,
    ) -> HostResult: ...

    async def configure_api_key(
        self,
        server: RemoteMCPServer,
        credentials: MCPAuthCredentials,
        scope: MCPScope = "user",
        project_path: str | None = None,
        custom_name: str | None = None,
    ) -> HostResult: ...

    async def launch_oauth_flow(
        self,
        server_name: str,
        server_url: str,
        transport: Transport = "http",
        project_path: str | None = None,
    ) -> HostResult: ...

    async def check_auth_status(self, server_name: str) -> AuthStatusResult: ...


def credential_header_value(header_name: str, api_key: str) -> str:
    # the CLI does not expand ${ENV_VAR} in headers, so the literal key has to go in
    if header_name.lower() == "authorization":
        return f"Bearer {api_key}"
    return api_key


def _project_scope_error(scope: MCPScope, project_path: str | None) -> HostResult | None:
    if scope == "project" and not project_path:
        return HostResult(success=False, error='projectPath is required when scope is "project"')
    return None


def _command_succeeded(result: subprocess.CompletedProcess[bytes]) -> bool:
    stderr = result.stderr.decode(errors="replace").lower() if result.stderr else ""
    return result.returncode == 0 and "error" not in stderr


def _output(result: subprocess.CompletedProcess[bytes]) -> str:
    parts = [stream.decode(errors="replace").strip() for stream in (result.stdout, result.stderr) if stream]
    return "\n".join(part for part in parts if part)


class ClaudeCLIBridge:
    def __init__(self, executable: str = "claude", platform: str | None = None):
        self.executable = executable
        self.platform = platform or sys.platform

    async def _run(
        self, args: Sequence[str], cwd: str | None = None, redacted: Sequence[str] | None = None
    ) -> subprocess.CompletedProcess[bytes]:
        command = [self.executable, *args]
        logger.debug(f"Executing command: {shlex.join([self.executable, *(redacted or args)])} (cwd={cwd})")
        return await anyio.run_process(command, cwd=cwd, check=False)

    async def add_remote_server(
        self,
        server: RemoteMCPServer,
        scope: MCPScope = "user",
        project_path: str | None = None,
        custom_name: str | None = None,
    ) -> HostResult:
        if error := _project_scope_error(scope, project_path):
            return error

        name = custom_name or server.id
        args = ["mcp", "add", "--transport", server.transport, "--scope", scope, name, server.endpoint]
        cwd = project_path if scope == "project" else None
        try:
            result = await self._run(args, cwd=cwd)
        except OSError as e:
            logger.error(f"Failed to add MCP server {name}: {e}")
            return HostResult(success=False, error=f"Failed to add MCP server: {e}")

        output = _output(result)
        if _command_succeeded(result):
            return HostResult(success=True, message=f"Successfully added MCP server: {name}")
        logger.warning(f"claude mcp add failed for {name}: {output}")
        return HostResult(success=False, message=output, error=output or f"claude exited with {result.returncode}")

    async def configure_api_key(
        self,
        server: RemoteMCPServer,
        credentials: MCPAuthCredentials,
        scope: MCPScope = "user",
        project_path: str | None = None,
        custom_name: str | None = None,
    ) -> HostResult:
        if error := _project_scope_error(scope, project_path):
            return error

        name = custom_name or server.id
        header_name = server.credential_header or DEFAULT_CREDENTIAL_HEADER
        config = {
            "type": server.transport,
            "url": server.endpoint,
            "headers": {
                header_name: credential_header_value(header_name, credentials.api_key_value.get_secret_value())
            },
        }
        redacted_config = {**config, "headers": {header_name: REDACTED}}

        args = ["mcp", "add-json", name, json.dumps(config), "--scope", scope]
        redacted = ["mcp", "add-json", name, json.dumps(redacted_config), "--scope", scope]
        cwd = project_path if scope == "project" else None
        logger.info(f"Adding MCP server {name} with {credentials.type} authentication via {header_name} header")
        try:
            result = await self._run(args, cwd=cwd, redacted=redacted)
        except OSError as e:
            logger.error(f"Failed to configure API key for {name}: {e}")
            return HostResult(success=False, error=f"Failed to configure API key authentication: {e}")

        if _command_succeeded(result):
            return HostResult(success=True, message=f"Successfully configured {name} with API key authentication.")
        output = _output(result)
        logger.warning(f"claude mcp add-json failed for {name} (exit {result.returncode})")
        return HostResult(success=False, error=output or f"claude exited with {result.returncode}")

    async def launch_oauth_flow(
        self,
        server_name: str,
        server_url: str,
        transport: Transport = "http",
        project_path: str | None = None,
    ) -> HostResult:
        """
        Open a terminal running ``claude /mcp``, where the user picks the server and authenticates.

        The server has to be added before this is called.
        """
        logger.info(f"Launching OAuth flow for {server_name} ({transport} {server_url})")
        mcp_command = f"{shlex.quote(self.executable)} /mcp"
        success = HostResult(
            success=True,
            message=f'Opened the MCP manager. Select "{server_name}" and choose "Authenticate" to complete setup.',
        )

        try:
            if self.platform == "darwin":
                cd = f"cd {shlex.quote(project_path)} && " if project_path else ""
                shell_command = json.dumps(f"{cd}{mcp_command}")
                script = f'tell application "Terminal"\n  activate\n  do script {shell_command}\nend tell'
                await anyio.run_process(["osascript", "-e", script], check=True)
                return success

            if self.platform == "win32":
                cd = f'cd /d "{project_path}" && ' if project_path else ""
                await anyio.run_process(["cmd", "/c", "start", "cmd", "/k", f"{cd}{mcp_command}"], check=True)
                return success
        except (OSError, subprocess.CalledProcessError) as e:
            logger.error(f"Failed to open a terminal for {server_name}: {e}")
            return HostResult(success=False, error=f"Failed to launch: {e}")

        cd = f"cd {shlex.quote(project_path)} && " if project_path else ""
        shell_command = f'{cd}{mcp_command}; echo "Press Enter to close..."; read'
        for terminal in LINUX_TERMINALS:
            if shutil.which(terminal) is None:
                continue
            separator = "--" if terminal == "gnome-terminal" else "-e"
            try:
                # the terminal lives on after this call returns
                await anyio.open_process(
                    [terminal, separator, "bash", "-c", shell_command],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=subprocess.DEVNULL,
                    start_new_session=True,
                )
            except OSError as e:
                logger.debug(f"Could not start {terminal}: {e}")
                continue
            return success

        return HostResult(
            success=False,
            error=f"Could not open a terminal. Please run 'claude /mcp' manually and select \"{server_name}\" to "
            "authenticate.",
        )

    async def check_auth_status(self, server_name: str) -> AuthStatusResult:
        try:
            result = await self._run(["mcp", "get", server_name])
        except OSError as e:
            logger.error(f"Failed to check auth status of {server_name}: {e}")
            return AuthStatusResult()

        if result.returncode != 0:
            logger.debug(f"Server {server_name} is not installed")
            return AuthStatusResult(is_installed=False)

        output = _output(result)
        config_location = None
        for line in output.splitlines():
            key, _, value = line.strip().partition(":")
            if key.lower() == "scope" and value.strip():
                config_location = value.strip()

        lowered = output.lower()
        status: MCPAuthStatus
        if "type: stdio" in lowered:
            status = "not_required"
        elif any(marker in lowered for marker in ("not authenticated", "needs authentication", "no token")):
            status = "not_authenticated"
        elif any(marker in lowered for marker in ("authenticated", "connected", "✓")):
            status = "authenticated"
        else:
            status = "unknown"
        return AuthStatusResult(auth_status=status, is_installed=True, config_location=config_location)
