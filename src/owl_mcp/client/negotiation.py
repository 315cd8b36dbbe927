"""
Authentication negotiation for adding a remote MCP server.

The flow decides how credentials are collected once discovery has run:

    overview ──(open: add server)──────────────────────────────► complete
        │
        ├──(oauth: configure)──► configure ──(add server)──► oauth-two-step ──(authenticate)──► complete
        │
        └──(api-key / header: configure)──► api-key-form ──(submit key)──► complete

Transitions are pure functions of a ``NegotiationSnapshot``; ``AuthNegotiationFlow``
applies them and performs the matching calls into the host.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Literal

from pydantic import Field, SecretStr, ValidationError

from owl_mcp.client.auth_discovery import AuthDiscoveryProber
from owl_mcp.errors import NegotiationTransitionError, field_errors, stringify_pydantic_error
from owl_mcp.host.claude_cli import HostBridge
from owl_mcp.types import (
    DiscoverAuthResponse,
    HostResult,
    MCPAuthCredentials,
    MCPScope,
    OwlModel,
    RemoteMCPAuthType,
    RemoteMCPServer,
)

logger = logging.getLogger(__name__)

CompletionCallback = Callable[[bool, str], None]


class NegotiationState(str, Enum):
    OVERVIEW = "overview"
    CONFIGURE = "configure"
    OAUTH_TWO_STEP = "oauth-two-step"
    API_KEY_FORM = "api-key-form"
    COMPLETE = "complete"
    CANCELLED = "cancelled"


class NegotiationAction(str, Enum):
    CONFIGURE = "configure"
    USE_API_KEY = "use-api-key"
    ADD_SERVER = "add-server"
    AUTHENTICATE = "authenticate"
    SUBMIT_API_KEY = "submit-api-key"
    CANCEL = "cancel"


TERMINAL_STATES = frozenset({NegotiationState.COMPLETE, NegotiationState.CANCELLED})


@dataclass(frozen=True)
class NegotiationSnapshot:
    state: NegotiationState
    effective_auth_type: RemoteMCPAuthType


def effective_auth_type(
    declared_auth_type: RemoteMCPAuthType,
    discovery: DiscoverAuthResponse | None = None,
    use_api_key: bool = False,
) -> RemoteMCPAuthType:
    """
    Auth type the flow actually runs.

    The host can only complete OAuth through Dynamic Client Registration, so a
    server whose discovery reports static OAuth is handled with an API key.
    """
    if use_api_key:
        return "api-key"
    if discovery is not None and discovery.auth_type == "oauth-static":
        return "api-key"
    return declared_auth_type


def allowed_actions(snapshot: NegotiationSnapshot) -> frozenset[NegotiationAction]:
    state, auth_type = snapshot.state, snapshot.effective_auth_type
    if state in TERMINAL_STATES:
        return frozenset()

    actions = {NegotiationAction.CANCEL}
    if state == NegotiationState.OVERVIEW:
        if auth_type == "open":
            actions.add(NegotiationAction.ADD_SERVER)
        else:
            actions.add(NegotiationAction.CONFIGURE)
        if auth_type == "oauth":
            actions.add(NegotiationAction.USE_API_KEY)
    elif state == NegotiationState.CONFIGURE:
        if auth_type == "oauth":
            actions.update({NegotiationAction.ADD_SERVER, NegotiationAction.USE_API_KEY})
    elif state == NegotiationState.OAUTH_TWO_STEP:
        actions.add(NegotiationAction.AUTHENTICATE)
    elif state == NegotiationState.API_KEY_FORM:
        actions.add(NegotiationAction.SUBMIT_API_KEY)
    return frozenset(actions)


def next_state(snapshot: NegotiationSnapshot, action: NegotiationAction, succeeded: bool = True) -> NegotiationState:
    """
    State reached by performing ``action``.

    ``succeeded`` is the outcome of the host call behind the action; a failed
    call leaves the flow where it was so the user can retry.

    Raises:
        NegotiationTransitionError: If the action is not allowed in the current state
    """
    if action not in allowed_actions(snapshot):
        raise NegotiationTransitionError(f"Action {action.value} is not allowed in state {snapshot.state.value}")

    if action == NegotiationAction.CANCEL:
        return NegotiationState.CANCELLED
    if action == NegotiationAction.USE_API_KEY:
        return NegotiationState.API_KEY_FORM
    if action == NegotiationAction.CONFIGURE:
        if snapshot.effective_auth_type == "oauth":
            return NegotiationState.CONFIGURE
        # key based types pass through configure straight into the form
        return NegotiationState.API_KEY_FORM
    if not succeeded:
        return snapshot.state
    if action == NegotiationAction.ADD_SERVER and snapshot.state == NegotiationState.CONFIGURE:
        return NegotiationState.OAUTH_TWO_STEP
    return NegotiationState.COMPLETE


class NegotiationStatus(OwlModel):
    """What a caller needs to render the current step of a flow."""

    server_id: str
    state: NegotiationState
    effective_auth_type: RemoteMCPAuthType
    allowed_actions: list[NegotiationAction]
    suggested_env_var_name: str
    discovery: DiscoverAuthResponse | None = None
    error: str | None = None
    field_errors: dict[str, str] = Field(default_factory=dict)
    message: str | None = None


class AuthNegotiationFlow:
    """One negotiation for one server, driving the pure transitions against a host."""

    def __init__(
        self,
        server: RemoteMCPServer,
        host: HostBridge,
        prober: AuthDiscoveryProber | None = None,
        scope: MCPScope = "user",
        project_path: str | None = None,
        custom_name: str | None = None,
        on_complete: CompletionCallback | None = None,
    ):
        self.server = server
        self.scope = scope
        self.project_path = project_path
        self.custom_name = custom_name
        self._host = host
        self._prober = prober or AuthDiscoveryProber()
        self._on_complete = on_complete
        self._completion_fired = False
        self._use_api_key = False
        self._credentials: MCPAuthCredentials | None = None

        self.state = NegotiationState.OVERVIEW
        self.history: list[NegotiationState] = [self.state]
        self.discovery: DiscoverAuthResponse | None = None
        self.error: str | None = None
        self.field_errors: dict[str, str] = {}
        self.message: str | None = None

    @property
    def server_name(self) -> str:
        return self.custom_name or self.server.id

    @property
    def effective_auth_type(self) -> RemoteMCPAuthType:
        return effective_auth_type(self.server.auth_type, self.discovery, self._use_api_key)

    @property
    def snapshot(self) -> NegotiationSnapshot:
        return NegotiationSnapshot(state=self.state, effective_auth_type=self.effective_auth_type)

    @property
    def allowed_actions(self) -> frozenset[NegotiationAction]:
        return allowed_actions(self.snapshot)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def holds_secret(self) -> bool:
        return self._credentials is not None

    def status(self) -> NegotiationStatus:
        return NegotiationStatus(
            server_id=self.server.id,
            state=self.state,
            effective_auth_type=self.effective_auth_type,
            allowed_actions=sorted(self.allowed_actions, key=lambda a: a.value),
            suggested_env_var_name=self.server.suggested_env_var_name(),
            discovery=self.discovery,
            error=self.error,
            field_errors=dict(self.field_errors),
            message=self.message,
        )

    def _apply(self, action: NegotiationAction, succeeded: bool = True) -> None:
        target = next_state(self.snapshot, action, succeeded)
        if action == NegotiationAction.CONFIGURE and target == NegotiationState.API_KEY_FORM:
            self.history.append(NegotiationState.CONFIGURE)
        if target != self.state:
            logger.debug(f"Negotiation for {self.server.id}: {self.state.value} -> {target.value} via {action.value}")
            self.state = target
            self.history.append(target)
        if target == NegotiationState.COMPLETE:
            self._fire_completion(True, self.message or "Server added")

    def _fire_completion(self, success: bool, message: str) -> None:
        if self._completion_fired:
            return
        self._completion_fired = True
        if self._on_complete is not None:
            self._on_complete(success, message)

    def _check(self, action: NegotiationAction) -> None:
        if action not in self.allowed_actions:
            raise NegotiationTransitionError(f"Action {action.value} is not allowed in state {self.state.value}")

    async def start(self) -> DiscoverAuthResponse | None:
        """Run auth discovery for the overview. Discovery failures never block the flow."""
        if self.state != NegotiationState.OVERVIEW:
            raise NegotiationTransitionError(f"Discovery only runs in overview, not {self.state.value}")
        if self.server.auth_type == "open":
            return None

        discovery = await self._prober.discover_auth(self.server.endpoint, self.server.auth_type)
        if self.state != NegotiationState.OVERVIEW:
            return discovery
        self.discovery = discovery
        if discovery.error:
            logger.debug(f"Auth discovery for {self.server.id} failed softly: {discovery.error}")
        elif discovery.auth_type == "oauth-static":
            logger.info(f"{self.server.id} does not support Dynamic Client Registration, using an API key instead")
        return discovery

    def configure(self) -> NegotiationState:
        self.error = None
        self._apply(NegotiationAction.CONFIGURE)
        return self.state

    def use_api_key(self) -> NegotiationState:
        self._check(NegotiationAction.USE_API_KEY)
        self._apply(NegotiationAction.USE_API_KEY)
        self._use_api_key = True
        return self.state

    async def add_server(self) -> HostResult:
        """Register the server with the host: the whole flow for open servers, step 1 for OAuth."""
        self._check(NegotiationAction.ADD_SERVER)
        self.error = None
        result = await self._host.add_remote_server(self.server, self.scope, self.project_path, self.custom_name)
        if self.state == NegotiationState.CANCELLED:
            return result

        if result.success:
            self.message = result.message
        else:
            self.error = result.error or "Failed to add server"
        self._apply(NegotiationAction.ADD_SERVER, result.success)
        return result

    async def authenticate(self) -> HostResult:
        """Step 2 of the OAuth flow: hand off to the host's own authentication surface."""
        self._check(NegotiationAction.AUTHENTICATE)
        self.error = None
        result = await self._host.launch_oauth_flow(
            self.server_name, self.server.endpoint, self.server.transport, self.project_path
        )
        if self.state == NegotiationState.CANCELLED:
            return result

        if result.success:
            self.message = result.message
        else:
            self.error = result.error or "Failed to launch authentication"
        self._apply(NegotiationAction.AUTHENTICATE, result.success)
        return result

    async def submit_api_key(self, env_var_name: str, api_key: str | SecretStr) -> HostResult:
        """
        Validate the form and hand the credentials to the host.

        The key is only held for the duration of the host call. Validation
        failures keep the flow in the form with ``field_errors`` set.
        """
        self._check(NegotiationAction.SUBMIT_API_KEY)
        self.error = None
        self.field_errors = {}

        credential_type: Literal["api-key", "header"] = (
            "header" if self.effective_auth_type == "header" else "api-key"
        )
        try:
            self._credentials = MCPAuthCredentials.model_validate(
                {"type": credential_type, "envVarName": env_var_name, "apiKeyValue": api_key}
            )
        except ValidationError as e:
            self.field_errors = field_errors(e)
            return HostResult(success=False, error=stringify_pydantic_error(e))

        try:
            result = await self._host.configure_api_key(
                self.server, self._credentials, self.scope, self.project_path, self.custom_name
            )
        finally:
            self._credentials = None

        if self.state == NegotiationState.CANCELLED:
            return result
        if result.success:
            self.message = result.message
        else:
            self.error = result.error or "Failed to configure API key"
        self._apply(NegotiationAction.SUBMIT_API_KEY, result.success)
        return result

    def cancel(self) -> None:
        """Abandon the flow from any non-terminal state, dropping any secret it holds."""
        self._credentials = None
        self.field_errors = {}
        if self.is_terminal:
            return
        self._apply(NegotiationAction.CANCEL)
        self._fire_completion(False, "Authentication cancelled")


class NegotiationRegistry:
    """Keeps at most one live negotiation per server."""

    def __init__(self) -> None:
        self._flows: dict[str, AuthNegotiationFlow] = {}

    def begin(self, flow: AuthNegotiationFlow) -> AuthNegotiationFlow:
        previous = self._flows.pop(flow.server.id, None)
        if previous is not None and previous is not flow:
            logger.debug(f"Discarding previous negotiation for {flow.server.id} in state {previous.state.value}")
            previous.cancel()
        self._flows[flow.server.id] = flow
        return flow

    def get(self, server_id: str) -> AuthNegotiationFlow | None:
        flow = self._flows.get(server_id)
        if flow is not None and flow.is_terminal:
            del self._flows[server_id]
            return None
        return flow

    def discard(self, server_id: str) -> None:
        flow = self._flows.pop(server_id, None)
        if flow is not None:
            flow.cancel()

    def __len__(self) -> int:
        return len(self._flows)
