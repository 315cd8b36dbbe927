from typing import Literal

from pydantic import ValidationError

ConnectionErrorCode = Literal[
    "INVALID_URL",
    "DNS_ERROR",
    "TIMEOUT",
    "NETWORK_ERROR",
    "SSL_ERROR",
    "AUTH_REQUIRED",
    "AUTH_INVALID",
    "NOT_MCP_SERVER",
    "SERVER_ERROR",
    "RATE_LIMITED",
    "NOT_FOUND",
    "VALIDATION_ERROR",
]


class OwlMCPError(Exception):
    """
    Base class for all errors raised by this package.

    Expected network and discovery failures are never raised; they are
    reported inside result objects. Exceptions are reserved for misuse.
    """

    error_code: ConnectionErrorCode = "NETWORK_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NegotiationTransitionError(OwlMCPError):
    """Raised when an action is not allowed in the current negotiation state."""

    error_code = "VALIDATION_ERROR"


def stringify_pydantic_error(validation_error: ValidationError) -> str:
    return "\n".join(f"{'.'.join(str(loc) for loc in e['loc'])}: {e['msg']}" for e in validation_error.errors())


def field_errors(validation_error: ValidationError) -> dict[str, str]:
    """Map each failing top-level field to its first error message."""
    errors: dict[str, str] = {}
    for e in validation_error.errors():
        field = str(e["loc"][0]) if e["loc"] else "__root__"
        errors.setdefault(field, e["msg"])
    return errors
