"""
Exception hierarchy and the client-boundary error classifier.
"""

from typing import Any, Dict, Optional

import httpx


class ChatmuxError(Exception):
    """Base exception for all chatmux errors."""


class ProviderError(ChatmuxError):
    """Raised when a provider request cannot be completed."""


class ProviderHTTPError(ProviderError):
    """Non-success HTTP status returned by a provider endpoint."""

    def __init__(self, provider: str, status_code: int, body: str = ""):
        self.provider = provider
        self.status_code = status_code
        self.body = body
        super().__init__(f"{provider} API error: {status_code} - {body[:500]}")


class AuthenticationError(ProviderError):
    """401: the credential was rejected."""


class AuthorizationError(ProviderError):
    """403: the credential lacks permission."""


class RateLimitError(ProviderError):
    """429: the provider is throttling requests."""


class NetworkError(ProviderError):
    """The provider could not be reached."""


class NotAuthenticatedError(ChatmuxError):
    """No credential is available for the provider."""


class ConfigurationError(ChatmuxError):
    """Invalid settings or a failed project handshake."""


class ToolExecutionError(ChatmuxError):
    """Raised when the tool runtime fails to execute a tool."""

    def __init__(self, tool_name: str, error: Exception, params: Optional[Dict[str, Any]] = None):
        self.tool_name = tool_name
        self.error = error
        self.params = params or {}
        super().__init__(f"Tool '{tool_name}' failed: {type(error).__name__}: {error}")


class TurnLimitExceeded(ChatmuxError):
    """The tool loop hit its turn bound without a final answer."""

    def __init__(self, max_turns: int):
        self.max_turns = max_turns
        super().__init__(
            f"Conversation turn limit reached ({max_turns} tool turns). Start a new conversation."
        )


class CancellationError(ChatmuxError):
    """The operation was cancelled through its CancellationToken."""

    def __init__(self, message: str = "Operation aborted"):
        super().__init__(message)


# =============================================================================
# Classification
# =============================================================================

_AUTH_MESSAGE = "Session expired or invalid (401). Sign in again."
_FORBIDDEN_MESSAGE = "Access denied (403). Check your permissions."
_RATE_LIMIT_MESSAGE = "Too many requests (429). Wait a moment and try again."
_NETWORK_MESSAGE = "Connection error. Check your network connection."


def classify_error(error: BaseException) -> BaseException:
    """
    Map a transport-level failure to its user-facing error type.

    401/403/429 and connection failures become AuthenticationError,
    AuthorizationError, RateLimitError and NetworkError respectively, with the
    original exception chained as __cause__. Everything else, including
    CancellationError, configuration and turn-limit errors, is returned
    unchanged.

    Args:
        error: The exception caught at the provider client boundary.

    Returns:
        The exception the caller should raise.
    """
    if isinstance(error, (AuthenticationError, AuthorizationError, RateLimitError, NetworkError)):
        return error
    if isinstance(error, ChatmuxError) and not isinstance(error, ProviderError):
        return error

    status = error.status_code if isinstance(error, ProviderHTTPError) else None
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
    msg = str(error).lower()

    mapped: Optional[ChatmuxError] = None
    if status == 401 or "unauthorized" in msg:
        mapped = AuthenticationError(_AUTH_MESSAGE)
    elif status == 403 or "permission denied" in msg:
        mapped = AuthorizationError(_FORBIDDEN_MESSAGE)
    elif status == 429 or "resource exhausted" in msg or "rate limit" in msg:
        mapped = RateLimitError(_RATE_LIMIT_MESSAGE)
    elif isinstance(error, httpx.TransportError) or any(
        p in msg for p in ("fetch failed", "econnrefused", "connection refused")
    ):
        mapped = NetworkError(_NETWORK_MESSAGE)

    if mapped is None:
        return error
    mapped.__cause__ = error
    return mapped
