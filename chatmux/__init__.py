from .cancellation import CancellationToken
from .client import UnifiedChatClient, create_provider_client
from .compression import compress, estimate_token_count, get_token_limit
from .config import Settings
from .exceptions import (
    AuthenticationError, AuthorizationError, CancellationError, ChatmuxError,
    ConfigurationError, NetworkError, NotAuthenticatedError, ProviderError,
    RateLimitError, ToolExecutionError, TurnLimitExceeded
)
from .mcp_runtime import MCPServerConfig, MCPToolRuntime
from .printer import RichStreamPrinter
from .retry import RetryPolicy
from .types import (
    CanonicalMessage, CompressionResult, PromptResult, Provider, StreamEvent,
    ToolDefinition
)

__all__ = [
    "UnifiedChatClient",
    "create_provider_client",
    "compress",
    "estimate_token_count",
    "get_token_limit",
    "Settings",
    "CancellationToken",
    "RetryPolicy",
    "RichStreamPrinter",
    "MCPToolRuntime",
    "MCPServerConfig",
    "CanonicalMessage",
    "CompressionResult",
    "PromptResult",
    "Provider",
    "StreamEvent",
    "ToolDefinition",
    "ChatmuxError",
    "ProviderError",
    "AuthenticationError",
    "AuthorizationError",
    "RateLimitError",
    "NetworkError",
    "NotAuthenticatedError",
    "ConfigurationError",
    "ToolExecutionError",
    "TurnLimitExceeded",
    "CancellationError",
]
