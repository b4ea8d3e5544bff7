from typing import Literal, List, Dict, Any, Union, TypedDict, Optional

# =============================================================================
# Type Definitions
# =============================================================================

# Supported providers. The set is closed: see client.create_provider_client.
Provider = Literal["gemini", "copilot", "ollama"]

PROVIDERS: tuple = ("gemini", "copilot", "ollama")

Role = Literal["system", "user", "assistant", "tool"]


# =============================================================================
# Canonical Conversation Types
# =============================================================================

class ToolCallRef(TypedDict):
    """
    A tool call requested by the model.

    `arguments` is always a structured mapping here. Adapters serialize it at
    their own wire boundary.
    """
    id: str
    name: str
    arguments: Dict[str, Any]


class ToolExecutionRecord(TypedDict):
    """
    Outcome of one executed (or denied) tool call.
    """
    server: str
    tool_name: str
    input: Dict[str, Any]
    output: Any
    duration_ms: float
    error: bool
    tool_call_id: str


class CanonicalMessage(TypedDict, total=False):
    """
    Provider-independent chat message.

    Roles:
    - "system": System prompt / instructions
    - "user": User message
    - "assistant": Model response, optionally carrying `tool_calls`
    - "tool": Tool execution results, carried in `mcp_calls`
    """
    role: Role
    content: str
    timestamp: str
    provider: Provider
    tool_calls: List[ToolCallRef]
    mcp_calls: List[ToolExecutionRecord]


# =============================================================================
# Tool Definitions (host side)
# =============================================================================

class ToolDefinition(TypedDict, total=False):
    """
    A tool exposed by the host tool runtime.
    """
    name: str
    description: str
    input_schema: Dict[str, Any]
    server_name: str


# =============================================================================
# Wire Types (ephemeral, rebuilt on every request)
# =============================================================================

class OpenAIFunctionCall(TypedDict):
    name: str
    # JSON string for the gateway, plain mapping for local inference
    arguments: Union[str, Dict[str, Any]]


class OpenAIWireToolCall(TypedDict, total=False):
    id: str
    type: Literal["function"]
    function: OpenAIFunctionCall


class OpenAIWireMessage(TypedDict, total=False):
    """
    Message shape used by the OpenAI-style gateway and the local server.
    """
    role: Role
    content: str
    tool_calls: List[OpenAIWireToolCall]
    tool_call_id: str
    name: str


class GeminiFunctionCall(TypedDict):
    name: str
    args: Dict[str, Any]


class GeminiFunctionResponse(TypedDict):
    name: str
    response: Dict[str, Any]


class GeminiPart(TypedDict, total=False):
    text: str
    functionCall: GeminiFunctionCall
    functionResponse: GeminiFunctionResponse


class GeminiContent(TypedDict):
    role: Literal["user", "model"]
    parts: List[GeminiPart]


# =============================================================================
# Results and Events
# =============================================================================

class StreamEvent(TypedDict, total=False):
    """
    Event emitted while a response streams in.

    - type='token': one text delta, in arrival order.
    - type='done': final aggregation, with `tool_messages` and `meta`.
    """
    type: Literal["token", "done"]
    provider: Provider
    text: str
    tool_messages: Optional[List[CanonicalMessage]]
    meta: Dict[str, Any]


class PromptResult(TypedDict):
    """
    Result of one send_prompt call.
    """
    response: str
    tool_messages: Optional[List[CanonicalMessage]]
    provider: Provider
    meta: Dict[str, Any]


class ModelInfo(TypedDict):
    name: str
    display_name: str


CompressionStatus = Literal["NOOP", "COMPRESSED", "SKIPPED_TOO_SHORT"]


class CompressionResult(TypedDict):
    """
    Outcome of a history compression attempt. `history` is the input list
    itself unless `compressed` is true.
    """
    compressed: bool
    history: List[CanonicalMessage]
    original_token_count: int
    new_token_count: int
    status: CompressionStatus
