
import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .types import (
    CanonicalMessage, Provider, Role, ToolCallRef, ToolExecutionRecord
)

# =============================================================================
# JSON Helpers
# =============================================================================

def now_iso() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


def dump_json(value: Any) -> str:
    """
    Serialize a tool payload for the wire.

    Values that are not JSON-native (e.g. SDK result objects) fall back to
    their string form instead of failing the request.
    """
    return json.dumps(value, ensure_ascii=False, default=str)


def load_json(text: Optional[str]) -> Any:
    """
    Inverse of dump_json for tool results. Non-JSON text is returned as-is.
    """
    if text is None:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return text


def coerce_arguments(raw: Any) -> Dict[str, Any]:
    """
    Normalize tool-call arguments to a mapping.

    Accepts a mapping, a JSON string, or nothing. Anything that does not decode
    to a JSON object becomes an empty mapping.
    """
    if raw is None or raw == "":
        return {}
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except ValueError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
    return {}


# =============================================================================
# Message Builders
# =============================================================================

def create_message(
    role: Role,
    content: str,
    provider: Optional[Provider] = None,
) -> CanonicalMessage:
    """
    Create a plain canonical message stamped with the current time.

    Args:
        role (str): 'system', 'user', 'assistant' or 'tool'.
        content (str): Message text.
        provider (str, optional): Provider that produced the message.

    Returns:
        CanonicalMessage: The new message.
    """
    message: CanonicalMessage = {"role": role, "content": content, "timestamp": now_iso()}
    if provider:
        message["provider"] = provider
    return message


def create_assistant_message_with_tool_calls(
    content: str,
    tool_calls: List[ToolCallRef],
    provider: Optional[Provider] = None,
) -> CanonicalMessage:
    """
    Create an assistant message that records the tool calls the model requested.

    Args:
        content (str): Text that accompanied the calls (can be empty).
        tool_calls (List[ToolCallRef]): Calls in the order the model emitted them.
        provider (str, optional): Provider that produced the message.

    Returns:
        CanonicalMessage: A message with role='assistant'.
    """
    message = create_message("assistant", content, provider)
    message["tool_calls"] = list(tool_calls)
    return message


def create_tool_result_message(
    records: List[ToolExecutionRecord],
    provider: Optional[Provider] = None,
) -> CanonicalMessage:
    """
    Create the tool message holding the results of one turn's tool calls.

    The text content summarizes the outputs; the records carry the linkage.
    """
    outputs = [r["output"] for r in records]
    content = dump_json(outputs[0] if len(outputs) == 1 else outputs)
    message = create_message("tool", content, provider)
    message["mcp_calls"] = list(records)
    return message


def create_execution_record(
    tool_name: str,
    arguments: Dict[str, Any],
    output: Any,
    *,
    tool_call_id: str,
    server: str = "mcp",
    duration_ms: float = 0.0,
    error: bool = False,
) -> ToolExecutionRecord:
    return {
        "server": server,
        "tool_name": tool_name,
        "input": arguments,
        "output": output,
        "duration_ms": duration_ms,
        "error": error,
        "tool_call_id": tool_call_id,
    }
