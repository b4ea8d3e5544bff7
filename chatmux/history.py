"""
Conversion between canonical history and each provider's wire messages.

Wire messages are rebuilt from the canonical history on every request and
discarded afterwards; nothing here mutates its input.
"""

from typing import Any, Dict, List

from .types import (
    CanonicalMessage, GeminiContent, GeminiPart, OpenAIWireMessage,
    OpenAIWireToolCall, ToolCallRef, ToolExecutionRecord
)
from .utils import (
    coerce_arguments, create_execution_record, dump_json, load_json, now_iso
)

# =============================================================================
# Internal RPC (Gemini) Format
# =============================================================================

def to_gemini_format(messages: List[CanonicalMessage]) -> List[GeminiContent]:
    """
    Convert canonical history to Gemini `contents`.

    - System messages are dropped (the internal RPC has no system role).
    - "user" and "tool" map to the "user" role, everything else to "model".
    - Parts: non-empty text, one `functionCall` per tool call, and one
      `functionResponse` per execution record on a tool message.
    - Messages that would produce zero parts are skipped.

    Args:
        messages (List[CanonicalMessage]): Canonical history.

    Returns:
        List[GeminiContent]: Gemini-native contents.
    """
    contents: List[GeminiContent] = []

    for msg in messages:
        role = msg.get("role", "user")
        if role == "system":
            continue

        records = msg.get("mcp_calls") or []
        parts: List[GeminiPart] = []

        # A tool message's text only summarizes its records
        if msg.get("content") and not (role == "tool" and records):
            parts.append({"text": msg["content"]})

        for tc in msg.get("tool_calls") or []:
            parts.append({
                "functionCall": {
                    "name": tc["name"],
                    "args": coerce_arguments(tc.get("arguments")),
                }
            })

        if role == "tool":
            for record in records:
                parts.append({
                    "functionResponse": {
                        "name": record["tool_name"],
                        "response": {
                            "name": record["tool_name"],
                            "content": record["output"],
                        },
                    }
                })

        if parts:
            contents.append({
                "role": "user" if role in ("user", "tool") else "model",
                "parts": parts,
            })

    return contents


def from_gemini_content(content: GeminiContent) -> CanonicalMessage:
    """
    Assemble one canonical message from a Gemini content.

    Text parts are joined, function calls are collected in encounter order
    (ids synthesized as `call_<name>_<index>`), and function responses are
    collapsed into a single tool message.
    """
    parts = content.get("parts") or []
    text = "".join(p["text"] for p in parts if p.get("text"))

    tool_calls: List[ToolCallRef] = []
    records: List[ToolExecutionRecord] = []
    for part in parts:
        if part.get("functionCall"):
            fc = part["functionCall"]
            tool_calls.append({
                "id": f"call_{fc['name']}_{len(tool_calls)}",
                "name": fc["name"],
                "arguments": coerce_arguments(fc.get("args")),
            })
        elif part.get("functionResponse"):
            fr = part["functionResponse"]
            response = fr.get("response") or {}
            records.append(create_execution_record(
                fr["name"],
                {},
                response.get("content"),
                tool_call_id=f"call_{fr['name']}_{len(records)}",
            ))

    if records:
        outputs = [r["output"] for r in records]
        return {
            "role": "tool",
            "content": dump_json(outputs[0] if len(outputs) == 1 else outputs),
            "timestamp": now_iso(),
            "mcp_calls": records,
        }

    message: CanonicalMessage = {
        "role": "assistant" if content.get("role") == "model" else "user",
        "content": text,
        "timestamp": now_iso(),
    }
    if tool_calls:
        message["tool_calls"] = tool_calls
    return message


def from_gemini_format(contents: List[GeminiContent]) -> List[CanonicalMessage]:
    return [from_gemini_content(c) for c in contents]


# =============================================================================
# OpenAI-style Format (gateway and local inference)
# =============================================================================

def _map_role_to_openai(role: str) -> str:
    if role == "user":
        return "user"
    if role in ("assistant", "model"):
        return "assistant"
    if role == "tool":
        return "tool"
    return "system"


def to_openai_format(
    messages: List[CanonicalMessage],
    *,
    string_arguments: bool = True,
) -> List[OpenAIWireMessage]:
    """
    Convert canonical history to OpenAI-style chat messages.

    Tool messages are exploded into one wire message per execution record,
    linked through `tool_call_id` (synthesized as `call_<toolName>` when the
    record has none). Assistant tool calls keep their ids.

    Args:
        messages (List[CanonicalMessage]): Canonical history.
        string_arguments (bool): Serialize tool-call arguments to a JSON string
            (OpenAI gateway). When False they stay structured (local inference).

    Returns:
        List[OpenAIWireMessage]: Wire messages in conversation order.
    """
    result: List[OpenAIWireMessage] = []

    for msg in messages:
        role = msg.get("role", "user")

        if role == "tool" and msg.get("mcp_calls"):
            for record in msg["mcp_calls"]:
                result.append({
                    "role": "tool",
                    "content": dump_json(record["output"]),
                    "tool_call_id": record.get("tool_call_id") or f"call_{record['tool_name']}",
                    "name": record["tool_name"],
                })
            continue

        wire: OpenAIWireMessage = {
            "role": _map_role_to_openai(role),
            "content": msg.get("content") or "",
        }

        if msg.get("tool_calls"):
            wire_calls: List[OpenAIWireToolCall] = []
            for idx, tc in enumerate(msg["tool_calls"]):
                args = coerce_arguments(tc.get("arguments"))
                wire_calls.append({
                    "id": tc.get("id") or f"call_{tc['name']}_{idx}",
                    "type": "function",
                    "function": {
                        "name": tc["name"],
                        "arguments": dump_json(args) if string_arguments else args,
                    },
                })
            wire["tool_calls"] = wire_calls

        result.append(wire)

    return result


def from_openai_format(wire_messages: List[OpenAIWireMessage]) -> List[CanonicalMessage]:
    """
    Convert OpenAI-style messages back to canonical history.

    Consecutive tool messages are re-collapsed into one canonical tool message.
    A tool message without `name` takes it from the assistant call it answers.
    """
    messages: List[CanonicalMessage] = []
    names_by_id: Dict[str, str] = {}
    collapsing = False

    for wire in wire_messages:
        role = wire.get("role", "user")

        if role == "tool":
            call_id = wire.get("tool_call_id", "")
            record = create_execution_record(
                wire.get("name") or names_by_id.get(call_id, ""),
                {},
                load_json(wire.get("content")),
                tool_call_id=call_id,
            )
            if collapsing:
                tool_msg = messages[-1]
                tool_msg["mcp_calls"].append(record)
                outputs = [r["output"] for r in tool_msg["mcp_calls"]]
                tool_msg["content"] = dump_json(outputs)
            else:
                messages.append({
                    "role": "tool",
                    "content": wire.get("content") or "",
                    "timestamp": now_iso(),
                    "mcp_calls": [record],
                })
                collapsing = True
            continue

        collapsing = False
        message: CanonicalMessage = {
            "role": role,
            "content": wire.get("content") or "",
            "timestamp": now_iso(),
        }
        if wire.get("tool_calls"):
            calls: List[ToolCallRef] = []
            for idx, tc in enumerate(wire["tool_calls"]):
                fn: Dict[str, Any] = tc.get("function") or {}
                name = fn.get("name", "")
                call_id = tc.get("id") or f"call_{name}_{idx}"
                names_by_id[call_id] = name
                calls.append({
                    "id": call_id,
                    "name": name,
                    "arguments": coerce_arguments(fn.get("arguments")),
                })
            message["tool_calls"] = calls
        messages.append(message)

    return messages


# =============================================================================
# History Filters
# =============================================================================

def strip_tool_artifacts(messages: List[CanonicalMessage]) -> List[CanonicalMessage]:
    """
    Remove every tool call and tool result from a history.

    Tool messages are dropped; assistant messages lose their `tool_calls` and
    are dropped entirely when no text remains. Used when a model must not see
    tool traffic it was never declared tools for.
    """
    stripped: List[CanonicalMessage] = []
    for msg in messages:
        if msg.get("role") == "tool":
            continue
        if msg.get("tool_calls"):
            if not msg.get("content"):
                continue
            msg = {k: v for k, v in msg.items() if k != "tool_calls"}
        stripped.append(msg)
    return stripped
