"""
Tool adapters: host tool definitions to provider tool schemas, and provider
tool calls back to canonical ToolCallRef.
"""

import json
import logging
import re
from typing import Any, Dict, List

from .types import ToolCallRef, ToolDefinition

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

_STRIPPED_SCHEMA_KEYS = ("$schema", "title")


def sanitize_tool_name(name: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", name)


class ToolAdapter:
    """
    Base adapter.

    Keeps a wire-name to host-name map so that calls coming back from the
    model are executed under the host's original tool name.
    """

    sanitize_names = True

    def __init__(self):
        self._host_names: Dict[str, str] = {}

    def wire_name(self, name: str) -> str:
        wire = sanitize_tool_name(name) if self.sanitize_names else name
        self._host_names[wire] = name
        return wire

    def host_name(self, wire_name: str) -> str:
        return self._host_names.get(wire_name, wire_name)

    def map_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def parse_arguments(self, name: str, raw: Any) -> Dict[str, Any]:
        """
        Decode wire arguments to a mapping. Malformed JSON yields {}.
        """
        if raw is None or raw == "":
            return {}
        if isinstance(raw, dict):
            return raw
        if isinstance(raw, str):
            try:
                parsed = json.loads(raw)
            except ValueError:
                logger.error("Failed to parse arguments for tool %s: %s", name, raw[:200])
                return {}
            if isinstance(parsed, dict):
                return parsed
        logger.error("Unexpected arguments for tool %s: %r", name, raw)
        return {}

    def normalize_calls(self, raw_calls: List[Dict[str, Any]]) -> List[ToolCallRef]:
        """
        Convert accumulated provider calls to canonical ToolCallRefs.

        Args:
            raw_calls (List[Dict[str, Any]]): Calls as produced by a stream
                accumulator (`id`, `name`, `arguments`).

        Returns:
            List[ToolCallRef]: Calls in the order the model emitted them.
        """
        calls: List[ToolCallRef] = []
        for idx, raw in enumerate(raw_calls):
            name = raw.get("name", "")
            calls.append({
                "id": raw.get("id") or f"call_{name}_{idx}",
                "name": name,
                "arguments": self.parse_arguments(name, raw.get("arguments")),
            })
        return calls


def _clean_schema(schema: Any, default_type: str, upper: bool) -> Any:
    if not isinstance(schema, dict):
        return schema

    clean = {k: v for k, v in schema.items() if k not in _STRIPPED_SCHEMA_KEYS}
    if not clean.get("type") and "properties" in clean:
        clean["type"] = default_type
    if upper and isinstance(clean.get("type"), str):
        clean["type"] = clean["type"].upper()

    if upper:
        if isinstance(clean.get("properties"), dict):
            clean["properties"] = {
                key: _clean_schema(value, default_type, upper)
                for key, value in clean["properties"].items()
            }
        if isinstance(clean.get("items"), dict):
            clean["items"] = _clean_schema(clean["items"], default_type, upper)
    return clean


# =============================================================================
# Provider Adapters
# =============================================================================

class GeminiToolAdapter(ToolAdapter):
    """
    Function declarations for the internal RPC: sanitized names, upper-case
    schema types (OBJECT, STRING, ...).
    """

    def map_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        declarations = [
            {
                "name": self.wire_name(tool["name"]),
                "description": tool.get("description") or f"Tool {tool['name']}",
                "parameters": _clean_schema(
                    tool.get("input_schema") or {"type": "object", "properties": {}},
                    "OBJECT",
                    upper=True,
                ),
            }
            for tool in tools
        ]
        return [{"functionDeclarations": declarations}]


class OpenAIToolAdapter(ToolAdapter):
    """
    OpenAI function tools. Schemas and names pass through unchanged;
    arguments travel as JSON strings.
    """

    sanitize_names = False

    def map_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": self.wire_name(tool["name"]),
                    "description": tool.get("description", ""),
                    "parameters": tool.get("input_schema") or {"type": "object", "properties": {}},
                },
            }
            for tool in tools
        ]


class OllamaToolAdapter(ToolAdapter):
    """
    Ollama function tools. Arguments are structured values on the wire.
    """

    def map_tools(self, tools: List[ToolDefinition]) -> List[Dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": self.wire_name(tool["name"]),
                    "description": tool.get("description") or f"Tool {tool['name']}",
                    "parameters": _clean_schema(
                        tool.get("input_schema") or {"type": "object", "properties": {}},
                        "object",
                        upper=False,
                    ),
                },
            }
            for tool in tools
        ]
