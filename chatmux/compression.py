"""
Provider-agnostic compression of canonical history.

Token counts are estimated from character counts (about four characters per
token). When a history grows past a fraction of the model's context window,
the oldest messages are folded into a single summary message and the latest
part of the conversation is kept verbatim.
"""

import logging
import math
from typing import Dict, List

from .types import CanonicalMessage, CompressionResult
from .utils import create_message, dump_json

logger = logging.getLogger(__name__)

# Fraction of the model's token limit past which compression kicks in.
DEFAULT_COMPRESSION_THRESHOLD = 0.5

# Fraction of the history (by size) kept verbatim after compression.
COMPRESSION_PRESERVE_FRACTION = 0.3

DEFAULT_TOKEN_LIMIT = 32000

MODEL_TOKEN_LIMITS: Dict[str, int] = {
    # Gemini
    "gemini-2.5-flash": 1048576,
    "gemini-2.5-pro": 1048576,
    "gemini-2.0-flash": 1048576,
    "gemini-1.5-flash": 1048576,
    "gemini-1.5-pro": 2097152,
    # Copilot
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4": 128000,
    "gpt-4-turbo": 128000,
    "gpt-3.5-turbo": 16385,
    "o1": 128000,
    "o1-mini": 128000,
    # Ollama
    "llama3": 8192,
    "llama3.1": 128000,
    "llama3.2": 128000,
    "mistral": 32768,
    "codellama": 16384,
}

SUMMARY_ACK = "Got it, I understand the previous context. How can I help you continue?"

_SUMMARY_LINE_LIMIT = 10
_SUMMARY_TEXT_LIMIT = 150


def get_token_limit(model: str) -> int:
    """
    Context window for `model`.

    Exact names win; otherwise the longest known name that `model` starts
    with (so "llama3.1:8b" resolves to "llama3.1", not "llama3").
    """
    if model in MODEL_TOKEN_LIMITS:
        return MODEL_TOKEN_LIMITS[model]
    prefixes = [name for name in MODEL_TOKEN_LIMITS if model.startswith(name)]
    if prefixes:
        return MODEL_TOKEN_LIMITS[max(prefixes, key=len)]
    return DEFAULT_TOKEN_LIMIT


def estimate_token_count(messages: List[CanonicalMessage]) -> int:
    chars = 0
    for msg in messages:
        chars += len(msg.get("content") or "")
        if msg.get("tool_calls"):
            chars += len(dump_json(msg["tool_calls"]))
        if msg.get("mcp_calls"):
            chars += len(dump_json(msg["mcp_calls"]))
    return math.ceil(chars / 4)


def should_compress(
    messages: List[CanonicalMessage],
    model: str,
    threshold: float = DEFAULT_COMPRESSION_THRESHOLD,
) -> bool:
    return estimate_token_count(messages) > get_token_limit(model) * threshold


def find_split_point(
    messages: List[CanonicalMessage],
    preserve_fraction: float = COMPRESSION_PRESERVE_FRACTION,
) -> int:
    """
    Index where the preserved tail of the history starts.

    Splits only happen at plain user messages, so a tool call is never
    separated from its results. The first user message at or past
    `1 - preserve_fraction` of the serialized size is chosen; failing that,
    the last user message seen. 0 means there is nothing to compress.
    """
    if not messages:
        return 0

    sizes = [len(dump_json(msg)) for msg in messages]
    target = sum(sizes) * (1 - preserve_fraction)

    cumulative = 0
    last_valid = 0
    for i, msg in enumerate(messages):
        if msg["role"] == "user" and not msg.get("tool_calls"):
            if cumulative >= target:
                return i
            last_valid = i
        cumulative += sizes[i]

    return last_valid


def summarize_history(messages: List[CanonicalMessage]) -> str:
    """
    Plain-text digest of `messages`: one line per message text (truncated)
    and per batch of tool calls, capped at ten lines.
    """
    lines: List[str] = []
    for msg in messages:
        role = "User" if msg["role"] == "user" else "Assistant"
        text = msg.get("content") or ""
        if text:
            if len(text) > _SUMMARY_TEXT_LIMIT:
                text = text[:_SUMMARY_TEXT_LIMIT] + "..."
            lines.append(f"{role}: {text}")
        if msg.get("tool_calls"):
            names = ", ".join(call["name"] for call in msg["tool_calls"])
            lines.append(f"Assistant used tools: {names}")

    more = ""
    if len(lines) > _SUMMARY_LINE_LIMIT:
        more = f"... and {len(lines) - _SUMMARY_LINE_LIMIT} more exchanges"

    return (
        "<previous_conversation_summary>\n"
        "The conversation so far covered:\n"
        + "\n".join(lines[:_SUMMARY_LINE_LIMIT])
        + "\n"
        + more
        + "\n</previous_conversation_summary>"
    )


def compress(
    messages: List[CanonicalMessage],
    model: str,
    force: bool = False,
) -> CompressionResult:
    """
    Fold the older part of `messages` into a summary exchange.

    Args:
        messages (List[CanonicalMessage]): Canonical history; not mutated.
        model (str): Model whose context window sets the threshold.
        force (bool): Compress even when under the threshold.

    Returns:
        CompressionResult: The new history is a user summary message, an
        assistant acknowledgement, then the preserved tail. Status is NOOP
        when under the threshold or no split point exists, and
        SKIPPED_TOO_SHORT for fewer than four messages.
    """
    original = estimate_token_count(messages)

    def unchanged(status) -> CompressionResult:
        return {
            "compressed": False,
            "history": messages,
            "original_token_count": original,
            "new_token_count": original,
            "status": status,
        }

    if not force and not should_compress(messages, model):
        return unchanged("NOOP")

    if len(messages) < 4:
        logger.debug("History too short to compress (%d messages)", len(messages))
        return unchanged("SKIPPED_TOO_SHORT")

    split = find_split_point(messages)
    if split == 0:
        logger.debug("No valid split point found")
        return unchanged("NOOP")

    history = [
        create_message("user", summarize_history(messages[:split])),
        create_message("assistant", SUMMARY_ACK),
        *messages[split:],
    ]
    new = estimate_token_count(history)
    logger.info(
        "Compressed history for %s: %d -> %d tokens (%d messages summarized)",
        model, original, new, split,
    )
    return {
        "compressed": True,
        "history": history,
        "original_token_count": original,
        "new_token_count": new,
        "status": "COMPRESSED",
    }
