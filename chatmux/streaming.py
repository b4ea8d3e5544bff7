"""
Stream accumulators: rebuild one logical response from incremental chunks.

Each accumulator reads an `httpx.Response` opened with `stream=True` line by
line, emits a `token` StreamEvent per text delta, and returns the aggregated
text, tool calls and finish reason.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import httpx

from .cancellation import CancellationToken, race
from .exceptions import CancellationError
from .types import Provider, StreamEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[StreamEvent], None]


class StreamState(Enum):
    AWAITING_DATA = "awaiting_data"
    ACCUMULATING = "accumulating"
    DONE = "done"
    CANCELLED = "cancelled"
    ERRORED = "errored"


@dataclass
class StreamResult:
    """
    Aggregated response of one streamed turn.

    `tool_calls` are raw provider calls (`id`, `name`, `arguments`); arguments
    are a JSON string for the gateway and a mapping otherwise. Tool adapters
    normalize them into ToolCallRef.
    """
    text: str = ""
    tool_calls: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None


async def _next_line(lines: AsyncIterator[str]) -> Optional[str]:
    try:
        return await lines.__anext__()
    except StopAsyncIteration:
        return None


class StreamAccumulator:
    """
    Base line-oriented accumulator.

    Subclasses implement `_handle_line` and `_tool_calls`. The read loop checks
    the cancellation token before every read and races each read against it;
    on cancellation the response is closed and CancellationError is raised.
    """

    provider: Provider

    def __init__(
        self,
        on_event: Optional[EventCallback] = None,
        cancellation: Optional[CancellationToken] = None,
    ):
        self.on_event = on_event
        self.cancellation = cancellation
        self.state = StreamState.AWAITING_DATA
        self.finish_reason: Optional[str] = None
        self._text_parts: List[str] = []

    async def consume(self, response: httpx.Response) -> StreamResult:
        lines = response.aiter_lines()
        try:
            while self.state is not StreamState.DONE:
                if self.cancellation is not None:
                    self.cancellation.raise_if_cancelled()
                line = await race(_next_line(lines), self.cancellation)
                if line is None:
                    break
                line = line.strip()
                if not line:
                    continue
                self._handle_line(line)
        except CancellationError:
            self.state = StreamState.CANCELLED
            await response.aclose()
            raise
        except Exception:
            self.state = StreamState.ERRORED
            await response.aclose()
            raise

        self.state = StreamState.DONE
        await response.aclose()
        return StreamResult(
            text="".join(self._text_parts),
            tool_calls=self._tool_calls(),
            finish_reason=self.finish_reason,
        )

    def _handle_line(self, line: str) -> None:
        raise NotImplementedError

    def _tool_calls(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _emit_text(self, text: str) -> None:
        if not text:
            return
        self.state = StreamState.ACCUMULATING
        self._text_parts.append(text)
        if self.on_event is not None:
            self.on_event({"type": "token", "provider": self.provider, "text": text})

    def _parse_json(self, payload: str) -> Optional[Dict[str, Any]]:
        try:
            data = json.loads(payload)
        except ValueError:
            logger.warning("%s: skipping malformed stream chunk: %s", self.provider, payload[:200])
            return None
        if not isinstance(data, dict):
            logger.warning("%s: skipping non-object stream chunk: %s", self.provider, payload[:200])
            return None
        return data


# =============================================================================
# Server-Sent Events (OpenAI-style gateway)
# =============================================================================

class SSEAccumulator(StreamAccumulator):
    """
    `data: {...}` frames carrying OpenAI chat-completion deltas, terminated by
    `data: [DONE]`.

    Tool-call deltas are merged by `index`: the first delta for an index fixes
    the call's id and name, later deltas only extend its argument buffer.
    """

    provider: Provider = "copilot"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._calls: Dict[int, Dict[str, Any]] = {}

    def _handle_line(self, line: str) -> None:
        if not line.startswith("data:"):
            return
        payload = line[5:].strip()
        if not payload:
            return
        if payload == "[DONE]":
            self.state = StreamState.DONE
            return
        chunk = self._parse_json(payload)
        if chunk is not None:
            self._handle_chunk(chunk)

    def _handle_chunk(self, chunk: Dict[str, Any]) -> None:
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content"):
                self._emit_text(delta["content"])

            for tc in delta.get("tool_calls") or []:
                self.state = StreamState.ACCUMULATING
                index = tc.get("index", 0)
                fn = tc.get("function") or {}
                call = self._calls.get(index)
                if call is None:
                    self._calls[index] = {
                        "id": tc.get("id") or f"call_{index}",
                        "name": fn.get("name", ""),
                        "arguments": fn.get("arguments") or "",
                    }
                elif fn.get("arguments"):
                    call["arguments"] += fn["arguments"]

            if choice.get("finish_reason"):
                self.finish_reason = choice["finish_reason"]

    def _tool_calls(self) -> List[Dict[str, Any]]:
        return [self._calls[i] for i in sorted(self._calls)]


# =============================================================================
# Internal RPC (Gemini Code Assist, SSE-framed)
# =============================================================================

class GeminiAccumulator(SSEAccumulator):
    """
    SSE frames shaped `{"response": {"candidates": [{"content": {"parts": [...]}}]}}`.

    Text parts append to the buffer; `functionCall` parts are complete and are
    appended whole. Thought parts are not part of the answer.
    """

    provider: Provider = "gemini"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._function_calls: List[Dict[str, Any]] = []

    def _handle_chunk(self, chunk: Dict[str, Any]) -> None:
        response = chunk.get("response", chunk)
        candidates = response.get("candidates") or []
        if not candidates:
            return
        candidate = candidates[0]

        for part in (candidate.get("content") or {}).get("parts") or []:
            if part.get("thought"):
                continue
            if part.get("functionCall"):
                self.state = StreamState.ACCUMULATING
                fc = part["functionCall"]
                self._function_calls.append({
                    "id": fc.get("id") or f"call_{fc.get('name', '')}_{len(self._function_calls)}",
                    "name": fc.get("name", ""),
                    "arguments": fc.get("args") or {},
                })
            elif part.get("text"):
                self._emit_text(part["text"])

        if candidate.get("finishReason"):
            self.finish_reason = candidate["finishReason"]

    def _tool_calls(self) -> List[Dict[str, Any]]:
        return list(self._function_calls)


# =============================================================================
# Newline-delimited JSON (local inference)
# =============================================================================

class NDJSONAccumulator(StreamAccumulator):
    """
    One JSON object per line. Tool calls arrive fully formed; a later list
    replaces an earlier one.
    """

    provider: Provider = "ollama"

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self._calls: List[Dict[str, Any]] = []

    def _handle_line(self, line: str) -> None:
        chunk = self._parse_json(line)
        if chunk is None:
            return

        message = chunk.get("message") or {}
        if message.get("content"):
            self._emit_text(message["content"])

        if message.get("tool_calls"):
            self.state = StreamState.ACCUMULATING
            self._calls = [
                {
                    "id": tc.get("id") or f"call_{(tc.get('function') or {}).get('name', '')}_{idx}",
                    "name": (tc.get("function") or {}).get("name", ""),
                    "arguments": (tc.get("function") or {}).get("arguments") or {},
                }
                for idx, tc in enumerate(message["tool_calls"])
            ]

        if chunk.get("done"):
            self.finish_reason = chunk.get("done_reason") or "stop"
            self.state = StreamState.DONE

    def _tool_calls(self) -> List[Dict[str, Any]]:
        return list(self._calls)
