import json
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from chatmux.retry import RetryPolicy

ENV_VARS = (
    "GEMINI_MODEL",
    "GEMINI_ACCESS_TOKEN",
    "GOOGLE_CLOUD_PROJECT",
    "COPILOT_MODEL",
    "GITHUB_OAUTH_TOKEN",
    "OLLAMA_MODEL",
    "OLLAMA_BASE_URL",
    "CHATMUX_TIMEOUT",
    "CHATMUX_MAX_ATTEMPTS",
    "CHATMUX_PROVIDER",
)


# =============================================================================
# Wire Builders
# =============================================================================

def sse(*payloads: Any, done: bool = True) -> bytes:
    """SSE body: one `data:` frame per payload (strings are sent verbatim)."""
    frames = [
        f"data: {p if isinstance(p, str) else json.dumps(p)}\n\n" for p in payloads
    ]
    if done:
        frames.append("data: [DONE]\n\n")
    return "".join(frames).encode()


def openai_text(*deltas: str) -> bytes:
    chunks = [{"choices": [{"index": 0, "delta": {"content": d}}]} for d in deltas]
    chunks.append({"choices": [{"index": 0, "delta": {}, "finish_reason": "stop"}]})
    return sse(*chunks)


def openai_tool_call(name: str, arguments: str, call_id: str = "call_1") -> bytes:
    return sse(
        {"choices": [{"index": 0, "delta": {"tool_calls": [
            {"index": 0, "id": call_id, "type": "function",
             "function": {"name": name, "arguments": arguments}}
        ]}}]},
        {"choices": [{"index": 0, "delta": {}, "finish_reason": "tool_calls"}]},
    )


def gemini_chunk(*parts: Dict[str, Any], finish_reason: Optional[str] = None) -> Dict[str, Any]:
    candidate: Dict[str, Any] = {"content": {"role": "model", "parts": list(parts)}}
    if finish_reason:
        candidate["finishReason"] = finish_reason
    return {"response": {"candidates": [candidate]}}


def ndjson(*objects: Dict[str, Any]) -> bytes:
    return "".join(json.dumps(o) + "\n" for o in objects).encode()


def request_json(request: httpx.Request) -> Dict[str, Any]:
    return json.loads(request.content)


# =============================================================================
# Fakes
# =============================================================================

Reply = Union[httpx.Response, Callable[[httpx.Request], httpx.Response], Exception]


class ScriptedTransport:
    """
    Answers requests with a fixed script of replies, in order, and records
    every request it sees.
    """

    def __init__(self, replies: List[Reply]):
        self.replies = list(replies)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self.replies:
            raise AssertionError(f"Unexpected request: {request.method} {request.url}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if callable(reply) and not isinstance(reply, httpx.Response):
            return reply(request)
        return reply

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class FakeToolRuntime:
    def __init__(self, results: Optional[Dict[str, Any]] = None, tools=None):
        self.results = results or {}
        self.tools = tools if tools is not None else [
            {
                "name": name,
                "description": f"{name} tool",
                "input_schema": {"type": "object", "properties": {"q": {"type": "string"}}},
                "server_name": "fake",
            }
            for name in self.results
        ]
        self.calls: List[tuple] = []

    async def get_all_tools(self):
        return self.tools

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        result = self.results[name]
        if isinstance(result, Exception):
            raise result
        return result


class FakeCopilotTokens:
    def __init__(self, oauth_token: Optional[str] = "gho_test"):
        self.oauth_token = oauth_token
        self.api_endpoint = "https://copilot.test"

    async def get_token(self):
        return "copilot-api-token" if self.oauth_token else None

    async def validate_connection(self):
        return bool(self.oauth_token)

    def reset(self):
        self.oauth_token = None


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def fast_retry():
    """Three attempts, no backoff delay."""
    return RetryPolicy(max_attempts=3, initial_delay=0.0, max_delay=0.0)


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every chatmux environment variable."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
