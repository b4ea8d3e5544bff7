import httpx
import pytest

from chatmux.cancellation import CancellationToken
from chatmux.exceptions import (
    AuthenticationError, CancellationError, NotAuthenticatedError,
    ProviderHTTPError, TurnLimitExceeded
)
from chatmux.providers import MAX_TOOL_TURNS, CopilotClient
from chatmux.utils import create_message

from .conftest import (
    FakeCopilotTokens, FakeToolRuntime, ScriptedTransport, openai_text,
    openai_tool_call, request_json
)


def _client(transport: ScriptedTransport, retry_policy, tokens=None) -> CopilotClient:
    return CopilotClient(
        token_manager=tokens or FakeCopilotTokens(),
        http_client=transport.client(),
        retry_policy=retry_policy,
    )


class TestCopilotSendPrompt:

    @pytest.mark.asyncio
    async def test_plain_answer(self, fast_retry):
        transport = ScriptedTransport([httpx.Response(200, content=openai_text("He", "llo"))])
        client = _client(transport, fast_retry)
        chunks = []

        result = await client.send_prompt(
            "Hi", [create_message("system", "Be brief.")], on_chunk=chunks.append
        )

        assert result["response"] == "Hello"
        assert result["tool_messages"] is None
        assert result["provider"] == "copilot"
        assert result["meta"]["model"] == "gpt-4o-mini"
        assert result["meta"]["turns"] == 0
        assert chunks == ["He", "llo"]

        request = transport.requests[0]
        assert str(request.url) == "https://copilot.test/chat/completions"
        assert request.headers["Authorization"] == "Bearer copilot-api-token"
        assert request.headers["Copilot-Integration-Id"] == "vscode-chat"
        payload = request_json(request)
        assert payload["stream"] is True
        assert payload["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Hi"},
        ]
        assert "tools" not in payload

    @pytest.mark.asyncio
    async def test_history_is_not_mutated(self, fast_retry):
        transport = ScriptedTransport([httpx.Response(200, content=openai_text("ok"))])
        history = [create_message("user", "earlier")]

        await _client(transport, fast_retry).send_prompt("now", history)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_approved_tool_call(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(200, content=openai_tool_call("search", '{"q": "x"}')),
            httpx.Response(200, content=openai_text("Found it")),
        ])
        runtime = FakeToolRuntime({"search": "data"})
        approvals = []

        async def approve(name, arguments):
            approvals.append((name, arguments))
            return True

        chunks = []
        result = await _client(transport, fast_retry).send_prompt(
            "Look up x", [], runtime, approve, on_chunk=chunks.append
        )

        assert result["response"] == "Found it"
        assert result["meta"]["turns"] == 1
        assert approvals == [("search", {"q": "x"})]
        assert runtime.calls == [("search", {"q": "x"})]
        # only the first turn streams to the caller
        assert chunks == []

        assistant, tool = result["tool_messages"]
        assert assistant["role"] == "assistant"
        assert assistant["tool_calls"] == [{"id": "call_1", "name": "search", "arguments": {"q": "x"}}]
        assert tool["role"] == "tool"
        record = tool["mcp_calls"][0]
        assert record["output"] == "data"
        assert record["tool_call_id"] == "call_1"
        assert record["server"] == "fake"
        assert record["error"] is False

        first = request_json(transport.requests[0])
        assert first["tools"][0]["function"]["name"] == "search"
        assert first["tool_choice"] == "auto"

        second = request_json(transport.requests[1])["messages"]
        assert [m["role"] for m in second] == ["user", "assistant", "tool"]
        assert second[1]["tool_calls"][0]["id"] == "call_1"
        assert second[2] == {"role": "tool", "content": '"data"', "tool_call_id": "call_1", "name": "search"}

    @pytest.mark.asyncio
    async def test_denied_tool_call(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(200, content=openai_tool_call("search", '{"q": "x"}')),
            httpx.Response(200, content=openai_text("Okay, I won't.")),
        ])
        runtime = FakeToolRuntime({"search": "data"})

        result = await _client(transport, fast_retry).send_prompt(
            "Look up x", [], runtime, lambda name, args: False
        )

        assert runtime.calls == []
        record = result["tool_messages"][1]["mcp_calls"][0]
        assert record["output"] == {"error": "User denied tool execution."}
        assert record["error"] is True
        assert result["response"] == "Okay, I won't."
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_tool_failure_is_reported_to_model(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(200, content=openai_tool_call("search", "{}")),
            httpx.Response(200, content=openai_text("Sorry.")),
        ])
        runtime = FakeToolRuntime({"search": RuntimeError("disk full")})

        result = await _client(transport, fast_retry).send_prompt("x", [], runtime)

        record = result["tool_messages"][1]["mcp_calls"][0]
        assert record["output"] == {"error": "disk full"}
        assert record["error"] is True

    @pytest.mark.asyncio
    async def test_turn_limit(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(200, content=openai_tool_call("search", "{}", call_id=f"call_{i}"))
            for i in range(MAX_TOOL_TURNS)
        ])
        runtime = FakeToolRuntime({"search": "again"})

        with pytest.raises(TurnLimitExceeded):
            await _client(transport, fast_retry).send_prompt("loop", [], runtime)
        assert len(transport.requests) == MAX_TOOL_TURNS
        assert len(runtime.calls) == MAX_TOOL_TURNS

    @pytest.mark.asyncio
    async def test_cancelled_before_send(self, fast_retry):
        transport = ScriptedTransport([])
        token = CancellationToken()
        token.cancel()

        with pytest.raises(CancellationError):
            await _client(transport, fast_retry).send_prompt("Hi", [], cancellation=token)
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_cancelled_while_streaming(self, fast_retry):
        transport = ScriptedTransport([httpx.Response(200, content=openai_text("a", "b", "c"))])
        token = CancellationToken()
        chunks = []

        def on_chunk(text):
            chunks.append(text)
            token.cancel()

        with pytest.raises(CancellationError):
            await _client(transport, fast_retry).send_prompt(
                "Hi", [], cancellation=token, on_chunk=on_chunk
            )
        assert chunks == ["a"]

    @pytest.mark.asyncio
    async def test_transient_status_is_retried(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(503, text="busy"),
            httpx.Response(200, content=openai_text("ok")),
        ])
        result = await _client(transport, fast_retry).send_prompt("Hi", [])

        assert result["response"] == "ok"
        assert len(transport.requests) == 2

    @pytest.mark.asyncio
    async def test_unauthorized_is_classified(self, fast_retry):
        transport = ScriptedTransport([httpx.Response(401, text="bad token")])

        with pytest.raises(AuthenticationError) as exc_info:
            await _client(transport, fast_retry).send_prompt("Hi", [])
        assert isinstance(exc_info.value.__cause__, ProviderHTTPError)
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_not_signed_in(self, fast_retry):
        transport = ScriptedTransport([])
        client = _client(transport, fast_retry, tokens=FakeCopilotTokens(oauth_token=None))

        assert not client.is_configured()
        with pytest.raises(NotAuthenticatedError):
            await client.send_prompt("Hi", [])
        assert transport.requests == []


class TestCopilotModels:

    @pytest.mark.asyncio
    async def test_list_models_filters_picker_chat_models(self, fast_retry):
        transport = ScriptedTransport([httpx.Response(200, json={"data": [
            {"id": "gpt-4o", "name": "GPT-4o", "model_picker_enabled": True,
             "capabilities": {"type": "chat"}, "policy": {"state": "enabled"}},
            {"id": "embed", "name": "Embeddings", "model_picker_enabled": True,
             "capabilities": {"type": "embeddings"}, "policy": {"state": "enabled"}},
            {"id": "o1", "name": "o1", "model_picker_enabled": True,
             "capabilities": {"type": "chat"}, "policy": {"state": "disabled"}},
            {"id": "hidden", "model_picker_enabled": False, "capabilities": {"type": "chat"}},
        ]})])

        models = await _client(transport, fast_retry).list_models()

        assert models == [{"name": "gpt-4o", "display_name": "GPT-4o"}]
        assert str(transport.requests[0].url) == "https://copilot.test/models"

    @pytest.mark.asyncio
    async def test_list_models_failure_returns_empty(self, fast_retry):
        transport = ScriptedTransport([httpx.Response(500, text="oops")])
        assert await _client(transport, fast_retry).list_models() == []
        assert len(transport.requests) == 1

    @pytest.mark.asyncio
    async def test_list_models_retries_unavailable(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(503, text="busy"),
            httpx.Response(200, json=[
                {"id": "gpt-4o", "name": "GPT-4o", "model_picker_enabled": True,
                 "capabilities": {"type": "chat"}, "policy": {"state": "enabled"}},
            ]),
        ])

        models = await _client(transport, fast_retry).list_models()

        assert models == [{"name": "gpt-4o", "display_name": "GPT-4o"}]
        assert len(transport.requests) == 2

    def test_set_model_and_reset(self, fast_retry):
        client = _client(ScriptedTransport([]), fast_retry)
        client.set_model("gpt-4o")
        assert client.model == "gpt-4o"

        client.reset()
        assert not client.is_configured()
