import asyncio

import httpx
import pytest

from chatmux.cancellation import CancellationToken
from chatmux.exceptions import CancellationError, ConfigurationError, NotAuthenticatedError
from chatmux.providers import GeminiClient
from chatmux.providers.gemini import (
    ENDPOINT, GeminiHandshake, curate_history, is_valid_content
)
from chatmux.utils import create_message

from .conftest import FakeToolRuntime, ScriptedTransport, gemini_chunk, request_json, sse


def _stream(*chunks) -> httpx.Response:
    return httpx.Response(200, content=sse(*chunks, done=False))


class TestCurateHistory:

    def test_is_valid_content(self):
        assert is_valid_content({"role": "user", "parts": [{"text": "hi"}]})
        assert not is_valid_content({"role": "user", "parts": []})
        assert not is_valid_content({"role": "user", "parts": [{}]})
        assert not is_valid_content({"role": "model", "parts": [{"text": ""}]})

    def test_drops_invalid_user_turns_and_whole_model_runs(self):
        good_user = {"role": "user", "parts": [{"text": "q1"}]}
        good_model = {"role": "model", "parts": [{"text": "a1"}]}
        bad_model = {"role": "model", "parts": []}
        bad_user = {"role": "user", "parts": [{"text": ""}]}
        last_user = {"role": "user", "parts": [{"text": "q2"}]}
        last_model = {"role": "model", "parts": [{"text": "a2"}]}

        curated = curate_history([good_user, good_model, bad_model, bad_user, last_user, last_model])

        assert curated == [good_user, last_user, last_model]


class TestGeminiHandshake:

    @pytest.mark.asyncio
    async def test_existing_project(self):
        transport = ScriptedTransport([httpx.Response(200, json={"cloudaicompanionProject": "p-1"})])
        handshake = GeminiHandshake(transport.client())

        assert await handshake.resolve("tok") == "p-1"
        assert await handshake.resolve("tok") == "p-1"
        assert len(transport.requests) == 1

        request = transport.requests[0]
        assert str(request.url) == f"{ENDPOINT}:loadCodeAssist"
        assert request.headers["Authorization"] == "Bearer tok"
        assert request_json(request)["metadata"]["pluginType"] == "GEMINI"

    @pytest.mark.asyncio
    async def test_onboarding_polls_operation(self):
        transport = ScriptedTransport([
            httpx.Response(200, json={"currentTier": {"id": "standard-tier"}}),
            httpx.Response(200, json={"name": "operations/1", "done": False}),
            httpx.Response(200, json={"name": "operations/1", "done": False}),
            httpx.Response(200, json={
                "name": "operations/1",
                "done": True,
                "response": {"cloudaicompanionProject": {"id": "p-2"}},
            }),
        ])
        handshake = GeminiHandshake(transport.client(), poll_interval=0)

        assert await handshake.resolve("tok") == "p-2"
        assert request_json(transport.requests[1])["tierId"] == "standard-tier"
        assert str(transport.requests[1].url) == f"{ENDPOINT}:onboardUser"
        assert str(transport.requests[2].url) == f"{ENDPOINT}/operations/1"
        assert transport.requests[3].method == "GET"

    @pytest.mark.asyncio
    async def test_free_tier_default(self):
        transport = ScriptedTransport([
            httpx.Response(200, json={}),
            httpx.Response(200, json={"done": True, "response": {"cloudaicompanionProject": {"id": "p-3"}}}),
        ])
        handshake = GeminiHandshake(transport.client(), poll_interval=0)

        assert await handshake.resolve("tok") == "p-3"
        assert request_json(transport.requests[1])["tierId"] == "FREE"

    @pytest.mark.asyncio
    async def test_missing_project_fails(self):
        transport = ScriptedTransport([
            httpx.Response(200, json={}),
            httpx.Response(200, json={"done": True, "response": {}}),
        ])
        with pytest.raises(ConfigurationError, match="Failed to obtain Project ID"):
            await GeminiHandshake(transport.client(), poll_interval=0).resolve("tok")

    @pytest.mark.asyncio
    async def test_http_failure_becomes_configuration_error(self):
        transport = ScriptedTransport([httpx.Response(500, text="boom")])
        with pytest.raises(ConfigurationError, match="handshake failed"):
            await GeminiHandshake(transport.client()).resolve("tok")

    @pytest.mark.asyncio
    async def test_configured_project_skips_handshake_and_survives_reset(self):
        transport = ScriptedTransport([])
        handshake = GeminiHandshake(transport.client(), project_id="fixed")

        assert await handshake.resolve("tok") == "fixed"
        handshake.reset()
        assert await handshake.resolve("tok") == "fixed"
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_cancel_during_slow_load_code_assist(self):
        async def slow(request):
            await asyncio.sleep(3)
            return httpx.Response(200, json={"cloudaicompanionProject": "late"})

        transport = ScriptedTransport([slow])
        handshake = GeminiHandshake(transport.client())
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, token.cancel)
        started = loop.time()

        with pytest.raises(CancellationError):
            await handshake.resolve("tok", token)

        assert loop.time() - started < 1.0
        assert handshake.project_id is None

    @pytest.mark.asyncio
    async def test_cancel_during_onboarding_poll(self):
        async def slow_poll(request):
            await asyncio.sleep(3)
            return httpx.Response(200, json={"done": True})

        transport = ScriptedTransport([
            httpx.Response(200, json={}),
            httpx.Response(200, json={"name": "operations/1", "done": False}),
            slow_poll,
        ])
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        loop.call_later(0.1, token.cancel)
        started = loop.time()

        with pytest.raises(CancellationError):
            await GeminiHandshake(transport.client(), poll_interval=0).resolve("tok", token)

        assert loop.time() - started < 1.0
        assert len(transport.requests) == 3


class TestGeminiSendPrompt:

    @pytest.mark.asyncio
    async def test_plain_answer(self, fast_retry):
        transport = ScriptedTransport([
            _stream(gemini_chunk({"text": "He"}), gemini_chunk({"text": "llo"}, finish_reason="STOP")),
        ])
        client = GeminiClient("tok", project_id="proj-1", http_client=transport.client(), retry_policy=fast_retry)
        chunks = []

        result = await client.send_prompt(
            "Hi", [create_message("system", "ignored")], on_chunk=chunks.append
        )

        assert result["response"] == "Hello"
        assert result["tool_messages"] is None
        assert result["meta"]["project"] == "proj-1"
        assert chunks == ["He", "llo"]

        request = transport.requests[0]
        assert str(request.url) == f"{ENDPOINT}:streamGenerateContent?alt=sse"
        payload = request_json(request)
        assert payload["model"] == "gemini-2.5-flash"
        assert payload["project"] == "proj-1"
        assert payload["user_prompt_id"]
        assert payload["request"]["contents"] == [{"role": "user", "parts": [{"text": "Hi"}]}]
        assert payload["request"]["generationConfig"] == {"temperature": 0.7}
        assert "tools" not in payload["request"]

    @pytest.mark.asyncio
    async def test_tool_call_uses_sanitized_wire_name(self, fast_retry):
        transport = ScriptedTransport([
            _stream(gemini_chunk({"functionCall": {"name": "fs_read", "args": {"path": "a.txt"}}})),
            _stream(gemini_chunk({"text": "It says hi."}, finish_reason="STOP")),
        ])
        runtime = FakeToolRuntime({"fs.read": "hi"})
        client = GeminiClient("tok", project_id="proj-1", http_client=transport.client(), retry_policy=fast_retry)

        result = await client.send_prompt("Read a.txt", [], runtime)

        assert result["response"] == "It says hi."
        assert runtime.calls == [("fs.read", {"path": "a.txt"})]

        first = request_json(transport.requests[0])
        decl = first["request"]["tools"][0]["functionDeclarations"][0]
        assert decl["name"] == "fs_read"
        assert decl["parameters"]["type"] == "OBJECT"

        second = request_json(transport.requests[1])
        assert second["user_prompt_id"] == first["user_prompt_id"]
        assert second["request"]["contents"][1:] == [
            {"role": "model", "parts": [{"functionCall": {"name": "fs_read", "args": {"path": "a.txt"}}}]},
            {"role": "user", "parts": [{"functionResponse": {
                "name": "fs_read", "response": {"name": "fs_read", "content": "hi"},
            }}]},
        ]

    @pytest.mark.asyncio
    async def test_handshake_runs_once_per_client(self, fast_retry):
        transport = ScriptedTransport([
            httpx.Response(200, json={"cloudaicompanionProject": "p-9"}),
            _stream(gemini_chunk({"text": "one"})),
            _stream(gemini_chunk({"text": "two"})),
        ])
        client = GeminiClient("tok", http_client=transport.client(), retry_policy=fast_retry)

        assert (await client.send_prompt("a", []))["response"] == "one"
        assert (await client.send_prompt("b", []))["response"] == "two"
        assert len(transport.requests) == 3
        assert request_json(transport.requests[2])["project"] == "p-9"

    @pytest.mark.asyncio
    async def test_not_signed_in(self, fast_retry):
        transport = ScriptedTransport([])
        client = GeminiClient(http_client=transport.client(), retry_policy=fast_retry)

        assert not client.is_configured()
        with pytest.raises(NotAuthenticatedError):
            await client.send_prompt("Hi", [])
        assert transport.requests == []

    @pytest.mark.asyncio
    async def test_list_models_is_static(self):
        client = GeminiClient("tok", http_client=ScriptedTransport([]).client())
        names = [m["name"] for m in await client.list_models()]
        assert "gemini-2.5-flash" in names
        assert "gemini-2.5-pro" in names
