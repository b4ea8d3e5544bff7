import logging
import time
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    ApprovalGate, ChunkCallback, ToolApprovalFlow, ToolRuntime, forward_chunks,
    open_stream, resolve_failure
)
from ..cancellation import CancellationToken
from ..exceptions import NetworkError, ProviderHTTPError
from ..history import strip_tool_artifacts, to_openai_format
from ..retry import DEFAULT_RETRY_POLICY, RetryPolicy
from ..streaming import NDJSONAccumulator, StreamResult
from ..tools import OllamaToolAdapter
from ..types import CanonicalMessage, ModelInfo, PromptResult, Provider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "llama3"
DEFAULT_BASE_URL = "http://localhost:11434"


class OllamaClient:
    """
    Client for a local Ollama server (`/api/chat`, newline-delimited JSON).

    No credential is needed. Models that reject tool declarations are retried
    once without tools.
    """

    provider: Provider = "ollama"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = 60.0,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.retry_policy = retry_policy

    def is_configured(self) -> bool:
        return True

    async def validate_connection(self) -> bool:
        try:
            response = await self.http.get(f"{self.base_url}/api/tags", timeout=2.0)
        except httpx.HTTPError as e:
            logger.warning("ollama: connection check failed: %s", e)
            return False
        if response.is_success:
            logger.info("ollama: connection verified")
        return response.is_success

    def set_model(self, model: str) -> None:
        logger.info("ollama: model changed to %s", model)
        self.model = model

    def reset(self) -> None:
        pass

    async def list_models(self) -> List[ModelInfo]:
        try:
            response = await self.http.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as e:
            logger.error("ollama: failed to list models: %s", e)
            return []
        if not response.is_success:
            return []
        return [
            {"name": m["name"], "display_name": m["name"]}
            for m in response.json().get("models") or []
        ]

    async def send_prompt(
        self,
        prompt: str,
        history: List[CanonicalMessage],
        tool_runtime: Optional[ToolRuntime] = None,
        approval_gate: Optional[ApprovalGate] = None,
        cancellation: Optional[CancellationToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> PromptResult:
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        logger.info("ollama: sending prompt (model=%s)", self.model)
        start = time.perf_counter()
        adapter = OllamaToolAdapter()
        flow = ToolApprovalFlow(self.provider, adapter, tool_runtime, approval_gate, cancellation)

        try:
            tools: Optional[List[Dict[str, Any]]] = adapter.map_tools(await flow.load_tools()) or None

            async def send(messages: List[CanonicalMessage], with_tools: bool) -> httpx.Response:
                payload: Dict[str, Any] = {
                    "model": self.model,
                    "messages": to_openai_format(messages, string_arguments=False),
                    "stream": True,
                }
                if with_tools:
                    payload["tools"] = tools
                request = self.http.build_request("POST", f"{self.base_url}/api/chat", json=payload)
                return await open_stream(
                    self.http,
                    request,
                    provider=self.provider,
                    retry_policy=self.retry_policy,
                    cancellation=cancellation,
                )

            tools_rejected = False

            async def request_turn(working: List[CanonicalMessage], turn: int) -> StreamResult:
                nonlocal tools, tools_rejected
                if tools:
                    try:
                        response = await send(working, with_tools=True)
                    except ProviderHTTPError as e:
                        if e.status_code != 400:
                            raise
                        logger.warning(
                            "ollama: model %s may not support tools, retrying without them", self.model
                        )
                        tools = None
                        tools_rejected = True
                        response = await send(strip_tool_artifacts(working), with_tools=False)
                else:
                    messages = strip_tool_artifacts(working) if tools_rejected else working
                    response = await send(messages, with_tools=False)

                accumulator = NDJSONAccumulator(forward_chunks(on_chunk, turn), cancellation)
                return await accumulator.consume(response)

            text, tool_messages = await flow.run(prompt, history, request_turn)
        except Exception as e:
            failure = resolve_failure(e, cancellation)
            if isinstance(failure, NetworkError):
                failure = NetworkError(
                    f"Could not connect to Ollama. Check that it is running ({self.base_url})."
                )
            if failure is e:
                raise
            raise failure from e

        return {
            "response": text,
            "tool_messages": tool_messages,
            "provider": self.provider,
            "meta": {
                "model": self.model,
                "turns": flow.turn,
                "latency_ms": (time.perf_counter() - start) * 1000.0,
            },
        }
