import logging
import time
from typing import List, Optional

import httpx

from .base import (
    ApprovalGate, ChunkCallback, ToolApprovalFlow, ToolRuntime, forward_chunks,
    open_stream, resolve_failure
)
from ..auth import COPILOT_HEADERS, CopilotTokenManager
from ..cancellation import CancellationToken, race
from ..exceptions import NotAuthenticatedError, ProviderHTTPError
from ..history import to_openai_format
from ..retry import DEFAULT_RETRY_POLICY, RetryPolicy
from ..streaming import SSEAccumulator, StreamResult
from ..tools import OpenAIToolAdapter
from ..types import CanonicalMessage, ModelInfo, PromptResult, Provider

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"


class CopilotClient:
    """
    Client for the Copilot OpenAI-compatible gateway (`/chat/completions`, SSE).
    """

    provider: Provider = "copilot"

    def __init__(
        self,
        oauth_token: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        *,
        token_manager: Optional[CopilotTokenManager] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = 60.0,
    ):
        self.model = model
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.retry_policy = retry_policy
        self.token_manager = token_manager or CopilotTokenManager(
            oauth_token, http_client=self.http, retry_policy=retry_policy
        )

    def is_configured(self) -> bool:
        return bool(self.token_manager.oauth_token)

    async def validate_connection(self) -> bool:
        return await self.token_manager.validate_connection()

    def set_model(self, model: str) -> None:
        logger.info("copilot: model changed to %s", model)
        self.model = model

    def reset(self) -> None:
        self.token_manager.reset()

    def _headers(self, api_token: str) -> dict:
        return {
            **COPILOT_HEADERS,
            "Authorization": f"Bearer {api_token}",
            "Copilot-Integration-Id": "vscode-chat",
        }

    async def list_models(self) -> List[ModelInfo]:
        """
        Chat models enabled for the account's model picker.

        Returns an empty list when not signed in or when the catalogue cannot
        be fetched.
        """
        if not self.is_configured():
            return []

        async def attempt() -> httpx.Response:
            response = await self.http.get(
                f"{self.token_manager.api_endpoint}/models",
                headers=self._headers(api_token),
            )
            if not response.is_success:
                raise ProviderHTTPError("copilot", response.status_code, response.text)
            return response

        try:
            api_token = await self.token_manager.get_token()
            response = await self.retry_policy.run(attempt)
        except Exception as e:
            logger.error("copilot: failed to fetch models: %s", e)
            return []

        data = response.json()
        models = data if isinstance(data, list) else data.get("data", [])
        return [
            {"name": m.get("id") or m.get("name"), "display_name": m.get("name") or m.get("id")}
            for m in models
            if m.get("model_picker_enabled") is True
            and (m.get("capabilities") or {}).get("type") == "chat"
            and (m.get("policy") or {}).get("state") == "enabled"
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
        """
        Send a prompt and run the tool loop to a final answer.

        Args:
            prompt (str): The new user message.
            history (List[CanonicalMessage]): Prior conversation (not mutated).
            tool_runtime (ToolRuntime, optional): Executes tool calls.
            approval_gate (ApprovalGate, optional): Approves each call; all
                calls are approved when omitted.
            cancellation (CancellationToken, optional): Aborts the call.
            on_chunk (Callable[[str], None], optional): Receives text deltas
                of the first turn.

        Returns:
            PromptResult: Final text plus the assistant/tool messages created.
        """
        if cancellation is not None:
            cancellation.raise_if_cancelled()
        if not self.is_configured():
            logger.error("copilot: send_prompt failed, not authenticated")
            raise NotAuthenticatedError("You are not signed in to Copilot.")

        logger.info("copilot: sending prompt (model=%s)", self.model)
        start = time.perf_counter()
        adapter = OpenAIToolAdapter()
        flow = ToolApprovalFlow(self.provider, adapter, tool_runtime, approval_gate, cancellation)

        try:
            api_token = await race(self.token_manager.get_token(), cancellation)
            if not api_token:
                raise NotAuthenticatedError("Failed to obtain Copilot API token")
            tools = adapter.map_tools(await flow.load_tools())
            url = f"{self.token_manager.api_endpoint}/chat/completions"

            async def request_turn(working: List[CanonicalMessage], turn: int) -> StreamResult:
                payload = {
                    "messages": to_openai_format(working),
                    "model": self.model,
                    "stream": True,
                }
                if tools:
                    payload["tools"] = tools
                    payload["tool_choice"] = "auto"

                request = self.http.build_request(
                    "POST", url, headers=self._headers(api_token), json=payload
                )
                response = await open_stream(
                    self.http,
                    request,
                    provider=self.provider,
                    retry_policy=self.retry_policy,
                    cancellation=cancellation,
                )
                accumulator = SSEAccumulator(forward_chunks(on_chunk, turn), cancellation)
                return await accumulator.consume(response)

            text, tool_messages = await flow.run(prompt, history, request_turn)
        except Exception as e:
            failure = resolve_failure(e, cancellation)
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
