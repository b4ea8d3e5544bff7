
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from .cancellation import CancellationToken
from .compression import compress
from .config import Settings
from .providers.base import ApprovalGate, ChatProvider, ChunkCallback, ToolRuntime
from .providers.copilot import CopilotClient
from .providers.gemini import GeminiClient
from .providers.ollama import OllamaClient
from .retry import RetryPolicy
from .types import (
    PROVIDERS, CanonicalMessage, CompressionResult, ModelInfo, PromptResult,
    Provider, Role, StreamEvent
)
from .utils import create_message

logger = logging.getLogger(__name__)


def create_provider_client(
    provider: str,
    settings: Settings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    retry_policy: Optional[RetryPolicy] = None,
) -> ChatProvider:
    """
    Build the client for one of the supported providers.

    Args:
        provider (str): 'gemini', 'copilot' or 'ollama'.
        settings (Settings): Models, credentials and timeouts.
        http_client (httpx.AsyncClient, optional): Shared HTTP client.
        retry_policy (RetryPolicy, optional): Defaults to
            `settings.max_attempts` attempts.

    Raises:
        ValueError: Unknown provider.
    """
    retry_policy = retry_policy or RetryPolicy(max_attempts=settings.max_attempts)

    match provider.lower():
        case "gemini":
            return GeminiClient(
                settings.gemini_access_token,
                settings.gemini_model,
                project_id=settings.gemini_project,
                http_client=http_client,
                retry_policy=retry_policy,
                timeout=settings.request_timeout,
            )
        case "copilot":
            return CopilotClient(
                settings.github_oauth_token,
                settings.copilot_model,
                http_client=http_client,
                retry_policy=retry_policy,
                timeout=settings.request_timeout,
            )
        case "ollama":
            return OllamaClient(
                settings.ollama_model,
                settings.ollama_base_url,
                http_client=http_client,
                retry_policy=retry_policy,
                timeout=settings.request_timeout,
            )
        case _:
            raise ValueError(f"Unknown provider: {provider}. Use 'gemini', 'copilot' or 'ollama'")


class UnifiedChatClient:
    """
    One conversation surface over Gemini, Copilot and Ollama.

    History is always canonical, so the active provider can change between
    prompts without converting anything.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        providers: Optional[Dict[Provider, ChatProvider]] = None,
    ):
        """
        Args:
            settings: Defaults to `Settings.from_env()`.
            http_client: Shared HTTP client for every provider.
            providers: Prebuilt provider clients, overriding the ones built
                from settings.
        """
        self.settings = settings or Settings.from_env()
        self.providers: Dict[Provider, ChatProvider] = dict(providers or {})
        for name in PROVIDERS:
            if name not in self.providers:
                self.providers[name] = create_provider_client(name, self.settings, http_client=http_client)
        self.active: Provider = self.settings.default_provider

    @staticmethod
    def create_message(role: Role, content: str) -> CanonicalMessage:
        return create_message(role, content)

    def get(self, provider: Optional[str] = None) -> ChatProvider:
        """The client for `provider`, or for the active provider."""
        name = (provider or self.active).lower()
        if name not in self.providers:
            raise ValueError(f"Provider '{name}' not configured or not supported.")
        return self.providers[name]

    def set_active(self, provider: str) -> None:
        self.get(provider)
        self.active = provider.lower()
        logger.info("Active provider: %s", self.active)

    def set_model(self, model: str, provider: Optional[str] = None) -> None:
        self.get(provider).set_model(model)

    async def list_models(self, provider: Optional[str] = None) -> List[ModelInfo]:
        return await self.get(provider).list_models()

    async def validate_connection(self, provider: Optional[str] = None) -> bool:
        return await self.get(provider).validate_connection()

    def compress_history(
        self,
        history: List[CanonicalMessage],
        provider: Optional[str] = None,
        force: bool = False,
    ) -> CompressionResult:
        """Compress `history` against the context window of the provider's current model."""
        return compress(history, self.get(provider).model, force=force)

    async def send_prompt(
        self,
        prompt: str,
        history: Optional[List[CanonicalMessage]] = None,
        *,
        provider: Optional[str] = None,
        tool_runtime: Optional[ToolRuntime] = None,
        approval_gate: Optional[ApprovalGate] = None,
        cancellation: Optional[CancellationToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> PromptResult:
        """
        Send a prompt to a provider and run its tool loop.

        Args:
            prompt (str): The new user message.
            history (List[CanonicalMessage], optional): Prior conversation.
            provider (str, optional): Overrides the active provider.
            tool_runtime (ToolRuntime, optional): Executes model tool calls.
            approval_gate (ApprovalGate, optional): Approves each tool call.
            cancellation (CancellationToken, optional): Aborts the request.
            on_chunk (Callable[[str], None], optional): Receives text deltas.

        Returns:
            PromptResult: {'response', 'tool_messages', 'provider', 'meta'}.

        Raises:
            ValueError: Unknown provider.
            ChatmuxError: Any provider failure (see chatmux.exceptions).
        """
        client = self.get(provider)
        return await client.send_prompt(
            prompt,
            history or [],
            tool_runtime,
            approval_gate,
            cancellation,
            on_chunk,
        )

    async def astream(
        self,
        prompt: str,
        history: Optional[List[CanonicalMessage]] = None,
        *,
        provider: Optional[str] = None,
        tool_runtime: Optional[ToolRuntime] = None,
        approval_gate: Optional[ApprovalGate] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamEvent]:
        """
        Stream a prompt as events.

        Yields:
            StreamEvent:
                - {'type': 'token', 'provider': ..., 'text': '...'} per delta
                - {'type': 'done', 'provider': ..., 'text': <full response>,
                   'tool_messages': [...] | None, 'meta': {...}} last

        Leaving the iteration early cancels the request.
        """
        client = self.get(provider)
        token = cancellation or CancellationToken()
        queue: "asyncio.Queue[Optional[StreamEvent]]" = asyncio.Queue()

        def on_chunk(text: str) -> None:
            queue.put_nowait({"type": "token", "provider": client.provider, "text": text})

        async def run() -> PromptResult:
            try:
                return await client.send_prompt(
                    prompt, history or [], tool_runtime, approval_gate, token, on_chunk
                )
            finally:
                queue.put_nowait(None)

        task = asyncio.create_task(run())
        try:
            while True:
                event = await queue.get()
                if event is None:
                    break
                yield event

            result = await task
            yield {
                "type": "done",
                "provider": result["provider"],
                "text": result["response"],
                "tool_messages": result["tool_messages"],
                "meta": result["meta"],
            }
        finally:
            if not task.done():
                token.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def aclose(self) -> None:
        """Close the HTTP clients owned by the providers."""
        closed = set()
        for client in self.providers.values():
            http: Any = getattr(client, "http", None)
            if http is not None and id(http) not in closed:
                closed.add(id(http))
                await http.aclose()
