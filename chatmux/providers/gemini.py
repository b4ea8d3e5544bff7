import asyncio
import logging
import time
import uuid
from typing import Any, Dict, List, Optional

import httpx

from .base import (
    ApprovalGate, ChunkCallback, ToolApprovalFlow, ToolRuntime, forward_chunks,
    open_stream, resolve_failure
)
from ..auth import StaticTokenProvider, TokenProvider
from ..cancellation import CancellationToken, race
from ..exceptions import CancellationError, ConfigurationError, NotAuthenticatedError
from ..history import to_gemini_format
from ..retry import DEFAULT_RETRY_POLICY, RetryPolicy
from ..streaming import GeminiAccumulator, StreamResult
from ..tools import GeminiToolAdapter
from ..types import CanonicalMessage, GeminiContent, ModelInfo, PromptResult, Provider

logger = logging.getLogger(__name__)

ENDPOINT = "https://cloudcode-pa.googleapis.com/v1internal"

DEFAULT_MODEL = "gemini-2.5-flash"

KNOWN_MODELS = (
    "gemini-2.5-flash",
    "gemini-2.5-pro",
    "gemini-2.5-flash-lite",
    "gemini-3-pro-preview",
    "gemini-3-flash-preview",
)

CLIENT_METADATA = {"ideType": "IDE_UNSPECIFIED", "pluginType": "GEMINI"}


# =============================================================================
# History Curation
# =============================================================================

def is_valid_content(content: GeminiContent) -> bool:
    """
    A content is valid when it has parts, none of them empty, and no text
    part is an empty string.
    """
    parts = content.get("parts") or []
    if not parts:
        return False
    for part in parts:
        if not part:
            return False
        if part.get("text") == "" and not part.get("functionCall") and not part.get("functionResponse"):
            return False
    return True


def curate_history(contents: List[GeminiContent]) -> List[GeminiContent]:
    """
    Drop contents the model must not see replayed.

    Invalid user turns are dropped one by one. A run of consecutive model
    turns is kept only if every turn in it is valid; otherwise the whole run
    is dropped.
    """
    curated: List[GeminiContent] = []
    i = 0
    while i < len(contents):
        if contents[i]["role"] == "user":
            if is_valid_content(contents[i]):
                curated.append(contents[i])
            i += 1
            continue

        run: List[GeminiContent] = []
        valid = True
        while i < len(contents) and contents[i]["role"] == "model":
            run.append(contents[i])
            valid = valid and is_valid_content(contents[i])
            i += 1
        if valid:
            curated.extend(run)
    return curated


# =============================================================================
# Project Handshake
# =============================================================================

class GeminiHandshake:
    """
    Resolves the Code Assist project id for the signed-in account.

    `loadCodeAssist` returns the project for onboarded accounts; otherwise the
    account is onboarded with `onboardUser`, a long-running operation that is
    polled until done. The project id is cached until `reset()`.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        project_id: Optional[str] = None,
        endpoint: str = ENDPOINT,
        poll_interval: float = 2.0,
    ):
        self.http = http
        self.configured_project = project_id
        self.project_id = project_id
        self.endpoint = endpoint
        self.poll_interval = poll_interval

    async def resolve(self, token: str, cancellation: Optional[CancellationToken] = None) -> str:
        """
        Return the project id, performing the handshake on first use.

        Raises:
            ConfigurationError: The handshake failed or yielded no project.
            CancellationError: The token fired during the handshake.
        """
        if self.project_id:
            return self.project_id

        logger.debug("gemini: performing handshake")
        try:
            project_id = await self._handshake(token, cancellation)
        except (CancellationError, ConfigurationError):
            raise
        except Exception as e:
            logger.error("gemini: handshake failed: %s", e)
            raise ConfigurationError(f"Gemini project handshake failed: {e}") from e

        self.project_id = project_id
        return project_id

    async def _handshake(self, token: str, cancellation: Optional[CancellationToken]) -> str:
        load = await self._post(token, "loadCodeAssist", {"metadata": CLIENT_METADATA}, cancellation)
        if load.get("cloudaicompanionProject"):
            return load["cloudaicompanionProject"]

        tier_id = (load.get("currentTier") or {}).get("id") or "FREE"
        lro = await self._post(
            token, "onboardUser", {"tierId": tier_id, "metadata": CLIENT_METADATA}, cancellation
        )

        while not lro.get("done") and lro.get("name"):
            logger.debug("gemini: waiting for onboarding")
            if cancellation is not None:
                await cancellation.sleep(self.poll_interval)
            else:
                await asyncio.sleep(self.poll_interval)
            response = await race(
                self.http.get(f"{self.endpoint}/{lro['name']}", headers=self._headers(token)),
                cancellation,
            )
            response.raise_for_status()
            lro = response.json()

        project = ((lro.get("response") or {}).get("cloudaicompanionProject") or {}).get("id")
        if not project:
            raise ConfigurationError("Failed to obtain Project ID.")
        return project

    async def _post(
        self,
        token: str,
        method: str,
        body: Dict[str, Any],
        cancellation: Optional[CancellationToken] = None,
    ) -> Dict[str, Any]:
        response = await race(
            self.http.post(f"{self.endpoint}:{method}", headers=self._headers(token), json=body),
            cancellation,
        )
        response.raise_for_status()
        return response.json()

    @staticmethod
    def _headers(token: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}

    def reset(self) -> None:
        self.project_id = self.configured_project


# =============================================================================
# Client
# =============================================================================

class GeminiClient:
    """
    Client for Gemini through the Code Assist internal RPC
    (`v1internal:streamGenerateContent?alt=sse`).
    """

    provider: Provider = "gemini"

    def __init__(
        self,
        access_token: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        *,
        project_id: Optional[str] = None,
        token_provider: Optional[TokenProvider] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = 60.0,
        endpoint: str = ENDPOINT,
    ):
        self.model = model
        self.endpoint = endpoint
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.retry_policy = retry_policy
        if token_provider is None and access_token:
            token_provider = StaticTokenProvider(access_token)
        self.token_provider = token_provider
        self.handshake = GeminiHandshake(self.http, project_id=project_id, endpoint=endpoint)

    def is_configured(self) -> bool:
        return self.token_provider is not None

    async def validate_connection(self) -> bool:
        if self.token_provider is None:
            return False
        return bool(await self.token_provider.get_token())

    def set_model(self, model: str) -> None:
        if model == self.model:
            return
        logger.info("gemini: model changed to %s", model)
        self.model = model

    def reset(self) -> None:
        self.handshake.reset()
        logger.info("gemini: client reset")

    async def list_models(self) -> List[ModelInfo]:
        return [{"name": name, "display_name": name} for name in KNOWN_MODELS]

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
        token = await self.token_provider.get_token() if self.token_provider else None
        if not token:
            logger.error("gemini: send_prompt failed, not authenticated")
            raise NotAuthenticatedError("You are not signed in to Gemini.")

        start = time.perf_counter()
        adapter = GeminiToolAdapter()
        flow = ToolApprovalFlow(self.provider, adapter, tool_runtime, approval_gate, cancellation)

        try:
            project_id = await self.handshake.resolve(token, cancellation)
            prompt_id = str(uuid.uuid4())
            declarations = await flow.load_tools()
            tools = adapter.map_tools(declarations) if declarations else None
            url = f"{self.endpoint}:streamGenerateContent?alt=sse"
            logger.info("gemini: sending prompt (model=%s)", self.model)

            async def request_turn(working: List[CanonicalMessage], turn: int) -> StreamResult:
                request_body: Dict[str, Any] = {
                    "contents": curate_history(to_gemini_format(working)),
                    "generationConfig": {"temperature": 0.7},
                }
                if tools:
                    request_body["tools"] = tools
                payload = {
                    "model": self.model,
                    "project": project_id,
                    "user_prompt_id": prompt_id,
                    "request": request_body,
                }
                request = self.http.build_request(
                    "POST", url, headers=GeminiHandshake._headers(token), json=payload
                )
                response = await open_stream(
                    self.http,
                    request,
                    provider=self.provider,
                    retry_policy=self.retry_policy,
                    cancellation=cancellation,
                )
                accumulator = GeminiAccumulator(forward_chunks(on_chunk, turn), cancellation)
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
                "project": project_id,
                "turns": flow.turn,
                "latency_ms": (time.perf_counter() - start) * 1000.0,
            },
        }
