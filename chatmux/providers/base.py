import asyncio
import logging
import time
from typing import (
    Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple, Union,
    runtime_checkable
)

import httpx

from ..cancellation import CancellationToken, race
from ..exceptions import (
    CancellationError, ProviderHTTPError, ToolExecutionError, TurnLimitExceeded,
    classify_error
)
from ..retry import RetryPolicy
from ..streaming import EventCallback, StreamResult
from ..tools import ToolAdapter
from ..types import (
    CanonicalMessage, ModelInfo, PromptResult, Provider, StreamEvent,
    ToolCallRef, ToolDefinition, ToolExecutionRecord
)
from ..utils import (
    create_assistant_message_with_tool_calls, create_execution_record,
    create_message, create_tool_result_message
)

logger = logging.getLogger(__name__)

MAX_TOOL_TURNS = 10

DENIED_TOOL_MESSAGE = "User denied tool execution."

# (tool_name, arguments) -> approved. Plain functions and coroutines both work.
ApprovalGate = Callable[[str, Dict[str, Any]], Union[bool, Awaitable[bool]]]

ChunkCallback = Callable[[str], None]

# (working_history, turn) -> accumulated response of that turn
TurnRequest = Callable[[List[CanonicalMessage], int], Awaitable[StreamResult]]


@runtime_checkable
class ToolRuntime(Protocol):
    """
    Host-provided tool execution backend (e.g. MCPToolRuntime).
    """

    async def get_all_tools(self) -> List[ToolDefinition]:
        ...

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        ...


class ChatProvider(Protocol):
    """
    Canonical contract shared by every provider client.
    """

    provider: Provider
    model: str

    async def send_prompt(
        self,
        prompt: str,
        history: List[CanonicalMessage],
        tool_runtime: Optional[ToolRuntime] = None,
        approval_gate: Optional[ApprovalGate] = None,
        cancellation: Optional[CancellationToken] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> PromptResult:
        ...

    async def list_models(self) -> List[ModelInfo]:
        ...

    async def validate_connection(self) -> bool:
        ...

    def is_configured(self) -> bool:
        ...

    def set_model(self, model: str) -> None:
        ...

    def reset(self) -> None:
        ...


# =============================================================================
# Shared Capabilities
# =============================================================================

class ToolApprovalFlow:
    """
    Tool loop shared by the provider clients.

    Owns the turn counter, the approval gate and tool execution. The provider
    client only supplies `request_turn`, which encodes the working history,
    performs the HTTP call and returns the accumulated stream.
    """

    def __init__(
        self,
        provider: Provider,
        adapter: ToolAdapter,
        tool_runtime: Optional[ToolRuntime] = None,
        approval_gate: Optional[ApprovalGate] = None,
        cancellation: Optional[CancellationToken] = None,
        max_turns: int = MAX_TOOL_TURNS,
    ):
        self.provider = provider
        self.adapter = adapter
        self.tool_runtime = tool_runtime
        self.approval_gate = approval_gate
        self.cancellation = cancellation
        self.max_turns = max_turns
        self.turn = 0
        self._servers: Dict[str, str] = {}

    async def load_tools(self) -> List[ToolDefinition]:
        """Tools offered by the runtime, or [] when no runtime is attached."""
        if self.tool_runtime is None:
            return []
        tools = await self.tool_runtime.get_all_tools()
        self._servers = {t["name"]: t.get("server_name", "mcp") for t in tools}
        return tools

    async def run(
        self,
        prompt: str,
        history: List[CanonicalMessage],
        request_turn: TurnRequest,
    ) -> Tuple[str, Optional[List[CanonicalMessage]]]:
        """
        Drive turns until the model answers without tool calls.

        Returns:
            Tuple[str, Optional[List[CanonicalMessage]]]: Final text and the
            assistant/tool messages produced along the way (None if the model
            called no tools).

        Raises:
            TurnLimitExceeded: `max_turns` tool turns without a final answer.
            CancellationError: The token fired.
        """
        working = list(history)
        working.append(create_message("user", prompt))
        new_messages: List[CanonicalMessage] = []

        while self.turn < self.max_turns:
            self._check_cancelled()
            logger.info("%s: starting turn %d", self.provider, self.turn)

            result = await request_turn(working, self.turn)
            calls = self.adapter.normalize_calls(result.tool_calls)
            if not calls:
                return result.text, (new_messages or None)

            assistant = create_assistant_message_with_tool_calls(result.text, calls, self.provider)
            records = await self.execute_all(calls)
            tool_message = create_tool_result_message(records, self.provider)

            working.extend([assistant, tool_message])
            new_messages.extend([assistant, tool_message])
            self.turn += 1

        raise TurnLimitExceeded(self.max_turns)

    async def execute_all(self, calls: List[ToolCallRef]) -> List[ToolExecutionRecord]:
        # Sequential: later calls may depend on earlier results.
        records = []
        for call in calls:
            self._check_cancelled()
            records.append(await self.execute(call))
        return records

    async def execute(self, call: ToolCallRef) -> ToolExecutionRecord:
        """
        Run one tool call behind the approval gate.

        Denials and tool failures become `{"error": ...}` outputs on the
        record; neither aborts the loop.
        """
        host_name = self.adapter.host_name(call["name"])
        arguments = call["arguments"]
        start = time.perf_counter()
        failed = False

        if not await self.approve(host_name, arguments):
            logger.info("%s: tool %s denied", self.provider, host_name)
            output: Any = {"error": DENIED_TOOL_MESSAGE}
            failed = True
        else:
            logger.info("%s: calling tool %s", self.provider, host_name)
            try:
                output = await race(self._call_tool(host_name, arguments), self.cancellation)
            except CancellationError:
                raise
            except Exception as e:
                error = ToolExecutionError(host_name, e, arguments)
                logger.error("%s", error)
                output = {"error": str(e)}
                failed = True

        return create_execution_record(
            call["name"],
            arguments,
            output,
            tool_call_id=call["id"],
            server=self._servers.get(host_name, "mcp"),
            duration_ms=(time.perf_counter() - start) * 1000.0,
            error=failed,
        )

    async def approve(self, name: str, arguments: Dict[str, Any]) -> bool:
        if self.approval_gate is None:
            return True
        approved = self.approval_gate(name, arguments)
        if asyncio.iscoroutine(approved):
            approved = await approved
        return bool(approved)

    async def _call_tool(self, name: str, arguments: Dict[str, Any]) -> Any:
        if self.tool_runtime is None:
            raise ValueError(f"No tool runtime available for tool '{name}'")
        result = self.tool_runtime.call_tool(name, arguments)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    def _check_cancelled(self) -> None:
        if self.cancellation is not None:
            self.cancellation.raise_if_cancelled()


def forward_chunks(on_chunk: Optional[ChunkCallback], turn: int) -> Optional[EventCallback]:
    """
    Adapt an `on_chunk(text)` callback to the accumulator's event callback.

    Only turn 0 is streamed to the caller; later turns are tool exchanges.
    """
    if on_chunk is None or turn != 0:
        return None

    def on_event(event: StreamEvent) -> None:
        on_chunk(event["text"])

    return on_event


def resolve_failure(
    error: BaseException,
    cancellation: Optional[CancellationToken] = None,
) -> BaseException:
    """
    The exception a provider client should raise for `error`.

    A fired token always wins; otherwise the error is classified once.
    """
    if cancellation is not None and cancellation.cancelled and not isinstance(error, CancellationError):
        cancelled = CancellationError()
        cancelled.__cause__ = error
        return cancelled
    return classify_error(error)


async def open_stream(
    http: httpx.AsyncClient,
    request: httpx.Request,
    *,
    provider: Provider,
    retry_policy: RetryPolicy,
    cancellation: Optional[CancellationToken] = None,
) -> httpx.Response:
    """
    Send `request` with streaming enabled, retrying transient failures.

    Only the send and status check are retried; the body is left unread for
    a stream accumulator.

    Raises:
        ProviderHTTPError: Non-success status after the retry budget.
    """

    async def attempt() -> httpx.Response:
        response = await http.send(request, stream=True)
        if not response.is_success:
            body = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            logger.error("%s API error: %s %s", provider, response.status_code, body[:200])
            raise ProviderHTTPError(provider, response.status_code, body)
        return response

    return await retry_policy.run(attempt, cancellation)
