"""
Rich stream printer for `UnifiedChatClient.astream` events.
"""
import json
from typing import Any, AsyncIterator, List, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.table import Table
from rich.text import Text

from .types import CanonicalMessage, StreamEvent

DEFAULT_CONSOLE = Console()


class RichStreamPrinter:
    """
    Renders a streamed response live inside a rich panel.

    Tokens are appended as markdown while they arrive; the `done` event turns
    the panel green and, when enabled, adds the executed tool calls and the
    response metadata.

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show metadata at the end
        show_tool_calls: Whether to list executed tool calls at the end
        code_theme: Theme for code blocks
        refresh_rate: Refresh rate for Live display
        border_style: Border style while streaming
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        show_tool_calls: bool = True,
        code_theme: str = "coffee",
        refresh_rate: int = 30,
        border_style: str = "blue",
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.show_tool_calls = show_tool_calls
        self.code_theme = code_theme
        self.refresh_rate = refresh_rate
        self.border_style = border_style
        self.console = console or DEFAULT_CONSOLE
        self._full_text = ""
        self._final_event: Optional[StreamEvent] = None
        self._provider: Optional[str] = None

    async def print_stream(self, event_stream: AsyncIterator[StreamEvent]) -> StreamEvent:
        """
        Display events until the stream ends.

        Returns:
            The `done` event ({} if the stream ended without one).
        """
        self._full_text = ""
        self._final_event = None
        self._provider = None
        panel = Panel("", border_style=self.border_style)

        with Live(panel, refresh_per_second=self.refresh_rate, console=self.console) as live:
            async for event in event_stream:
                self._process_event(event, live)

        return self._final_event or {}

    def _process_event(self, event: StreamEvent, live: Live) -> None:
        if self._provider is None and event.get("provider"):
            self._provider = event["provider"]

        if event["type"] == "token":
            self._full_text += event["text"]
            self._update_display(live, is_final=False)
        elif event["type"] == "done":
            self._final_event = event
            # The final text wins over the streamed first-turn text
            self._full_text = event.get("text") or self._full_text
            self._update_display(live, is_final=True)

    def _update_display(self, live: Live, is_final: bool = False) -> None:
        live.update(
            Panel(
                self._build_content(is_final),
                title=self._build_title(is_final),
                border_style="green" if is_final else self.border_style,
                padding=(1, 2),
            )
        )

    def _build_title(self, is_final: bool) -> str:
        title = "[bold]Final Response[/bold]" if is_final else f"[bold]{self.title}[/bold]"
        if self._provider:
            title += f" [dim]({self._provider})[/dim]"
        return title

    def _build_content(self, is_final: bool) -> Any:
        if not self._full_text.strip():
            return Text("(waiting for response...)", style="dim italic")

        parts: List[Any] = [Markdown(self._full_text, code_theme=self.code_theme)]
        if not (is_final and self._final_event):
            return parts[0]

        tool_messages = self._final_event.get("tool_messages") or []
        if self.show_tool_calls and tool_messages:
            parts.append(self._tool_table(tool_messages))

        meta = self._final_event.get("meta") or {}
        if self.show_metadata and meta:
            parts.append(
                Panel(
                    Syntax(json.dumps(meta, indent=2, default=str), "json", background_color="default"),
                    title="[bold]Metadata[/bold]",
                    border_style="dim",
                )
            )
        return Group(*parts)

    @staticmethod
    def _tool_table(tool_messages: List[CanonicalMessage]) -> Table:
        table = Table(title="Tool calls", show_lines=False, expand=True)
        table.add_column("Tool")
        table.add_column("Input")
        table.add_column("Result")
        table.add_column("ms", justify="right")

        for msg in tool_messages:
            for record in msg.get("mcp_calls") or []:
                output = json.dumps(record["output"], default=str, ensure_ascii=False)
                table.add_row(
                    Text(record["tool_name"], style="red" if record["error"] else "cyan"),
                    json.dumps(record["input"], default=str, ensure_ascii=False),
                    output if len(output) <= 120 else output[:117] + "...",
                    f"{record['duration_ms']:.0f}",
                )
        return table

    def get_full_text(self) -> str:
        return self._full_text

    def get_final_event(self) -> Optional[StreamEvent]:
        return self._final_event

    def get_provider(self) -> Optional[str]:
        return self._provider
