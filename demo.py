"""
Demo: one prompt against a chosen provider, streamed with rich.

Usage:
    python demo.py [gemini|copilot|ollama] [prompt...]

Set MCP_FS_ROOT to expose a directory through the MCP filesystem server
(requires npx); every tool call is confirmed interactively.
"""

import asyncio
import logging
import os
import sys
from typing import Any, Dict

from rich.logging import RichHandler
from rich.prompt import Confirm

from chatmux import MCPToolRuntime, RichStreamPrinter, UnifiedChatClient
from chatmux.exceptions import ChatmuxError


def approve(tool_name: str, arguments: Dict[str, Any]) -> bool:
    return Confirm.ask(f"Run tool [bold]{tool_name}[/bold] with {arguments}?", default=True)


async def main():
    logging.basicConfig(level=logging.INFO, format="%(message)s", handlers=[RichHandler()])

    provider = sys.argv[1] if len(sys.argv) > 1 else None
    prompt = " ".join(sys.argv[2:]) or "Introduce yourself in one sentence using markdown syntax."

    client = UnifiedChatClient()
    if provider:
        client.set_active(provider)
    printer = RichStreamPrinter(title=f"{client.active} demo")

    async with MCPToolRuntime() as runtime:
        fs_root = os.environ.get("MCP_FS_ROOT")
        if fs_root:
            await runtime.connect_stdio(
                name="filesystem",
                command="npx",
                args=["-y", "@modelcontextprotocol/server-filesystem", fs_root],
            )

        try:
            await printer.print_stream(
                client.astream(
                    prompt,
                    tool_runtime=runtime if fs_root else None,
                    approval_gate=approve,
                )
            )
        except ChatmuxError as e:
            print(f"\n⚠️  {e}")
        finally:
            await client.aclose()


if __name__ == "__main__":
    asyncio.run(main())
