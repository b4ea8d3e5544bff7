from .base import MAX_TOOL_TURNS, ChatProvider, ToolApprovalFlow, ToolRuntime
from .copilot import CopilotClient
from .gemini import GeminiClient
from .ollama import OllamaClient

__all__ = [
    "MAX_TOOL_TURNS",
    "ChatProvider",
    "ToolApprovalFlow",
    "ToolRuntime",
    "CopilotClient",
    "GeminiClient",
    "OllamaClient",
]
