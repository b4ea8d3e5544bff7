import os
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

import dotenv

from .exceptions import ConfigurationError
from .types import PROVIDERS, Provider

# Load environment variables
dotenv.load_dotenv()

T = TypeVar("T")


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def _parse(name: str, default: T, cast: Callable[[str], T]) -> T:
    raw = _env(name)
    if raw is None:
        return default
    try:
        return cast(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}") from e


@dataclass
class Settings:
    """
    Runtime settings, read from the environment (and a `.env` file).

    Attributes:
        gemini_model: Default Gemini model.
        gemini_access_token: OAuth access token for the Code Assist API.
        gemini_project: Code Assist project id; skips the project handshake.
        copilot_model: Default Copilot model.
        github_oauth_token: GitHub OAuth token exchanged for Copilot API tokens.
        ollama_model: Default Ollama model.
        ollama_base_url: Base URL of the local Ollama server.
        request_timeout: HTTP timeout in seconds.
        max_attempts: Attempts per HTTP call, including the first.
        default_provider: Provider selected when the client starts.
    """

    gemini_model: str = "gemini-2.5-flash"
    gemini_access_token: Optional[str] = None
    gemini_project: Optional[str] = None
    copilot_model: str = "gpt-4o-mini"
    github_oauth_token: Optional[str] = None
    ollama_model: str = "llama3"
    ollama_base_url: str = "http://localhost:11434"
    request_timeout: float = 60.0
    max_attempts: int = 3
    default_provider: Provider = "gemini"

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: A numeric value does not parse, is out of
                range, or the default provider is unknown.
        """
        settings = cls(
            gemini_model=_env("GEMINI_MODEL", cls.gemini_model),
            gemini_access_token=_env("GEMINI_ACCESS_TOKEN"),
            gemini_project=_env("GOOGLE_CLOUD_PROJECT"),
            copilot_model=_env("COPILOT_MODEL", cls.copilot_model),
            github_oauth_token=_env("GITHUB_OAUTH_TOKEN"),
            ollama_model=_env("OLLAMA_MODEL", cls.ollama_model),
            ollama_base_url=_env("OLLAMA_BASE_URL", cls.ollama_base_url),
            request_timeout=_parse("CHATMUX_TIMEOUT", cls.request_timeout, float),
            max_attempts=_parse("CHATMUX_MAX_ATTEMPTS", cls.max_attempts, int),
            default_provider=_env("CHATMUX_PROVIDER", cls.default_provider).lower(),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        if self.request_timeout <= 0:
            raise ConfigurationError("CHATMUX_TIMEOUT must be positive")
        if self.max_attempts < 1:
            raise ConfigurationError("CHATMUX_MAX_ATTEMPTS must be at least 1")
        if self.default_provider not in PROVIDERS:
            raise ConfigurationError(
                f"Unknown provider '{self.default_provider}'. Use one of: {', '.join(PROVIDERS)}"
            )
