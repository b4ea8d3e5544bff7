"""
Bearer-token collaborators used by the provider clients.

Interactive sign-in (device code, browser OAuth) happens outside this
package; the clients only ever ask for a currently valid token.
"""

import asyncio
import logging
import time
from typing import Optional, Protocol, runtime_checkable

import httpx

from .exceptions import NotAuthenticatedError, ProviderHTTPError
from .retry import DEFAULT_RETRY_POLICY, RetryPolicy

logger = logging.getLogger(__name__)

GITHUB_TOKEN_URL = "https://api.github.com/copilot_internal/v2/token"
GITHUB_USER_URL = "https://api.github.com/user"
DEFAULT_COPILOT_ENDPOINT = "https://api.githubcopilot.com"
DEFAULT_TOKEN_LIFETIME = 1500

COPILOT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "GeminiChat-App/1.0",
    "Editor-Version": "vscode/1.85.0",
    "Editor-Plugin-Version": "copilot/1.145.0",
}


@runtime_checkable
class TokenProvider(Protocol):
    async def get_token(self) -> Optional[str]:
        ...


class StaticTokenProvider:
    """Token provider around a fixed bearer token (or none)."""

    def __init__(self, token: Optional[str] = None):
        self.token = token

    async def get_token(self) -> Optional[str]:
        return self.token


class CopilotTokenManager:
    """
    Exchanges a GitHub OAuth token for a short-lived Copilot API token.

    The API token and the API endpoint advertised with it are cached until
    expiry. Concurrent callers share a single exchange.
    """

    def __init__(
        self,
        oauth_token: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        retry_policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        timeout: float = 10.0,
    ):
        self.oauth_token = oauth_token
        self.http = http_client or httpx.AsyncClient(timeout=timeout)
        self.retry_policy = retry_policy
        self.api_token: Optional[str] = None
        self.api_endpoint: Optional[str] = None
        self.expires_at: float = 0.0
        self._lock = asyncio.Lock()

    async def get_token(self) -> Optional[str]:
        """
        A valid API token, exchanging the OAuth token when needed.

        Returns:
            Optional[str]: None when no OAuth token is configured.

        Raises:
            ProviderHTTPError: The exchange endpoint rejected the request.
        """
        if not self.oauth_token:
            return None
        async with self._lock:
            if self.api_token and time.time() < self.expires_at:
                return self.api_token
            await self.retry_policy.run(self._exchange)
        if not self.api_token:
            raise NotAuthenticatedError("Failed to obtain Copilot API token")
        return self.api_token

    async def _exchange(self) -> None:
        logger.debug("Exchanging OAuth token for Copilot API token")
        response = await self.http.get(
            GITHUB_TOKEN_URL,
            headers={**COPILOT_HEADERS, "Authorization": f"token {self.oauth_token}"},
        )
        if not response.is_success:
            logger.error("Token exchange failed: %s", response.status_code)
            raise ProviderHTTPError("copilot", response.status_code, response.text)

        data = response.json()
        self.api_token = data.get("token")
        endpoint = (data.get("endpoints") or {}).get("api") or DEFAULT_COPILOT_ENDPOINT
        self.api_endpoint = endpoint.rstrip("/")
        self.expires_at = float(data.get("expires_at") or time.time() + DEFAULT_TOKEN_LIFETIME)
        logger.debug("Token exchanged, endpoint %s", self.api_endpoint)

    async def validate_connection(self) -> bool:
        """Check the OAuth token against the GitHub user endpoint."""
        if not self.oauth_token:
            return False
        try:
            response = await self.http.get(
                GITHUB_USER_URL,
                headers={**COPILOT_HEADERS, "Authorization": f"Bearer {self.oauth_token}"},
            )
        except httpx.HTTPError as e:
            logger.error("Connection check failed: %s", e)
            return False
        return response.is_success

    def reset(self) -> None:
        self.oauth_token = None
        self.api_token = None
        self.api_endpoint = None
        self.expires_at = 0.0
        logger.info("Copilot token manager reset")
