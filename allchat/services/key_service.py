"""Verification of user-supplied provider keys."""

import httpx
import structlog

from allchat.core.settings import LLMConfig
from allchat.schemas.chat_schema import KeyVerificationResponse

logger = structlog.get_logger()

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class KeyService:
    """Checks OpenRouter and Tavily keys with a lightweight authenticated call."""

    def __init__(self, llm_config: LLMConfig, client: httpx.AsyncClient | None = None) -> None:
        self._llm_config = llm_config
        self._client = client

    async def verify_openrouter(self, api_key: str) -> KeyVerificationResponse:
        """Validate an OpenRouter key against its key-info endpoint."""
        url = f"{self._llm_config.openrouter_base_url.rstrip('/')}/auth/key"
        headers = {
            "Authorization": f"Bearer {api_key}",
            "HTTP-Referer": self._llm_config.referer,
            "X-Title": self._llm_config.title,
        }
        try:
            response = await self._request("GET", url, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning("OpenRouter verification unreachable", error=str(exc))
            return KeyVerificationResponse(
                valid=False, message="Failed to contact OpenRouter for verification."
            )
        if response.is_success:
            return KeyVerificationResponse(valid=True, message="OpenRouter key is valid.")
        return KeyVerificationResponse(
            valid=False,
            message=self._error_message(response, "Invalid OpenRouter API key."),
        )

    async def verify_tavily(self, api_key: str) -> KeyVerificationResponse:
        """Validate a Tavily key with a one-result search."""
        payload = {"api_key": api_key, "query": "Test query", "max_results": 1}
        try:
            response = await self._request("POST", TAVILY_SEARCH_URL, json=payload)
        except httpx.HTTPError as exc:
            logger.warning("Tavily verification unreachable", error=str(exc))
            return KeyVerificationResponse(
                valid=False, message="Failed to contact Tavily for verification."
            )
        if response.is_success:
            return KeyVerificationResponse(valid=True, message="Tavily key is valid.")
        return KeyVerificationResponse(
            valid=False,
            message=self._error_message(response, "Invalid Tavily API key."),
        )

    async def _request(self, method: str, url: str, **kwargs: object) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, **kwargs)  # type: ignore[arg-type]
        async with httpx.AsyncClient(timeout=10.0) as client:
            return await client.request(method, url, **kwargs)  # type: ignore[arg-type]

    @staticmethod
    def _error_message(response: httpx.Response, default: str) -> str:
        try:
            data = response.json()
        except ValueError:
            return default
        error = data.get("error") if isinstance(data, dict) else None
        if isinstance(error, dict):
            return str(error.get("message") or default)
        if isinstance(error, str) and error:
            return error
        detail = data.get("detail") if isinstance(data, dict) else None
        if isinstance(detail, dict) and detail.get("error"):
            return str(detail["error"])
        return default
