"""Web search provider configuration."""

from pydantic import BaseModel, SecretStr


class SearchConfig(BaseModel, frozen=True):
    """Tavily search settings."""

    tavily_api_key: SecretStr
    max_results: int
