"""LLM provider configuration."""

from pydantic import BaseModel, SecretStr


class LLMConfig(BaseModel, frozen=True):
    """OpenRouter gateway settings."""

    openrouter_api_key: SecretStr
    openrouter_base_url: str
    default_model_id: str
    timeout_seconds: float
    referer: str
    title: str

    @property
    def has_server_key(self) -> bool:
        """Check if a server default credential is configured."""
        return bool(self.openrouter_api_key.get_secret_value())
