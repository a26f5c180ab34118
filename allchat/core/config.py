"""Application configuration using Pydantic Settings V2."""

from functools import cached_property
from typing import Literal

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from allchat.core.settings import (
    AppConfig,
    AuthConfig,
    ChatConfig,
    DatabaseConfig,
    LLMConfig,
    SearchConfig,
    ServerConfig,
)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Flat fields are loaded directly from environment variables.
    Domain properties provide grouped access (e.g. settings.llm.default_model_id).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # OpenRouter
    openrouter_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Server default OpenRouter API key",
    )
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenRouter OpenAI-compatible endpoint",
    )
    default_model_id: str = Field(
        default="google/gemini-1.5-flash-latest",
        description="Model used when a request does not name one",
    )
    llm_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Upstream request timeout in seconds",
    )
    openrouter_referer: str = Field(
        default="http://localhost:3000",
        description="HTTP-Referer header sent to OpenRouter",
    )
    openrouter_title: str = Field(
        default="AllChat",
        description="X-Title header sent to OpenRouter",
    )

    # Tavily
    tavily_api_key: SecretStr = Field(
        default=SecretStr(""),
        description="Server default Tavily API key",
    )
    search_max_results: int = Field(
        default=5,
        ge=1,
        le=20,
        description="Number of web search results injected into the prompt",
    )

    # App
    app_name: str = Field(
        default="allchat",
        description="Application name",
    )
    app_env: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Application environment",
    )
    debug: bool = Field(
        default=True,
        description="Debug mode",
    )

    # Chat
    chat_title_max_length: int = Field(
        default=30,
        ge=1,
        le=255,
        description="Characters of the first message used as a new chat title",
    )
    guest_stream_rate_limit: str = Field(
        default="20/minute",
        description="Rate limit for the unauthenticated guest stream",
    )

    # Server
    host: str = Field(
        default="0.0.0.0",
        description="Server host",
    )
    port: int = Field(
        default=5001,
        ge=1,
        le=65535,
        description="Server port",
    )
    cors_origins: list[str] = Field(
        default_factory=list,
        description="Browser origins allowed by CORS (JSON list)",
    )

    # Identity provider
    auth_jwt_key: SecretStr = Field(
        description="Identity provider secret or PEM public key",
    )
    auth_jwt_algorithm: str = Field(
        default="RS256",
        description="Identity provider token signing algorithm",
    )
    auth_jwt_issuer: str | None = Field(
        default=None,
        description="Expected token issuer",
    )
    auth_jwt_audience: str | None = Field(
        default=None,
        description="Expected token audience",
    )
    auth_jwks_url: str | None = Field(
        default=None,
        description="JWKS endpoint of the identity provider",
    )

    # Database
    database_url: SecretStr = Field(
        description="Async database URL (postgresql+asyncpg://...)",
    )

    # --- Domain properties ---

    @cached_property
    def llm(self) -> LLMConfig:
        """LLM gateway configuration."""
        return LLMConfig(
            openrouter_api_key=self.openrouter_api_key,
            openrouter_base_url=self.openrouter_base_url,
            default_model_id=self.default_model_id,
            timeout_seconds=self.llm_timeout_seconds,
            referer=self.openrouter_referer,
            title=self.openrouter_title,
        )

    @cached_property
    def search(self) -> SearchConfig:
        """Web search configuration."""
        return SearchConfig(
            tavily_api_key=self.tavily_api_key,
            max_results=self.search_max_results,
        )

    @cached_property
    def app(self) -> AppConfig:
        """Application environment configuration."""
        return AppConfig(
            name=self.app_name,
            env=self.app_env,
            debug=self.debug,
        )

    @cached_property
    def chat(self) -> ChatConfig:
        """Chat behaviour configuration."""
        return ChatConfig(
            title_max_length=self.chat_title_max_length,
            guest_stream_rate_limit=self.guest_stream_rate_limit,
        )

    @cached_property
    def server(self) -> ServerConfig:
        """Server configuration."""
        return ServerConfig(
            host=self.host,
            port=self.port,
            cors_origins=tuple(self.cors_origins),
        )

    @cached_property
    def auth(self) -> AuthConfig:
        """Identity provider token configuration."""
        return AuthConfig(
            jwt_key=self.auth_jwt_key,
            algorithm=self.auth_jwt_algorithm,
            issuer=self.auth_jwt_issuer,
            audience=self.auth_jwt_audience,
            jwks_url=self.auth_jwks_url,
        )

    @cached_property
    def database(self) -> DatabaseConfig:
        """Database connection configuration."""
        return DatabaseConfig(url=self.database_url)

    # --- Convenience properties (delegate to domain configs) ---

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.app.is_development


# Global settings instance
settings = Settings()
