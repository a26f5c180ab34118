"""Domain-specific configuration models."""

from allchat.core.settings.app_config import AppConfig
from allchat.core.settings.auth_config import AuthConfig
from allchat.core.settings.chat_config import ChatConfig
from allchat.core.settings.database_config import DatabaseConfig
from allchat.core.settings.llm_config import LLMConfig
from allchat.core.settings.search_config import SearchConfig
from allchat.core.settings.server_config import ServerConfig

__all__ = [
    "AppConfig",
    "AuthConfig",
    "ChatConfig",
    "DatabaseConfig",
    "LLMConfig",
    "SearchConfig",
    "ServerConfig",
]
