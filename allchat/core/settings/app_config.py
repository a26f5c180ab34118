"""Application environment configuration."""

from typing import Literal

from pydantic import BaseModel


class AppConfig(BaseModel, frozen=True):
    """Application name, environment and debug flag."""

    name: str
    env: Literal["development", "staging", "production"]
    debug: bool

    @property
    def is_development(self) -> bool:
        return self.env == "development"

    @property
    def docs_enabled(self) -> bool:
        """Interactive API docs are not served in production."""
        return self.env != "production"
