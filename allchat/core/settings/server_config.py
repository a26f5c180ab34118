"""HTTP server configuration."""

from pydantic import BaseModel


class ServerConfig(BaseModel, frozen=True):
    """Bind address and browser origins allowed to call the API."""

    host: str
    port: int
    cors_origins: tuple[str, ...] = ()

    def allowed_origins(self, development: bool) -> list[str]:
        # Any origin in development unless origins are pinned explicitly.
        if not self.cors_origins and development:
            return ["*"]
        return list(self.cors_origins)
