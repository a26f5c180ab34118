"""ASGI authentication middleware."""

import asyncio
from functools import lru_cache
from typing import Any

import jwt
import structlog
from starlette.types import ASGIApp, Receive, Scope, Send

from allchat.core.config import settings
from allchat.schemas.response_schema import ErrorResponse

logger = structlog.get_logger()

PUBLIC_PATHS: set[str] = {
    "",
    "/",
    "/health",
    "/docs",
    "/openapi.json",
    "/redoc",
    "/api/guest/stream",
}

PUBLIC_PREFIXES: tuple[str, ...] = ("/docs", "/redoc", "/api/share/")


@lru_cache
def _jwks_client(url: str) -> jwt.PyJWKClient:
    return jwt.PyJWKClient(url)


async def _resolve_signing_key(token: str) -> Any:
    """Return the key used to verify ``token``."""
    auth = settings.auth
    if auth.jwks_url:
        client = _jwks_client(auth.jwks_url)
        loop = asyncio.get_running_loop()
        signing_key = await loop.run_in_executor(
            None, client.get_signing_key_from_jwt, token
        )
        return signing_key.key
    return auth.jwt_key.get_secret_value()


class AuthMiddleware:
    """Pure ASGI middleware for identity provider tokens (SSE-compatible).

    The identity provider owns sign-in; this middleware only checks the
    bearer token signature and exposes the validated subject as the owner id.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        method = scope.get("method", "")
        if method == "OPTIONS":
            await self.app(scope, receive, send)
            return

        path = scope["path"]
        normalized = path.rstrip("/") or "/"
        if normalized in PUBLIC_PATHS or path.startswith(PUBLIC_PREFIXES):
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        auth_header = headers.get(b"authorization", b"").decode()

        if not auth_header.startswith("Bearer "):
            await self._send_error(
                send, 401, "MISSING_TOKEN", "Authorization header required"
            )
            return

        token = auth_header[7:]
        auth = settings.auth
        options = {"require": ["sub", "exp"]}

        try:
            key = await _resolve_signing_key(token)
            payload: dict[str, Any] = jwt.decode(
                token,
                key,
                algorithms=[auth.algorithm],
                issuer=auth.issuer,
                audience=auth.audience,
                options={**options, "verify_aud": auth.audience is not None},
            )
        except jwt.ExpiredSignatureError:
            await self._send_error(send, 401, "TOKEN_EXPIRED", "Token has expired")
            return
        except jwt.PyJWTError as exc:
            logger.info("Rejected bearer token", path=path, reason=str(exc))
            await self._send_error(send, 401, "INVALID_TOKEN", "Invalid token")
            return

        scope.setdefault("state", {})
        scope["state"]["user_id"] = str(payload["sub"])
        scope["state"]["exp"] = payload["exp"]

        await self.app(scope, receive, send)

    @staticmethod
    async def _send_error(send: Send, status: int, code: str, message: str) -> None:
        """Send a JSON error response directly."""
        error = ErrorResponse(status=status, message=message, code=code)
        body = error.model_dump_json().encode()

        await send(
            {
                "type": "http.response.start",
                "status": status,
                "headers": [
                    [b"content-type", b"application/json"],
                    [b"content-length", str(len(body)).encode()],
                ],
            }
        )
        await send({"type": "http.response.body", "body": body})
