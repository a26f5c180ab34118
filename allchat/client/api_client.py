"""HTTP client for the chat backend."""

from typing import Any

import httpx
import structlog
from pydantic import BaseModel

from allchat.schemas.chat_schema import (
    BranchRequest,
    ChatDetail,
    ChatSummary,
    ChatTreeEntry,
    DeleteChatResponse,
    DeleteMessageResponse,
    EditMessageRequest,
    GuestStreamRequest,
    MigrateGuestRequest,
    MigrateGuestResponse,
    ResubmitRequest,
    SendMessageRequest,
)

logger = structlog.get_logger()


class ApiError(Exception):
    """Non-2xx response from the backend."""

    def __init__(self, status: int, message: str, code: str = "HTTP_ERROR") -> None:
        self.status = status
        self.message = message
        self.code = code
        super().__init__(message)


class ChatApiClient:
    """Thin async wrapper over the backend's HTTP surface.

    Streaming calls return the open ``httpx.Response``; the caller owns it and
    must close it (``read_stream`` does). JSON calls unwrap the ``data`` field
    of the response envelope.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=timeout)
        self._token = token

    def set_token(self, token: str | None) -> None:
        self._token = token

    async def aclose(self) -> None:
        await self._client.aclose()

    # --- Streaming ---

    async def send_message(self, request: SendMessageRequest) -> httpx.Response:
        return await self._open_stream("/api/chat", request)

    async def edit_message(self, request: EditMessageRequest) -> httpx.Response:
        return await self._open_stream("/api/chat/edit", request)

    async def regenerate(self, request: ResubmitRequest) -> httpx.Response:
        return await self._open_stream("/api/chat/regenerate", request)

    async def guest_stream(self, request: GuestStreamRequest) -> httpx.Response:
        return await self._open_stream("/api/guest/stream", request, authenticated=False)

    # --- JSON ---

    async def branch(self, request: BranchRequest) -> ChatSummary:
        data = await self._json("POST", "/api/chat/branch", request)
        return ChatSummary.model_validate(data)

    async def list_chats(self) -> list[ChatTreeEntry]:
        data = await self._json("GET", "/api/chats")
        return [ChatTreeEntry.model_validate(item) for item in data]

    async def get_chat(self, chat_id: int) -> ChatDetail:
        data = await self._json("GET", f"/api/chats/{chat_id}")
        return ChatDetail.model_validate(data)

    async def delete_chat(self, chat_id: int) -> DeleteChatResponse:
        data = await self._json("DELETE", f"/api/chats/{chat_id}")
        return DeleteChatResponse.model_validate(data)

    async def delete_message(self, message_id: int) -> DeleteMessageResponse:
        data = await self._json("DELETE", f"/api/messages/{message_id}")
        return DeleteMessageResponse.model_validate(data)

    async def migrate_guest(self, request: MigrateGuestRequest) -> MigrateGuestResponse:
        data = await self._json("POST", "/api/chats/migrate-guest", request)
        return MigrateGuestResponse.model_validate(data)

    # --- Internals ---

    def _headers(self, authenticated: bool = True) -> dict[str, str]:
        headers = {"Accept": "application/json"}
        if authenticated and self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    @staticmethod
    def _body(payload: BaseModel | None) -> dict[str, Any] | None:
        if payload is None:
            return None
        return payload.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def _open_stream(
        self, path: str, payload: BaseModel, authenticated: bool = True
    ) -> httpx.Response:
        headers = self._headers(authenticated)
        headers["Accept"] = "text/event-stream"
        request = self._client.build_request(
            "POST", path, json=self._body(payload), headers=headers
        )
        response = await self._client.send(request, stream=True)
        if response.is_success:
            return response
        try:
            await response.aread()
        finally:
            await response.aclose()
        raise self._error(response)

    async def _json(self, method: str, path: str, payload: BaseModel | None = None) -> Any:
        response = await self._client.request(
            method, path, json=self._body(payload), headers=self._headers()
        )
        if not response.is_success:
            raise self._error(response)
        return response.json().get("data")

    @staticmethod
    def _error(response: httpx.Response) -> ApiError:
        try:
            body = response.json()
        except ValueError:
            body = None
        if isinstance(body, dict) and body.get("message"):
            error = ApiError(
                response.status_code, str(body["message"]), str(body.get("code") or "HTTP_ERROR")
            )
        else:
            error = ApiError(response.status_code, f"Request failed with status {response.status_code}")
        logger.warning(
            "Backend request failed",
            url=str(response.request.url),
            status=error.status,
            code=error.code,
        )
        return error
