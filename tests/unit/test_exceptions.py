"""Tests for custom exception classes."""

import json

from allchat.core.exceptions import (
    AppException,
    AuthenticationError,
    AuthorizationError,
    ChatNotFoundError,
    InvalidMessageRoleError,
    MessageNotFoundError,
    SearchError,
    SharedChatNotFoundError,
    UpstreamCredentialError,
    UpstreamError,
    app_exception_handler,
)


class TestExceptions:
    """Verify exception status codes and messages."""

    def test_app_exception_defaults(self) -> None:
        exc = AppException(message="err", code="ERR")
        assert exc.status_code == 400
        assert exc.code == "ERR"

    def test_authentication_error(self) -> None:
        assert AuthenticationError().status_code == 401

    def test_authorization_error(self) -> None:
        exc = AuthorizationError()
        assert exc.status_code == 403
        assert exc.code == "AUTHORIZATION_ERROR"

    def test_not_found_errors(self) -> None:
        assert ChatNotFoundError().status_code == 404
        assert MessageNotFoundError().code == "MESSAGE_NOT_FOUND"
        assert SharedChatNotFoundError().status_code == 404

    def test_invalid_message_role(self) -> None:
        exc = InvalidMessageRoleError(expected="user", actual="ai")
        assert exc.status_code == 400
        assert exc.message == "Expected user message, got ai"

    def test_upstream_credential_error(self) -> None:
        exc = UpstreamCredentialError(provider="Tavily")
        assert exc.code == "CREDENTIAL_ERROR"
        assert "Tavily" in exc.message

    def test_upstream_errors(self) -> None:
        assert UpstreamError().status_code == 502
        assert SearchError().code == "SEARCH_ERROR"


class TestHandler:
    async def test_renders_common_shape(self) -> None:
        response = await app_exception_handler(None, ChatNotFoundError())  # type: ignore[arg-type]

        assert response.status_code == 404
        assert json.loads(response.body) == {
            "status": 404,
            "message": "Chat not found",
            "code": "CHAT_NOT_FOUND",
        }
