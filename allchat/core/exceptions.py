"""Application exception classes and handlers."""

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from allchat.schemas.response_schema import ErrorResponse


class AppException(Exception):
    """Base application exception."""

    def __init__(self, message: str, code: str, status_code: int = 400) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        super().__init__(message)


# --- Authentication (401) ---


class AuthenticationError(AppException):
    """Base authentication error."""

    def __init__(self, message: str = "Authentication failed") -> None:
        super().__init__(message=message, code="AUTHENTICATION_ERROR", status_code=401)


# --- Authorization (403) ---


class AuthorizationError(AppException):
    """Caller does not own the resource."""

    def __init__(self, message: str = "Insufficient permissions") -> None:
        super().__init__(message=message, code="AUTHORIZATION_ERROR", status_code=403)


# --- Bad Request (400) ---


class InvalidMessageRoleError(AppException):
    """Operation targeted a message with the wrong sender role."""

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            message=f"Expected {expected} message, got {actual}",
            code="INVALID_MESSAGE_ROLE",
            status_code=400,
        )


# --- Not Found (404) ---


class ChatNotFoundError(AppException):
    """Chat not found."""

    def __init__(self) -> None:
        super().__init__(
            message="Chat not found",
            code="CHAT_NOT_FOUND",
            status_code=404,
        )


class MessageNotFoundError(AppException):
    """Message not found."""

    def __init__(self) -> None:
        super().__init__(
            message="Message not found",
            code="MESSAGE_NOT_FOUND",
            status_code=404,
        )


class SharedChatNotFoundError(AppException):
    """Share id does not resolve to a shared chat."""

    def __init__(self) -> None:
        super().__init__(
            message="Chat not found or sharing is disabled",
            code="SHARE_NOT_FOUND",
            status_code=404,
        )


# --- Upstream providers ---


class UpstreamCredentialError(AppException):
    """Upstream provider rejected (or was never given) a credential."""

    def __init__(
        self,
        provider: str,
        message: str | None = None,
    ) -> None:
        self.provider = provider
        super().__init__(
            message=message
            or f"The {provider} API key is missing or invalid. Add a valid key in settings.",
            code="CREDENTIAL_ERROR",
            status_code=401,
        )


class UpstreamError(AppException):
    """Upstream model provider failed (rate limit, 5xx, network)."""

    def __init__(self, message: str = "The model provider failed to respond") -> None:
        super().__init__(message=message, code="UPSTREAM_ERROR", status_code=502)


class SearchError(AppException):
    """Web search provider failed."""

    def __init__(self, message: str = "Web search failed") -> None:
        super().__init__(message=message, code="SEARCH_ERROR", status_code=502)


# --- Exception Handlers ---


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Central exception handler for AppException."""
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(
            status=exc.status_code, message=exc.message, code=exc.code
        ).model_dump(),
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request validation failures in the common error shape."""
    first = exc.errors()[0] if exc.errors() else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    detail = first.get("msg", "Invalid request")
    return JSONResponse(
        status_code=422,
        content=ErrorResponse(
            status=422,
            message=f"{location}: {detail}" if location else detail,
            code="VALIDATION_ERROR",
        ).model_dump(),
    )
