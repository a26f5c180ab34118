"""Unified JSON envelope for non-streaming endpoints."""

from typing import Generic, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class ErrorResponse(BaseModel):
    """Error body shared by the exception handlers and the auth middleware."""

    status: int
    message: str
    code: str


class ApiResponse(BaseModel, Generic[T]):
    """Success body wrapping the endpoint payload in ``data``."""

    status: int = 200
    message: str = "Success"
    data: T | None = None


def success_response(data: T, status: int = 200, message: str = "Success") -> dict:
    """Build the success envelope returned by JSON endpoints."""
    return {"status": status, "message": message, "data": data}
