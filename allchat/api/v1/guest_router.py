"""Unauthenticated guest streaming endpoint."""

from typing import Annotated

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from allchat.api.v1.stream_router import frame_response
from allchat.core.config import settings
from allchat.core.rate_limit import limiter
from allchat.dependencies import get_guest_session_service
from allchat.schemas.chat_schema import GuestStreamRequest
from allchat.services.session_service import SessionService

router = APIRouter(prefix="/api/guest", tags=["guest"])


@router.post("/stream")
@limiter.limit(settings.chat.guest_stream_rate_limit)
async def guest_stream(
    request: Request,
    body: GuestStreamRequest,
    session_service: Annotated[SessionService, Depends(get_guest_session_service)],
) -> StreamingResponse:
    """Stream a reply for a guest; nothing is stored server-side."""
    return frame_response(await session_service.start_guest(body))
