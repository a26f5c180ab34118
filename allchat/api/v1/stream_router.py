"""Streaming chat endpoints: send, edit, regenerate, plus synchronous branch."""

from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse

from allchat.core.frame_codec import encode_frame
from allchat.dependencies import get_current_user, get_session_service
from allchat.schemas.chat_schema import (
    BranchRequest,
    ChatSummary,
    EditMessageRequest,
    ResubmitRequest,
    SendMessageRequest,
)
from allchat.schemas.response_schema import ApiResponse, success_response
from allchat.services.session_service import FrameStream, SessionService

router = APIRouter(
    prefix="/api/chat",
    tags=["chat"],
    dependencies=[Depends(get_current_user)],
)

SessionServiceDep = Annotated[SessionService, Depends(get_session_service)]

STREAM_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def encode_frames(frames: FrameStream) -> AsyncGenerator[str, None]:
    """Write each frame as soon as it is produced."""
    try:
        async for frame in frames:
            yield encode_frame(frame)
    finally:
        await frames.aclose()


def frame_response(frames: FrameStream) -> StreamingResponse:
    """Wrap a frame generator in a streaming HTTP response."""
    return StreamingResponse(
        encode_frames(frames),
        media_type="text/event-stream",
        headers=STREAM_HEADERS,
    )


@router.post("")
async def send_message(
    request: SendMessageRequest,
    session_service: SessionServiceDep,
) -> StreamingResponse:
    """Send a user message and stream the AI reply."""
    return frame_response(await session_service.start_send(request))


@router.post("/edit")
async def edit_message(
    request: EditMessageRequest,
    session_service: SessionServiceDep,
) -> StreamingResponse:
    """Edit a user message, drop everything after it and stream a new reply."""
    frames = await session_service.start_resubmit(request, new_content=request.new_content)
    return frame_response(frames)


@router.post("/regenerate")
async def regenerate_response(
    request: ResubmitRequest,
    session_service: SessionServiceDep,
) -> StreamingResponse:
    """Regenerate the reply to a user message (editing it when new content is sent)."""
    frames = await session_service.start_resubmit(request, new_content=request.new_content)
    return frame_response(frames)


@router.post(
    "/branch",
    response_model=ApiResponse[ChatSummary],
    status_code=status.HTTP_201_CREATED,
)
async def branch_chat(
    request: BranchRequest,
    session_service: SessionServiceDep,
) -> dict:
    """Create a new chat from a prefix of an existing one."""
    summary = await session_service.branch(request)
    return success_response(summary, status=201, message="Branch created")
