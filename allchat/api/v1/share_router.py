"""Public read-only access to shared chats."""

from typing import Annotated

from fastapi import APIRouter, Depends

from allchat.dependencies import get_public_chat_service
from allchat.schemas.chat_schema import ChatDetail
from allchat.schemas.response_schema import ApiResponse, success_response
from allchat.services.chat_service import ChatService

router = APIRouter(prefix="/api/share", tags=["share"])


@router.get("/{share_id}", response_model=ApiResponse[ChatDetail])
async def get_shared_chat(
    share_id: str,
    service: Annotated[ChatService, Depends(get_public_chat_service)],
) -> dict:
    """Get a shared chat without authentication."""
    return success_response(await service.get_shared_chat(share_id))
