"""Chat and message management endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends, status

from allchat.dependencies import get_chat_service, get_current_user
from allchat.schemas.chat_schema import (
    ChatDetail,
    ChatSummary,
    ChatTreeEntry,
    DeleteChatResponse,
    DeleteMessageResponse,
    MigrateGuestRequest,
    MigrateGuestResponse,
    ShareResponse,
    UpdateChatRequest,
)
from allchat.schemas.response_schema import ApiResponse, success_response
from allchat.services.chat_service import ChatService

router = APIRouter(
    prefix="/api",
    tags=["chats"],
    dependencies=[Depends(get_current_user)],
)

ChatServiceDep = Annotated[ChatService, Depends(get_chat_service)]


@router.get("/chats", response_model=ApiResponse[list[ChatTreeEntry]])
async def list_chats(service: ChatServiceDep) -> dict:
    """List the caller's chats, each branch nested after its source."""
    return success_response(await service.list_chats())


@router.post(
    "/chats/migrate-guest",
    response_model=ApiResponse[MigrateGuestResponse],
    status_code=status.HTTP_201_CREATED,
)
async def migrate_guest(request: MigrateGuestRequest, service: ChatServiceDep) -> dict:
    """Import guest history saved on the device."""
    result = await service.migrate_guest(request)
    return success_response(result, status=201, message="Guest history migrated")


@router.get("/chats/{chat_id}", response_model=ApiResponse[ChatDetail])
async def get_chat(chat_id: int, service: ChatServiceDep) -> dict:
    """Get a chat with its messages."""
    return success_response(await service.get_chat(chat_id))


@router.patch("/chats/{chat_id}", response_model=ApiResponse[ChatSummary])
async def update_chat(
    chat_id: int, request: UpdateChatRequest, service: ChatServiceDep
) -> dict:
    """Rename a chat or change its model."""
    return success_response(await service.update_chat(chat_id, request))


@router.delete("/chats/{chat_id}", response_model=ApiResponse[DeleteChatResponse])
async def delete_chat(chat_id: int, service: ChatServiceDep) -> dict:
    """Delete a chat; its branches are kept as top-level chats."""
    return success_response(await service.delete_chat(chat_id), message="Chat deleted")


@router.post("/chats/{chat_id}/share", response_model=ApiResponse[ShareResponse])
async def share_chat(chat_id: int, service: ChatServiceDep) -> dict:
    """Publish a read-only link to a chat."""
    return success_response(await service.share_chat(chat_id))


@router.delete("/chats/{chat_id}/share", response_model=ApiResponse[None])
async def unshare_chat(chat_id: int, service: ChatServiceDep) -> dict:
    """Revoke a chat's public link."""
    await service.unshare_chat(chat_id)
    return success_response(None, message="Sharing disabled")


@router.delete("/messages/{message_id}", response_model=ApiResponse[DeleteMessageResponse])
async def delete_message(message_id: int, service: ChatServiceDep) -> dict:
    """Delete a message together with its AI reply."""
    result = await service.delete_message(message_id)
    return success_response(result, message="Message(s) deleted")
