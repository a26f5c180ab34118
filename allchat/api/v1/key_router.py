"""Provider key verification endpoints."""

from typing import Annotated

from fastapi import APIRouter, Depends

from allchat.dependencies import get_current_user, get_key_service
from allchat.schemas.chat_schema import KeyVerificationResponse, VerifyKeyRequest
from allchat.schemas.response_schema import ApiResponse, success_response
from allchat.services.key_service import KeyService

router = APIRouter(
    prefix="/api/keys",
    tags=["keys"],
    dependencies=[Depends(get_current_user)],
)

KeyServiceDep = Annotated[KeyService, Depends(get_key_service)]


@router.post("/verify-openrouter", response_model=ApiResponse[KeyVerificationResponse])
async def verify_openrouter_key(request: VerifyKeyRequest, service: KeyServiceDep) -> dict:
    """Check a user's OpenRouter key."""
    return success_response(await service.verify_openrouter(request.api_key))


@router.post("/verify-tavily", response_model=ApiResponse[KeyVerificationResponse])
async def verify_tavily_key(request: VerifyKeyRequest, service: KeyServiceDep) -> dict:
    """Check a user's Tavily key."""
    return success_response(await service.verify_tavily(request.api_key))
