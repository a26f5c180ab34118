"""Global dependencies for the application."""

from functools import lru_cache

from fastapi import Depends, Request
from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import AsyncSession

from allchat.core.config import settings
from allchat.core.database import get_async_session
from allchat.core.exceptions import AuthenticationError
from allchat.repositories.chat_repo import ChatRepository
from allchat.services.chat_service import ChatService
from allchat.services.generation_service import GenerationService
from allchat.services.key_service import KeyService
from allchat.services.session_service import SessionService


@lru_cache
def get_generation_service() -> GenerationService:
    """Get the upstream generation adapter."""
    return GenerationService(llm_config=settings.llm, search_config=settings.search)


# --- Auth dependencies ---


class CurrentUser(BaseModel):
    """Authenticated identity extracted from request state."""

    model_config = ConfigDict(frozen=True)

    id: str


def get_current_user(request: Request) -> CurrentUser:
    """Extract the authenticated identity from middleware-populated state."""
    state = getattr(request, "state", None)
    user_id = getattr(state, "user_id", None) if state else None
    if user_id is None:
        raise AuthenticationError(message="Not authenticated")
    return CurrentUser(id=user_id)


def get_chat_repository(
    session: AsyncSession = Depends(get_async_session),
) -> ChatRepository:
    """Get ChatRepository bound to the current session."""
    return ChatRepository(session)


def get_chat_service(
    chat_repo: ChatRepository = Depends(get_chat_repository),
    current_user: CurrentUser = Depends(get_current_user),
) -> ChatService:
    """Get ChatService for the authenticated user."""
    return ChatService(
        chat_repo=chat_repo,
        user_id=current_user.id,
        default_model_id=settings.llm.default_model_id,
    )


def get_public_chat_service(
    chat_repo: ChatRepository = Depends(get_chat_repository),
) -> ChatService:
    """Get ChatService for unauthenticated read-only access."""
    return ChatService(chat_repo=chat_repo, user_id=None)


def get_session_service(
    chat_repo: ChatRepository = Depends(get_chat_repository),
    current_user: CurrentUser = Depends(get_current_user),
    generation: GenerationService = Depends(get_generation_service),
) -> SessionService:
    """Get SessionService with DB persistence and user context."""
    return SessionService(
        chat_repo=chat_repo,
        generation=generation,
        user_id=current_user.id,
        chat_config=settings.chat,
    )


def get_guest_session_service(
    generation: GenerationService = Depends(get_generation_service),
) -> SessionService:
    """Get SessionService without persistence for guest streams."""
    return SessionService(
        chat_repo=None,
        generation=generation,
        user_id=None,
        chat_config=settings.chat,
    )


def get_key_service() -> KeyService:
    """Get KeyService for provider key verification."""
    return KeyService(llm_config=settings.llm)
