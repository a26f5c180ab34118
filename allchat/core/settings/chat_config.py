"""Chat behaviour configuration."""

from pydantic import BaseModel


class ChatConfig(BaseModel, frozen=True):
    """Chat creation and guest access settings."""

    title_max_length: int
    guest_stream_rate_limit: str
