"""Chat database model."""

from datetime import datetime

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from allchat.core.database import Base


class Chat(Base):
    """Conversation owned by one identity, optionally branched from another chat."""

    __tablename__ = "chats"
    __table_args__ = (Index("ix_chats_user_id_created_at", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(256), nullable=False, index=True)
    title: Mapped[str] = mapped_column(Text, nullable=False)
    model_id: Mapped[str] = mapped_column(
        String(255), nullable=False, default="google/gemini-1.5-flash-latest"
    )
    source_chat_id: Mapped[int | None] = mapped_column(
        ForeignKey("chats.id", ondelete="SET NULL"), nullable=True, index=True
    )
    branch_from_message_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    share_id: Mapped[str | None] = mapped_column(
        String(36), unique=True, nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
