"""StudioSession model for resumable creative threads."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class StudioSession(Base):
    """Conversation, latest artifact pointer and liveness flag for one thread."""

    __tablename__ = "studio_sessions"
    __table_args__ = (
        UniqueConstraint("user_id", "session_id", name="uq_studio_sessions_user_session"),
        Index("ix_studio_sessions_user_active_updated", "user_id", "is_active", "last_updated_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    messages_json = Column(JSON, nullable=False, default=list)
    current_game_html = Column(Text, nullable=True)
    current_version = Column(Integer, nullable=False, default=0, server_default="0")
    # Set by an explicit restore, cleared once the pointer moves on.
    restored_version = Column(Integer, nullable=True)
    suggested_title = Column(String, nullable=True)
    suggested_description = Column(Text, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default="1")
    last_updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="studio_sessions")
