"""GameVersion model for per-session artifact history."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class GameVersion(Base):
    """One immutable generated artifact within a studio session."""

    __tablename__ = "game_versions"
    __table_args__ = (
        UniqueConstraint("user_id", "session_id", "version_number", name="uq_game_versions_session_version"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    session_id = Column(String, nullable=False, index=True)
    version_number = Column(Integer, nullable=False)
    html = Column(Text, nullable=False)
    prompt = Column(Text, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    user = relationship("User", back_populates="game_versions")
