"""Game model for published games in the public feed."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Game(Base):
    """Published game, playable by anyone from the feed."""

    __tablename__ = "games"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    author_id = Column(String, ForeignKey("users.id"), nullable=True, index=True)
    author_name = Column(String, nullable=False)
    html = Column(Text, nullable=False)
    thumbnail = Column(Text, nullable=True)
    category = Column(String, nullable=False, default="Arcade", server_default="Arcade")
    plays = Column(Integer, nullable=False, default=0, server_default="0")
    is_official = Column(Boolean, nullable=False, default=False, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    author = relationship("User", back_populates="games")
    leaderboard_entries = relationship("LeaderboardEntry", back_populates="game", cascade="all, delete-orphan")
