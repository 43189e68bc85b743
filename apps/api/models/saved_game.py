"""SavedGame and PlayHistory models for a user's library."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class SavedGame(Base):
    """Bookmark of a published game."""

    __tablename__ = "saved_games"

    user_id = Column(String, ForeignKey("users.id"), primary_key=True)
    game_id = Column(String, ForeignKey("games.id"), primary_key=True)
    saved_at = Column(DateTime(timezone=True), server_default=func.now())


class PlayHistory(Base):
    """Last play time and play count of a game per user."""

    __tablename__ = "play_history"
    __table_args__ = (
        UniqueConstraint("user_id", "game_id", name="uq_play_history_user_game"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    game_id = Column(String, ForeignKey("games.id"), nullable=False)
    play_count = Column(Integer, nullable=False, default=1, server_default="1")
    last_played_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
