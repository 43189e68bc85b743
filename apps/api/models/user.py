"""User account model."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import uuid

from database import Base


class User(Base):
    """Account for an authenticated identity, holding the credit balance."""

    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_users_credits_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String, nullable=False, index=True)
    name = Column(String, nullable=True)
    avatar = Column(String, nullable=True)
    tier = Column(String, nullable=False, default="free", server_default="free")
    credits = Column(Integer, nullable=False, default=0, server_default="0")
    games_created = Column(Integer, nullable=False, default=0, server_default="0")
    stripe_customer_id = Column(String, nullable=True, index=True)
    stripe_subscription_id = Column(String, nullable=True)
    subscription_status = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_transactions = relationship("CreditTransaction", back_populates="user", cascade="all, delete-orphan")
    studio_sessions = relationship("StudioSession", back_populates="user", cascade="all, delete-orphan")
    game_versions = relationship("GameVersion", back_populates="user", cascade="all, delete-orphan")
    reconciliations = relationship("LedgerReconciliation", back_populates="user", cascade="all, delete-orphan")
    games = relationship("Game", back_populates="author")
