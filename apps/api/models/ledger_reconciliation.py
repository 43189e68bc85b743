"""LedgerReconciliation model for debits that could not be confirmed."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class LedgerReconciliation(Base):
    """Pending debit for a delivered artifact, corrected out of band."""

    __tablename__ = "ledger_reconciliations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    kind = Column(String, nullable=False)
    description = Column(String, nullable=True)
    external_ref = Column(String, nullable=False, unique=True)
    session_id = Column(String, nullable=True)
    version_number = Column(Integer, nullable=True)
    reason = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="pending", server_default="pending", index=True)
    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    transaction_id = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    user = relationship("User", back_populates="reconciliations")
