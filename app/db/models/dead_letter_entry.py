"""
Dead Letter Entry Model - snapshot of a message that exhausted its retries
"""
from sqlalchemy import Column, DateTime, Index, Integer, JSON, String, Text

from app.db.database import Base
from app.db.models.outbound_message import utcnow


class DeadLetterEntry(Base):
    """Permanently failed message kept for inspection and manual replay"""

    __tablename__ = "dead_letters"

    id = Column(String(26), primary_key=True)
    # Back-reference only: purging messages must not cascade into the audit trail
    message_id = Column(String(26), nullable=False, index=True)
    channel = Column(String(16), nullable=False)
    payload = Column(JSON, nullable=False)
    attempts = Column(Integer, nullable=False, default=0)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    last_exception = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_dead_letters_created_at", "created_at"),
    )
