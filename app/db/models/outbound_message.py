"""
Outbound Message Model - one row per logical message (per idempotency key)
"""
import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, JSON, String, Text

from app.db.database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MessageChannel(str, enum.Enum):
    SMS = "sms"
    WHATSAPP = "whatsapp"
    EMAIL = "email"


class MessageStatus(str, enum.Enum):
    QUEUED = "queued"
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERABLE = "undeliverable"


# Terminal outcomes after which a re-dispatch resets the row for a new cycle
RETRYABLE_TERMINAL_STATUSES = frozenset({MessageStatus.FAILED, MessageStatus.UNDELIVERABLE})

# In flight or already accepted: a re-dispatch is a duplicate
DUPLICATE_STATUSES = frozenset({
    MessageStatus.QUEUED,
    MessageStatus.SENDING,
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
})

# Ordering used to reject regressions from stale or out-of-order updates
STATUS_RANK = {
    MessageStatus.QUEUED: 0,
    MessageStatus.SENDING: 1,
    MessageStatus.SENT: 2,
    MessageStatus.FAILED: 3,
    MessageStatus.DELIVERED: 4,
    MessageStatus.UNDELIVERABLE: 5,
}


def _enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class OutboundMessage(Base):
    """Outbound SMS / WhatsApp / email with its delivery lifecycle"""

    __tablename__ = "outbound_messages"

    id = Column(String(26), primary_key=True)

    channel = Column(
        SQLEnum(MessageChannel, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
    )
    to = Column(String(320), nullable=False)
    from_address = Column(String(320), nullable=True)
    subject = Column(String(998), nullable=True)
    template_key = Column(String(255), nullable=True)
    payload = Column(JSON, nullable=False)

    status = Column(
        SQLEnum(MessageStatus, native_enum=False, length=16, values_callable=_enum_values),
        nullable=False,
        default=MessageStatus.QUEUED,
    )
    provider_message_id = Column(String(255), nullable=True, index=True)
    error_code = Column(String(100), nullable=True)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, nullable=False, default=0)

    # NULLs never collide, so keyless messages are unconstrained
    idempotency_key = Column(String(128), nullable=True, unique=True)

    # Timestamps
    queued_at = Column(DateTime(timezone=True), nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_outbound_messages_status_attempts_created", "status", "attempts", "created_at"),
    )
