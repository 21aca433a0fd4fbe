"""
Message Repository - persistence for outbound messages.

Owns the two concurrency rules of the message table:
- one row per idempotency key, enforced by the unique constraint (callers catch
  IntegrityError from create() and adopt the winner)
- every status transition is a read-modify-write under a row lock
  (SELECT ... FOR UPDATE), so job-driven and webhook-driven updates serialize
"""
from datetime import datetime
from typing import Any, Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.outbound_message import (
    RETRYABLE_TERMINAL_STATUSES,
    STATUS_RANK,
    MessageStatus,
    OutboundMessage,
    utcnow,
)

logger = get_logger(__name__)

# A worker never starts another attempt on a message that reached one of these
_NO_MORE_ATTEMPTS = frozenset({
    MessageStatus.SENT,
    MessageStatus.DELIVERED,
    MessageStatus.UNDELIVERABLE,
})

# States a crashed job may still be marked failed from
_JOB_FAILABLE = frozenset({
    MessageStatus.QUEUED,
    MessageStatus.SENDING,
    MessageStatus.FAILED,
})

_RESETTABLE_FIELDS = ("to", "from_address", "subject", "template_key", "payload")


class MessageRepository:
    """Repository over the outbound_messages table"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _get_for_update(self, message_id: str) -> OutboundMessage | None:
        result = await self.db.execute(
            select(OutboundMessage)
            .where(OutboundMessage.id == message_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get(self, message_id: str) -> OutboundMessage | None:
        result = await self.db.execute(
            select(OutboundMessage)
            .where(OutboundMessage.id == message_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_by_idempotency_key(self, key: str) -> OutboundMessage | None:
        result = await self.db.execute(
            select(OutboundMessage)
            .where(OutboundMessage.idempotency_key == key)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def find_for_webhook(self, external_id: str) -> OutboundMessage | None:
        """Lookup by provider message id first, then by internal id"""
        result = await self.db.execute(
            select(OutboundMessage)
            .where(OutboundMessage.provider_message_id == external_id)
            .order_by(OutboundMessage.created_at.desc())
            .limit(1)
        )
        message = result.scalar_one_or_none()
        if message is None:
            message = await self.get(external_id)
        return message

    async def create(self, data: dict[str, Any]) -> OutboundMessage:
        """
        Insert a queued message and commit.

        Raises:
            IntegrityError: The idempotency key is already taken. The savepoint is
                rolled back and the session stays usable for the follow-up lookup.
        """
        now = utcnow()
        message = OutboundMessage(
            status=MessageStatus.QUEUED,
            attempts=0,
            queued_at=now,
            created_at=now,
            updated_at=now,
            **data,
        )
        async with self.db.begin_nested():
            self.db.add(message)
        await self.db.commit()
        return message

    async def bulk_create(self, rows: list[dict[str, Any]], chunk_size: int) -> None:
        """Insert many queued messages in one transaction, flushing per chunk"""
        now = utcnow()
        try:
            for start in range(0, len(rows), chunk_size):
                for data in rows[start:start + chunk_size]:
                    self.db.add(OutboundMessage(
                        status=MessageStatus.QUEUED,
                        attempts=0,
                        queued_at=now,
                        created_at=now,
                        updated_at=now,
                        **data,
                    ))
                await self.db.flush()
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise

    async def begin_attempt(self, message_id: str) -> int | None:
        """
        Count a new send attempt and mark the message sending.

        Returns:
            The attempt number, or None when the message is missing or already final
        """
        message = await self._get_for_update(message_id)
        if message is None or message.status in _NO_MORE_ATTEMPTS:
            await self.db.rollback()
            return None

        message.attempts = (message.attempts or 0) + 1
        message.status = MessageStatus.SENDING
        message.updated_at = utcnow()
        attempts = message.attempts
        await self.db.commit()
        return attempts

    async def update_status(
        self,
        message_id: str,
        status: MessageStatus,
        *,
        provider_message_id: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """
        Apply a status transition unless it would regress the message.

        A transition is accepted when the new status ranks at or above the current
        one (queued < sending < sent < failed < delivered < undeliverable), so stale
        or out-of-order callbacks never move a message backwards. Repeating the
        current status is a no-op.

        Returns:
            True when the row changed
        """
        status = MessageStatus(status)
        message = await self._get_for_update(message_id)
        if message is None:
            await self.db.rollback()
            return False

        current = MessageStatus(message.status)
        if status == current and not provider_message_id:
            await self.db.rollback()
            return False
        if STATUS_RANK[status] < STATUS_RANK[current]:
            await self.db.rollback()
            logger.info(
                "Status regression rejected",
                extra_data={
                    "message_id": message_id,
                    "current_status": current.value,
                    "rejected_status": status.value,
                },
            )
            return False

        now = utcnow()
        message.status = status
        message.updated_at = now
        if provider_message_id:
            message.provider_message_id = provider_message_id

        if status == MessageStatus.SENT:
            message.sent_at = message.sent_at or now
        elif status == MessageStatus.DELIVERED:
            message.delivered_at = now
            message.sent_at = message.sent_at or now

        if status in (MessageStatus.SENT, MessageStatus.DELIVERED):
            message.error_code = None
            message.error_message = None
        elif status in RETRYABLE_TERMINAL_STATUSES:
            message.failed_at = now
            message.error_code = error_code
            message.error_message = error_message

        await self.db.commit()
        return True

    async def mark_job_failed(
        self,
        message_id: str,
        error_code: str,
        error_message: str,
    ) -> int | None:
        """
        Record an unrecoverable job failure.

        Returns:
            Attempts so far, or None when the message already reached a final
            outcome (or no longer exists) and must not be dead-lettered
        """
        message = await self._get_for_update(message_id)
        if message is None or message.status not in _JOB_FAILABLE:
            await self.db.rollback()
            return None

        now = utcnow()
        message.status = MessageStatus.FAILED
        message.error_code = error_code
        message.error_message = error_message
        message.failed_at = now
        message.updated_at = now
        attempts = message.attempts or 0
        await self.db.commit()
        return attempts

    async def reset_for_retry(
        self,
        message_id: str,
        data: dict[str, Any],
        *,
        only_from: Iterable[MessageStatus] = RETRYABLE_TERMINAL_STATUSES,
    ) -> bool:
        """
        Start a new attempt cycle on an existing row.

        Status goes back to queued, attempts to 0, provider and error fields and
        terminal timestamps are cleared, and content fields are replaced from data.
        Only applies while the row is still in one of ``only_from`` so two
        concurrent re-dispatches produce a single new cycle.

        Returns:
            True when the row was reset
        """
        message = await self._get_for_update(message_id)
        if message is None or message.status not in set(only_from):
            await self.db.rollback()
            return False

        now = utcnow()
        for key in _RESETTABLE_FIELDS:
            if key in data:
                setattr(message, key, data[key])
        message.status = MessageStatus.QUEUED
        message.attempts = 0
        message.provider_message_id = None
        message.error_code = None
        message.error_message = None
        message.sent_at = None
        message.delivered_at = None
        message.failed_at = None
        message.queued_at = now
        message.updated_at = now
        await self.db.commit()
        return True

    async def count_by_status(self) -> dict[str, int]:
        result = await self.db.execute(
            select(OutboundMessage.status, func.count(OutboundMessage.id))
            .group_by(OutboundMessage.status)
        )
        counts = {status.value: 0 for status in MessageStatus}
        for row_status, count in result.all():
            counts[MessageStatus(row_status).value] = count
        return counts

    async def list_recent(
        self,
        *,
        status: MessageStatus | None = None,
        limit: int = 50,
        before: datetime | None = None,
    ) -> list[OutboundMessage]:
        query = select(OutboundMessage)
        if status is not None:
            query = query.where(OutboundMessage.status == status)
        if before is not None:
            query = query.where(OutboundMessage.created_at < before)
        result = await self.db.execute(
            query.order_by(OutboundMessage.created_at.desc(), OutboundMessage.id.desc()).limit(limit)
        )
        return list(result.scalars().all())
