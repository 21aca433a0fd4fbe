"""
Dead Letter Service - permanent failures kept for inspection and manual replay.

Entries are snapshots: the payload stored here is what gets re-enqueued on
replay, even if the message row changed or was removed in the meantime.
"""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Any

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings, settings as default_settings
from app.core.exceptions import DeadLetterNotFoundError, DeadLetterReplayConflictError
from app.core.ids import new_id
from app.core.logging import get_logger, log_async_operation
from app.db.models.dead_letter_entry import DeadLetterEntry
from app.db.models.outbound_message import MessageStatus, utcnow
from app.domain.flight_plan import FlightPlan
from app.domain.job_queue import JobQueue
from app.domain.repositories.message_repository import MessageRepository
from app.domain.services.events import EventBus, MessageDeadLettered, MessageQueued

logger = get_logger(__name__)


@dataclass(frozen=True)
class ReplayResult:
    entry_id: str
    message_id: str
    recreated: bool


class DeadLetterService:
    """Record, browse, replay and purge dead-letter entries"""

    def __init__(
        self,
        db: AsyncSession,
        queue: JobQueue | None = None,
        events: EventBus | None = None,
        *,
        config: Settings | None = None,
    ):
        self.db = db
        self.queue = queue
        self.events = events or EventBus()
        self.config = config or default_settings
        self.messages = MessageRepository(db)

    async def record(
        self,
        *,
        message_id: str,
        channel: str,
        payload: dict[str, Any],
        attempts: int,
        error_code: str | None,
        error_message: str | None,
        last_exception: str | None = None,
    ) -> DeadLetterEntry | None:
        """Store a snapshot of a permanently failed message; None when dead-lettering is off"""
        if not self.config.DEAD_LETTER_ENABLED:
            logger.warning(
                "Dead letter store disabled, failure not recorded",
                extra_data={"message_id": message_id, "channel": channel, "error_code": error_code},
            )
            return None

        entry = DeadLetterEntry(
            id=new_id(),
            message_id=message_id,
            channel=channel,
            payload=payload,
            attempts=attempts,
            error_code=error_code,
            error_message=error_message,
            last_exception=last_exception,
            created_at=utcnow(),
        )
        self.db.add(entry)
        await self.db.commit()

        self.events.publish(MessageDeadLettered(
            message_id=message_id,
            channel=channel,
            attempts=attempts,
            error_code=error_code,
            error_message=error_message,
        ))
        logger.error(
            "Message dead-lettered",
            extra_data={
                "entry_id": entry.id,
                "message_id": message_id,
                "channel": channel,
                "attempts": attempts,
                "error_code": error_code,
            },
        )
        return entry

    async def list(self, limit: int = 50) -> list[DeadLetterEntry]:
        """Newest entries first"""
        result = await self.db.execute(
            select(DeadLetterEntry)
            .order_by(DeadLetterEntry.created_at.desc(), DeadLetterEntry.id.desc())
            .limit(limit)
        )
        return [entry for entry in result.scalars().all()]

    async def get(self, entry_id: str) -> DeadLetterEntry | None:
        result = await self.db.execute(
            select(DeadLetterEntry).where(DeadLetterEntry.id == entry_id)
        )
        return result.scalar_one_or_none()

    @log_async_operation("dead_letter_replay")
    async def replay(self, entry_id: str) -> ReplayResult:
        """
        Start a fresh attempt cycle from the entry's snapshot.

        The message row is reset (or recreated under the same id when it was
        removed) and a new job is enqueued. The entry itself is kept.

        Raises:
            DeadLetterNotFoundError: Unknown entry
            DeadLetterReplayConflictError: The message is queued, in flight or succeeded
        """
        if self.queue is None:
            raise RuntimeError("DeadLetterService.replay requires a job queue")

        entry = await self.get(entry_id)
        if entry is None:
            raise DeadLetterNotFoundError(entry_id)

        plan = FlightPlan.from_payload(entry.payload)
        fields = plan.message_fields()
        message = await self.messages.get(entry.message_id)

        recreated = False
        if message is None:
            await self.messages.create({"id": entry.message_id, **fields})
            recreated = True
        elif not await self.messages.reset_for_retry(entry.message_id, fields):
            current = await self.messages.get(entry.message_id)
            status = MessageStatus(current.status).value if current else "missing"
            raise DeadLetterReplayConflictError(entry_id, entry.message_id, status)

        self.queue.enqueue(entry.message_id, entry.payload)
        self.events.publish(MessageQueued(message_id=entry.message_id, channel=entry.channel))
        logger.info(
            "Dead letter replayed",
            extra_data={
                "entry_id": entry_id,
                "message_id": entry.message_id,
                "channel": entry.channel,
                "recreated": recreated,
            },
        )
        return ReplayResult(entry_id=entry_id, message_id=entry.message_id, recreated=recreated)

    async def purge(self, entry_id: str | None = None) -> int:
        """Delete one entry, or all of them when no id is given; returns rows removed"""
        statement = delete(DeadLetterEntry)
        if entry_id is not None:
            statement = statement.where(DeadLetterEntry.id == entry_id)
        result = await self.db.execute(statement)
        await self.db.commit()

        removed = result.rowcount or 0
        logger.warning(
            "Dead letters purged",
            extra_data={"entry_id": entry_id, "removed": removed},
        )
        return removed

    async def count(self) -> int:
        result = await self.db.execute(select(func.count(DeadLetterEntry.id)))
        return result.scalar_one()

    async def stats(self, days: int = 7, top: int = 10) -> dict[str, Any]:
        """
        Aggregate view of the store.

        Returns:
            total, by_channel (count and percentage), top_errors, attempts
            distribution, and per-day counts for the last ``days`` days
            (oldest first, zero-filled)
        """
        total = await self.count()

        channel_rows = await self.db.execute(
            select(DeadLetterEntry.channel, func.count(DeadLetterEntry.id))
            .group_by(DeadLetterEntry.channel)
            .order_by(func.count(DeadLetterEntry.id).desc(), DeadLetterEntry.channel)
        )
        by_channel = [
            {
                "channel": channel,
                "count": count,
                "percentage": round(count * 100.0 / total, 2) if total else 0.0,
            }
            for channel, count in channel_rows.all()
        ]

        error_rows = await self.db.execute(
            select(DeadLetterEntry.error_code, func.count(DeadLetterEntry.id))
            .group_by(DeadLetterEntry.error_code)
            .order_by(func.count(DeadLetterEntry.id).desc(), DeadLetterEntry.error_code)
            .limit(top)
        )
        top_errors = [
            {"error_code": error_code or "UNKNOWN", "count": count}
            for error_code, count in error_rows.all()
        ]

        attempt_rows = await self.db.execute(
            select(DeadLetterEntry.attempts, func.count(DeadLetterEntry.id))
            .group_by(DeadLetterEntry.attempts)
            .order_by(DeadLetterEntry.attempts)
        )
        attempts_distribution = {str(attempts): count for attempts, count in attempt_rows.all()}

        # Bucketed in Python so the query stays portable across backends
        today = utcnow().date()
        first_day = today - timedelta(days=days - 1)
        since = datetime.combine(first_day, time.min, tzinfo=timezone.utc)
        window_rows = await self.db.execute(
            select(DeadLetterEntry.created_at).where(DeadLetterEntry.created_at >= since)
        )
        per_day = Counter(created_at.date() for created_at in window_rows.scalars().all())
        daily = [
            {
                "date": (first_day + timedelta(days=offset)).isoformat(),
                "count": per_day.get(first_day + timedelta(days=offset), 0),
            }
            for offset in range(days)
        ]

        return {
            "total": total,
            "by_channel": by_channel,
            "top_errors": top_errors,
            "attempts_distribution": attempts_distribution,
            "daily": daily,
            "window_days": days,
        }
