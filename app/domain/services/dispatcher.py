"""
Message Dispatcher - admission of outbound messages.

dispatch() validates a FlightPlan, enforces the idempotency key, creates or
reuses the message row and enqueues a send job. Duplicate admissions for the
same key collapse onto one row through the unique constraint; the loser of a
concurrent insert adopts the winner's id and enqueues nothing.
"""
import asyncio
import json
import math
from datetime import datetime
from typing import Any, Awaitable, Callable

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import IdempotencyConflictError, PayloadTooLargeError
from app.core.ids import new_id
from app.core.logging import get_logger
from app.core.validation import mask_recipient
from app.db.models.outbound_message import (
    RETRYABLE_TERMINAL_STATUSES,
    MessageStatus,
    OutboundMessage,
    utcnow,
)
from app.domain.flight_plan import FlightPlan, parse_flight_plan
from app.domain.job_queue import JobQueue
from app.domain.repositories.message_repository import MessageRepository
from app.domain.services.events import (
    EventBus,
    MessageCreateConflict,
    MessageDuplicateSkipped,
    MessageQueued,
    MessageRetryScheduled,
)

logger = get_logger(__name__)


class MessageDispatcher:
    """Admits flight plans and hands them to the job queue"""

    CREATE_ATTEMPTS = 3
    CONFLICT_BACKOFF_SECONDS = 0.05

    def __init__(
        self,
        db: AsyncSession,
        queue: JobQueue,
        events: EventBus | None = None,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
        id_factory: Callable[[], str] = new_id,
    ):
        self.db = db
        self.repository = MessageRepository(db)
        self.queue = queue
        self.events = events or EventBus()
        self._sleep = sleep
        self._clock = clock
        self._id_factory = id_factory

    async def dispatch(self, plan: FlightPlan | dict[str, Any]) -> str:
        """
        Admit one message.

        Returns:
            The message id (existing id for duplicates and retried keys)

        Raises:
            UnsupportedChannelError / ValidationException: invalid plan, nothing persisted
            PayloadTooLargeError: serialized plan above MAX_PAYLOAD_SIZE
            IdempotencyConflictError: the key's row never became visible after a conflict
        """
        plan = parse_flight_plan(plan)
        payload = plan.to_payload()
        self._check_size(payload, plan.channel)

        logger.info(
            "Dispatch received",
            extra_data={
                "channel": plan.channel,
                "idempotency_key": plan.idempotency_key,
                "to": mask_recipient(plan.channel, plan.to),
            },
        )

        message_id: str | None = None
        if plan.idempotency_key:
            existing = await self.repository.find_by_idempotency_key(plan.idempotency_key)
            if existing is not None:
                if (
                    existing.status in RETRYABLE_TERMINAL_STATUSES
                    and await self.repository.reset_for_retry(existing.id, plan.message_fields())
                ):
                    message_id = existing.id
                    logger.info(
                        "Retrying previously failed message",
                        extra_data={
                            "message_id": message_id,
                            "idempotency_key": plan.idempotency_key,
                            "channel": plan.channel,
                        },
                    )
                    self.events.publish(MessageRetryScheduled(
                        message_id=message_id,
                        channel=plan.channel,
                        attempt=0,
                        delay_seconds=0,
                    ))
                else:
                    return self._skip_duplicate(existing, plan)

        if message_id is None:
            message_id, created = await self._create(plan, payload)
            if not created:
                return message_id

        self._enqueue(message_id, plan, payload)
        return message_id

    async def dispatch_batch(self, plans: list[FlightPlan | dict[str, Any]]) -> list[str]:
        """
        Admit many messages; ids come back in input order.

        Every plan is validated before anything is written. Keyless plans are
        inserted in chunks inside one transaction; keyed plans go through
        dispatch() so idempotency still holds.
        """
        if not plans:
            return []

        parsed = [parse_flight_plan(plan) for plan in plans]
        payloads = [plan.to_payload() for plan in parsed]
        for plan, payload in zip(parsed, payloads):
            self._check_size(payload, plan.channel)

        logger.info("Batch received", extra_data={"count": len(parsed)})

        message_ids: list[str | None] = [None] * len(parsed)
        rows: list[dict[str, Any]] = []
        keyless: list[int] = []
        for index, (plan, payload) in enumerate(zip(parsed, payloads)):
            if plan.idempotency_key:
                continue
            message_id = self._id_factory()
            message_ids[index] = message_id
            rows.append({"id": message_id, **plan.message_fields()})
            keyless.append(index)

        if rows:
            try:
                await self.repository.bulk_create(rows, settings.BATCH_INSERT_CHUNK_SIZE)
            except Exception as e:
                logger.error(
                    "Batch insert failed",
                    extra_data={"count": len(rows), "error": str(e)},
                )
                raise
            for index in keyless:
                self._enqueue(message_ids[index], parsed[index], payloads[index])

        for index, plan in enumerate(parsed):
            if plan.idempotency_key:
                message_ids[index] = await self.dispatch(plan)

        logger.info(
            "Batch dispatched",
            extra_data={"count": len(message_ids), "inserted": len(rows)},
        )
        return [message_id for message_id in message_ids if message_id is not None]

    def _check_size(self, payload: dict[str, Any], channel: str) -> None:
        size = len(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        if size > settings.MAX_PAYLOAD_SIZE:
            logger.error(
                "Payload too large",
                extra_data={"size": size, "max": settings.MAX_PAYLOAD_SIZE, "channel": channel},
            )
            raise PayloadTooLargeError(size, settings.MAX_PAYLOAD_SIZE, channel)

    def _skip_duplicate(self, existing: OutboundMessage, plan: FlightPlan) -> str:
        status = MessageStatus(existing.status).value
        logger.info(
            "Duplicate dispatch skipped",
            extra_data={
                "message_id": existing.id,
                "status": status,
                "channel": plan.channel,
            },
        )
        self.events.publish(MessageDuplicateSkipped(
            existing_message_id=existing.id,
            idempotency_key=plan.idempotency_key or "",
            channel=plan.channel,
            status=status,
        ))
        return existing.id

    async def _create(self, plan: FlightPlan, payload: dict[str, Any]) -> tuple[str, bool]:
        """
        Race-safe insert.

        Returns:
            (message_id, created). created is False when a concurrent admission
            won the unique constraint and its id was adopted.
        """
        data = plan.message_fields()
        for attempt in range(self.CREATE_ATTEMPTS):
            message_id = self._id_factory()
            try:
                await self.repository.create({"id": message_id, **data})
                return message_id, True
            except IntegrityError:
                if not plan.idempotency_key:
                    raise

            winner = await self.repository.find_by_idempotency_key(plan.idempotency_key)
            if winner is not None:
                logger.info(
                    "Create conflict resolved by adopting existing message",
                    extra_data={
                        "existing_message_id": winner.id,
                        "idempotency_key": plan.idempotency_key,
                        "channel": plan.channel,
                    },
                )
                self.events.publish(MessageCreateConflict(
                    existing_message_id=winner.id,
                    idempotency_key=plan.idempotency_key,
                    channel=plan.channel,
                ))
                return winner.id, False

            # The other writer has not committed yet
            await self.db.rollback()
            await self._sleep(self.CONFLICT_BACKOFF_SECONDS * (attempt + 1))

        logger.error(
            "Create conflict unresolved",
            extra_data={
                "idempotency_key": plan.idempotency_key,
                "attempts": self.CREATE_ATTEMPTS,
            },
        )
        raise IdempotencyConflictError(plan.idempotency_key, self.CREATE_ATTEMPTS)

    def _enqueue(self, message_id: str, plan: FlightPlan, payload: dict[str, Any]) -> None:
        delay = 0
        if plan.send_at is not None:
            remaining = (plan.send_at - self._clock()).total_seconds()
            delay = max(0, math.ceil(remaining))

        self.queue.enqueue(message_id, payload, delay_seconds=delay)
        self.events.publish(MessageQueued(
            message_id=message_id,
            channel=plan.channel,
            scheduled=delay > 0,
        ))
        logger.info(
            "Message queued",
            extra_data={
                "message_id": message_id,
                "channel": plan.channel,
                "delay_seconds": delay,
            },
        )
