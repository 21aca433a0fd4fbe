"""
Send Job - one attempt of the retry state machine.

    queued -> sending -> sent | delivered | failed | undeliverable
    failed -> (re-enqueued after backoff) -> sending ... until the channel's
    attempt ceiling, then dead-lettered

Each run is one attempt. Retries are scheduled on the job queue with a
countdown; the worker never sleeps between attempts.
"""
import asyncio
import enum
import traceback
from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.backoff import delay_ms_to_seconds, make_backoff, RandomSource
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.config import Settings, settings as default_settings
from app.core.logging import get_logger
from app.db.models.outbound_message import MessageStatus
from app.domain.flight_plan import FlightPlan
from app.domain.job_queue import JobQueue
from app.domain.repositories.message_repository import MessageRepository
from app.domain.senders.base import ProviderSendResult, SendStatus
from app.domain.senders.registry import SenderRegistry
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.events import (
    EventBus,
    MessageFinalized,
    MessageRetryScheduled,
    MessageSending,
)

logger = get_logger(__name__)

# Reserved error codes written by the job itself
ERROR_CIRCUIT_OPEN = "CIRCUIT_OPEN"
ERROR_SEND_TIMEOUT = "SEND_TIMEOUT"
ERROR_JOB_EXCEPTION = "JOB_EXCEPTION"
ERROR_NO_SENDER = "NO_SENDER"
ERROR_FAILED = "FAILED"


class SendOutcome(str, enum.Enum):
    SKIPPED = "skipped"              # message missing or already final
    COMPLETED = "completed"          # sent / delivered
    UNDELIVERABLE = "undeliverable"
    RETRY_SCHEDULED = "retry_scheduled"
    DEAD_LETTERED = "dead_lettered"


@dataclass(frozen=True)
class SendJobResult:
    outcome: SendOutcome
    attempt: int = 0
    status: str | None = None
    delay_seconds: int | None = None


class SendJob:
    """Runs a single send attempt for one message"""

    def __init__(
        self,
        db: AsyncSession,
        queue: JobQueue,
        senders: SenderRegistry,
        breakers: CircuitBreakerRegistry,
        events: EventBus | None = None,
        *,
        config: Settings | None = None,
        rng: RandomSource | None = None,
    ):
        self.db = db
        self.repository = MessageRepository(db)
        self.queue = queue
        self.senders = senders
        self.breakers = breakers
        self.events = events or EventBus()
        self.config = config or default_settings
        self.dead_letters = DeadLetterService(db, queue, self.events, config=self.config)
        self._rng = rng

    async def run(
        self,
        message_id: str,
        payload: dict[str, Any],
        previous_delay_ms: int | None = None,
    ) -> SendJobResult:
        """
        Execute one attempt.

        Any exception is caught here and turned into a JOB_EXCEPTION dead letter,
        regardless of how many attempts remain.
        """
        plan: FlightPlan | None = None
        try:
            plan = FlightPlan.from_payload(payload)
            return await self._attempt(message_id, plan, payload, previous_delay_ms)
        except Exception as e:
            return await self._handle_job_exception(message_id, plan, payload, e)

    async def _attempt(
        self,
        message_id: str,
        plan: FlightPlan,
        payload: dict[str, Any],
        previous_delay_ms: int | None,
    ) -> SendJobResult:
        channel = plan.channel
        attempt = await self.repository.begin_attempt(message_id)
        if attempt is None:
            logger.info(
                "Send skipped: message missing or already final",
                extra_data={"message_id": message_id, "channel": channel},
            )
            return SendJobResult(SendOutcome.SKIPPED)

        self.events.publish(MessageSending(message_id=message_id, channel=channel, attempt=attempt))
        logger.info(
            "Sending message",
            extra_data={"message_id": message_id, "channel": channel, "attempt": attempt},
        )

        result = await self._call_sender(message_id, plan)

        await self.repository.update_status(
            message_id,
            MessageStatus(result.status.value),
            provider_message_id=result.provider_message_id,
            error_code=result.error_code,
            error_message=result.error_message,
        )
        self.events.publish(MessageFinalized(
            message_id=message_id,
            channel=channel,
            status=result.status.value,
            provider_message_id=result.provider_message_id,
            error_code=result.error_code,
        ))
        logger.info(
            "Send result",
            extra_data={
                "message_id": message_id,
                "channel": channel,
                "status": result.status.value,
                "attempt": attempt,
                "provider_message_id": result.provider_message_id,
                "error_code": result.error_code,
            },
        )

        if result.is_success:
            return SendJobResult(SendOutcome.COMPLETED, attempt, result.status.value)

        if result.status == SendStatus.UNDELIVERABLE:
            return SendJobResult(SendOutcome.UNDELIVERABLE, attempt, result.status.value)

        policy = self.config.retry_policy(channel)
        if attempt >= policy.max_attempts:
            await self.dead_letters.record(
                message_id=message_id,
                channel=channel,
                payload=payload,
                attempts=attempt,
                error_code=result.error_code or ERROR_FAILED,
                error_message=result.error_message or "Provider failure",
            )
            return SendJobResult(SendOutcome.DEAD_LETTERED, attempt, result.status.value)

        backoff = make_backoff(
            self.config.RETRY_BACKOFF_STRATEGY,
            policy.base_delay_ms,
            policy.max_delay_ms,
            self._rng,
        )
        # attempt is 1-based; the first retry uses the base envelope
        delay_ms = backoff(attempt - 1, previous_delay_ms)
        delay_seconds = delay_ms_to_seconds(delay_ms)

        self.queue.enqueue(
            message_id,
            payload,
            delay_seconds=delay_seconds,
            previous_delay_ms=delay_ms,
        )
        self.events.publish(MessageRetryScheduled(
            message_id=message_id,
            channel=channel,
            attempt=attempt,
            delay_seconds=delay_seconds,
        ))
        logger.warning(
            "Retry scheduled",
            extra_data={
                "message_id": message_id,
                "channel": channel,
                "attempt": attempt,
                "max_attempts": policy.max_attempts,
                "delay_seconds": delay_seconds,
            },
        )
        return SendJobResult(SendOutcome.RETRY_SCHEDULED, attempt, result.status.value, delay_seconds)

    async def _call_sender(self, message_id: str, plan: FlightPlan) -> ProviderSendResult:
        """Gate through the provider's breaker, call the sender, report the outcome"""
        sender = self.senders.get(plan.channel)
        if sender is None:
            return ProviderSendResult.failed(
                ERROR_NO_SENDER, f"No sender registered for channel {plan.channel}"
            )

        breaker = self.breakers.get(sender.provider_key)
        if not await breaker.can_execute():
            retry_after = await breaker.get_retry_after()
            logger.warning(
                "Circuit open, send short-circuited",
                extra_data={
                    "message_id": message_id,
                    "provider": sender.provider_key,
                    "retry_after_seconds": round(retry_after, 1),
                },
            )
            return ProviderSendResult.failed(
                ERROR_CIRCUIT_OPEN,
                f"Circuit breaker open for {sender.provider_key}",
                raw={"retry_after_seconds": retry_after},
            )

        try:
            result = await asyncio.wait_for(
                sender.send(plan), timeout=self.config.SEND_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError:
            await breaker.record_failure(ERROR_SEND_TIMEOUT)
            return ProviderSendResult.failed(
                ERROR_SEND_TIMEOUT,
                f"Send exceeded {self.config.SEND_TIMEOUT_SECONDS}s",
            )
        except Exception as e:
            await breaker.record_failure(str(e))
            raise
        except BaseException:
            # Cancelled mid-call: no outcome to report, but a claimed trial slot goes back
            await breaker.release_trial()
            raise

        # Undeliverable means the provider answered; only transient failures count against it
        if result.status == SendStatus.FAILED:
            await breaker.record_failure(result.error_code)
        else:
            await breaker.record_success()
        return result

    async def _handle_job_exception(
        self,
        message_id: str,
        plan: FlightPlan | None,
        payload: dict[str, Any],
        error: Exception,
    ) -> SendJobResult:
        logger.error(
            "Send job crashed",
            extra_data={"message_id": message_id, "error": str(error)},
            exc_info=True,
        )
        # A broken transaction would make the bookkeeping below fail too
        await self.db.rollback()

        error_message = str(error) or type(error).__name__
        attempts = await self.repository.mark_job_failed(
            message_id, ERROR_JOB_EXCEPTION, error_message
        )
        if attempts is None:
            return SendJobResult(SendOutcome.SKIPPED)

        channel = plan.channel if plan else str(payload.get("channel", "unknown"))
        await self.dead_letters.record(
            message_id=message_id,
            channel=channel,
            payload=payload,
            attempts=attempts,
            error_code=ERROR_JOB_EXCEPTION,
            error_message=error_message,
            last_exception="".join(
                traceback.format_exception(type(error), error, error.__traceback__)
            ),
        )
        return SendJobResult(SendOutcome.DEAD_LETTERED, attempts, MessageStatus.FAILED.value)
