"""
Celery Tasks for Outbound Message Delivery

send_message runs one attempt of a message's retry cycle. Retries are new
send_message jobs scheduled with a countdown, so a worker never sleeps between
attempts.
"""
from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any

from app.workers.celery_app import celery_app
from app.core.circuit_breaker import get_breaker_registry
from app.core.config import settings
from app.core.logging import get_logger, set_correlation_id
from app.core.redis_client import close_redis
from app.db.database import get_task_session
from app.domain.job_queue import JobQueue
from app.domain.senders.registry import get_sender_registry
from app.domain.services.events import build_event_bus
from app.domain.services.send_job import SendJob

logger = get_logger(__name__)

_events = build_event_bus()


@contextmanager
def get_event_loop():
    """
    Context manager for proper event loop handling in Celery tasks.
    Creates a new event loop and ensures proper cleanup to prevent resource leaks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        yield loop
    finally:
        try:
            # Cancel all pending tasks
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            # Wait for tasks to be cancelled
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()


def run_async(coro, correlation_id: str | None = None):
    """Helper to run async code in sync Celery task with proper cleanup"""
    # Set correlation ID for task tracking
    set_correlation_id(correlation_id)

    with get_event_loop() as loop:
        return loop.run_until_complete(coro)


class CeleryJobQueue(JobQueue):
    """Job queue backed by the send_message task"""

    def __init__(self, queue_name: str | None = None):
        self.queue_name = queue_name or settings.DEFAULT_QUEUE

    def enqueue(
        self,
        message_id: str,
        payload: dict[str, Any],
        *,
        delay_seconds: int = 0,
        previous_delay_ms: int | None = None,
    ) -> None:
        send_message.apply_async(
            args=[message_id, payload],
            kwargs={"previous_delay_ms": previous_delay_ms},
            countdown=delay_seconds if delay_seconds > 0 else None,
            queue=self.queue_name,
        )
        logger.debug(
            "Send job enqueued",
            extra_data={
                "message_id": message_id,
                "delay_seconds": delay_seconds,
                "queue": self.queue_name,
            },
        )


@celery_app.task(name="app.workers.tasks.send_message")
def send_message(
    message_id: str,
    payload: dict[str, Any],
    previous_delay_ms: int | None = None,
) -> dict[str, Any]:
    """Run one send attempt for a message"""

    async def _send():
        try:
            async with get_task_session() as db:
                job = SendJob(
                    db,
                    CeleryJobQueue(),
                    get_sender_registry(),
                    get_breaker_registry(),
                    _events,
                )
                result = await job.run(message_id, payload, previous_delay_ms)
        finally:
            # The Redis client belongs to this task's event loop
            await close_redis()
        return {
            "message_id": message_id,
            "outcome": result.outcome.value,
            "attempt": result.attempt,
            "status": result.status,
            "delay_seconds": result.delay_seconds,
        }

    return run_async(_send(), correlation_id=message_id)
