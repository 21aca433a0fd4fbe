"""
Fixtures and helpers for end-to-end scenario tests.

Provides:
- a Pipeline that wires admission, send jobs and webhook reconciliation
  around the in-memory queue
- DB assertion helpers (message status, dead-letter count)
"""
import pytest
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.models.dead_letter_entry import DeadLetterEntry
from app.db.models.outbound_message import MessageStatus, OutboundMessage
from app.domain.services.dispatcher import MessageDispatcher
from app.domain.services.send_job import SendJob, SendJobResult
from app.domain.services.webhook_reconciler import WebhookReconciler
from tests.conftest import LowRandom


class Pipeline:
    """Admission, workers and webhooks sharing one session and queue"""

    def __init__(self, db, queue, senders, breakers, events, config):
        self.queue = queue
        self.dispatcher = MessageDispatcher(db, queue, events)
        self.job = SendJob(db, queue, senders, breakers, events, config=config, rng=LowRandom())
        self.reconciler = WebhookReconciler(db, events)
        self.delays: list[int] = []

    async def drain(self, max_jobs: int = 20) -> list[SendJobResult]:
        """Run queued jobs until the queue is empty, ignoring countdowns"""
        results = []
        for _ in range(max_jobs):
            if not self.queue.jobs:
                break
            job = self.queue.pop()
            self.delays.append(job["delay_seconds"])
            results.append(await self.job.run(
                job["message_id"], job["payload"], job["previous_delay_ms"]
            ))
        return results


@pytest.fixture
def pipeline(db_session, fake_queue, senders, breakers, event_bus, test_config) -> Pipeline:
    return Pipeline(db_session, fake_queue, senders, breakers, event_bus, test_config)


# ============================================================================
# DB assertions
# ============================================================================

async def assert_message_status(
    db: AsyncSession,
    message_id: str,
    expected: MessageStatus,
    *,
    attempts: int | None = None,
) -> OutboundMessage:
    """Check a message's status (and optionally its attempt count)"""
    message = await db.get(OutboundMessage, message_id)
    assert message is not None, f"message {message_id} not found"
    await db.refresh(message)
    assert message.status == expected, f"expected {expected.value}, got {message.status.value}"
    if attempts is not None:
        assert message.attempts == attempts
    return message


async def assert_dead_letter_count(db: AsyncSession, expected: int) -> None:
    result = await db.execute(select(func.count()).select_from(DeadLetterEntry))
    actual = result.scalar_one()
    assert actual == expected, f"expected {expected} dead letters, got {actual}"
