"""
Tests for MessageDispatcher - admission, idempotency and batch inserts
"""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.exceptions import (
    IdempotencyConflictError,
    PayloadTooLargeError,
    UnsupportedChannelError,
    ValidationException,
)
from app.db.database import Base
from app.db.models.outbound_message import MessageStatus, OutboundMessage
from app.domain.services.dispatcher import MessageDispatcher
from app.domain.services.events import (
    EventBus,
    MessageCreateConflict,
    MessageDuplicateSkipped,
    MessageQueued,
    MessageRetryScheduled,
)
from tests.conftest import email_plan, sms_plan

NOW = datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def dispatcher(db_session, fake_queue, event_bus) -> MessageDispatcher:
    return MessageDispatcher(
        db_session,
        fake_queue,
        event_bus,
        sleep=AsyncMock(),
        clock=lambda: NOW,
    )


class TestDispatch:

    @pytest.mark.unit
    async def test_creates_and_enqueues(self, dispatcher, fake_queue, recorder):
        message_id = await dispatcher.dispatch(sms_plan())

        message = await dispatcher.repository.get(message_id)
        assert message.status == MessageStatus.QUEUED
        assert message.attempts == 0
        assert fake_queue.jobs == [{
            "message_id": message_id,
            "payload": message.payload,
            "delay_seconds": 0,
            "previous_delay_ms": None,
        }]
        assert recorder.of(MessageQueued) == [
            MessageQueued(message_id=message_id, channel="sms", scheduled=False)
        ]

    @pytest.mark.unit
    async def test_invalid_plan_persists_nothing(self, dispatcher, fake_queue):
        with pytest.raises(ValidationException):
            await dispatcher.dispatch(sms_plan(to="nope"))

        assert fake_queue.jobs == []
        assert sum((await dispatcher.repository.count_by_status()).values()) == 0

    @pytest.mark.unit
    async def test_unsupported_channel(self, dispatcher, fake_queue):
        with pytest.raises(UnsupportedChannelError):
            await dispatcher.dispatch(sms_plan(channel="pigeon"))
        assert fake_queue.jobs == []

    @pytest.mark.unit
    async def test_payload_too_large(self, dispatcher, fake_queue):
        with patch.object(settings, "MAX_PAYLOAD_SIZE", 64):
            with pytest.raises(PayloadTooLargeError) as exc_info:
                await dispatcher.dispatch(sms_plan(text="x" * 200))

        assert exc_info.value.status_code == 413
        assert exc_info.value.details["max_size"] == 64
        assert fake_queue.jobs == []

    @pytest.mark.unit
    async def test_send_at_in_future_delays_job(self, dispatcher, fake_queue, recorder):
        send_at = NOW + timedelta(minutes=5)

        await dispatcher.dispatch(sms_plan(send_at=send_at.isoformat()))

        assert fake_queue.jobs[0]["delay_seconds"] == 300
        assert recorder.of(MessageQueued)[0].scheduled is True

    @pytest.mark.unit
    async def test_send_at_in_past_sends_now(self, dispatcher, fake_queue):
        await dispatcher.dispatch(sms_plan(send_at=(NOW - timedelta(hours=1)).isoformat()))
        assert fake_queue.jobs[0]["delay_seconds"] == 0


class TestIdempotency:

    @pytest.mark.unit
    async def test_duplicate_key_returns_existing_id(self, dispatcher, fake_queue, recorder):
        first = await dispatcher.dispatch(sms_plan(idempotency_key="order-1"))
        second = await dispatcher.dispatch(sms_plan(idempotency_key="order-1", text="changed"))

        assert second == first
        assert fake_queue.ids() == [first]
        skipped = recorder.of(MessageDuplicateSkipped)
        assert len(skipped) == 1
        assert skipped[0].existing_message_id == first
        assert skipped[0].status == "queued"

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.SENDING])
    async def test_duplicate_of_accepted_message_skipped(self, dispatcher, fake_queue, message_factory, status):
        existing = await message_factory(sms_plan(idempotency_key="order-2"), status=status, attempts=1)

        assert await dispatcher.dispatch(sms_plan(idempotency_key="order-2")) == existing.id
        assert fake_queue.jobs == []

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [MessageStatus.FAILED, MessageStatus.UNDELIVERABLE])
    async def test_failed_key_starts_new_cycle(
        self, dispatcher, fake_queue, recorder, message_factory, status
    ):
        existing = await message_factory(
            sms_plan(idempotency_key="order-3"),
            status=status,
            attempts=3,
            error_code="30003",
        )

        message_id = await dispatcher.dispatch(sms_plan(idempotency_key="order-3", text="again"))

        assert message_id == existing.id
        message = await dispatcher.repository.get(existing.id)
        assert message.status == MessageStatus.QUEUED
        assert message.attempts == 0
        assert message.error_code is None
        assert message.payload["text"] == "again"
        assert fake_queue.ids() == [existing.id]
        assert recorder.of(MessageRetryScheduled)[0].attempt == 0

    @pytest.mark.unit
    async def test_keyless_messages_never_collapse(self, dispatcher, fake_queue):
        first = await dispatcher.dispatch(sms_plan())
        second = await dispatcher.dispatch(sms_plan())

        assert first != second
        assert fake_queue.ids() == [first, second]


class TestCreateConflict:
    """Two admissions racing on the same key: the loser adopts the winner's id"""

    @pytest.mark.unit
    async def test_loser_adopts_winner_without_enqueue(
        self, dispatcher, fake_queue, recorder, message_factory
    ):
        winner = await message_factory(sms_plan(idempotency_key="race-1"))
        real_find = dispatcher.repository.find_by_idempotency_key
        lookups = 0

        async def _find_after_race(key):
            # The pre-insert lookup runs before the winner commits
            nonlocal lookups
            lookups += 1
            if lookups == 1:
                return None
            return await real_find(key)

        duplicate = IntegrityError("mock duplicate", {}, Exception("UNIQUE constraint"))
        with patch.object(dispatcher.repository, "find_by_idempotency_key", side_effect=_find_after_race), \
             patch.object(dispatcher.repository, "create", AsyncMock(side_effect=duplicate)):
            message_id = await dispatcher.dispatch(sms_plan(idempotency_key="race-1"))

        assert message_id == winner.id
        assert fake_queue.jobs == []
        conflicts = recorder.of(MessageCreateConflict)
        assert conflicts == [MessageCreateConflict(
            existing_message_id=winner.id,
            idempotency_key="race-1",
            channel="sms",
        )]

    @pytest.mark.unit
    async def test_invisible_winner_raises_after_retries(self, dispatcher, fake_queue):
        duplicate = IntegrityError("mock duplicate", {}, Exception("UNIQUE constraint"))
        with patch.object(dispatcher.repository, "find_by_idempotency_key", AsyncMock(return_value=None)), \
             patch.object(dispatcher.repository, "create", AsyncMock(side_effect=duplicate)) as create:
            with pytest.raises(IdempotencyConflictError) as exc_info:
                await dispatcher.dispatch(sms_plan(idempotency_key="race-2"))

        assert create.await_count == MessageDispatcher.CREATE_ATTEMPTS
        assert dispatcher._sleep.await_count == MessageDispatcher.CREATE_ATTEMPTS
        assert exc_info.value.status_code == 409
        assert fake_queue.jobs == []

    @pytest.mark.unit
    async def test_integrity_error_without_key_propagates(self, dispatcher):
        duplicate = IntegrityError("mock duplicate", {}, Exception("UNIQUE constraint"))
        with patch.object(dispatcher.repository, "create", AsyncMock(side_effect=duplicate)):
            with pytest.raises(IntegrityError):
                await dispatcher.dispatch(sms_plan())


class TestDispatchBatch:

    @pytest.mark.unit
    async def test_ids_in_input_order(self, dispatcher, fake_queue):
        plans = [sms_plan(text=f"m{i}") for i in range(4)] + [email_plan()]

        ids = await dispatcher.dispatch_batch(plans)

        assert len(ids) == 5
        assert len(set(ids)) == 5
        assert fake_queue.ids() == ids
        for message_id, plan in zip(ids, plans):
            message = await dispatcher.repository.get(message_id)
            assert message.channel == plan["channel"]

    @pytest.mark.unit
    async def test_chunked_insert(self, dispatcher):
        with patch.object(settings, "BATCH_INSERT_CHUNK_SIZE", 2), \
             patch.object(dispatcher.repository, "bulk_create", wraps=dispatcher.repository.bulk_create) as bulk:
            ids = await dispatcher.dispatch_batch([sms_plan() for _ in range(5)])

        assert len(ids) == 5
        assert bulk.await_args.args[1] == 2

    @pytest.mark.unit
    async def test_keyed_plans_keep_idempotency(self, dispatcher, fake_queue):
        existing = await dispatcher.dispatch(sms_plan(idempotency_key="batch-1"))
        fake_queue.jobs.clear()

        ids = await dispatcher.dispatch_batch([
            sms_plan(),
            sms_plan(idempotency_key="batch-1"),
            sms_plan(idempotency_key="batch-2"),
        ])

        assert ids[1] == existing
        assert ids[2] not in (existing, ids[0])
        assert sorted(fake_queue.ids()) == sorted([ids[0], ids[2]])

    @pytest.mark.unit
    async def test_one_invalid_plan_rejects_batch(self, dispatcher, fake_queue):
        with pytest.raises(ValidationException):
            await dispatcher.dispatch_batch([sms_plan(), sms_plan(to="bad")])

        assert fake_queue.jobs == []
        assert sum((await dispatcher.repository.count_by_status()).values()) == 0

    @pytest.mark.unit
    async def test_empty_batch(self, dispatcher):
        assert await dispatcher.dispatch_batch([]) == []


class TestConcurrentAdmission:
    """Real unique constraint and savepoint, one session per caller"""

    @pytest.fixture
    async def file_engine(self, tmp_path):
        engine = create_async_engine(
            f"sqlite+aiosqlite:///{tmp_path / 'admission.db'}",
            connect_args={"timeout": 30},
        )
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        yield engine
        await engine.dispose()

    @pytest.mark.integration
    async def test_same_key_admitted_once(self, file_engine, fake_queue):
        session_maker = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
        events = EventBus()
        conflicts = []
        events.subscribe(MessageCreateConflict, conflicts.append)

        async def _dispatch() -> str:
            async with session_maker() as session:
                dispatcher = MessageDispatcher(session, fake_queue, events)
                return await dispatcher.dispatch(sms_plan(idempotency_key="k1"))

        ids = await asyncio.gather(*(_dispatch() for _ in range(8)))

        assert len(set(ids)) == 1
        assert fake_queue.ids() == [ids[0]]
        async with session_maker() as session:
            rows = await session.execute(select(func.count()).select_from(OutboundMessage))
            assert rows.scalar_one() == 1
        assert all(conflict.existing_message_id == ids[0] for conflict in conflicts)

    @pytest.mark.integration
    async def test_constraint_conflict_adopts_committed_row(self, file_engine, fake_queue):
        session_maker = async_sessionmaker(file_engine, class_=AsyncSession, expire_on_commit=False)
        async with session_maker() as session:
            winner = await MessageDispatcher(session, fake_queue).dispatch(sms_plan(idempotency_key="k2"))

        async with session_maker() as session:
            dispatcher = MessageDispatcher(session, fake_queue)
            real_find = dispatcher.repository.find_by_idempotency_key
            lookups = []

            async def _miss_first(key):
                # The pre-insert lookup lands before the winner commits
                lookups.append(key)
                return None if len(lookups) == 1 else await real_find(key)

            with patch.object(dispatcher.repository, "find_by_idempotency_key", side_effect=_miss_first):
                adopted = await dispatcher.dispatch(sms_plan(idempotency_key="k2"))

            rows = await session.execute(select(func.count()).select_from(OutboundMessage))
            assert rows.scalar_one() == 1

        assert adopted == winner
        assert fake_queue.ids() == [winner]
