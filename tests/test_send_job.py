"""
Tests for SendJob - one attempt of the retry state machine
"""
import asyncio
from unittest.mock import patch

import pytest
from sqlalchemy import select

from app.core.circuit_breaker import CircuitState
from app.db.models.dead_letter_entry import DeadLetterEntry
from app.db.models.outbound_message import MessageStatus
from app.domain.senders.base import ProviderSendResult
from app.domain.senders.registry import SenderRegistry
from app.domain.services.events import (
    MessageDeadLettered,
    MessageFinalized,
    MessageRetryScheduled,
    MessageSending,
)
from app.domain.services.send_job import (
    ERROR_CIRCUIT_OPEN,
    ERROR_JOB_EXCEPTION,
    ERROR_NO_SENDER,
    ERROR_SEND_TIMEOUT,
    SendJob,
    SendOutcome,
)
from tests.conftest import LowRandom, email_plan, sms_plan


@pytest.fixture
def job(db_session, fake_queue, senders, breakers, event_bus, test_config) -> SendJob:
    return SendJob(
        db_session,
        fake_queue,
        senders,
        breakers,
        event_bus,
        config=test_config,
        rng=LowRandom(),
    )


async def _dead_letters(db_session) -> list[DeadLetterEntry]:
    result = await db_session.execute(select(DeadLetterEntry))
    return list(result.scalars().all())


class TestSuccessfulSend:

    @pytest.mark.unit
    async def test_sent(self, job, message_factory, sms_sender, recorder):
        message = await message_factory()
        sms_sender.script = [ProviderSendResult.sent("SM100")]

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.COMPLETED
        assert result.attempt == 1
        assert result.status == "sent"
        stored = await job.repository.get(message.id)
        assert stored.status == MessageStatus.SENT
        assert stored.provider_message_id == "SM100"
        assert stored.attempts == 1
        assert recorder.of(MessageSending)[0].attempt == 1
        assert recorder.of(MessageFinalized)[0].provider_message_id == "SM100"

    @pytest.mark.unit
    async def test_sender_receives_rebuilt_plan(self, job, message_factory, email_sender):
        message = await message_factory(email_plan(idempotency_key="welcome-1"))

        await job.run(message.id, message.payload)

        assert email_sender.calls[0].to == "alice@example.com"
        assert email_sender.calls[0].idempotency_key == "welcome-1"

    @pytest.mark.unit
    async def test_delivered_synchronously(self, job, message_factory, sms_sender):
        message = await message_factory()
        sms_sender.script = [ProviderSendResult.delivered("SM101")]

        result = await job.run(message.id, message.payload)

        assert result.status == "delivered"
        assert (await job.repository.get(message.id)).status == MessageStatus.DELIVERED

    @pytest.mark.unit
    @pytest.mark.parametrize("status", [MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.UNDELIVERABLE])
    async def test_final_message_skipped(self, job, message_factory, sms_sender, status):
        """A duplicate delivery of the job never sends twice"""
        message = await message_factory(status=status, attempts=1)

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.SKIPPED
        assert sms_sender.calls == []

    @pytest.mark.unit
    async def test_missing_message_skipped(self, job, sms_sender):
        result = await job.run("01HZZZZZZZZZZZZZZZZZZZZZZZ", sms_plan())
        assert result.outcome == SendOutcome.SKIPPED
        assert sms_sender.calls == []


class TestRetries:

    @pytest.mark.unit
    async def test_failure_schedules_retry_with_backoff(self, job, message_factory, sms_sender, fake_queue, recorder):
        message = await message_factory()
        sms_sender.script = [ProviderSendResult.failed("30008", "Unknown error")]

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.RETRY_SCHEDULED
        assert result.delay_seconds == 1
        assert fake_queue.jobs == [{
            "message_id": message.id,
            "payload": message.payload,
            "delay_seconds": 1,
            "previous_delay_ms": 1000,
        }]
        stored = await job.repository.get(message.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.error_code == "30008"
        assert recorder.of(MessageRetryScheduled)[0].delay_seconds == 1

    @pytest.mark.unit
    async def test_backoff_grows_per_attempt(self, job, message_factory, sms_sender, fake_queue):
        message = await message_factory(status=MessageStatus.FAILED, attempts=1)
        sms_sender.script = [ProviderSendResult.failed("30008", "Unknown error")]

        result = await job.run(message.id, message.payload)

        assert result.attempt == 2
        assert result.delay_seconds == 2
        assert fake_queue.jobs[0]["previous_delay_ms"] == 2000

    @pytest.mark.unit
    async def test_fail_then_succeed(self, job, message_factory, sms_sender, fake_queue, db_session):
        message = await message_factory()
        sms_sender.script = [
            ProviderSendResult.failed("30008", "Unknown error"),
            ProviderSendResult.sent("SM200"),
        ]

        await job.run(message.id, message.payload)
        retry = fake_queue.pop()
        result = await job.run(retry["message_id"], retry["payload"], retry["previous_delay_ms"])

        assert result.outcome == SendOutcome.COMPLETED
        stored = await job.repository.get(message.id)
        assert stored.status == MessageStatus.SENT
        assert stored.attempts == 2
        assert stored.error_code is None
        assert await _dead_letters(db_session) == []

    @pytest.mark.unit
    async def test_undeliverable_is_not_retried(self, job, message_factory, sms_sender, fake_queue, db_session):
        message = await message_factory()
        sms_sender.script = [ProviderSendResult.undeliverable("21211", "Invalid 'To' Phone Number")]

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.UNDELIVERABLE
        assert fake_queue.jobs == []
        assert await _dead_letters(db_session) == []
        stored = await job.repository.get(message.id)
        assert stored.status == MessageStatus.UNDELIVERABLE
        assert stored.error_code == "21211"


class TestDeadLettering:

    @pytest.mark.unit
    async def test_last_attempt_failure_dead_letters(
        self, job, message_factory, sms_sender, fake_queue, db_session, recorder
    ):
        message = await message_factory(status=MessageStatus.FAILED, attempts=2)
        sms_sender.script = [ProviderSendResult.failed("30008", "Unknown error")]

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.DEAD_LETTERED
        assert result.attempt == 3
        assert fake_queue.jobs == []
        entries = await _dead_letters(db_session)
        assert len(entries) == 1
        assert entries[0].message_id == message.id
        assert entries[0].attempts == 3
        assert entries[0].error_code == "30008"
        assert entries[0].payload == message.payload
        assert recorder.of(MessageDeadLettered)[0].attempts == 3

    @pytest.mark.unit
    async def test_single_attempt_channel(self, job, message_factory, email_sender, db_session, test_config):
        message = await message_factory(email_plan())
        email_sender.script = [ProviderSendResult.failed("", "")]

        with patch.object(test_config, "EMAIL_MAX_ATTEMPTS", 1):
            result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.DEAD_LETTERED
        entries = await _dead_letters(db_session)
        assert entries[0].attempts == 1
        assert entries[0].error_code == "FAILED"
        assert entries[0].error_message == "Provider failure"

    @pytest.mark.unit
    async def test_dead_letter_store_disabled(self, job, message_factory, sms_sender, db_session, test_config):
        message = await message_factory(status=MessageStatus.FAILED, attempts=2)
        sms_sender.script = [ProviderSendResult.failed("30008", "Unknown error")]

        with patch.object(test_config, "DEAD_LETTER_ENABLED", False):
            result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.DEAD_LETTERED
        assert await _dead_letters(db_session) == []
        assert (await job.repository.get(message.id)).status == MessageStatus.FAILED

    @pytest.mark.unit
    async def test_sender_exception_dead_letters_immediately(
        self, job, message_factory, sms_sender, fake_queue, db_session, breakers
    ):
        message = await message_factory()
        sms_sender.script = [RuntimeError("connection reset")]

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.DEAD_LETTERED
        assert fake_queue.jobs == []
        entries = await _dead_letters(db_session)
        assert entries[0].error_code == ERROR_JOB_EXCEPTION
        assert entries[0].error_message == "connection reset"
        assert "RuntimeError: connection reset" in entries[0].last_exception
        stored = await job.repository.get(message.id)
        assert stored.status == MessageStatus.FAILED
        assert stored.error_code == ERROR_JOB_EXCEPTION
        assert (await breakers.get("twilio_sms").snapshot()).failure_count == 1

    @pytest.mark.unit
    async def test_corrupt_payload_dead_letters(self, job, message_factory, db_session):
        message = await message_factory()

        result = await job.run(message.id, {"channel": "sms", "to": ""})

        assert result.outcome == SendOutcome.DEAD_LETTERED
        entries = await _dead_letters(db_session)
        assert entries[0].channel == "sms"
        assert entries[0].error_code == ERROR_JOB_EXCEPTION

    @pytest.mark.unit
    async def test_crash_after_final_status_not_dead_lettered(self, job, message_factory, db_session):
        message = await message_factory(status=MessageStatus.SENT, attempts=1)

        with patch.object(job.repository, "begin_attempt", side_effect=RuntimeError("db gone")):
            result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.SKIPPED
        assert await _dead_letters(db_session) == []


class TestSenderGating:

    @pytest.mark.unit
    async def test_no_sender_for_channel(self, db_session, fake_queue, breakers, test_config, message_factory):
        job = SendJob(db_session, fake_queue, SenderRegistry(), breakers, config=test_config, rng=LowRandom())
        message = await message_factory()

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.RETRY_SCHEDULED
        assert (await job.repository.get(message.id)).error_code == ERROR_NO_SENDER

    @pytest.mark.unit
    async def test_open_circuit_short_circuits(self, job, message_factory, sms_sender, breakers, fake_queue):
        breaker = breakers.get("twilio_sms")
        for _ in range(3):
            await breaker.record_failure("down")
        message = await message_factory()

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.RETRY_SCHEDULED
        assert sms_sender.calls == []
        assert (await job.repository.get(message.id)).error_code == ERROR_CIRCUIT_OPEN
        # A short-circuited send is not reported back to the breaker
        assert (await breaker.snapshot()).failure_count == 3

    @pytest.mark.unit
    async def test_failures_open_circuit(self, job, message_factory, sms_sender, breakers):
        sms_sender.script = [ProviderSendResult.failed("30008", "Unknown error")] * 3
        for _ in range(3):
            message = await message_factory()
            await job.run(message.id, message.payload)

        assert breakers.get("twilio_sms").state == CircuitState.OPEN
        assert breakers.get("sendgrid_email").state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_half_open_trial_success_closes(self, job, message_factory, sms_sender, breakers, fake_clock):
        breaker = breakers.get("twilio_sms")
        for _ in range(3):
            await breaker.record_failure("down")
        fake_clock.advance(30.0)
        message = await message_factory()

        result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.COMPLETED
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.unit
    async def test_cancelled_trial_gives_slot_back(self, job, message_factory, sms_sender, breakers, fake_clock):
        breaker = breakers.get("twilio_sms")
        for _ in range(3):
            await breaker.record_failure("down")
        fake_clock.advance(30.0)
        sms_sender.script = [asyncio.CancelledError()]
        message = await message_factory()

        with pytest.raises(asyncio.CancelledError):
            await job.run(message.id, message.payload)

        assert breaker.is_half_open
        assert (await breaker.snapshot()).failure_count == 3
        assert await breaker.can_execute()

    @pytest.mark.unit
    async def test_undeliverable_counts_as_provider_success(self, job, message_factory, sms_sender, breakers):
        breaker = breakers.get("twilio_sms")
        await breaker.record_failure("blip")
        message = await message_factory()
        sms_sender.script = [ProviderSendResult.undeliverable("21211", "Invalid number")]

        await job.run(message.id, message.payload)

        assert (await breaker.snapshot()).failure_count == 0

    @pytest.mark.unit
    async def test_timeout_is_a_transient_failure(self, job, message_factory, sms_sender, breakers, test_config):
        async def _hang(plan):
            await asyncio.sleep(5)
            return ProviderSendResult.sent("late")

        sms_sender.script = [_hang]
        message = await message_factory()

        with patch.object(test_config, "SEND_TIMEOUT_SECONDS", 0.01):
            result = await job.run(message.id, message.payload)

        assert result.outcome == SendOutcome.RETRY_SCHEDULED
        assert (await job.repository.get(message.id)).error_code == ERROR_SEND_TIMEOUT
        assert (await breakers.get("twilio_sms").snapshot()).failure_count == 1
