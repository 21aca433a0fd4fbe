"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, SQLite in memory)
- A recording job queue, scripted senders and a controllable clock
- A FakeRedis behind the shared circuit breaker state
- Test data factories for messages and dead-letter entries
"""
import asyncio
import pytest
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Callable
from unittest.mock import patch

from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401
from app.api.dependencies.services import get_breakers, get_event_bus, get_job_queue
from app.core import circuit_breaker
from app.core.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from app.core.config import Settings, settings
from app.core.ids import new_id
from app.db.database import Base, get_db
from app.db.models.dead_letter_entry import DeadLetterEntry
from app.db.models.outbound_message import MessageStatus, OutboundMessage, utcnow
from app.domain.flight_plan import FlightPlan
from app.domain.job_queue import JobQueue
from app.domain.senders.base import BaseSender, ProviderSendResult
from app.domain.senders.registry import SenderRegistry
from app.domain.services import events as dispatch_events
from app.domain.services.events import EventBus
from app.main import app


# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

TEST_ADMIN_API_KEY = "test-admin-key-0123456789abcdef"


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
async def db_session(async_engine) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with async_session_maker() as session:
        yield session
        await session.rollback()


# ============================================================================
# Fakes
# ============================================================================

class FakeQueue(JobQueue):
    """Records enqueued jobs instead of publishing them"""

    def __init__(self) -> None:
        self.jobs: list[dict[str, Any]] = []

    def enqueue(
        self,
        message_id: str,
        payload: dict[str, Any],
        *,
        delay_seconds: int = 0,
        previous_delay_ms: int | None = None,
    ) -> None:
        self.jobs.append({
            "message_id": message_id,
            "payload": payload,
            "delay_seconds": delay_seconds,
            "previous_delay_ms": previous_delay_ms,
        })

    def pop(self) -> dict[str, Any]:
        return self.jobs.pop(0)

    def ids(self) -> list[str]:
        return [job["message_id"] for job in self.jobs]


class FakeSender(BaseSender):
    """
    Sender that plays back a script.

    Each script item is a ProviderSendResult to return, an exception to raise,
    or a coroutine function called with the plan. When the script runs out the
    sender answers "sent".
    """

    def __init__(self, provider_key: str, script: list[Any] | None = None) -> None:
        self.provider_key = provider_key
        self.script = list(script or [])
        self.calls: list[FlightPlan] = []

    async def send(self, plan: FlightPlan) -> ProviderSendResult:
        self.calls.append(plan)
        if not self.script:
            return ProviderSendResult.sent(f"{self.provider_key}-{len(self.calls)}")
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return await step(plan)
        return step


class FakeClock:
    """Monotonic clock for breakers, advanced by hand"""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeRedis:
    """In-memory stand-in for Redis with the commands the breakers use, plus TTL tracking.

    Every command yields to the event loop once, like a network round trip, so
    coroutines gathered against it interleave between commands.
    """

    def __init__(self) -> None:
        self._store: dict[str, str] = {}
        self._ttls: dict[str, int] = {}
        self.broken = False

    async def _round_trip(self) -> None:
        await asyncio.sleep(0)
        if self.broken:
            raise RedisConnectionError("Error 111 connecting to localhost:6379. Connection refused.")

    async def ping(self) -> bool:
        await self._round_trip()
        return True

    async def get(self, key: str) -> str | None:
        await self._round_trip()
        return self._store.get(key)

    async def mget(self, *keys: str) -> list[str | None]:
        await self._round_trip()
        return [self._store.get(key) for key in keys]

    async def set(self, key: str, value: str, nx: bool = False, ex: int | None = None) -> bool | None:
        """SET with NX (only if missing) and EX (expiry in seconds)"""
        await self._round_trip()
        if nx and key in self._store:
            return None
        self._store[key] = value
        if ex is not None:
            self._ttls[key] = ex
        return True

    async def incr(self, key: str) -> int:
        await self._round_trip()
        new_val = int(self._store.get(key, 0)) + 1
        self._store[key] = str(new_val)
        return new_val

    async def decr(self, key: str) -> int:
        await self._round_trip()
        new_val = int(self._store.get(key, 0)) - 1
        self._store[key] = str(new_val)
        return new_val

    async def expire(self, key: str, ttl: int) -> None:
        await self._round_trip()
        if key in self._store:
            self._ttls[key] = ttl

    async def delete(self, *keys: str) -> None:
        await self._round_trip()
        for key in keys:
            self._store.pop(key, None)
            self._ttls.pop(key, None)

    def ttl(self, key: str) -> int | None:
        return self._ttls.get(key)

    async def aclose(self) -> None:
        self._store.clear()
        self._ttls.clear()


class LowRandom:
    """Random source that always returns the lower bound"""

    def uniform(self, a: float, b: float) -> float:
        return a


class EventRecorder:
    """Collects every dispatch event published on a bus"""

    EVENT_TYPES = (
        dispatch_events.MessageQueued,
        dispatch_events.MessageDuplicateSkipped,
        dispatch_events.MessageCreateConflict,
        dispatch_events.MessageRetryScheduled,
        dispatch_events.MessageSending,
        dispatch_events.MessageFinalized,
        dispatch_events.MessageDeadLettered,
        dispatch_events.WebhookReceived,
    )

    def __init__(self, bus: EventBus) -> None:
        self.events: list[Any] = []
        for event_type in self.EVENT_TYPES:
            bus.subscribe(event_type, self.events.append)

    def of(self, event_type: type) -> list[Any]:
        return [event for event in self.events if isinstance(event, event_type)]


@pytest.fixture
def fake_queue() -> FakeQueue:
    return FakeQueue()


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def recorder(event_bus: EventBus) -> EventRecorder:
    return EventRecorder(event_bus)


@pytest.fixture
def breakers(fake_clock: FakeClock) -> CircuitBreakerRegistry:
    """Breakers that open after 3 failures and allow a trial after 30s"""
    return CircuitBreakerRegistry(
        CircuitBreakerConfig(
            failure_threshold=3,
            success_threshold=1,
            recovery_seconds=30.0,
            half_open_max_calls=1,
        ),
        clock=fake_clock,
    )


@pytest.fixture(autouse=True)
def fake_redis():
    """Replace get_redis with a FakeRedis for every test; the process breaker registry starts fresh"""
    _fake = FakeRedis()

    async def _get_fake_redis():
        return _fake

    with patch("app.core.circuit_breaker.get_redis", _get_fake_redis), \
         patch.object(circuit_breaker, "_registry", None):
        yield _fake


@pytest.fixture
def shared_breakers(fake_redis: FakeRedis, fake_clock: FakeClock) -> Callable[[], CircuitBreakerRegistry]:
    """Builds registries on one FakeRedis, as separate API and worker processes would"""
    async def _factory():
        return fake_redis

    def _build() -> CircuitBreakerRegistry:
        return CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=3,
                success_threshold=1,
                recovery_seconds=30.0,
                half_open_max_calls=1,
            ),
            clock=fake_clock,
            redis_factory=_factory,
        )

    return _build


@pytest.fixture
def sms_sender() -> FakeSender:
    return FakeSender("twilio_sms")


@pytest.fixture
def whatsapp_sender() -> FakeSender:
    return FakeSender("twilio_whatsapp")


@pytest.fixture
def email_sender() -> FakeSender:
    return FakeSender("sendgrid_email")


@pytest.fixture
def senders(sms_sender, whatsapp_sender, email_sender) -> SenderRegistry:
    return SenderRegistry({
        "sms": sms_sender,
        "whatsapp": whatsapp_sender,
        "email": email_sender,
    })


@pytest.fixture
def test_config() -> Settings:
    """Deterministic retry settings: 3 attempts, 1s..8s, exponential"""
    return Settings(
        DEBUG=True,
        SMS_MAX_ATTEMPTS=3,
        SMS_BASE_DELAY_MS=1000,
        SMS_MAX_DELAY_MS=8000,
        WHATSAPP_MAX_ATTEMPTS=3,
        WHATSAPP_BASE_DELAY_MS=1000,
        WHATSAPP_MAX_DELAY_MS=8000,
        EMAIL_MAX_ATTEMPTS=3,
        EMAIL_BASE_DELAY_MS=1000,
        EMAIL_MAX_DELAY_MS=8000,
        RETRY_BACKOFF_STRATEGY="exponential",
        DEAD_LETTER_ENABLED=True,
        SEND_TIMEOUT_SECONDS=1.0,
    )


# ============================================================================
# Settings isolation
# ============================================================================

@pytest.fixture(autouse=True)
def unsigned_webhooks():
    """Start every test with webhook verification and admin access unconfigured"""
    with patch.object(settings, "TWILIO_AUTH_TOKEN", ""), \
         patch.object(settings, "SENDGRID_WEBHOOK_PUBLIC_KEY", ""), \
         patch.object(settings, "SENDGRID_REQUIRE_SIGNED_WEBHOOKS", False), \
         patch.object(settings, "VONAGE_SIGNATURE_SECRET", ""), \
         patch.object(settings, "MAILGUN_SIGNING_KEY", ""), \
         patch.object(settings, "ADMIN_API_KEY", ""):
        yield


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Configure the admin key and return matching request headers"""
    with patch.object(settings, "ADMIN_API_KEY", TEST_ADMIN_API_KEY):
        yield {"X-Admin-API-Key": TEST_ADMIN_API_KEY}


# ============================================================================
# HTTP client
# ============================================================================

@pytest.fixture(scope="function")
async def test_client(db_session: AsyncSession, fake_queue, breakers, event_bus):
    """Create test client with database, queue and breaker overrides"""
    from httpx import AsyncClient, ASGITransport

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_queue] = lambda: fake_queue
    app.dependency_overrides[get_breakers] = lambda: breakers
    app.dependency_overrides[get_event_bus] = lambda: event_bus

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


# ============================================================================
# Test Data Factories
# ============================================================================

def sms_plan(**overrides: Any) -> dict[str, Any]:
    plan = {"channel": "sms", "to": "+15005550006", "text": "Your code is 1234"}
    plan.update(overrides)
    return plan


def email_plan(**overrides: Any) -> dict[str, Any]:
    plan = {
        "channel": "email",
        "to": "alice@example.com",
        "subject": "Welcome",
        "text": "Hello Alice",
    }
    plan.update(overrides)
    return plan


@pytest.fixture
def message_factory(db_session: AsyncSession) -> Callable:
    """Factory for creating message rows directly"""
    async def _create_message(
        plan: dict[str, Any] | None = None,
        *,
        status: MessageStatus = MessageStatus.QUEUED,
        attempts: int = 0,
        provider_message_id: str | None = None,
        error_code: str | None = None,
        id: str | None = None,
        created_at: datetime | None = None,
    ) -> OutboundMessage:
        flight_plan = FlightPlan.from_payload(plan or sms_plan())
        now = created_at or utcnow()
        message = OutboundMessage(
            id=id or new_id(),
            status=status,
            attempts=attempts,
            provider_message_id=provider_message_id,
            error_code=error_code,
            queued_at=now,
            created_at=now,
            updated_at=now,
            **flight_plan.message_fields(),
        )
        db_session.add(message)
        await db_session.commit()
        await db_session.refresh(message)
        return message

    return _create_message


@pytest.fixture
def dead_letter_factory(db_session: AsyncSession) -> Callable:
    """Factory for creating dead-letter entries directly"""
    async def _create_entry(
        message_id: str | None = None,
        *,
        plan: dict[str, Any] | None = None,
        attempts: int = 3,
        error_code: str | None = "FAILED",
        error_message: str | None = "Provider failure",
        created_at: datetime | None = None,
    ) -> DeadLetterEntry:
        flight_plan = FlightPlan.from_payload(plan or sms_plan())
        entry = DeadLetterEntry(
            id=new_id(),
            message_id=message_id or new_id(),
            channel=flight_plan.channel,
            payload=flight_plan.to_payload(),
            attempts=attempts,
            error_code=error_code,
            error_message=error_message,
            created_at=created_at or datetime.now(timezone.utc),
        )
        db_session.add(entry)
        await db_session.commit()
        await db_session.refresh(entry)
        return entry

    return _create_entry
