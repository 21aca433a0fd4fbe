"""
Circuit Breaker Pattern Implementation

Provides per-provider protection for outbound sends to prevent cascade failures.

Two implementations share one interface:
- RedisCircuitBreaker: state in Redis, shared by the API process and every
  worker process. This is what runs in production.
- CircuitBreaker: state in process memory. Only correct when a single process
  sends; used for local runs (CIRCUIT_BREAKER_BACKEND=memory) and in tests.
"""
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis

logger = get_logger(__name__)

Clock = Callable[[], float]
RedisFactory = Callable[[], Awaitable[aioredis.Redis]]

# Provider keys known up front so observability lists them before first use
KNOWN_PROVIDER_KEYS = (
    "twilio_sms",
    "twilio_whatsapp",
    "sendgrid_email",
    "vonage_sms",
    "mailgun_email",
)


class CircuitState(Enum):
    """Circuit breaker states"""
    CLOSED = "closed"      # Normal operation, requests pass through
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker"""
    failure_threshold: int = 5          # Failures before opening
    success_threshold: int = 2          # Successes in half-open to close
    recovery_seconds: float = 60.0      # Time before trying half-open
    half_open_max_calls: int = 1        # Trials allowed in flight at once
    trial_lease_seconds: int = 120      # Redis: a trial slot frees itself after this
    state_ttl_seconds: int = 86400      # Redis: idle counters expire after this


@dataclass
class CircuitBreakerState:
    """State tracking for circuit breaker"""
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    trial_count: int = 0
    trials_in_flight: int = 0
    last_failure_time: float | None = None


@dataclass(frozen=True)
class CircuitSnapshot:
    """Point-in-time read of one breaker"""
    service: str
    state: str
    failure_count: int
    success_count: int
    trial_count: int
    last_failure_at: datetime | None
    seconds_until_retry: float

    def to_dict(self) -> dict:
        return {
            "service": self.service,
            "state": self.state,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "trial_count": self.trial_count,
            "last_failure_at": (
                self.last_failure_at.isoformat() if self.last_failure_at else None
            ),
            "seconds_until_retry": self.seconds_until_retry,
        }


def _as_datetime(timestamp: float | None) -> datetime | None:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc) if timestamp is not None else None


def _log_transition(service_name: str, old_state: CircuitState, new_state: CircuitState) -> None:
    logger.info(
        f"Circuit breaker '{service_name}' transitioned",
        extra_data={
            "service": service_name,
            "old_state": old_state.value,
            "new_state": new_state.value
        }
    )


class CircuitBreaker:
    """
    In-process circuit breaker for one provider key.

    States:
    - CLOSED: Normal operation, tracking consecutive failures
    - OPEN: Provider is failing, block all requests until the recovery interval passes
    - HALF_OPEN: Let a single trial through at a time; enough successes close it,
      any failure reopens it
    """

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.time,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitBreakerState()
        # threading.Lock: the same breaker is touched from different event loops in workers
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        """Get current circuit state"""
        return self._state.state

    @property
    def is_closed(self) -> bool:
        return self._state.state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state.state == CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state.state == CircuitState.HALF_OPEN

    def _should_attempt_reset(self) -> bool:
        """Check if enough time passed to try half-open"""
        if self._state.state != CircuitState.OPEN:
            return False
        if self._state.last_failure_time is None:
            return True

        time_since_failure = self._clock() - self._state.last_failure_time
        return time_since_failure >= self.config.recovery_seconds

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to a new state. Caller holds the lock."""
        old_state = self._state.state
        self._state.state = new_state

        if new_state == CircuitState.HALF_OPEN:
            self._state.success_count = 0
            self._state.trial_count = 0
            self._state.trials_in_flight = 0

        if new_state == CircuitState.CLOSED:
            self._state.failure_count = 0
            self._state.success_count = 0
            self._state.trial_count = 0
            self._state.trials_in_flight = 0

        _log_transition(self.service_name, old_state, new_state)

    def _retry_after(self) -> float:
        if self._state.state != CircuitState.OPEN or self._state.last_failure_time is None:
            return 0.0

        time_since_failure = self._clock() - self._state.last_failure_time
        return max(0.0, self.config.recovery_seconds - time_since_failure)

    async def can_execute(self) -> bool:
        """Check if a request can be executed, claiming a trial slot when half-open"""
        with self._lock:
            if self._state.state == CircuitState.CLOSED:
                return True

            if self._state.state == CircuitState.OPEN:
                if not self._should_attempt_reset():
                    return False
                self._transition_to(CircuitState.HALF_OPEN)

            if self._state.trials_in_flight < self.config.half_open_max_calls:
                self._state.trials_in_flight += 1
                self._state.trial_count += 1
                return True
            return False

    async def record_success(self) -> None:
        """Record a successful call"""
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.trials_in_flight = max(0, self._state.trials_in_flight - 1)
                self._state.success_count += 1
                if self._state.success_count >= self.config.success_threshold:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state.state == CircuitState.CLOSED:
                self._state.failure_count = 0

    async def record_failure(self, error: str | None = None) -> None:
        """Record a failed call"""
        with self._lock:
            self._state.failure_count += 1
            self._state.last_failure_time = self._clock()

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": self._state.failure_count,
                    "threshold": self.config.failure_threshold,
                    "error": error,
                }
            )

            if self._state.state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
                self._state.trials_in_flight = 0
            elif (
                self._state.state == CircuitState.CLOSED
                and self._state.failure_count >= self.config.failure_threshold
            ):
                self._transition_to(CircuitState.OPEN)

    async def release_trial(self) -> None:
        """Give back a trial slot whose call ended without an outcome (cancelled)"""
        with self._lock:
            if self._state.state == CircuitState.HALF_OPEN:
                self._state.trials_in_flight = max(0, self._state.trials_in_flight - 1)

    async def get_retry_after(self) -> float:
        """Get seconds until the breaker lets a trial through"""
        with self._lock:
            return self._retry_after()

    async def snapshot(self) -> CircuitSnapshot:
        """Consistent read of state and counters"""
        with self._lock:
            return CircuitSnapshot(
                service=self.service_name,
                state=self._state.state.value,
                failure_count=self._state.failure_count,
                success_count=self._state.success_count,
                trial_count=self._state.trial_count,
                last_failure_at=_as_datetime(self._state.last_failure_time),
                seconds_until_retry=round(self._retry_after(), 3),
            )

    async def reset(self) -> None:
        """Force the breaker back to a fresh closed state"""
        with self._lock:
            self._state = CircuitBreakerState()


class RedisCircuitBreaker:
    """
    Circuit breaker for one provider key with its state in Redis.

    Keys under ``circuit:<service>:``:
    - failures: consecutive failures (INCR)
    - opened_at: when the circuit last opened; present while open or half-open
    - successes: trial successes since it opened
    - trials: trials in flight, leased for trial_lease_seconds
    - trial_count: trials admitted since it opened
    - last_failure: time of the most recent failure

    Open vs half-open is derived from opened_at and the clock, so the move to
    half-open needs no write. Trial slots are claimed with INCR and handed back
    with DECR, so workers racing for the last slot cannot both get it.

    A Redis error lets the call through and skips the bookkeeping: losing the
    breaker must not stop sends.
    """

    KEY_PREFIX = "circuit"

    def __init__(
        self,
        service_name: str,
        config: CircuitBreakerConfig | None = None,
        redis_factory: RedisFactory = get_redis,
        clock: Clock = time.time,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self._redis = redis_factory
        self._clock = clock

    def _key(self, name: str) -> str:
        return f"{self.KEY_PREFIX}:{self.service_name}:{name}"

    def _state_of(self, opened_at: str | None) -> CircuitState:
        if opened_at is None:
            return CircuitState.CLOSED
        if self._clock() - float(opened_at) >= self.config.recovery_seconds:
            return CircuitState.HALF_OPEN
        return CircuitState.OPEN

    def _redis_failed(self, operation: str, error: RedisError) -> None:
        logger.error(
            f"Circuit breaker '{self.service_name}' state unavailable",
            extra_data={"service": self.service_name, "operation": operation, "error": str(error)},
            exc_info=True,
        )

    async def _incr(self, redis: aioredis.Redis, name: str, ttl: int) -> int:
        key = self._key(name)
        value = await redis.incr(key)
        await redis.expire(key, ttl)
        return value

    async def _release(self, redis: aioredis.Redis) -> None:
        key = self._key("trials")
        # Below zero when the lease already expired
        if await redis.decr(key) < 0:
            await redis.delete(key)

    async def _open(self, redis: aioredis.Redis, now: float, old_state: CircuitState) -> None:
        await redis.set(self._key("opened_at"), repr(now), ex=self.config.state_ttl_seconds)
        await redis.delete(self._key("successes"), self._key("trials"), self._key("trial_count"))
        if old_state != CircuitState.OPEN:
            _log_transition(self.service_name, old_state, CircuitState.OPEN)

    async def can_execute(self) -> bool:
        """Check if a request can be executed, claiming a trial slot when half-open"""
        try:
            redis = await self._redis()
            state = self._state_of(await redis.get(self._key("opened_at")))
            if state == CircuitState.CLOSED:
                return True
            if state == CircuitState.OPEN:
                return False

            trials_key = self._key("trials")
            in_flight = await redis.incr(trials_key)
            if in_flight == 1:
                # Lease set by the first claim only, refused claims must not extend it
                await redis.expire(trials_key, self.config.trial_lease_seconds)
            if in_flight > self.config.half_open_max_calls:
                await self._release(redis)
                return False
            admitted = await self._incr(redis, "trial_count", self.config.state_ttl_seconds)
        except RedisError as e:
            self._redis_failed("can_execute", e)
            return True

        if admitted == 1:
            _log_transition(self.service_name, CircuitState.OPEN, CircuitState.HALF_OPEN)
        return True

    async def record_success(self) -> None:
        """Record a successful call"""
        try:
            redis = await self._redis()
            state = self._state_of(await redis.get(self._key("opened_at")))
            if state == CircuitState.CLOSED:
                await redis.delete(self._key("failures"))
                return
            if state == CircuitState.OPEN:
                return

            await self._release(redis)
            successes = await self._incr(redis, "successes", self.config.state_ttl_seconds)
            if successes < self.config.success_threshold:
                return
            await redis.delete(
                self._key("opened_at"),
                self._key("failures"),
                self._key("successes"),
                self._key("trials"),
                self._key("trial_count"),
            )
        except RedisError as e:
            self._redis_failed("record_success", e)
            return

        _log_transition(self.service_name, CircuitState.HALF_OPEN, CircuitState.CLOSED)

    async def record_failure(self, error: str | None = None) -> None:
        """Record a failed call"""
        now = self._clock()
        try:
            redis = await self._redis()
            failures = await self._incr(redis, "failures", self.config.state_ttl_seconds)
            await redis.set(self._key("last_failure"), repr(now), ex=self.config.state_ttl_seconds)

            logger.warning(
                f"Circuit breaker '{self.service_name}' recorded failure",
                extra_data={
                    "service": self.service_name,
                    "failure_count": failures,
                    "threshold": self.config.failure_threshold,
                    "error": error,
                }
            )

            state = self._state_of(await redis.get(self._key("opened_at")))
            # A failure while open restarts the recovery interval
            if state != CircuitState.CLOSED or failures >= self.config.failure_threshold:
                await self._open(redis, now, state)
        except RedisError as e:
            self._redis_failed("record_failure", e)

    async def release_trial(self) -> None:
        """Give back a trial slot whose call ended without an outcome (cancelled)"""
        try:
            redis = await self._redis()
            if self._state_of(await redis.get(self._key("opened_at"))) == CircuitState.HALF_OPEN:
                await self._release(redis)
        except RedisError as e:
            self._redis_failed("release_trial", e)

    async def get_retry_after(self) -> float:
        """Get seconds until the breaker lets a trial through"""
        try:
            return (await self.snapshot()).seconds_until_retry
        except RedisError as e:
            self._redis_failed("get_retry_after", e)
            return 0.0

    async def snapshot(self) -> CircuitSnapshot:
        """Read state and counters; Redis errors propagate to the caller"""
        redis = await self._redis()
        failures, successes, trial_count, last_failure, opened_at = await redis.mget(
            self._key("failures"),
            self._key("successes"),
            self._key("trial_count"),
            self._key("last_failure"),
            self._key("opened_at"),
        )
        state = self._state_of(opened_at)
        retry_after = 0.0
        if state == CircuitState.OPEN:
            retry_after = max(0.0, self.config.recovery_seconds - (self._clock() - float(opened_at)))
        return CircuitSnapshot(
            service=self.service_name,
            state=state.value,
            failure_count=int(failures or 0),
            success_count=int(successes or 0),
            trial_count=int(trial_count or 0),
            last_failure_at=_as_datetime(float(last_failure) if last_failure else None),
            seconds_until_retry=round(retry_after, 3),
        )

    async def reset(self) -> None:
        """Force the breaker back to a fresh closed state"""
        redis = await self._redis()
        await redis.delete(*(
            self._key(name)
            for name in ("failures", "opened_at", "successes", "trials", "trial_count", "last_failure")
        ))


Breaker = CircuitBreaker | RedisCircuitBreaker


class CircuitBreakerRegistry:
    """
    Breakers keyed by provider, created on first use.

    With a redis_factory the breakers keep their state in Redis and every
    registry built on the same Redis sees the same circuits. Without one,
    state lives in this registry.
    """

    def __init__(
        self,
        config: CircuitBreakerConfig | None = None,
        clock: Clock = time.time,
        preload: tuple[str, ...] = KNOWN_PROVIDER_KEYS,
        redis_factory: RedisFactory | None = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._redis_factory = redis_factory
        self._breakers: dict[str, Breaker] = {}
        self._lock = threading.Lock()
        for key in preload:
            self.get(key)

    @classmethod
    def from_settings(cls, settings, clock: Clock = time.time) -> "CircuitBreakerRegistry":
        return cls(
            CircuitBreakerConfig(
                failure_threshold=settings.CIRCUIT_FAILURE_THRESHOLD,
                success_threshold=settings.CIRCUIT_SUCCESS_THRESHOLD,
                recovery_seconds=settings.CIRCUIT_RECOVERY_SECONDS,
                half_open_max_calls=settings.CIRCUIT_HALF_OPEN_MAX_CALLS,
                trial_lease_seconds=settings.CIRCUIT_TRIAL_LEASE_SECONDS,
                state_ttl_seconds=settings.CIRCUIT_STATE_TTL_SECONDS,
            ),
            clock=clock,
            redis_factory=get_redis if settings.CIRCUIT_BREAKER_BACKEND == "redis" else None,
        )

    def _build(self, service_name: str) -> Breaker:
        if self._redis_factory is not None:
            return RedisCircuitBreaker(
                service_name, self.config, redis_factory=self._redis_factory, clock=self._clock
            )
        return CircuitBreaker(service_name, self.config, clock=self._clock)

    def get(self, service_name: str) -> Breaker:
        """Get or create the breaker for a provider key"""
        breaker = self._breakers.get(service_name)
        if breaker is None:
            with self._lock:
                breaker = self._breakers.get(service_name)
                if breaker is None:
                    breaker = self._build(service_name)
                    self._breakers[service_name] = breaker
        return breaker

    def all(self) -> list[Breaker]:
        with self._lock:
            return [self._breakers[k] for k in sorted(self._breakers)]

    async def snapshots(self) -> list[CircuitSnapshot]:
        return [await b.snapshot() for b in self.all()]


_registry: CircuitBreakerRegistry | None = None
_registry_lock = threading.Lock()


def get_breaker_registry() -> CircuitBreakerRegistry:
    """Process-wide registry used by the API and the send_message task"""
    global _registry
    if _registry is None:
        with _registry_lock:
            if _registry is None:
                _registry = CircuitBreakerRegistry.from_settings(settings)
                logger.info(
                    "Circuit breaker registry created",
                    extra_data={"backend": settings.CIRCUIT_BREAKER_BACKEND},
                )
    return _registry
