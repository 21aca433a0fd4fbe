"""
Retry backoff strategies.

Both strategies work in milliseconds and always return a delay inside
``[base_delay_ms, max_delay_ms]``, even for absurd attempt indices.
"""
import math
import random
from typing import Callable, Protocol


class RandomSource(Protocol):
    def uniform(self, a: float, b: float) -> float: ...


_default_rng: RandomSource = random.SystemRandom()


def capped_exponential(attempt: int, *, base_delay_ms: int, max_delay_ms: int) -> int:
    """
    ``base_delay_ms * 2**attempt`` capped at ``max_delay_ms``.

    Avoids computing huge powers when ``attempt`` is unexpectedly large.
    """
    if attempt < 0:
        attempt = 0

    if base_delay_ms >= max_delay_ms:
        return max_delay_ms

    # Smallest n with base * 2**n >= max, found without evaluating 2**attempt.
    required_multiplier = (max_delay_ms + base_delay_ms - 1) // base_delay_ms
    is_power_of_two = (required_multiplier & (required_multiplier - 1)) == 0
    threshold = required_multiplier.bit_length() - 1
    if not is_power_of_two:
        threshold += 1

    if attempt >= threshold:
        return max_delay_ms

    return min(base_delay_ms * (1 << attempt), max_delay_ms)


def exponential_with_jitter(
    attempt: int,
    base_delay_ms: int,
    max_delay_ms: int,
    rng: RandomSource | None = None,
) -> int:
    """
    Exponential backoff with multiplicative jitter.

    delay = min(max, min(max, base * 2**attempt) * U(1.0, 1.5))

    Args:
        attempt: Zero-based attempt index
        base_delay_ms: Lower bound of every delay
        max_delay_ms: Upper bound of every delay
        rng: Random source (``uniform``), injectable for tests

    Returns:
        Delay in milliseconds
    """
    rng = rng or _default_rng
    envelope = capped_exponential(
        attempt, base_delay_ms=base_delay_ms, max_delay_ms=max_delay_ms
    )
    jittered = envelope * rng.uniform(1.0, 1.5)
    return max(base_delay_ms, min(max_delay_ms, int(jittered)))


def decorrelated_jitter(
    previous_delay_ms: int | None,
    base_delay_ms: int,
    max_delay_ms: int,
    rng: RandomSource | None = None,
) -> int:
    """
    Decorrelated jitter: each delay is drawn from ``[base, previous * 3]``.

    The first call (no previous delay) is seeded with ``base_delay_ms``.
    """
    rng = rng or _default_rng
    previous = base_delay_ms if previous_delay_ms is None else previous_delay_ms
    upper = max(base_delay_ms, min(previous, max_delay_ms) * 3)
    drawn = rng.uniform(base_delay_ms, upper)
    return max(base_delay_ms, min(max_delay_ms, int(drawn)))


def delay_ms_to_seconds(delay_ms: int) -> int:
    """Queue countdown for a delay; at least one second."""
    return max(1, math.ceil(delay_ms / 1000))


BackoffFn = Callable[[int, int | None], int]


def make_backoff(
    strategy: str,
    base_delay_ms: int,
    max_delay_ms: int,
    rng: RandomSource | None = None,
) -> BackoffFn:
    """
    Build ``fn(attempt_index, previous_delay_ms) -> delay_ms`` for a strategy name.

    ``exponential`` ignores the previous delay, ``decorrelated`` ignores the index.
    """
    if strategy == "exponential":
        return lambda attempt, _previous: exponential_with_jitter(
            attempt, base_delay_ms, max_delay_ms, rng
        )
    if strategy == "decorrelated":
        return lambda _attempt, previous: decorrelated_jitter(
            previous, base_delay_ms, max_delay_ms, rng
        )
    raise ValueError(f"Unknown backoff strategy: {strategy}")
