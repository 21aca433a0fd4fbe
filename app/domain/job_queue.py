"""
Job queue capability used by admission, retries and dead-letter replay.

Jobs are delivered at least once; a delay schedules the job instead of
sleeping inside a worker.
"""
from abc import ABC, abstractmethod
from typing import Any


class JobQueue(ABC):
    """Durable, delayed work queue for send jobs"""

    @abstractmethod
    def enqueue(
        self,
        message_id: str,
        payload: dict[str, Any],
        *,
        delay_seconds: int = 0,
        previous_delay_ms: int | None = None,
    ) -> None:
        """
        Schedule a send job.

        Args:
            message_id: Message to send
            payload: Serialized FlightPlan
            delay_seconds: Countdown before the job becomes runnable
            previous_delay_ms: Last backoff delay, seeds decorrelated jitter
        """
