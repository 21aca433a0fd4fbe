"""
Sender interface - Dependency Inversion for provider adapters.

Each provider adapter (Twilio SMS, Twilio WhatsApp, SendGrid, Vonage, Mailgun, ...)
implements BaseSender. The send job depends only on this interface.
"""
from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, TYPE_CHECKING

if TYPE_CHECKING:
    from app.domain.flight_plan import FlightPlan


class SendStatus(str, enum.Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    UNDELIVERABLE = "undeliverable"


@dataclass(frozen=True)
class ProviderSendResult:
    """Outcome of one provider call, classified into exactly one status"""
    status: SendStatus
    provider_message_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def sent(cls, provider_message_id: str | None, raw: dict[str, Any] | None = None) -> ProviderSendResult:
        return cls(SendStatus.SENT, provider_message_id=provider_message_id, raw=raw or {})

    @classmethod
    def delivered(cls, provider_message_id: str | None, raw: dict[str, Any] | None = None) -> ProviderSendResult:
        return cls(SendStatus.DELIVERED, provider_message_id=provider_message_id, raw=raw or {})

    @classmethod
    def failed(
        cls,
        error_code: str,
        error_message: str,
        raw: dict[str, Any] | None = None,
    ) -> ProviderSendResult:
        """Transient failure: retried with backoff"""
        return cls(SendStatus.FAILED, error_code=error_code, error_message=error_message, raw=raw or {})

    @classmethod
    def undeliverable(
        cls,
        error_code: str,
        error_message: str,
        raw: dict[str, Any] | None = None,
    ) -> ProviderSendResult:
        """Permanent rejection (bad recipient or content): never retried"""
        return cls(
            SendStatus.UNDELIVERABLE, error_code=error_code, error_message=error_message, raw=raw or {}
        )

    @property
    def is_success(self) -> bool:
        return self.status in (SendStatus.SENT, SendStatus.DELIVERED)


class BaseSender(ABC):
    """
    Uniform send capability for one channel.

    Implementations own the HTTP/SDK call and classify the provider's answer
    into a ProviderSendResult. They should not raise for provider errors;
    an exception escaping send() is treated as an unrecoverable job failure.
    """

    #: Circuit breaker key, e.g. "twilio_sms"
    provider_key: str = ""

    @abstractmethod
    async def send(self, plan: FlightPlan) -> ProviderSendResult:
        """
        Send one message.

        Args:
            plan: The validated flight plan

        Returns:
            ProviderSendResult with status sent, delivered, failed or undeliverable
        """
