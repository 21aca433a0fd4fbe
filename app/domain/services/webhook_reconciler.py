"""
Webhook Reconciler - applies provider delivery callbacks to message rows.

Each provider speaks its own event vocabulary; the maps below translate it to
message statuses. Updates go through the repository's row-locked path, which
drops transitions that would move a message backwards.
"""
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging import get_logger
from app.db.models.outbound_message import MessageStatus
from app.domain.repositories.message_repository import MessageRepository
from app.domain.services.events import EventBus, WebhookReceived

logger = get_logger(__name__)

PROVIDER_STATUS_MAPS: dict[str, dict[str, MessageStatus]] = {
    "twilio": {
        "queued": MessageStatus.QUEUED,
        "accepted": MessageStatus.QUEUED,
        "sending": MessageStatus.SENDING,
        "sent": MessageStatus.SENT,
        "delivered": MessageStatus.DELIVERED,
        "read": MessageStatus.DELIVERED,
        "failed": MessageStatus.FAILED,
        "undelivered": MessageStatus.FAILED,
    },
    "sendgrid": {
        "processed": MessageStatus.SENDING,
        "deferred": MessageStatus.SENDING,
        "delivered": MessageStatus.DELIVERED,
        "bounce": MessageStatus.FAILED,
        "dropped": MessageStatus.FAILED,
        "spamreport": MessageStatus.UNDELIVERABLE,
        "blocked": MessageStatus.UNDELIVERABLE,
        "unsubscribe": MessageStatus.UNDELIVERABLE,
        "group_unsubscribe": MessageStatus.UNDELIVERABLE,
    },
    "vonage": {
        "accepted": MessageStatus.SENDING,
        "buffered": MessageStatus.SENDING,
        "delivered": MessageStatus.DELIVERED,
        "expired": MessageStatus.FAILED,
        "failed": MessageStatus.FAILED,
        "rejected": MessageStatus.FAILED,
        "unknown": MessageStatus.UNDELIVERABLE,
    },
    "mailgun": {
        "accepted": MessageStatus.QUEUED,
        "delivered": MessageStatus.DELIVERED,
        "failed": MessageStatus.FAILED,
        "rejected": MessageStatus.FAILED,
        "complained": MessageStatus.UNDELIVERABLE,
        "unsubscribed": MessageStatus.UNDELIVERABLE,
    },
}

_FAILURE_STATUSES = frozenset({MessageStatus.FAILED, MessageStatus.UNDELIVERABLE})


def map_provider_event(provider: str, event: str) -> MessageStatus | None:
    """Message status for a provider event, None when the event is not tracked"""
    return PROVIDER_STATUS_MAPS.get(provider, {}).get((event or "").strip().lower())


class WebhookReconciler:
    """Folds provider delivery events into message status"""

    def __init__(self, db: AsyncSession, events: EventBus | None = None):
        self.repository = MessageRepository(db)
        self.events = events or EventBus()

    async def reconcile(
        self,
        provider: str,
        external_message_id: str,
        event: str,
        meta: dict[str, Any] | None = None,
    ) -> bool:
        """
        Apply one provider event.

        Returns:
            True when the message row changed
        """
        meta = meta or {}
        provider = provider.strip().lower()
        event = (event or "").strip().lower()

        if provider not in PROVIDER_STATUS_MAPS:
            logger.warning("Webhook from unknown provider ignored", extra_data={"provider": provider})
            return False

        message = None
        if external_message_id:
            message = await self.repository.find_for_webhook(external_message_id)

        self.events.publish(WebhookReceived(
            provider=provider,
            event_type=event,
            message_id=message.id if message else None,
            payload=dict(meta),
        ))

        status = map_provider_event(provider, event)
        if status is None:
            logger.info(
                "Webhook event not tracked",
                extra_data={"provider": provider, "event": event},
            )
            return False

        if message is None:
            logger.info(
                "Webhook for unknown message ignored",
                extra_data={
                    "provider": provider,
                    "event": event,
                    "external_message_id": external_message_id,
                },
            )
            return False

        error_code = None
        error_message = None
        if status in _FAILURE_STATUSES:
            error_code = str(meta.get("error_code") or f"{provider.upper()}_{event.upper()}")
            if meta.get("error_message"):
                error_message = str(meta["error_message"])

        changed = await self.repository.update_status(
            message.id,
            status,
            error_code=error_code,
            error_message=error_message,
        )
        logger.info(
            "Webhook reconciled",
            extra_data={
                "provider": provider,
                "event": event,
                "message_id": message.id,
                "status": status.value,
                "changed": changed,
            },
        )
        return changed
