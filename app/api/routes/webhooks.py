"""
Provider delivery webhooks - Twilio, SendGrid, Vonage, Mailgun.

Signatures are checked by the dependencies in app.api.dependencies.webhook_auth
before anything here runs. Callbacks for unknown messages or untracked events
are acknowledged with 200 so providers do not keep retrying them.
"""
from typing import Any

from fastapi import APIRouter, Depends

from app.api.dependencies.services import get_reconciler
from app.api.dependencies.webhook_auth import (
    verified_mailgun_payload,
    verified_sendgrid_events,
    verified_twilio_params,
    verified_vonage_params,
)
from app.core.logging import get_logger
from app.domain.services.webhook_reconciler import WebhookReconciler

logger = get_logger(__name__)

router = APIRouter()


def _sendgrid_message_id(value: str) -> str:
    """sg_message_id carries a ".filter..." suffix after the id returned at send time"""
    return value.split(".", 1)[0]


@router.post("/twilio/status", summary="Twilio status callback")
async def twilio_status(
    params: dict[str, str] = Depends(verified_twilio_params),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    message_sid = params.get("MessageSid") or params.get("SmsSid") or ""
    event = params.get("MessageStatus") or params.get("SmsStatus") or ""
    meta: dict[str, Any] = {}
    if params.get("ErrorCode"):
        meta["error_code"] = params["ErrorCode"]
    if params.get("ErrorMessage"):
        meta["error_message"] = params["ErrorMessage"]

    if not message_sid or not event:
        logger.warning("Twilio callback without MessageSid or MessageStatus")
        return {"ok": True, "updated": False}

    updated = await reconciler.reconcile("twilio", message_sid, event, meta)
    return {"ok": True, "updated": updated}


@router.post("/sendgrid/events", summary="SendGrid event webhook")
async def sendgrid_events(
    events: list[dict[str, Any]] = Depends(verified_sendgrid_events),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    processed = 0
    updated = 0
    for event in events:
        raw_id = event.get("sg_message_id")
        event_type = event.get("event")
        if not raw_id or not event_type:
            logger.warning(
                "Malformed SendGrid event skipped",
                extra_data={"event": event_type, "has_message_id": bool(raw_id)},
            )
            continue

        meta: dict[str, Any] = {}
        if event.get("reason"):
            meta["error_code"] = event.get("status") or event_type
            meta["error_message"] = event["reason"]

        if await reconciler.reconcile("sendgrid", _sendgrid_message_id(str(raw_id)), str(event_type), meta):
            updated += 1
        processed += 1

    logger.info(
        "SendGrid batch processed",
        extra_data={"received": len(events), "processed": processed, "updated": updated},
    )
    return {"ok": True, "processed": processed, "updated": updated}


@router.post("/vonage/status", summary="Vonage delivery receipt")
async def vonage_status(
    params: dict[str, str] = Depends(verified_vonage_params),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    message_id = params.get("messageId") or ""
    event = params.get("status") or ""
    meta: dict[str, Any] = {}
    err_code = params.get("err-code")
    if err_code and err_code != "0":
        meta["error_code"] = f"VONAGE_{err_code}"

    if not message_id or not event:
        logger.warning("Vonage receipt without messageId or status")
        return {"ok": True, "updated": False}

    updated = await reconciler.reconcile("vonage", message_id, event, meta)
    return {"ok": True, "updated": updated}


@router.post("/mailgun/events", summary="Mailgun event webhook")
async def mailgun_events(
    payload: dict[str, Any] = Depends(verified_mailgun_payload),
    reconciler: WebhookReconciler = Depends(get_reconciler),
) -> dict[str, Any]:
    event_data = payload.get("event-data")
    if not isinstance(event_data, dict):
        logger.warning("Mailgun payload without event-data")
        return {"ok": True, "updated": False}
    event = event_data.get("event") or ""
    headers = (event_data.get("message") or {}).get("headers") or {}
    message_id = str(headers.get("message-id") or "").strip("<>")

    meta: dict[str, Any] = {}
    delivery_status = event_data.get("delivery-status") or {}
    if delivery_status.get("code"):
        meta["error_code"] = f"MAILGUN_{delivery_status['code']}"
    if delivery_status.get("message") or event_data.get("reason"):
        meta["error_message"] = delivery_status.get("message") or event_data.get("reason")

    if not message_id or not event:
        logger.warning("Mailgun event without message-id or event")
        return {"ok": True, "updated": False}

    updated = await reconciler.reconcile("mailgun", message_id, event, meta)
    return {"ok": True, "updated": updated}
