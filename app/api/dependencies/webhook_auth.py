"""
Signature verification for provider delivery webhooks.

Each provider signs its callbacks differently:
- Twilio: HMAC-SHA1 over the full URL followed by the sorted POST params, base64
- SendGrid: ECDSA P-256 / SHA-256 over timestamp + raw body, base64 DER signature
- Vonage: SHA-256 hex of "&k=v&k=v..." (sorted, without sig) + signature secret
- Mailgun: HMAC-SHA256 hex of timestamp + token with the webhook signing key

The FastAPI dependencies below verify a request and hand the parsed params to
the route. A provider whose secret is not configured is not verified (a warning
is logged at startup), except SendGrid when signed webhooks are required.

Usage:
    @router.post("/twilio/status")
    async def twilio_status(
        params: dict[str, str] = Depends(verified_twilio_params),
    ):
        ...
"""
import base64
import hashlib
import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi import Header, Request

from app.core.config import settings
from app.core.exceptions import AppException, ErrorCode, WebhookSignatureError
from app.core.logging import get_logger

logger = get_logger(__name__)

SENDGRID_SIGNATURE_HEADER = "X-Twilio-Email-Event-Webhook-Signature"
SENDGRID_TIMESTAMP_HEADER = "X-Twilio-Email-Event-Webhook-Timestamp"


# ─── Signature primitives ───────────────────────────────────────────────────

def compute_twilio_signature(auth_token: str, url: str, params: dict[str, str]) -> str:
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("ascii")


def verify_twilio_signature(
    auth_token: str,
    url: str,
    params: dict[str, str],
    signature: str | None,
) -> bool:
    if not signature:
        return False
    expected = compute_twilio_signature(auth_token, url, params)
    return hmac.compare_digest(expected, signature)


def load_sendgrid_public_key(key: str) -> ec.EllipticCurvePublicKey:
    """SendGrid shows the key as base64 DER; a PEM block is accepted too"""
    key = key.strip()
    if key.startswith("-----BEGIN"):
        public_key = serialization.load_pem_public_key(key.encode("utf-8"))
    else:
        public_key = serialization.load_der_public_key(base64.b64decode(key))
    if not isinstance(public_key, ec.EllipticCurvePublicKey):
        raise ValueError("SendGrid webhook key must be an EC public key")
    return public_key


def verify_sendgrid_signature(
    public_key: str,
    payload: bytes,
    signature: str | None,
    timestamp: str | None,
) -> bool:
    if not signature or not timestamp:
        return False
    try:
        key = load_sendgrid_public_key(public_key)
        key.verify(
            base64.b64decode(signature),
            timestamp.encode("utf-8") + payload,
            ec.ECDSA(hashes.SHA256()),
        )
    except (InvalidSignature, ValueError) as e:
        logger.warning(
            "SendGrid signature rejected",
            extra_data={"error": type(e).__name__},
        )
        return False
    return True


def compute_vonage_signature(params: dict[str, str], secret: str) -> str:
    parts = "&".join(f"{key}={params[key]}" for key in sorted(params) if key != "sig")
    return hashlib.sha256(f"&{parts}{secret}".encode("utf-8")).hexdigest()


def verify_vonage_signature(params: dict[str, str], secret: str) -> bool:
    provided = params.get("sig")
    if not provided:
        return False
    return hmac.compare_digest(compute_vonage_signature(params, secret), provided.lower())


def vonage_timestamp_fresh(value: str | None, max_age_seconds: int, now: float | None = None) -> bool:
    """message-timestamp is "YYYY-MM-DD HH:MM:SS" in UTC"""
    if not value:
        return False
    try:
        sent = datetime.fromisoformat(value.strip())
    except ValueError:
        return False
    if sent.tzinfo is None:
        sent = sent.replace(tzinfo=timezone.utc)
    age = (time.time() if now is None else now) - sent.timestamp()
    return 0 <= age <= max_age_seconds


def compute_mailgun_signature(signing_key: str, timestamp: str, token: str) -> str:
    return hmac.new(
        signing_key.encode("utf-8"),
        f"{timestamp}{token}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_mailgun_signature(
    signing_key: str,
    timestamp: str | None,
    token: str | None,
    signature: str | None,
    max_age_seconds: int,
    now: float | None = None,
) -> bool:
    if not timestamp or not token or not signature:
        return False
    # JSON can carry numbers here; compare_digest only takes str or bytes
    if not isinstance(token, str) or not isinstance(signature, str):
        return False
    try:
        age = (time.time() if now is None else now) - int(timestamp)
    except ValueError:
        return False
    if abs(age) > max_age_seconds:
        return False
    return hmac.compare_digest(compute_mailgun_signature(signing_key, timestamp, token), signature)


# ─── FastAPI dependencies ───────────────────────────────────────────────────

def _invalid_payload(provider: str, reason: str) -> AppException:
    return AppException(
        message=f"Malformed {provider} webhook payload",
        error_code=ErrorCode.WEBHOOK_PAYLOAD_INVALID,
        status_code=400,
        details={"provider": provider, "reason": reason},
    )


async def _json_body(request: Request, provider: str) -> Any:
    try:
        return json.loads(await request.body())
    except ValueError as e:
        raise _invalid_payload(provider, "body is not valid JSON") from e


async def verified_twilio_params(
    request: Request,
    x_twilio_signature: str | None = Header(None),
) -> dict[str, str]:
    """Form params of a Twilio status callback, signature checked"""
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    auth_token = settings.TWILIO_AUTH_TOKEN
    if not auth_token:
        return params

    if not verify_twilio_signature(auth_token, str(request.url), params, x_twilio_signature):
        logger.warning(
            "Twilio webhook rejected",
            extra_data={"has_signature": bool(x_twilio_signature)},
        )
        raise WebhookSignatureError("twilio", "signature mismatch")
    return params


async def verified_sendgrid_events(request: Request) -> list[dict[str, Any]]:
    """Event array of a SendGrid event webhook, signature checked"""
    body = await request.body()

    public_key = settings.SENDGRID_WEBHOOK_PUBLIC_KEY
    if public_key or settings.SENDGRID_REQUIRE_SIGNED_WEBHOOKS:
        signature = request.headers.get(SENDGRID_SIGNATURE_HEADER)
        timestamp = request.headers.get(SENDGRID_TIMESTAMP_HEADER)
        if not public_key or not verify_sendgrid_signature(public_key, body, signature, timestamp):
            logger.warning(
                "SendGrid webhook rejected",
                extra_data={"has_signature": bool(signature), "has_timestamp": bool(timestamp)},
            )
            raise WebhookSignatureError("sendgrid", "signature mismatch")

    events = await _json_body(request, "sendgrid")
    if not isinstance(events, list):
        raise _invalid_payload("sendgrid", "expected a JSON array of events")
    return [event for event in events if isinstance(event, dict)]


async def verified_vonage_params(request: Request) -> dict[str, str]:
    """Delivery receipt params (query string, or form / JSON body), signature checked"""
    params = {key: value for key, value in request.query_params.items()}
    if not params:
        content_type = request.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            data = await _json_body(request, "vonage")
            if not isinstance(data, dict):
                raise _invalid_payload("vonage", "expected a JSON object")
            params = {key: str(value) for key, value in data.items()}
        else:
            form = await request.form()
            params = {key: str(value) for key, value in form.items()}

    secret = settings.VONAGE_SIGNATURE_SECRET
    if not secret:
        return params

    if not verify_vonage_signature(params, secret):
        logger.warning("Vonage webhook rejected", extra_data={"has_signature": "sig" in params})
        raise WebhookSignatureError("vonage", "signature mismatch")
    if not vonage_timestamp_fresh(params.get("message-timestamp"), settings.WEBHOOK_MAX_AGE_SECONDS):
        logger.warning(
            "Vonage webhook rejected: stale timestamp",
            extra_data={"message_timestamp": params.get("message-timestamp")},
        )
        raise WebhookSignatureError("vonage", "timestamp outside allowed window")
    return params


async def verified_mailgun_payload(request: Request) -> dict[str, Any]:
    """Mailgun webhook JSON, signature block checked"""
    payload = await _json_body(request, "mailgun")
    if not isinstance(payload, dict):
        raise _invalid_payload("mailgun", "expected a JSON object")

    signing_key = settings.MAILGUN_SIGNING_KEY
    if not signing_key:
        return payload

    block = payload.get("signature")
    if not isinstance(block, dict):
        raise WebhookSignatureError("mailgun", "signature block missing")
    if not verify_mailgun_signature(
        signing_key,
        str(block.get("timestamp") or ""),
        block.get("token"),
        block.get("signature"),
        settings.WEBHOOK_MAX_AGE_SECONDS,
    ):
        logger.warning("Mailgun webhook rejected")
        raise WebhookSignatureError("mailgun", "signature mismatch or expired")
    return payload
