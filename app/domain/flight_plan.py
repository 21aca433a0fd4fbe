"""
FlightPlan - the canonical description of one outbound message.

Built by API handlers and application code, serialized onto the message row and
into the send job, and rebuilt from that payload by the worker.
"""
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from app.core.config import SUPPORTED_CHANNELS
from app.core.exceptions import UnsupportedChannelError, ValidationException
from app.core.validation import EmailValidator, PhoneNumberValidator

IDEMPOTENCY_KEY_MAX_LENGTH = 128
SEND_AT_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class FlightPlan(BaseModel):
    """Validated send request: channel, recipient, content and delivery options"""

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    channel: str
    to: str
    # Sender number, alphanumeric sender id or from-address; provider default when unset
    from_address: str | None = Field(default=None, alias="from", max_length=320)
    subject: str | None = None
    text: str | None = None
    html: str | None = None
    template_key: str | None = None
    template_data: dict[str, Any] = Field(default_factory=dict)
    media_urls: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    idempotency_key: str | None = Field(default=None, max_length=IDEMPOTENCY_KEY_MAX_LENGTH)
    send_at: datetime | None = None

    @field_validator("channel", mode="before")
    @classmethod
    def normalize_channel(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip().lower()
            if v not in SUPPORTED_CHANNELS:
                raise ValueError(
                    f"Invalid channel '{v}'. Must be one of: {', '.join(SUPPORTED_CHANNELS)}"
                )
        return v

    @field_validator("to", mode="before")
    @classmethod
    def strip_recipient(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = v.strip()
            if not v:
                raise ValueError("Recipient (to) cannot be empty")
        return v

    @field_validator("from_address", "idempotency_key", mode="before")
    @classmethod
    def blank_is_none(cls, v: Any) -> Any:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("send_at", mode="after")
    @classmethod
    def send_at_as_utc(cls, v: datetime | None) -> datetime | None:
        """Naive datetimes are taken as UTC"""
        if v is None:
            return None
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)

    @model_validator(mode="after")
    def validate_recipient_for_channel(self) -> "FlightPlan":
        if self.channel == "email":
            if not EmailValidator.validate(self.to):
                raise ValueError(f"Invalid email address '{self.to}' for email channel")
            if not (self.text or self.html or self.template_key):
                raise ValueError("Email requires text, html or template_key")
        elif not PhoneNumberValidator.validate(self.to):
            raise ValueError(
                f"Invalid phone number '{self.to}' for {self.channel} channel (must be 8-20 digits)"
            )
        return self

    def to_payload(self) -> dict[str, Any]:
        """JSON-safe dict stored on the message row and carried by the send job"""
        data = self.model_dump(mode="json")
        data["send_at"] = self.send_at.strftime(SEND_AT_FORMAT) if self.send_at else None
        return data

    def message_fields(self) -> dict[str, Any]:
        """Column values for the message row built from this plan"""
        return {
            "channel": self.channel,
            "to": self.to,
            "from_address": self.from_address,
            "subject": self.subject,
            "template_key": self.template_key,
            "payload": self.to_payload(),
            "idempotency_key": self.idempotency_key,
        }

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> "FlightPlan":
        """Rebuild from :meth:`to_payload` output or any request dict"""
        return parse_flight_plan(data)


def parse_flight_plan(data: "FlightPlan | dict[str, Any]") -> FlightPlan:
    """
    Build a FlightPlan, translating validation failures into application errors.

    Raises:
        UnsupportedChannelError: The channel is not sms, whatsapp or email
        ValidationException: Any other invalid field
    """
    if isinstance(data, FlightPlan):
        return data

    channel = data.get("channel")
    if not isinstance(channel, str) or channel.strip().lower() not in SUPPORTED_CHANNELS:
        raise UnsupportedChannelError(str(channel), SUPPORTED_CHANNELS)

    try:
        return FlightPlan.model_validate(data)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_context=False)
        first = errors[0]
        field = ".".join(str(part) for part in first["loc"]) or None
        raise ValidationException(
            message=first["msg"],
            field=field,
            details={"errors": [
                {"loc": [str(p) for p in err["loc"]], "msg": err["msg"]} for err in errors
            ]},
        ) from e
