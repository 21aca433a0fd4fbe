"""
Message API Routes - admission and status lookup
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Body, Depends, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.services import get_dispatcher
from app.core.exceptions import MessageNotFoundError
from app.core.logging import get_logger
from app.core.validation import mask_recipient
from app.db.database import get_db
from app.db.models.outbound_message import OutboundMessage
from app.domain.repositories.message_repository import MessageRepository
from app.domain.services.dispatcher import MessageDispatcher

logger = get_logger(__name__)

router = APIRouter()


class DispatchResponse(BaseModel):
    """Id of the admitted (or already existing) message"""
    message_id: str


class BatchDispatchRequest(BaseModel):
    """Up to a few thousand flight plans admitted together"""
    messages: list[dict[str, Any]] = Field(min_length=1, max_length=5000)


class BatchDispatchResponse(BaseModel):
    """Message ids in the same order as the request"""
    message_ids: list[str]
    count: int


class MessageResponse(BaseModel):
    """Current state of an outbound message"""
    id: str
    channel: str
    to: str = Field(description="Masked recipient")
    status: str
    attempts: int
    provider_message_id: str | None
    error_code: str | None
    error_message: str | None
    idempotency_key: str | None
    queued_at: datetime | None
    sent_at: datetime | None
    delivered_at: datetime | None
    failed_at: datetime | None
    created_at: datetime | None
    updated_at: datetime | None

    @classmethod
    def from_model(cls, message: OutboundMessage) -> "MessageResponse":
        channel = getattr(message.channel, "value", message.channel)
        return cls(
            id=message.id,
            channel=channel,
            to=mask_recipient(channel, message.to),
            status=getattr(message.status, "value", message.status),
            attempts=message.attempts or 0,
            provider_message_id=message.provider_message_id,
            error_code=message.error_code,
            error_message=message.error_message,
            idempotency_key=message.idempotency_key,
            queued_at=message.queued_at,
            sent_at=message.sent_at,
            delivered_at=message.delivered_at,
            failed_at=message.failed_at,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )


@router.post(
    "",
    response_model=DispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Dispatch a message",
    responses={
        400: {"description": "Invalid flight plan or unsupported channel"},
        409: {"description": "Idempotency key conflict could not be resolved"},
        413: {"description": "Payload too large"},
    },
)
async def dispatch_message(
    plan: dict[str, Any] = Body(..., description="Flight plan"),
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> DispatchResponse:
    """Admit one message; a known idempotency key returns the existing id"""
    message_id = await dispatcher.dispatch(plan)
    return DispatchResponse(message_id=message_id)


@router.post(
    "/batch",
    response_model=BatchDispatchResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Dispatch many messages",
    responses={
        400: {"description": "At least one invalid flight plan, nothing was admitted"},
        413: {"description": "At least one payload too large, nothing was admitted"},
    },
)
async def dispatch_batch(
    body: BatchDispatchRequest,
    dispatcher: MessageDispatcher = Depends(get_dispatcher),
) -> BatchDispatchResponse:
    message_ids = await dispatcher.dispatch_batch(body.messages)
    return BatchDispatchResponse(message_ids=message_ids, count=len(message_ids))


@router.get(
    "/{message_id}",
    response_model=MessageResponse,
    summary="Message status",
    responses={404: {"description": "Message not found"}},
)
async def get_message(
    message_id: str,
    db: AsyncSession = Depends(get_db),
) -> MessageResponse:
    message = await MessageRepository(db).get(message_id)
    if message is None:
        raise MessageNotFoundError(message_id)
    return MessageResponse.from_model(message)
