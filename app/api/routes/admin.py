"""
Admin Endpoints - dead-letter operations and dispatch diagnostics.

Three tools:
1. Dead letters: list, stats, replay, purge
2. Circuit breaker status per provider key
3. Message counts per status and recent messages
"""
from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.dependencies.services import get_breakers, get_dead_letter_service
from app.api.routes.messages import MessageResponse
from app.core.circuit_breaker import CircuitBreakerRegistry
from app.core.exceptions import DeadLetterNotFoundError
from app.core.logging import get_logger
from app.db.database import get_db
from app.db.models.dead_letter_entry import DeadLetterEntry
from app.db.models.outbound_message import MessageStatus
from app.domain.repositories.message_repository import MessageRepository
from app.domain.services.dead_letter_service import DeadLetterService

logger = get_logger(__name__)

router = APIRouter(dependencies=[Depends(require_admin_api_key)])

_AUTH_RESPONSES: dict[int | str, dict[str, Any]] = {
    401: {"description": "Missing API key"},
    403: {"description": "Wrong API key"},
}


# ─── Pydantic models ────────────────────────────────────────────────────────

class DeadLetterResponse(BaseModel):
    """One dead-letter entry"""
    id: str
    message_id: str
    channel: str
    attempts: int
    error_code: str | None
    error_message: str | None
    last_exception: str | None = None
    payload: dict[str, Any] | None = None
    created_at: datetime | None

    @classmethod
    def from_model(cls, entry: DeadLetterEntry, *, include_payload: bool = False) -> "DeadLetterResponse":
        return cls(
            id=entry.id,
            message_id=entry.message_id,
            channel=entry.channel,
            attempts=entry.attempts,
            error_code=entry.error_code,
            error_message=entry.error_message,
            last_exception=entry.last_exception if include_payload else None,
            payload=entry.payload if include_payload else None,
            created_at=entry.created_at,
        )


class ReplayResponse(BaseModel):
    entry_id: str
    message_id: str
    recreated: bool = Field(description="The message row was missing and has been recreated")


class PurgeResponse(BaseModel):
    removed: int


class CircuitBreakerStatusResponse(BaseModel):
    """Status of one provider's circuit breaker"""
    service: str
    state: str = Field(description="closed | open | half_open")
    failure_count: int
    success_count: int
    trial_count: int
    last_failure_at: datetime | None
    seconds_until_retry: float = Field(
        description="Seconds until a trial call is allowed (0 when not open)"
    )


# ─── 1. Dead letters ────────────────────────────────────────────────────────

@router.get(
    "/dead-letters",
    response_model=list[DeadLetterResponse],
    summary="List dead letters",
    description="Newest first.",
    responses=_AUTH_RESPONSES,
)
async def list_dead_letters(
    limit: int = Query(default=50, ge=1, le=500, description="Maximum entries"),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> list[DeadLetterResponse]:
    entries = await service.list(limit=limit)
    return [DeadLetterResponse.from_model(entry) for entry in entries]


@router.get(
    "/dead-letters/stats",
    summary="Dead-letter statistics",
    responses=_AUTH_RESPONSES,
)
async def dead_letter_stats(
    days: int = Query(default=7, ge=1, le=90),
    top: int = Query(default=10, ge=1, le=100),
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> dict[str, Any]:
    return await service.stats(days=days, top=top)


@router.get(
    "/dead-letters/{entry_id}",
    response_model=DeadLetterResponse,
    summary="Dead-letter entry with payload and traceback",
    responses={**_AUTH_RESPONSES, 404: {"description": "Entry not found"}},
)
async def get_dead_letter(
    entry_id: str,
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> DeadLetterResponse:
    entry = await service.get(entry_id)
    if entry is None:
        raise DeadLetterNotFoundError(entry_id)
    return DeadLetterResponse.from_model(entry, include_payload=True)


@router.post(
    "/dead-letters/{entry_id}/replay",
    response_model=ReplayResponse,
    summary="Replay a dead letter",
    description=(
        "Resets the message from the entry's snapshot and enqueues a new send job. "
        "The entry is kept."
    ),
    responses={
        **_AUTH_RESPONSES,
        404: {"description": "Entry not found"},
        409: {"description": "Message is queued, in flight or already succeeded"},
    },
)
async def replay_dead_letter(
    entry_id: str,
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> ReplayResponse:
    result = await service.replay(entry_id)
    return ReplayResponse(
        entry_id=result.entry_id,
        message_id=result.message_id,
        recreated=result.recreated,
    )


@router.delete(
    "/dead-letters/{entry_id}",
    response_model=PurgeResponse,
    summary="Delete one dead letter",
    responses={**_AUTH_RESPONSES, 404: {"description": "Entry not found"}},
)
async def delete_dead_letter(
    entry_id: str,
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> PurgeResponse:
    removed = await service.purge(entry_id)
    if not removed:
        raise DeadLetterNotFoundError(entry_id)
    return PurgeResponse(removed=removed)


@router.delete(
    "/dead-letters",
    response_model=PurgeResponse,
    summary="Delete every dead letter",
    responses=_AUTH_RESPONSES,
)
async def purge_dead_letters(
    service: DeadLetterService = Depends(get_dead_letter_service),
) -> PurgeResponse:
    return PurgeResponse(removed=await service.purge())


# ─── 2. Circuit breakers ────────────────────────────────────────────────────

@router.get(
    "/circuit-breakers",
    response_model=list[CircuitBreakerStatusResponse],
    summary="Circuit breaker status",
    description="State of every provider breaker, as shared by the API and the workers.",
    responses=_AUTH_RESPONSES,
)
async def get_circuit_breaker_status(
    breakers: CircuitBreakerRegistry = Depends(get_breakers),
) -> list[CircuitBreakerStatusResponse]:
    return [
        CircuitBreakerStatusResponse(**snapshot.to_dict())
        for snapshot in await breakers.snapshots()
    ]


# ─── 3. Message summary ─────────────────────────────────────────────────────

@router.get(
    "/messages/summary",
    summary="Message counts per status",
    responses=_AUTH_RESPONSES,
)
async def get_messages_summary(
    db: AsyncSession = Depends(get_db),
) -> dict[str, int]:
    counts = await MessageRepository(db).count_by_status()
    return {**counts, "total": sum(counts.values())}


@router.get(
    "/messages",
    response_model=list[MessageResponse],
    summary="Recent messages",
    description="Newest first, recipients masked.",
    responses=_AUTH_RESPONSES,
)
async def list_messages(
    status: MessageStatus | None = Query(default=None, description="Only messages in this status"),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
) -> list[MessageResponse]:
    messages = await MessageRepository(db).list_recent(status=status, limit=limit)
    return [MessageResponse.from_model(message) for message in messages]
