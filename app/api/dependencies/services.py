"""
Service wiring for API routes.

Routes ask for the dispatcher, dead-letter service or reconciler through these
dependencies; tests swap the job queue or breaker registry through
``app.dependency_overrides``.
"""
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.circuit_breaker import CircuitBreakerRegistry, get_breaker_registry
from app.db.database import get_db
from app.domain.job_queue import JobQueue
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.dispatcher import MessageDispatcher
from app.domain.services.events import EventBus, build_event_bus
from app.domain.services.webhook_reconciler import WebhookReconciler
from app.workers.tasks import CeleryJobQueue

_events = build_event_bus()


def get_event_bus() -> EventBus:
    return _events


def get_job_queue() -> JobQueue:
    return CeleryJobQueue()


def get_breakers() -> CircuitBreakerRegistry:
    return get_breaker_registry()


async def get_dispatcher(
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    events: EventBus = Depends(get_event_bus),
) -> MessageDispatcher:
    return MessageDispatcher(db, queue, events)


async def get_dead_letter_service(
    db: AsyncSession = Depends(get_db),
    queue: JobQueue = Depends(get_job_queue),
    events: EventBus = Depends(get_event_bus),
) -> DeadLetterService:
    return DeadLetterService(db, queue, events)


async def get_reconciler(
    db: AsyncSession = Depends(get_db),
    events: EventBus = Depends(get_event_bus),
) -> WebhookReconciler:
    return WebhookReconciler(db, events)
