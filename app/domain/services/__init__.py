"""
Domain Services
"""
from app.domain.services.dispatcher import MessageDispatcher
from app.domain.services.send_job import SendJob
from app.domain.services.dead_letter_service import DeadLetterService
from app.domain.services.webhook_reconciler import WebhookReconciler

__all__ = [
    "MessageDispatcher",
    "SendJob",
    "DeadLetterService",
    "WebhookReconciler",
]
