"""
Channel senders: the narrow capability the send job calls to reach a provider.
"""
from app.domain.senders.base import BaseSender, ProviderSendResult, SendStatus
from app.domain.senders.registry import SenderRegistry, get_sender_registry

__all__ = [
    "BaseSender",
    "ProviderSendResult",
    "SendStatus",
    "SenderRegistry",
    "get_sender_registry",
]
