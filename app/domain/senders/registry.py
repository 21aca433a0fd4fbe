"""
Sender registry - which sender serves which channel.

Deployments register their provider adapters at startup, either directly or by
pointing SENDER_FACTORY at a ``module:function`` that returns
``{channel: BaseSender}``.
"""
from __future__ import annotations

import importlib
import threading

from app.core.config import SUPPORTED_CHANNELS, settings
from app.core.logging import get_logger
from app.domain.senders.base import BaseSender

logger = get_logger(__name__)

_registry: SenderRegistry | None = None
_lock = threading.Lock()


class SenderRegistry:
    """Channel to sender mapping"""

    def __init__(self, senders: dict[str, BaseSender] | None = None) -> None:
        self._senders: dict[str, BaseSender] = {}
        for channel, sender in (senders or {}).items():
            self.register(channel, sender)

    def register(self, channel: str, sender: BaseSender) -> None:
        if channel not in SUPPORTED_CHANNELS:
            raise ValueError(f"Unsupported channel: {channel}")
        if not sender.provider_key:
            raise ValueError(f"{type(sender).__name__} has no provider_key")
        self._senders[channel] = sender
        logger.info(
            "Sender registered",
            extra_data={"channel": channel, "provider": sender.provider_key},
        )

    def get(self, channel: str) -> BaseSender | None:
        return self._senders.get(channel)

    def channels(self) -> list[str]:
        return sorted(self._senders)


def _load_factory(path: str) -> dict[str, BaseSender]:
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"SENDER_FACTORY must look like 'package.module:function', got '{path}'")
    factory = getattr(importlib.import_module(module_name), attr)
    return factory()


def get_sender_registry() -> SenderRegistry:
    """Process-wide registry, built from SENDER_FACTORY on first use"""
    global _registry
    if _registry is None:
        with _lock:
            if _registry is None:
                senders = _load_factory(settings.SENDER_FACTORY) if settings.SENDER_FACTORY else {}
                if not senders:
                    logger.warning("No senders configured; every send attempt will fail with NO_SENDER")
                _registry = SenderRegistry(senders)
    return _registry


def set_sender_registry(registry: SenderRegistry | None) -> None:
    """Replace the process-wide registry (startup wiring, tests)"""
    global _registry
    with _lock:
        _registry = registry
