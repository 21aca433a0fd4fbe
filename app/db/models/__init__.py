"""
Database Models
"""
from app.db.models.outbound_message import OutboundMessage
from app.db.models.dead_letter_entry import DeadLetterEntry

__all__ = [
    "OutboundMessage",
    "DeadLetterEntry",
]
