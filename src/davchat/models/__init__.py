"""SQLAlchemy models for the DavChat local cache."""

from .message import (
    DELIVERY_FAILED,
    DELIVERY_PENDING,
    DELIVERY_RECEIVED,
    DELIVERY_SENT,
    Message,
)
from .user import User

__all__ = [
    "Message",
    "User",
    "DELIVERY_FAILED", "DELIVERY_PENDING", "DELIVERY_RECEIVED", "DELIVERY_SENT",
]
