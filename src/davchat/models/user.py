# src/davchat/models/user.py
"""SQLAlchemy model for chat identities known to this client."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from davchat.db.session import Base
from davchat.db.time import utcnow


class User(Base):
    """Chat identity keyed by an opaque, stable identifier.

    Rows are created at registration (locally) or when another client's
    profile or message is first seen. They are never deleted.
    """

    __tablename__ = "chat_user"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    handle: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    last_seen_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
