# src/davchat/models/message.py
"""Models describing messages cached locally for a channel."""

from datetime import datetime

from sqlalchemy import BigInteger, DateTime, Integer, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from davchat.db.session import Base
from davchat.db.time import utcnow

DELIVERY_RECEIVED = "received"
DELIVERY_PENDING = "pending"
DELIVERY_SENT = "sent"
DELIVERY_FAILED = "failed"


class Message(Base):
    """Decrypted message exchanged between two users.

    The identity of a row is the ``(sender_id, sent_at, iv)`` triple carried by
    the envelope; the unique constraint turns repeated ingestion of the same
    envelope into a no-op.
    """

    __tablename__ = "chat_message"
    __table_args__ = (
        UniqueConstraint("sender_id", "sent_at", "iv", name="uq_chat_message_identity"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    channel_key: Mapped[str] = mapped_column(Text, nullable=False, index=True)

    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_handle: Mapped[str] = mapped_column(Text, nullable=False)
    recipient_id: Mapped[str] = mapped_column(String(64), nullable=False)
    recipient_handle: Mapped[str] = mapped_column(Text, nullable=False)

    # Producer clock in milliseconds since the epoch, not authoritative.
    sent_at: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    iv: Mapped[bytes] = mapped_column(LargeBinary(16), nullable=False)
    kind: Mapped[str] = mapped_column(String(8), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")

    attachment_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    attachment_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    attachment_size: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    attachment_mime_type: Mapped[str | None] = mapped_column(Text, nullable=True)

    entry_name: Mapped[str | None] = mapped_column(Text, nullable=True, index=True)
    delivery_state: Mapped[str] = mapped_column(String(16), nullable=False, default=DELIVERY_RECEIVED)
    # Serialized envelope for outbound rows so failed sends can be rewritten.
    raw_envelope: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
