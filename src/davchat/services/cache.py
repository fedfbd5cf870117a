"""Durable local cache of users and messages.

The cache is the source of truth for the UI and the authoritative
deduplication ledger: ``upsert_message`` is idempotent on the
``(sender_id, sent_at, iv)`` triple. Every call runs in its own session and
transaction, so a single upsert is atomic. Database failures surface as
``CacheIntegrityError``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from davchat.core.errors import CacheIntegrityError, DuplicateHandleError, UnknownUserError
from davchat.db.time import utcnow
from davchat.models import DELIVERY_FAILED, DELIVERY_PENDING, DELIVERY_RECEIVED, Message, User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRecord:
    """Detached view of a cached user."""

    id: str
    handle: str
    created_at: datetime
    last_seen_at: datetime | None = None

    @classmethod
    def from_model(cls, user: User) -> UserRecord:
        return cls(
            id=user.id,
            handle=user.handle,
            created_at=user.created_at,
            last_seen_at=user.last_seen_at,
        )


@dataclass(frozen=True)
class MessageRecord:
    """Detached view of a cached message, derived from an envelope."""

    channel_key: str
    sender_id: str
    sender_handle: str
    recipient_id: str
    recipient_handle: str
    sent_at: int
    iv: bytes
    kind: str
    content: str
    attachment_id: str | None = None
    attachment_name: str | None = None
    attachment_size: int | None = None
    attachment_mime_type: str | None = None
    entry_name: str | None = None
    delivery_state: str = DELIVERY_RECEIVED
    raw_envelope: bytes | None = None
    id: int | None = None
    received_at: datetime | None = None

    @property
    def dedup_key(self) -> tuple[str, int, bytes]:
        return self.sender_id, self.sent_at, self.iv

    @classmethod
    def from_model(cls, message: Message) -> MessageRecord:
        return cls(
            id=message.id,
            channel_key=message.channel_key,
            sender_id=message.sender_id,
            sender_handle=message.sender_handle,
            recipient_id=message.recipient_id,
            recipient_handle=message.recipient_handle,
            sent_at=message.sent_at,
            iv=message.iv,
            kind=message.kind,
            content=message.content,
            attachment_id=message.attachment_id,
            attachment_name=message.attachment_name,
            attachment_size=message.attachment_size,
            attachment_mime_type=message.attachment_mime_type,
            entry_name=message.entry_name,
            delivery_state=message.delivery_state,
            raw_envelope=message.raw_envelope,
            received_at=message.received_at,
        )


@dataclass(frozen=True)
class UpsertResult:
    """Outcome of ``upsert_message``; ``inserted`` is False for duplicates."""

    inserted: bool
    record: MessageRecord


class LocalCache:
    """SQLAlchemy-backed cache of users and messages."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with self._session_factory() as db:
                yield db
        except (DuplicateHandleError, UnknownUserError):
            raise
        except SQLAlchemyError as exc:
            logger.error("Local cache failure: %s", exc, extra={"error_kind": "cache"})
            raise CacheIntegrityError(f"Local cache unavailable: {exc}") from exc

    # --- Users ----------------------------------------------------------------------

    def upsert_user(self, user: UserRecord) -> UserRecord:
        """Insert ``user`` or update the stored row with the same id.

        Raises:
            DuplicateHandleError: If another user already owns the handle
        """
        with self._session() as db:
            owner = db.scalars(select(User).where(User.handle == user.handle)).first()
            if owner is not None and owner.id != user.id:
                raise DuplicateHandleError(f"Handle {user.handle!r} is already taken")

            existing = db.get(User, user.id)
            if existing is None:
                existing = User(
                    id=user.id,
                    handle=user.handle,
                    created_at=user.created_at,
                    last_seen_at=user.last_seen_at,
                )
                db.add(existing)
            else:
                existing.handle = user.handle
                if user.last_seen_at is not None and (
                    existing.last_seen_at is None
                    or _naive(user.last_seen_at) > _naive(existing.last_seen_at)
                ):
                    existing.last_seen_at = user.last_seen_at
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise DuplicateHandleError(f"Handle {user.handle!r} is already taken") from exc
            return UserRecord.from_model(existing)

    def ensure_user(self, user_id: str, handle: str) -> UserRecord | None:
        """Record a user seen in an envelope unless it is already known.

        Returns None when the handle belongs to a different id; the conflict
        is logged and the message is still ingested.
        """
        known = self.get_user(user_id)
        if known is not None:
            return known
        try:
            return self.upsert_user(UserRecord(id=user_id, handle=handle, created_at=utcnow()))
        except DuplicateHandleError:
            logger.warning("Sender %s claims handle %r owned by another user", user_id, handle)
            return None

    def get_user(self, user_id: str) -> UserRecord | None:
        with self._session() as db:
            user = db.get(User, user_id)
            return UserRecord.from_model(user) if user is not None else None

    def find_user_by_handle(self, handle: str) -> UserRecord | None:
        with self._session() as db:
            user = db.scalars(select(User).where(User.handle == handle)).first()
            return UserRecord.from_model(user) if user is not None else None

    def list_users(self) -> list[UserRecord]:
        with self._session() as db:
            return [UserRecord.from_model(user) for user in db.scalars(select(User).order_by(User.handle))]

    def touch_user(self, user_id: str, when: datetime | None = None) -> UserRecord:
        """Set ``last_seen_at`` for ``user_id``.

        Raises:
            UnknownUserError: If the user is not cached
        """
        with self._session() as db:
            user = db.get(User, user_id)
            if user is None:
                raise UnknownUserError(f"Unknown user {user_id}")
            user.last_seen_at = when or utcnow()
            db.commit()
            return UserRecord.from_model(user)

    # --- Messages -------------------------------------------------------------------

    def upsert_message(self, record: MessageRecord) -> UpsertResult:
        """Insert ``record`` unless its identity triple is already stored.

        Returns:
            ``UpsertResult(inserted=False)`` with the stored row for duplicates
        """
        with self._session() as db:
            message = Message(
                channel_key=record.channel_key,
                sender_id=record.sender_id,
                sender_handle=record.sender_handle,
                recipient_id=record.recipient_id,
                recipient_handle=record.recipient_handle,
                sent_at=record.sent_at,
                iv=record.iv,
                kind=record.kind,
                content=record.content,
                attachment_id=record.attachment_id,
                attachment_name=record.attachment_name,
                attachment_size=record.attachment_size,
                attachment_mime_type=record.attachment_mime_type,
                entry_name=record.entry_name,
                delivery_state=record.delivery_state,
                raw_envelope=record.raw_envelope,
                received_at=utcnow(),
            )
            db.add(message)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                stored = self._find_by_identity(db, record)
                if stored is None:
                    raise
                return UpsertResult(inserted=False, record=MessageRecord.from_model(stored))
            return UpsertResult(inserted=True, record=MessageRecord.from_model(message))

    @staticmethod
    def _find_by_identity(db: Session, record: MessageRecord) -> Message | None:
        return db.scalars(
            select(Message).where(
                Message.sender_id == record.sender_id,
                Message.sent_at == record.sent_at,
                Message.iv == record.iv,
            )
        ).first()

    def query_messages(
        self,
        user_a: str,
        user_b: str,
        since_exclusive: int | None = None,
    ) -> list[MessageRecord]:
        """Return the conversation between two users ordered by claimed send time.

        Ties on ``sent_at`` are broken by sender id and IV so every client
        shows the same order for the same set of messages.
        """
        conditions = [
            or_(
                and_(Message.sender_id == user_a, Message.recipient_id == user_b),
                and_(Message.sender_id == user_b, Message.recipient_id == user_a),
            )
        ]
        if since_exclusive is not None:
            conditions.append(Message.sent_at > since_exclusive)
        with self._session() as db:
            rows = db.scalars(
                select(Message)
                .where(*conditions)
                .order_by(Message.sent_at, Message.sender_id, Message.iv)
            )
            return [MessageRecord.from_model(row) for row in rows]

    def known_entry_names(self, channel_key: str, names: Iterable[str]) -> set[str]:
        """Return which of ``names`` are already recorded for ``channel_key``."""
        wanted = list(dict.fromkeys(names))
        if not wanted:
            return set()
        found: set[str] = set()
        with self._session() as db:
            # Chunked to stay below SQLite's bound parameter limit.
            for start in range(0, len(wanted), 500):
                chunk = wanted[start : start + 500]
                found.update(
                    db.scalars(
                        select(Message.entry_name).where(
                            Message.channel_key == channel_key,
                            Message.entry_name.in_(chunk),
                        )
                    )
                )
        return found

    def set_delivery_state(
        self,
        record: MessageRecord,
        state: str,
        *,
        entry_name: str | None = None,
    ) -> MessageRecord:
        """Update the delivery state (and optionally the entry name) of an outbound row."""
        values: dict[str, object] = {"delivery_state": state}
        if entry_name is not None:
            values["entry_name"] = entry_name
        with self._session() as db:
            db.execute(
                update(Message)
                .where(
                    Message.sender_id == record.sender_id,
                    Message.sent_at == record.sent_at,
                    Message.iv == record.iv,
                )
                .values(**values)
            )
            db.commit()
        return replace(record, **values)  # type: ignore[arg-type]

    def outbound_undelivered(self, channel_key: str, sender_id: str) -> Sequence[MessageRecord]:
        """Return outbound rows of a channel that were never confirmed as written."""
        with self._session() as db:
            rows = db.scalars(
                select(Message)
                .where(
                    Message.channel_key == channel_key,
                    Message.sender_id == sender_id,
                    Message.delivery_state.in_((DELIVERY_PENDING, DELIVERY_FAILED)),
                    Message.raw_envelope.is_not(None),
                )
                .order_by(Message.sent_at)
            )
            return [MessageRecord.from_model(row) for row in rows]


def _naive(value: datetime) -> datetime:
    # SQLite returns naive datetimes even for timezone-aware columns.
    return value.replace(tzinfo=None) if value.tzinfo is not None else value
