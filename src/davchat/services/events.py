"""Notification interface between the sync engine and its UI collaborator."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from davchat.core.errors import CacheIntegrityError, DavChatError, error_kind_of
from davchat.services.cache import MessageRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SendFailure:
    """An outbound message that could not be written remotely."""

    record: MessageRecord
    error: DavChatError


@dataclass(frozen=True)
class DeliveryFailure:
    """A remote entry that could not be ingested during a poll tick."""

    channel_key: str
    entry_name: str
    error: DavChatError

    @property
    def error_kind(self) -> str:
        return error_kind_of(self.error)


class SyncListener:
    """Base class for subscribers; override the notifications you need.

    Notifications are delivered on the event loop thread. Implementations
    must not block; the engine never inspects presentation state.
    """

    def on_inbound_message(self, message: MessageRecord) -> None:
        """A message from another user was stored for the first time."""

    def on_send_failed(self, failure: SendFailure) -> None:
        """An outbound message could not be delivered to the store."""

    def on_delivery_failed(self, failure: DeliveryFailure) -> None:
        """A remote entry was skipped (malformed or undecryptable)."""

    def on_cache_error(self, error: CacheIntegrityError) -> None:
        """The local cache failed during a background operation."""


class EventHub:
    """Fan out engine notifications to subscribed listeners.

    A failing listener is logged and never affects the engine or the other
    listeners.
    """

    def __init__(self) -> None:
        self._listeners: list[SyncListener] = []

    def subscribe(self, listener: SyncListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener: SyncListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _publish(self, method: str, payload: object) -> None:
        for listener in list(self._listeners):
            try:
                getattr(listener, method)(payload)
            except Exception:
                logger.exception("Listener %r failed handling %s", listener, method)

    def inbound_message(self, message: MessageRecord) -> None:
        self._publish("on_inbound_message", message)

    def send_failed(self, failure: SendFailure) -> None:
        self._publish("on_send_failed", failure)

    def delivery_failed(self, failure: DeliveryFailure) -> None:
        self._publish("on_delivery_failed", failure)

    def cache_error(self, error: CacheIntegrityError) -> None:
        self._publish("on_cache_error", error)
