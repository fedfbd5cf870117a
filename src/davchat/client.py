"""Client context wiring the DavChat services together.

A ``ChatClient`` owns one remote store, one local cache and, once a user has
signed in, one ``SyncEngine``. Every collaborator is built from ``Settings``
unless it is passed in, so tests and embedding applications can substitute
their own store or session factory.

The client never installs log handlers. Applications call
``davchat.core.logging.configure_logging(settings)`` once at startup to get
console output and the error log file.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from davchat.core.errors import AlreadyExistsError, DuplicateHandleError, UnknownUserError
from davchat.core.settings import Settings
from davchat.db.session import create_db_engine, create_session_factory, create_tables
from davchat.db.time import utcnow
from davchat.services.cache import LocalCache, UserRecord
from davchat.services.channels import ChannelResolver
from davchat.services.crypto import CryptoCodec
from davchat.services.directory import UserDirectory
from davchat.services.events import EventHub, SyncListener
from davchat.services.remote_store import RemoteStore, WebDAVStore
from davchat.services.sync import SyncEngine

logger = logging.getLogger(__name__)


class ChatClient:
    """Registration, sign-in and conversation access for one local user."""

    def __init__(
        self,
        settings: Settings,
        *,
        store: RemoteStore | None = None,
        session_factory: Callable[[], Session] | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.settings = settings
        self._db_engine: Engine | None = None
        if session_factory is None:
            self._db_engine = create_db_engine(settings.database_url, echo=settings.sql_debug)
            create_tables(self._db_engine)
            session_factory = create_session_factory(self._db_engine)

        self.store: RemoteStore = store or WebDAVStore.from_settings(settings)
        self.codec = CryptoCodec.from_settings(settings)
        self.resolver = ChannelResolver.from_settings(settings)
        self.cache = LocalCache(session_factory)
        self.events = EventHub()
        self.directory = UserDirectory(self.store, self.cache, self.codec, settings)
        self._clock = clock
        self.user: UserRecord | None = None
        self._sync: SyncEngine | None = None

    async def __aenter__(self) -> ChatClient:
        await self.bootstrap()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    @property
    def sync(self) -> SyncEngine:
        if self._sync is None:
            raise RuntimeError("Sign in before using conversations")
        return self._sync

    def subscribe(self, listener: SyncListener) -> None:
        self.events.subscribe(listener)

    async def bootstrap(self) -> None:
        """Create the shared top-level directories if they are missing."""
        for path in (self.resolver.messages_root, self.resolver.files_root, self.directory.root):
            try:
                await self.store.ensure_directory(path)
            except AlreadyExistsError:
                continue

    async def register(self, handle: str) -> UserRecord:
        """Create a new user with a random id and publish its profile.

        Raises:
            DuplicateHandleError: If the handle is already registered
        """
        handle = handle.strip()
        if not handle:
            raise ValueError("Handle must not be empty")

        await self.directory.refresh()
        if await asyncio.to_thread(self.cache.find_user_by_handle, handle) is not None:
            raise DuplicateHandleError(f"Handle {handle!r} is already taken")

        user = await asyncio.to_thread(
            self.cache.upsert_user,
            UserRecord(id=uuid.uuid4().hex, handle=handle, created_at=utcnow()),
        )
        await self.directory.publish(user)
        logger.info("Registered user %s", handle)
        return user

    async def find_user(self, handle: str) -> UserRecord:
        """Resolve ``handle`` locally, refreshing the directory on a miss.

        Raises:
            UnknownUserError: If no user with that handle is published
        """
        user = await asyncio.to_thread(self.cache.find_user_by_handle, handle)
        if user is None:
            await self.directory.refresh()
            user = await asyncio.to_thread(self.cache.find_user_by_handle, handle)
        if user is None:
            raise UnknownUserError(f"Unknown user {handle!r}")
        return user

    async def sign_in(self, handle: str) -> UserRecord:
        """Sign in as an existing user and prepare the sync engine."""
        if self._sync is not None:
            await self._sync.stop()

        user = await self.find_user(handle)
        user = await asyncio.to_thread(self.cache.touch_user, user.id)
        await self.directory.publish(user)

        self.user = user
        self._sync = SyncEngine(
            store=self.store,
            cache=self.cache,
            codec=self.codec,
            resolver=self.resolver,
            local_user=user,
            settings=self.settings,
            events=self.events,
            clock=self._clock,
        )
        logger.info("Signed in as %s", handle)
        return user

    async def open_conversation(self, peer_handle: str) -> UserRecord:
        """Open the channel with ``peer_handle`` and return the peer."""
        engine = self.sync
        peer = await self.find_user(peer_handle)
        if self.user is not None and peer.id == self.user.id:
            raise ValueError("Cannot open a conversation with yourself")
        await engine.open_channel(peer)
        return peer

    async def start(self) -> None:
        await self.sync.start()

    async def stop(self) -> None:
        if self._sync is not None:
            await self._sync.stop()

    async def aclose(self) -> None:
        """Stop polling and release the store and database connections."""
        await self.stop()
        await self.store.aclose()
        if self._db_engine is not None:
            self._db_engine.dispose()
            self._db_engine = None
