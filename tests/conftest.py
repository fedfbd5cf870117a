# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from davchat.core.settings import Settings
from davchat.db.session import create_db_engine, create_session_factory, create_tables
from davchat.db.time import utcnow
from davchat.services.cache import LocalCache, MessageRecord, UserRecord
from davchat.services.channels import ChannelResolver
from davchat.services.crypto import CryptoCodec
from davchat.services.events import DeliveryFailure, EventHub, SendFailure, SyncListener
from davchat.services.remote_store import MemoryRemoteStore
from davchat.services.sync import SyncEngine

TEST_SECRET = "correct horse battery staple"
TEST_SALT = "webdav-chat-salt"


class RecordingListener(SyncListener):
    """Listener that keeps every notification for assertions."""

    def __init__(self) -> None:
        self.inbound: list[MessageRecord] = []
        self.send_failures: list[SendFailure] = []
        self.delivery_failures: list[DeliveryFailure] = []
        self.cache_errors: list[Exception] = []

    def on_inbound_message(self, message: MessageRecord) -> None:
        self.inbound.append(message)

    def on_send_failed(self, failure: SendFailure) -> None:
        self.send_failures.append(failure)

    def on_delivery_failed(self, failure: DeliveryFailure) -> None:
        self.delivery_failures.append(failure)

    def on_cache_error(self, error: Exception) -> None:
        self.cache_errors.append(error)


def make_test_settings(tmp_path: Path, **overrides: object) -> Settings:
    values: dict[str, object] = {
        "encryption_secret": TEST_SECRET,
        "encryption_salt": TEST_SALT,
        "database_url": f"sqlite:///{tmp_path / 'cache.db'}",
        "error_log_path": None,
        "poll_interval_ms": 50,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)  # type: ignore[arg-type]


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    return make_test_settings(tmp_path)


@pytest.fixture(scope="session")
def codec() -> CryptoCodec:
    # Key derivation is deliberately slow; share one codec across the session.
    return CryptoCodec(TEST_SECRET, TEST_SALT)


@pytest.fixture()
def store() -> MemoryRemoteStore:
    return MemoryRemoteStore()


@pytest.fixture()
def resolver() -> ChannelResolver:
    return ChannelResolver()


@pytest.fixture()
def make_session_factory(tmp_path: Path) -> Iterator[Callable[[str], sessionmaker[Session]]]:
    engines: list[Engine] = []

    def _make(name: str) -> sessionmaker[Session]:
        engine = create_db_engine(f"sqlite:///{tmp_path / f'{name}.db'}")
        create_tables(engine)
        engines.append(engine)
        return create_session_factory(engine)

    yield _make

    for engine in engines:
        engine.dispose()


@pytest.fixture()
def cache(make_session_factory: Callable[[str], sessionmaker[Session]]) -> LocalCache:
    return LocalCache(make_session_factory("cache"))


@pytest.fixture()
def make_listener() -> type[RecordingListener]:
    return RecordingListener


@pytest.fixture()
def alice() -> UserRecord:
    return UserRecord(id="a1ice", handle="alice", created_at=utcnow())


@pytest.fixture()
def bob() -> UserRecord:
    return UserRecord(id="b0b", handle="bob", created_at=utcnow())


@pytest.fixture()
def make_engine(
    settings: Settings,
    codec: CryptoCodec,
    store: MemoryRemoteStore,
    resolver: ChannelResolver,
    make_session_factory: Callable[[str], sessionmaker[Session]],
) -> Callable[..., SyncEngine]:
    """Build a sync engine for a user, each user with a separate local cache."""
    caches: dict[str, LocalCache] = {}

    def _make(
        local_user: UserRecord,
        *,
        cache: LocalCache | None = None,
        clock: Callable[[], int] | None = None,
        listener: SyncListener | None = None,
        **overrides: object,
    ) -> SyncEngine:
        if cache is None:
            cache = caches.get(local_user.id)
            if cache is None:
                cache = caches[local_user.id] = LocalCache(make_session_factory(local_user.handle))
        events = EventHub()
        if listener is not None:
            events.subscribe(listener)
        engine_settings = settings.model_copy(update=overrides) if overrides else settings
        return SyncEngine(
            store=store,
            cache=cache,
            codec=codec,
            resolver=resolver,
            local_user=local_user,
            settings=engine_settings,
            events=events,
            clock=clock,
        )

    return _make
