import os
import sys

from davchat.db.session import create_db_engine, create_session_factory, create_tables
from davchat.db.time import utcnow
from davchat.scripts import inspect_cache
from davchat.services.cache import LocalCache, MessageRecord, UserRecord


def test_describe_tables_lists_rows(tmp_path):
    url = f"sqlite:///{tmp_path / 'cache.db'}"
    engine = create_db_engine(url)
    create_tables(engine)
    cache = LocalCache(create_session_factory(engine))
    cache.upsert_user(UserRecord(id="a1ice", handle="alice", created_at=utcnow()))
    cache.upsert_message(
        MessageRecord(
            channel_key="a1ice+b0b",
            sender_id="a1ice",
            sender_handle="alice",
            recipient_id="b0b",
            recipient_handle="bob",
            sent_at=1,
            iv=os.urandom(16),
            kind="text",
            content="hello",
        )
    )

    lines = inspect_cache.describe_tables(engine, limit=5)
    engine.dispose()

    assert "== chat_message ==" in lines
    assert "== chat_user ==" in lines
    assert any("'hello'" in line for line in lines)
    assert any("'alice'" in line for line in lines)


def test_main_prints_tables(tmp_path, monkeypatch, capsys):
    url = f"sqlite:///{tmp_path / 'cache.db'}"
    engine = create_db_engine(url)
    create_tables(engine)
    engine.dispose()
    monkeypatch.setattr(sys, "argv", ["inspect_cache", "--url", url, "--limit", "1"])

    inspect_cache.main()

    out = capsys.readouterr().out
    assert "== chat_user ==" in out
    assert "rows (first 1): 0" in out
