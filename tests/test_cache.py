import os
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from davchat.core.errors import CacheIntegrityError, DuplicateHandleError, UnknownUserError
from davchat.db.time import utcnow
from davchat.services.cache import LocalCache, MessageRecord, UserRecord
from davchat.services.channels import channel_key


def make_record(sender="a1ice", recipient="b0b", sent_at=1_000, content="hi", **overrides):
    values = {
        "channel_key": channel_key(sender, recipient),
        "sender_id": sender,
        "sender_handle": sender,
        "recipient_id": recipient,
        "recipient_handle": recipient,
        "sent_at": sent_at,
        "iv": os.urandom(16),
        "kind": "text",
        "content": content,
    }
    values.update(overrides)
    return MessageRecord(**values)


def test_upsert_message_is_idempotent(cache):
    record = make_record()

    first = cache.upsert_message(record)
    second = cache.upsert_message(record)

    assert first.inserted
    assert not second.inserted
    assert second.record.id == first.record.id
    assert len(cache.query_messages("a1ice", "b0b")) == 1


def test_same_timestamp_different_iv_are_distinct(cache):
    cache.upsert_message(make_record(sent_at=5, content="one"))
    cache.upsert_message(make_record(sent_at=5, content="two"))

    assert len(cache.query_messages("b0b", "a1ice")) == 2


def test_query_orders_by_sent_at_then_sender_then_iv(cache):
    cache.upsert_message(make_record(sent_at=30, content="late"))
    cache.upsert_message(make_record(sender="b0b", recipient="a1ice", sent_at=10, iv=b"\x02" * 16, content="b"))
    cache.upsert_message(make_record(sent_at=10, iv=b"\x09" * 16, content="a2"))
    cache.upsert_message(make_record(sent_at=10, iv=b"\x01" * 16, content="a1"))
    cache.upsert_message(make_record(sender="a1ice", recipient="carol", sent_at=20, content="elsewhere"))

    history = cache.query_messages("a1ice", "b0b")

    assert [m.content for m in history] == ["a1", "a2", "b", "late"]
    assert [m.content for m in cache.query_messages("a1ice", "b0b", since_exclusive=10)] == ["late"]


def test_known_entry_names(cache):
    key = channel_key("a1ice", "b0b")
    cache.upsert_message(make_record(entry_name="msg_1.json"))
    cache.upsert_message(make_record(sender="a1ice", recipient="carol", entry_name="msg_2.json"))

    assert cache.known_entry_names(key, ["msg_1.json", "msg_2.json", "msg_3.json"]) == {"msg_1.json"}
    assert cache.known_entry_names(key, []) == set()


def test_delivery_state_and_undelivered_rows(cache):
    key = channel_key("a1ice", "b0b")
    pending = cache.upsert_message(
        make_record(sent_at=1, delivery_state="pending", raw_envelope=b"{}", entry_name="msg_a.json")
    ).record
    sent = cache.upsert_message(
        make_record(sent_at=2, delivery_state="pending", raw_envelope=b"{}", entry_name="msg_b.json")
    ).record
    cache.upsert_message(make_record(sender="b0b", recipient="a1ice", sent_at=3))

    updated = cache.set_delivery_state(sent, "sent", entry_name="msg_b_beef.json")

    assert updated.delivery_state == "sent"
    assert updated.entry_name == "msg_b_beef.json"
    undelivered = cache.outbound_undelivered(key, "a1ice")
    assert [m.dedup_key for m in undelivered] == [pending.dedup_key]


def test_upsert_user_rejects_taken_handle(cache):
    cache.upsert_user(UserRecord(id="u1", handle="alice", created_at=utcnow()))

    with pytest.raises(DuplicateHandleError):
        cache.upsert_user(UserRecord(id="u2", handle="alice", created_at=utcnow()))

    assert cache.find_user_by_handle("alice").id == "u1"
    assert [user.id for user in cache.list_users()] == ["u1"]


def test_upsert_user_keeps_newest_last_seen(cache):
    now = utcnow()
    cache.upsert_user(UserRecord(id="u1", handle="alice", created_at=now, last_seen_at=now))
    cache.upsert_user(
        UserRecord(id="u1", handle="alice", created_at=now, last_seen_at=now - timedelta(days=1))
    )

    stored = cache.get_user("u1")
    assert stored.last_seen_at.replace(tzinfo=None) == now.replace(tzinfo=None)


def test_ensure_user_tolerates_handle_conflicts(cache):
    cache.upsert_user(UserRecord(id="u1", handle="alice", created_at=utcnow()))

    assert cache.ensure_user("u1", "renamed").handle == "alice"
    assert cache.ensure_user("u2", "alice") is None
    assert cache.ensure_user("u3", "carol").handle == "carol"


def test_touch_user(cache):
    with pytest.raises(UnknownUserError):
        cache.touch_user("ghost")

    cache.upsert_user(UserRecord(id="u1", handle="alice", created_at=utcnow()))
    assert cache.touch_user("u1").last_seen_at is not None


def test_database_failures_become_cache_integrity_errors(mocker):
    session = mocker.MagicMock()
    session.__enter__.return_value.get.side_effect = OperationalError("SELECT", {}, Exception("disk I/O error"))
    cache = LocalCache(lambda: session)

    with pytest.raises(CacheIntegrityError):
        cache.get_user("u1")
