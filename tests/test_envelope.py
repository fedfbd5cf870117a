import base64
import json
import os

import pytest

from davchat.core.errors import ParseError
from davchat.schemas.envelope import (
    FileDescriptor,
    FileMeta,
    MessageEnvelope,
    MessageKind,
    build_entry_name,
    parse,
    parse_entry_name,
    serialize,
)


def make_envelope(**overrides):
    values = {
        "sender_id": "a1ice",
        "sender_handle": "alice",
        "recipient_id": "b0b",
        "recipient_handle": "bob",
        "sent_at": 1_700_000_000_123,
        "kind": MessageKind.TEXT,
        "iv": bytes(range(16)),
        "cipher_payload": b"\x01" * 32,
    }
    values.update(overrides)
    return MessageEnvelope(**values)


def test_wire_format_uses_camel_case_and_base64():
    envelope = make_envelope()

    wire = json.loads(serialize(envelope))

    assert wire == {
        "v": 1,
        "senderId": "a1ice",
        "senderHandle": "alice",
        "recipientId": "b0b",
        "recipientHandle": "bob",
        "sentAt": 1_700_000_000_123,
        "kind": "text",
        "iv": base64.b64encode(bytes(range(16))).decode(),
        "cipherPayload": base64.b64encode(b"\x01" * 32).decode(),
    }
    assert parse(serialize(envelope)) == envelope


def test_file_envelope_keeps_file_meta():
    envelope = make_envelope(kind=MessageKind.FILE, file_meta=FileMeta(attachment_id="abc123"))

    parsed = MessageEnvelope.from_bytes(envelope.to_bytes())

    assert parsed.file_meta == FileMeta(attachment_id="abc123")
    assert json.loads(envelope.to_bytes())["fileMeta"] == {"attachmentId": "abc123"}


def test_dedup_key_and_entry_name():
    envelope = make_envelope()

    assert envelope.dedup_key == ("a1ice", 1_700_000_000_123, bytes(range(16)))
    assert envelope.entry_name == "msg_1700000000123_000102030405060708090a0b0c0d0e0f.json"


@pytest.mark.parametrize(
    "data",
    [
        b"",
        b"not json",
        b"[]",
        b'{"senderId": "a"}',
    ],
)
def test_parse_rejects_malformed_documents(data):
    with pytest.raises(ParseError):
        parse(data)


def test_parse_rejects_bad_fields():
    wire = json.loads(make_envelope().to_bytes())

    for field, value in (
        ("iv", base64.b64encode(b"short").decode()),
        ("iv", "***not base64***"),
        ("sentAt", -1),
        ("kind", "voice"),
        ("fileMeta", {"attachmentId": "x"}),
    ):
        broken = dict(wire, **{field: value})
        with pytest.raises(ParseError):
            parse(json.dumps(broken).encode())


def test_file_envelope_requires_file_meta():
    wire = json.loads(make_envelope().to_bytes())
    wire["kind"] = "file"
    with pytest.raises(ParseError):
        parse(json.dumps(wire))


def test_attachment_id_must_be_single_segment():
    with pytest.raises(ValueError):
        FileMeta(attachment_id="../escape")


def test_file_descriptor_round_trip():
    descriptor = FileDescriptor(attachment_id="abc", original_name="a.txt", byte_size=3)

    assert FileDescriptor.from_bytes(descriptor.to_bytes()) == descriptor
    assert descriptor.mime_type == "application/octet-stream"
    with pytest.raises(ParseError):
        FileDescriptor.from_bytes(b"{}")


def test_entry_names_sort_by_send_time_and_parse_back():
    iv = os.urandom(16)
    early = build_entry_name(5, iv)
    late = build_entry_name(1_700_000_000_000, iv)
    suffixed = build_entry_name(5, iv, disambiguate=True)

    assert early < late
    assert parse_entry_name(early) == 5
    assert parse_entry_name(late) == 1_700_000_000_000
    assert suffixed != early
    assert parse_entry_name(suffixed) == 5
    assert parse_entry_name("msg_3f2a6c1e-uuid.json") is None
    assert parse_entry_name("notes.txt") is None
