# src/davchat/schemas/envelope.py
"""Wire format of a single message or file reference stored remotely."""

from __future__ import annotations

import base64
import binascii
import re
import secrets
from enum import Enum
from typing import Any

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from davchat.core.errors import ParseError

ENVELOPE_VERSION = 1
IV_LENGTH_BYTES = 16

ENTRY_PREFIX = "msg_"
ENTRY_SUFFIX = ".json"
_ENTRY_NAME_RE = re.compile(r"^msg_(?P<sent_at>\d{1,19})_(?P<iv>[0-9a-f]{32})(?:_[0-9a-f]{4})?\.json$")


class MessageKind(str, Enum):
    """Payload type carried by an envelope."""

    TEXT = "text"
    FILE = "file"


def _b64encode(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def _b64decode(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return base64.b64decode(value.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as err:
            raise ValueError(f"Invalid base64 encoding: {err}") from err
    return value


class FileMeta(BaseModel):
    """Reference to an out-of-line attachment blob.

    Only ``attachment_id`` is required. Name, size and type are present in the
    clear only when the sender disabled metadata encryption; the authoritative
    copy travels inside the encrypted payload.
    """

    attachment_id: str = Field(alias="attachmentId", min_length=1, max_length=64)
    original_name: str | None = Field(default=None, alias="originalName")
    byte_size: int | None = Field(default=None, alias="byteSize", ge=0)
    mime_type: str | None = Field(default=None, alias="mimeType")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("attachment_id")
    @classmethod
    def _safe_attachment_id(cls, value: str) -> str:
        if "/" in value or value in (".", ".."):
            raise ValueError("attachmentId must be a single path segment")
        return value


class FileDescriptor(BaseModel):
    """Attachment metadata encrypted into a file envelope's payload."""

    attachment_id: str = Field(alias="attachmentId")
    original_name: str = Field(alias="originalName")
    byte_size: int = Field(alias="byteSize", ge=0)
    mime_type: str = Field(default="application/octet-stream", alias="mimeType")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    def to_bytes(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes) -> FileDescriptor:
        try:
            return cls.model_validate_json(data)
        except ValidationError as err:
            raise ParseError(f"Invalid attachment descriptor: {err}") from err


class MessageEnvelope(BaseModel):
    """Encrypted message exchanged through the remote store.

    Envelopes are immutable. Their identity for deduplication is the
    ``(sender_id, sent_at, iv)`` triple, which every client can recompute
    from the envelope itself without any store-assigned id.
    """

    version: int = Field(default=ENVELOPE_VERSION, alias="v")
    sender_id: str = Field(alias="senderId", min_length=1)
    sender_handle: str = Field(alias="senderHandle")
    recipient_id: str = Field(alias="recipientId", min_length=1)
    recipient_handle: str = Field(alias="recipientHandle")
    sent_at: int = Field(alias="sentAt", ge=0)
    kind: MessageKind
    iv: bytes
    cipher_payload: bytes = Field(alias="cipherPayload")
    file_meta: FileMeta | None = Field(default=None, alias="fileMeta")

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @field_validator("iv", "cipher_payload", mode="before")
    @classmethod
    def _decode_bytes(cls, value: Any) -> Any:
        return _b64decode(value)

    @field_validator("iv")
    @classmethod
    def _iv_length(cls, value: bytes) -> bytes:
        if len(value) != IV_LENGTH_BYTES:
            raise ValueError(f"iv must be {IV_LENGTH_BYTES} bytes")
        return value

    @field_serializer("iv", "cipher_payload")
    def _encode_bytes(self, value: bytes) -> str:
        return _b64encode(value)

    @model_validator(mode="after")
    def _file_meta_matches_kind(self) -> MessageEnvelope:
        if self.kind is MessageKind.FILE and self.file_meta is None:
            raise ValueError("file envelopes require fileMeta")
        if self.kind is MessageKind.TEXT and self.file_meta is not None:
            raise ValueError("text envelopes must not carry fileMeta")
        return self

    @property
    def dedup_key(self) -> tuple[str, int, bytes]:
        """Return the identity triple used for idempotent ingestion."""
        return self.sender_id, self.sent_at, self.iv

    @property
    def entry_name(self) -> str:
        """Return the collision-resistant remote entry name for this envelope."""
        return build_entry_name(self.sent_at, self.iv)

    def to_bytes(self) -> bytes:
        """Serialize to the JSON wire format."""
        return self.model_dump_json(by_alias=True, exclude_none=True).encode("utf-8")

    @classmethod
    def from_bytes(cls, data: bytes | str) -> MessageEnvelope:
        """Parse the JSON wire format.

        Raises:
            ParseError: If ``data`` is not a valid envelope
        """
        try:
            return cls.model_validate_json(data)
        except ValidationError as err:
            raise ParseError(f"Malformed envelope: {err.error_count()} validation error(s)") from err


def serialize(envelope: MessageEnvelope) -> bytes:
    """Serialize ``envelope`` to bytes."""
    return envelope.to_bytes()


def parse(data: bytes | str) -> MessageEnvelope:
    """Parse bytes into a :class:`MessageEnvelope`."""
    return MessageEnvelope.from_bytes(data)


def build_entry_name(sent_at: int, iv: bytes, *, disambiguate: bool = False) -> str:
    """Return ``msg_<sentAt>_<iv hex>.json``.

    With ``disambiguate`` a random 4 hex digit suffix is added; used after a
    name collision with a different envelope.
    """
    stem = f"{ENTRY_PREFIX}{sent_at:013d}_{iv.hex()}"
    if disambiguate:
        stem = f"{stem}_{secrets.token_hex(2)}"
    return f"{stem}{ENTRY_SUFFIX}"


def parse_entry_name(name: str) -> int | None:
    """Return the ``sentAt`` encoded in an entry name, or None for foreign names."""
    match = _ENTRY_NAME_RE.match(name)
    if match is None:
        return None
    return int(match.group("sent_at"))
