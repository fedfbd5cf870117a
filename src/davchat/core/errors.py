# src/davchat/core/errors.py
"""Exception hierarchy shared by the DavChat services.

Every exception carries an ``error_kind`` tag. The logging setup in
:mod:`davchat.core.logging` writes that tag into the error log so failures can
be grouped by origin (network, WebDAV, encryption, file handling, cache).
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    """Coarse origin of a failure, recorded with every logged error."""

    NETWORK = "network"
    WEBDAV = "webdav"
    ENCRYPTION = "encryption"
    FILE_OPERATION = "file_operation"
    CACHE = "cache"
    UNKNOWN = "unknown"


class DavChatError(RuntimeError):
    """Base exception raised for DavChat failures."""

    error_kind: ErrorKind = ErrorKind.UNKNOWN


class RemoteStoreError(DavChatError):
    """The remote store rejected a request for a non-transient reason."""

    error_kind = ErrorKind.WEBDAV


class TransientStoreError(RemoteStoreError):
    """The remote store was unreachable, timed out or answered with a 5xx.

    Polls retry on the next tick; sends retry a bounded number of times.
    """

    error_kind = ErrorKind.NETWORK


class NotFoundError(RemoteStoreError):
    """The requested remote path does not exist."""


class AlreadyExistsError(RemoteStoreError):
    """A write-if-absent or directory creation hit an existing path."""


class DecryptionError(DavChatError):
    """Ciphertext could not be decrypted (wrong key, tampering, bad framing)."""

    error_kind = ErrorKind.ENCRYPTION


class ParseError(DavChatError):
    """A remote entry is not a valid envelope."""

    error_kind = ErrorKind.FILE_OPERATION


class DuplicateNameError(RemoteStoreError):
    """An outbound entry name collided with a different envelope twice."""


class SendFailed(DavChatError):
    """An outbound message could not be written to the remote store."""

    error_kind = ErrorKind.NETWORK

    def __init__(self, message: str, *, entry_name: str | None = None) -> None:
        super().__init__(message)
        self.entry_name = entry_name


class CacheIntegrityError(DavChatError):
    """The local cache is unreachable or corrupt."""

    error_kind = ErrorKind.CACHE


class DuplicateHandleError(DavChatError):
    """A different user already owns the requested handle."""

    error_kind = ErrorKind.CACHE


class UnknownUserError(DavChatError):
    """No user with the given handle or id is known locally."""

    error_kind = ErrorKind.CACHE


def error_kind_of(exc: BaseException) -> str:
    """Return the logging tag for ``exc``."""
    kind = getattr(exc, "error_kind", ErrorKind.UNKNOWN)
    return kind.value if isinstance(kind, ErrorKind) else str(kind)
