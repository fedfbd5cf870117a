"""Remote blob store adapters.

This module defines the contract the sync engine relies on and two
implementations of it:

- ``WebDAVStore``: HTTP client for a WebDAV server (MKCOL, PROPFIND, GET,
  PUT with ``If-None-Match: *``), with timeouts, error mapping and a
  circuit breaker for fault tolerance
- ``MemoryRemoteStore``: in-process store with the same semantics, used for
  offline runs and tests

The adapters contain no business logic.
"""

from __future__ import annotations

import asyncio
import logging
import time
import xml.etree.ElementTree as ET
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Protocol, runtime_checkable
from urllib.parse import quote, unquote, urlsplit

import httpx

from davchat.core.errors import (
    AlreadyExistsError,
    ErrorKind,
    NotFoundError,
    RemoteStoreError,
    TransientStoreError,
)
from davchat.core.settings import Settings
from davchat.db.time import utcnow

# Configure logger for this module
logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_OK = 200
HTTP_CREATED = 201
HTTP_NO_CONTENT = 204
HTTP_MULTI_STATUS = 207
HTTP_NOT_FOUND = 404
HTTP_METHOD_NOT_ALLOWED = 405
HTTP_CONFLICT = 409
HTTP_PRECONDITION_FAILED = 412
HTTP_INTERNAL_SERVER_ERROR = 500

DAV_NS = "{DAV:}"

PROPFIND_BODY = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<d:propfind xmlns:d="DAV:"><d:prop>'
    "<d:resourcetype/><d:getlastmodified/><d:getcontentlength/>"
    "</d:prop></d:propfind>"
)


@dataclass(frozen=True)
class RemoteEntry:
    """One item of a remote directory listing."""

    name: str
    is_directory: bool
    last_modified: datetime | None = None
    size: int | None = None


@runtime_checkable
class RemoteStore(Protocol):
    """Contract of the shared blob store consumed by the sync engine."""

    async def ensure_directory(self, path: str) -> None:
        """Create ``path``; raises ``AlreadyExistsError`` if it exists."""

    async def list(self, path: str) -> list[RemoteEntry]:
        """Return the direct children of ``path``."""

    async def read_blob(self, path: str) -> bytes:
        """Return the content of ``path``; raises ``NotFoundError``."""

    async def write_blob(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        """Store ``data``; raises ``AlreadyExistsError`` when not overwriting."""

    async def stat(self, path: str) -> RemoteEntry:
        """Return metadata of ``path``; raises ``NotFoundError``."""

    async def aclose(self) -> None:
        """Release transport resources."""


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreaker:
    """Stops hammering an unreachable WebDAV server.

    After ``failure_threshold`` consecutive failures every request fails fast
    with ``TransientStoreError`` until ``recovery_seconds`` have passed. The
    next request is then let through as a probe: success closes the circuit,
    failure opens it again for another recovery period.
    """

    def __init__(
        self,
        failure_threshold: int,
        recovery_seconds: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitState:
        return self._state

    def allow_request(self) -> bool:
        if self._state is CircuitState.OPEN:
            if self._clock() - self._opened_at < self.recovery_seconds:
                return False
            self._state = CircuitState.HALF_OPEN
            logger.info("WebDAV circuit half-open, probing the server")
        return True

    def record_success(self) -> None:
        if self._state is not CircuitState.CLOSED:
            logger.info("WebDAV server reachable again, closing circuit")
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0

    def record_failure(self) -> None:
        self._consecutive_failures += 1
        if self._state is CircuitState.HALF_OPEN or self._consecutive_failures >= self.failure_threshold:
            if self._state is not CircuitState.OPEN:
                logger.warning(
                    "WebDAV circuit opened after %d consecutive failures",
                    self._consecutive_failures,
                    extra={"error_kind": ErrorKind.WEBDAV.value},
                )
            self._state = CircuitState.OPEN
            self._opened_at = self._clock()


@dataclass
class StoreMetrics:
    """Request counters for store operations."""

    request_count: int = 0
    error_count: int = 0
    total_response_time: float = 0.0
    method_counts: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    error_counts_by_type: dict[str, int] = field(default_factory=lambda: defaultdict(int))

    def record_request(self, method: str, response_time: float, error_type: str | None = None) -> None:
        self.request_count += 1
        self.total_response_time += response_time
        self.method_counts[method] += 1
        if error_type:
            self.error_count += 1
            self.error_counts_by_type[error_type] += 1

    def get_average_response_time(self) -> float:
        return self.total_response_time / self.request_count if self.request_count > 0 else 0.0


@dataclass(frozen=True)
class WebDAVConfig:
    """Immutable configuration for WebDAV access."""

    base_url: str
    username: str | None = None
    password: str | None = None
    timeout_seconds: float = 10.0
    circuit_failure_threshold: int = 5
    circuit_recovery_seconds: float = 30.0


def load_webdav_config(settings: Settings) -> WebDAVConfig:
    """Build a ``WebDAVConfig`` from settings.

    Raises:
        ValueError: If no WebDAV URL is configured
    """
    if not settings.webdav_url:
        raise ValueError("WEBDAV_URL must be configured to use the WebDAV store")
    return WebDAVConfig(
        base_url=settings.webdav_url,
        username=settings.webdav_username,
        password=settings.webdav_password,
        timeout_seconds=float(settings.http_timeout_seconds),
        circuit_failure_threshold=settings.circuit_failure_threshold,
        circuit_recovery_seconds=float(settings.circuit_recovery_seconds),
    )


def _normalize(path: str) -> str:
    return "/".join(segment for segment in path.split("/") if segment)


def _parent(path: str) -> str:
    return path.rsplit("/", 1)[0] if "/" in path else ""


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


class WebDAVStore:
    """HTTP client wrapper implementing ``RemoteStore`` on top of WebDAV."""

    def __init__(
        self,
        config: WebDAVConfig,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = CircuitBreaker(
            config.circuit_failure_threshold,
            config.circuit_recovery_seconds,
        )
        self._metrics = StoreMetrics()
        self._base_path = urlsplit(config.base_url).path.rstrip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> WebDAVStore:
        return cls(load_webdav_config(settings))

    async def _ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                auth = None
                if self.config.username is not None:
                    auth = httpx.BasicAuth(self.config.username, self.config.password or "")
                base_url = self.config.base_url.rstrip("/") + "/"
                self._client = httpx.AsyncClient(
                    base_url=base_url,
                    auth=auth,
                    timeout=httpx.Timeout(self.config.timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    @staticmethod
    def _url(path: str) -> str:
        return "/".join(quote(segment, safe="") for segment in _normalize(path).split("/"))

    async def _request(
        self,
        method: str,
        path: str,
        *,
        content: bytes | str | None = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        if not self._circuit_breaker.allow_request():
            raise TransientStoreError("WebDAV circuit breaker is open - store unavailable")

        client = await self._ensure_client()
        start_time = time.time()
        error_type: str | None = None

        try:
            response = await client.request(method, self._url(path), content=content, headers=headers)
        except httpx.TimeoutException as exc:
            self._circuit_breaker.record_failure()
            error_type = "timeout"
            raise TransientStoreError(f"WebDAV {method} {path} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            self._circuit_breaker.record_failure()
            error_type = "network_error"
            raise TransientStoreError(f"WebDAV {method} {path} failed: {exc}") from exc
        except httpx.RequestError as exc:
            # Undecodable bodies, redirect loops and similar protocol faults.
            self._circuit_breaker.record_failure()
            error_type = "request_error"
            raise TransientStoreError(f"WebDAV {method} {path} could not be completed: {exc}") from exc
        finally:
            if error_type is not None:
                self._metrics.record_request(method, time.time() - start_time, error_type)

        elapsed = time.time() - start_time
        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
            self._metrics.record_request(method, elapsed, f"http_{response.status_code}")
            raise TransientStoreError(f"WebDAV {method} {path} answered {response.status_code}")

        self._circuit_breaker.record_success()
        self._metrics.record_request(method, elapsed)
        return response

    def _unexpected(self, method: str, path: str, response: httpx.Response) -> RemoteStoreError:
        return RemoteStoreError(f"Unexpected WebDAV response ({response.status_code}) for {method} {path}")

    async def _mkcol(self, path: str) -> None:
        response = await self._request("MKCOL", path)
        if response.status_code in (HTTP_OK, HTTP_CREATED):
            return
        if response.status_code == HTTP_METHOD_NOT_ALLOWED:
            raise AlreadyExistsError(f"Remote directory {path} already exists")
        if response.status_code == HTTP_CONFLICT:
            raise NotFoundError(f"Parent of {path} does not exist")
        raise self._unexpected("MKCOL", path, response)

    async def ensure_directory(self, path: str) -> None:
        """Create ``path`` and any missing parents.

        Raises:
            AlreadyExistsError: If the final directory already exists
        """
        segments = _normalize(path).split("/")
        for depth in range(1, len(segments)):
            try:
                await self._mkcol("/".join(segments[:depth]))
            except AlreadyExistsError:
                continue
        await self._mkcol("/".join(segments))

    async def _propfind(self, path: str, depth: str) -> list[tuple[str, RemoteEntry]]:
        response = await self._request(
            "PROPFIND",
            path,
            content=PROPFIND_BODY,
            headers={"Depth": depth, "Content-Type": "application/xml; charset=utf-8"},
        )
        if response.status_code == HTTP_NOT_FOUND:
            raise NotFoundError(f"Remote path {path} not found")
        if response.status_code != HTTP_MULTI_STATUS:
            raise self._unexpected("PROPFIND", path, response)
        try:
            return self._parse_multistatus(response.content)
        except ET.ParseError as exc:
            raise RemoteStoreError(f"Malformed PROPFIND response for {path}: {exc}") from exc

    @staticmethod
    def _parse_multistatus(body: bytes) -> list[tuple[str, RemoteEntry]]:
        root = ET.fromstring(body)
        entries: list[tuple[str, RemoteEntry]] = []
        for node in root.iter(f"{DAV_NS}response"):
            href = node.findtext(f"{DAV_NS}href") or ""
            href_path = unquote(urlsplit(href).path).rstrip("/")
            prop = node.find(f"{DAV_NS}propstat/{DAV_NS}prop")
            is_directory = False
            last_modified = None
            size = None
            if prop is not None:
                resource_type = prop.find(f"{DAV_NS}resourcetype")
                is_directory = (
                    resource_type is not None
                    and resource_type.find(f"{DAV_NS}collection") is not None
                )
                last_modified = _parse_http_date(prop.findtext(f"{DAV_NS}getlastmodified"))
                length = prop.findtext(f"{DAV_NS}getcontentlength")
                if length and length.strip().isdigit():
                    size = int(length.strip())
            name = href_path.rsplit("/", 1)[-1]
            entries.append(
                (href_path, RemoteEntry(name, is_directory, last_modified, size))
            )
        return entries

    def _full_path(self, path: str) -> str:
        normalized = _normalize(path)
        return f"{self._base_path}/{normalized}" if normalized else self._base_path

    async def list(self, path: str) -> list[RemoteEntry]:
        """Return the children of ``path`` (PROPFIND depth 1)."""
        own_path = self._full_path(path)
        return [
            entry
            for href_path, entry in await self._propfind(path, "1")
            if href_path != own_path and entry.name
        ]

    async def stat(self, path: str) -> RemoteEntry:
        """Return metadata for ``path`` (PROPFIND depth 0)."""
        entries = await self._propfind(path, "0")
        if not entries:
            raise NotFoundError(f"Remote path {path} not found")
        return entries[0][1]

    async def read_blob(self, path: str) -> bytes:
        response = await self._request("GET", path)
        if response.status_code == HTTP_NOT_FOUND:
            raise NotFoundError(f"Remote blob {path} not found")
        if response.status_code != HTTP_OK:
            raise self._unexpected("GET", path, response)
        return response.content

    async def write_blob(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        """Upload ``data``; without ``overwrite`` the server must not replace an existing blob."""
        headers = {"Content-Type": "application/octet-stream"}
        if not overwrite:
            headers["If-None-Match"] = "*"
        response = await self._request("PUT", path, content=data, headers=headers)
        if response.status_code in (HTTP_OK, HTTP_CREATED, HTTP_NO_CONTENT):
            return
        if response.status_code == HTTP_PRECONDITION_FAILED:
            raise AlreadyExistsError(f"Remote blob {path} already exists")
        if response.status_code == HTTP_CONFLICT:
            raise NotFoundError(f"Parent directory of {path} does not exist")
        raise self._unexpected("PUT", path, response)

    def get_metrics(self) -> dict[str, object]:
        """Return request counters and the circuit breaker state."""
        return {
            "request_count": self._metrics.request_count,
            "error_count": self._metrics.error_count,
            "average_response_time": self._metrics.get_average_response_time(),
            "method_counts": dict(self._metrics.method_counts),
            "error_counts_by_type": dict(self._metrics.error_counts_by_type),
            "circuit_state": self._circuit_breaker.state.value,
        }

    async def aclose(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


class MemoryRemoteStore:
    """In-process ``RemoteStore`` with WebDAV-like semantics.

    Several clients sharing one instance behave like clients sharing a server:
    writes into a missing directory fail, write-if-absent is atomic, and
    listings are returned in name order.
    """

    def __init__(self) -> None:
        self._directories: set[str] = {""}
        self._blobs: dict[str, tuple[bytes, datetime]] = {}

    async def ensure_directory(self, path: str) -> None:
        normalized = _normalize(path)
        segments = normalized.split("/")
        for depth in range(1, len(segments)):
            self._directories.add("/".join(segments[:depth]))
        if normalized in self._directories:
            raise AlreadyExistsError(f"Remote directory {path} already exists")
        if normalized in self._blobs:
            raise RemoteStoreError(f"Remote path {path} is a file")
        self._directories.add(normalized)

    async def list(self, path: str) -> list[RemoteEntry]:
        normalized = _normalize(path)
        if normalized not in self._directories:
            raise NotFoundError(f"Remote path {path} not found")
        entries = [
            RemoteEntry(directory.rsplit("/", 1)[-1], True)
            for directory in self._directories
            if directory and _parent(directory) == normalized
        ]
        entries.extend(
            RemoteEntry(blob_path.rsplit("/", 1)[-1], False, modified, len(data))
            for blob_path, (data, modified) in self._blobs.items()
            if _parent(blob_path) == normalized
        )
        return sorted(entries, key=lambda entry: entry.name)

    async def read_blob(self, path: str) -> bytes:
        try:
            return self._blobs[_normalize(path)][0]
        except KeyError as err:
            raise NotFoundError(f"Remote blob {path} not found") from err

    async def write_blob(self, path: str, data: bytes, *, overwrite: bool = False) -> None:
        normalized = _normalize(path)
        if _parent(normalized) not in self._directories:
            raise NotFoundError(f"Parent directory of {path} does not exist")
        if normalized in self._directories:
            raise RemoteStoreError(f"Remote path {path} is a directory")
        if not overwrite and normalized in self._blobs:
            raise AlreadyExistsError(f"Remote blob {path} already exists")
        self._blobs[normalized] = (bytes(data), utcnow())

    async def stat(self, path: str) -> RemoteEntry:
        normalized = _normalize(path)
        name = normalized.rsplit("/", 1)[-1]
        if normalized in self._directories:
            return RemoteEntry(name, True)
        if normalized in self._blobs:
            data, modified = self._blobs[normalized]
            return RemoteEntry(name, False, modified, len(data))
        raise NotFoundError(f"Remote path {path} not found")

    async def delete(self, path: str) -> None:
        """Remove a blob; used to simulate store-side cleanup."""
        try:
            del self._blobs[_normalize(path)]
        except KeyError as err:
            raise NotFoundError(f"Remote blob {path} not found") from err

    async def aclose(self) -> None:
        return None
