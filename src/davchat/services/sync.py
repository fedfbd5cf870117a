"""Synchronization between the local cache and the shared remote store.

This module provides the SyncEngine class that exchanges encrypted envelopes
with other clients through a dumb remote store. It handles:

- Idempotent creation of the per-channel remote directories
- Poll ticks: listing, fetching, parsing, decrypting and ingesting entries
- Outbound sends with write-if-absent and bounded retries
- Attachment upload and download
- A background polling task per engine

Correctness rests on the idempotent ``LocalCache.upsert_message``; the cursor
and the seen-set only avoid redundant work.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import uuid
from collections import OrderedDict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePath

from davchat.core.errors import (
    AlreadyExistsError,
    CacheIntegrityError,
    DavChatError,
    DecryptionError,
    DuplicateNameError,
    NotFoundError,
    ParseError,
    RemoteStoreError,
    SendFailed,
    TransientStoreError,
    error_kind_of,
)
from davchat.core.settings import Settings
from davchat.db.time import now_ms
from davchat.models import DELIVERY_FAILED, DELIVERY_PENDING, DELIVERY_SENT
from davchat.schemas.envelope import (
    ENTRY_SUFFIX,
    FileDescriptor,
    FileMeta,
    MessageEnvelope,
    MessageKind,
    build_entry_name,
    parse_entry_name,
)
from davchat.services.cache import LocalCache, MessageRecord, UpsertResult, UserRecord
from davchat.services.channels import Channel, ChannelResolver
from davchat.services.crypto import CryptoCodec
from davchat.services.events import DeliveryFailure, EventHub, SendFailure
from davchat.services.remote_store import RemoteStore

# Configure logger for this module
logger = logging.getLogger(__name__)

DEFAULT_MIME_TYPE = "application/octet-stream"


class ChannelState(Enum):
    """Lifecycle of a channel inside one engine."""

    UNINITIALIZED = "uninitialized"
    DIRECTORY_ENSURED = "directory_ensured"
    POLLING = "polling"


@dataclass
class SyncCursor:
    """Highest ``sentAt`` observed on a channel.

    Producer clocks are skewed, so the watermark never rejects an entry on its
    own; it only marks entries old enough to be checked against the cache
    before they are downloaded.
    """

    watermark: int | None = None

    def advance(self, sent_at: int) -> None:
        if self.watermark is None or sent_at > self.watermark:
            self.watermark = sent_at

    def is_stale(self, sent_at: int, tolerance_ms: int) -> bool:
        return self.watermark is not None and sent_at < self.watermark - tolerance_ms


class SeenSet:
    """Bounded record of entry names already processed by this process.

    Once it grows past ``max_size`` only the ``trim_to`` most recently added
    names are kept. Eviction only costs a redundant download and decrypt; the
    cache upsert still absorbs the duplicate.
    """

    def __init__(self, max_size: int = 1000, trim_to: int = 500) -> None:
        self.max_size = max(1, max_size)
        self.trim_to = max(0, min(trim_to, self.max_size))
        self._names: OrderedDict[str, None] = OrderedDict()

    def __contains__(self, name: object) -> bool:
        return name in self._names

    def __len__(self) -> int:
        return len(self._names)

    def add(self, name: str) -> None:
        self._names[name] = None
        self._names.move_to_end(name)
        if len(self._names) > self.max_size:
            while len(self._names) > self.trim_to:
                self._names.popitem(last=False)

    def update(self, names: Iterable[str]) -> None:
        for name in names:
            self.add(name)


@dataclass
class TickReport:
    """Summary of one poll tick on one channel."""

    channel_key: str
    listed: int = 0
    fetched: int = 0
    inserted: int = 0
    duplicates: int = 0
    skipped: int = 0
    failures: list[DeliveryFailure] = field(default_factory=list)
    transient_error: str | None = None
    aborted: bool = False

    @property
    def ok(self) -> bool:
        return self.transient_error is None and not self.aborted


@dataclass
class ChannelSync:
    """Per-channel synchronization state owned by the engine."""

    channel: Channel
    peer: UserRecord
    cursor: SyncCursor
    seen: SeenSet
    state: ChannelState = ChannelState.UNINITIALIZED
    inflight: asyncio.Task[TickReport] | None = None


class SyncEngine:
    """Polls channels of the local user and publishes outbound messages.

    All collaborators are passed in explicitly; the engine keeps no global
    state. Ticks are safe to overlap with each other and with sends because
    every effect on the cache is an idempotent upsert.
    """

    def __init__(
        self,
        *,
        store: RemoteStore,
        cache: LocalCache,
        codec: CryptoCodec,
        resolver: ChannelResolver,
        local_user: UserRecord,
        settings: Settings,
        events: EventHub | None = None,
        clock: Callable[[], int] | None = None,
    ) -> None:
        """Initialize the sync engine.

        Args:
            store: Remote blob store shared with the other clients
            cache: Local durable cache
            codec: Codec holding the shared key
            resolver: Channel resolver for remote paths
            local_user: Identity this client sends as
            settings: Client settings (intervals, retry and eviction bounds)
            events: Event hub notified of inbound messages and failures
            clock: Millisecond wall clock, injectable for tests
        """
        self.store = store
        self.cache = cache
        self.codec = codec
        self.resolver = resolver
        self.local_user = local_user
        self.settings = settings
        self.events = events or EventHub()
        self._clock = clock or now_ms
        self._last_sent_at = 0
        self._channels: dict[str, ChannelSync] = {}
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    # --- Channels -------------------------------------------------------------------

    def _channel_for(self, peer: UserRecord) -> ChannelSync:
        channel = self.resolver.resolve(self.local_user.id, peer.id)
        sync = self._channels.get(channel.key)
        if sync is None:
            sync = ChannelSync(
                channel=channel,
                peer=peer,
                cursor=SyncCursor(),
                seen=SeenSet(self.settings.seen_set_max, self.settings.seen_set_trim),
            )
            self._channels[channel.key] = sync
        return sync

    def channel_state(self, peer: UserRecord) -> ChannelState:
        return self._channel_for(peer).state

    def cursor(self, peer: UserRecord) -> SyncCursor:
        return self._channel_for(peer).cursor

    @property
    def open_channels(self) -> list[Channel]:
        return [sync.channel for sync in self._channels.values()]

    async def open_channel(self, peer: UserRecord) -> Channel:
        """Register the channel with ``peer`` for polling and create its directories.

        A failure to create the directories is logged and retried on the next
        tick.
        """
        sync = self._channel_for(peer)
        if sync.state is ChannelState.UNINITIALIZED:
            await self._ensure_directories(sync)
        return sync.channel

    async def _ensure_directories(self, sync: ChannelSync) -> bool:
        for path in (sync.channel.messages_path, sync.channel.files_path):
            try:
                await self.store.ensure_directory(path)
            except AlreadyExistsError:
                continue
            except RemoteStoreError as exc:
                logger.warning(
                    "Could not create remote directory %s: %s",
                    path,
                    exc,
                    extra={"error_kind": error_kind_of(exc)},
                )
                return False
        sync.state = ChannelState.DIRECTORY_ENSURED
        logger.debug("Remote directories ready for channel %s", sync.channel.key)
        sync.state = ChannelState.POLLING
        return True

    # --- Inbound --------------------------------------------------------------------

    async def poll_once(self, peer: UserRecord) -> TickReport:
        """Run one inbound tick for the channel with ``peer``.

        Unlike :meth:`sync_now` this does not join a tick already in flight.
        """
        return await self._tick(self._channel_for(peer))

    async def sync_now(self, peer: UserRecord) -> TickReport:
        """Manually trigger a tick, sharing the result of one already running."""
        return await asyncio.shield(self._start_tick(self._channel_for(peer)))

    def _start_tick(self, sync: ChannelSync) -> asyncio.Task[TickReport]:
        if sync.inflight is None or sync.inflight.done():
            sync.inflight = asyncio.create_task(self._tick(sync))
        return sync.inflight

    async def _tick(self, sync: ChannelSync) -> TickReport:
        channel = sync.channel
        report = TickReport(channel_key=channel.key)

        if sync.state is ChannelState.UNINITIALIZED and not await self._ensure_directories(sync):
            report.transient_error = "channel directories not ready"
            return report

        try:
            entries = await self.store.list(channel.messages_path)
        except NotFoundError:
            logger.warning("Remote directory %s disappeared; re-initializing", channel.messages_path)
            sync.state = ChannelState.UNINITIALIZED
            report.transient_error = "channel directory missing"
            return report
        except RemoteStoreError as exc:
            logger.warning(
                "Listing %s failed: %s",
                channel.messages_path,
                exc,
                extra={"error_kind": error_kind_of(exc)},
            )
            report.transient_error = str(exc)
            return report

        report.listed = len(entries)
        candidates = [
            entry.name
            for entry in entries
            if not entry.is_directory
            and entry.name.endswith(ENTRY_SUFFIX)
            and entry.name not in sync.seen
        ]

        processed: list[str] = []
        newest: int | None = None
        try:
            candidates = await self._prefilter(sync, candidates, processed, report)
            for name in candidates:
                try:
                    envelope, result = await self._ingest(sync, name)
                except (ParseError, DecryptionError) as exc:
                    self._report_failure(channel, name, exc, report)
                    processed.append(name)
                    continue
                except NotFoundError:
                    logger.info("Entry %s vanished before it could be read", name)
                    continue
                except RemoteStoreError as exc:
                    logger.warning(
                        "Reading entry %s failed: %s",
                        name,
                        exc,
                        extra={"error_kind": error_kind_of(exc)},
                    )
                    continue

                processed.append(name)
                report.fetched += 1
                if result.inserted:
                    report.inserted += 1
                else:
                    report.duplicates += 1
                newest = envelope.sent_at if newest is None else max(newest, envelope.sent_at)
        except CacheIntegrityError as exc:
            logger.error(
                "Local cache failed during tick on %s: %s",
                channel.key,
                exc,
                extra={"error_kind": error_kind_of(exc)},
            )
            report.aborted = True
            self.events.cache_error(exc)
        finally:
            sync.seen.update(processed)
            if newest is not None:
                sync.cursor.advance(newest)

        if report.inserted:
            logger.info("Ingested %d new message(s) on channel %s", report.inserted, channel.key)
        return report

    async def _prefilter(
        self,
        sync: ChannelSync,
        names: list[str],
        processed: list[str],
        report: TickReport,
    ) -> list[str]:
        """Drop entries older than the watermark that the cache already holds."""
        tolerance = self.settings.cursor_skew_tolerance_ms
        stale = []
        for name in names:
            sent_at = parse_entry_name(name)
            if sent_at is not None and sync.cursor.is_stale(sent_at, tolerance):
                stale.append(name)
        if not stale:
            return names

        known = await asyncio.to_thread(self.cache.known_entry_names, sync.channel.key, stale)
        if known:
            processed.extend(known)
            report.skipped += len(known)
        return [name for name in names if name not in known]

    async def _ingest(self, sync: ChannelSync, name: str) -> tuple[MessageEnvelope, UpsertResult]:
        channel = sync.channel
        data = await self.store.read_blob(channel.message_entry_path(name))
        envelope = MessageEnvelope.from_bytes(data)
        if (
            envelope.sender_id == envelope.recipient_id
            or not channel.includes(envelope.sender_id)
            or not channel.includes(envelope.recipient_id)
        ):
            raise ParseError(f"Envelope {name} does not belong to channel {channel.key}")

        record = self._decode(channel, envelope, name)
        await asyncio.to_thread(self.cache.ensure_user, envelope.sender_id, envelope.sender_handle)
        result = await asyncio.to_thread(self.cache.upsert_message, record)
        if result.inserted and envelope.sender_id != self.local_user.id:
            self.events.inbound_message(result.record)
        return envelope, result

    def _decode(self, channel: Channel, envelope: MessageEnvelope, entry_name: str) -> MessageRecord:
        descriptor: FileDescriptor | None = None
        if envelope.kind is MessageKind.TEXT:
            content = self.codec.decrypt_text(envelope.iv, envelope.cipher_payload)
        else:
            descriptor = FileDescriptor.from_bytes(
                self.codec.decrypt(envelope.iv, envelope.cipher_payload)
            )
            if envelope.file_meta is None or descriptor.attachment_id != envelope.file_meta.attachment_id:
                raise ParseError(f"Attachment reference of {entry_name} does not match its payload")
            content = descriptor.original_name

        return MessageRecord(
            channel_key=channel.key,
            sender_id=envelope.sender_id,
            sender_handle=envelope.sender_handle,
            recipient_id=envelope.recipient_id,
            recipient_handle=envelope.recipient_handle,
            sent_at=envelope.sent_at,
            iv=envelope.iv,
            kind=envelope.kind.value,
            content=content,
            attachment_id=descriptor.attachment_id if descriptor else None,
            attachment_name=descriptor.original_name if descriptor else None,
            attachment_size=descriptor.byte_size if descriptor else None,
            attachment_mime_type=descriptor.mime_type if descriptor else None,
            entry_name=entry_name,
        )

    def _report_failure(
        self,
        channel: Channel,
        name: str,
        exc: DavChatError,
        report: TickReport,
    ) -> None:
        logger.warning(
            "Skipping entry %s on channel %s: %s",
            name,
            channel.key,
            exc,
            extra={"error_kind": error_kind_of(exc)},
        )
        failure = DeliveryFailure(channel_key=channel.key, entry_name=name, error=exc)
        report.failures.append(failure)
        self.events.delivery_failed(failure)

    # --- Outbound -------------------------------------------------------------------

    def _next_sent_at(self) -> int:
        sent_at = max(self._clock(), self._last_sent_at + 1)
        self._last_sent_at = sent_at
        return sent_at

    def _build_envelope(
        self,
        peer: UserRecord,
        kind: MessageKind,
        iv: bytes,
        ciphertext: bytes,
        file_meta: FileMeta | None = None,
    ) -> MessageEnvelope:
        return MessageEnvelope(
            sender_id=self.local_user.id,
            sender_handle=self.local_user.handle,
            recipient_id=peer.id,
            recipient_handle=peer.handle,
            sent_at=self._next_sent_at(),
            kind=kind,
            iv=iv,
            cipher_payload=ciphertext,
            file_meta=file_meta,
        )

    async def send_text(self, peer: UserRecord, text: str) -> MessageRecord:
        """Encrypt and publish a text message to ``peer``.

        The message is stored locally before the remote write so the sender
        sees it immediately.

        Raises:
            SendFailed: If the envelope could not be written remotely
            CacheIntegrityError: If the local cache is unavailable
        """
        if not text:
            raise ValueError("Cannot send an empty message")
        sync = self._channel_for(peer)
        iv, ciphertext = self.codec.encrypt_text(text)
        envelope = self._build_envelope(peer, MessageKind.TEXT, iv, ciphertext)
        return await self._publish(sync, envelope, content=text)

    async def send_file(
        self,
        peer: UserRecord,
        data: bytes,
        original_name: str,
        mime_type: str | None = None,
    ) -> MessageRecord:
        """Upload an encrypted attachment and publish a file envelope referencing it.

        The blob is written before the envelope, so a published envelope never
        points at a missing attachment.
        """
        name = PurePath(original_name).name or "attachment"
        mime = mime_type or mimetypes.guess_type(name)[0] or DEFAULT_MIME_TYPE
        sync = self._channel_for(peer)

        attachment_id = await self._upload_attachment(sync, data)
        descriptor = FileDescriptor(
            attachment_id=attachment_id,
            original_name=name,
            byte_size=len(data),
            mime_type=mime,
        )
        if self.settings.encrypt_file_metadata:
            file_meta = FileMeta(attachment_id=attachment_id)
        else:
            file_meta = FileMeta(
                attachment_id=attachment_id,
                original_name=name,
                byte_size=len(data),
                mime_type=mime,
            )
        iv, ciphertext = self.codec.encrypt(descriptor.to_bytes())
        envelope = self._build_envelope(peer, MessageKind.FILE, iv, ciphertext, file_meta)
        return await self._publish(sync, envelope, content=name, descriptor=descriptor)

    async def _upload_attachment(self, sync: ChannelSync, data: bytes) -> str:
        blob = self.codec.encrypt_blob(data)
        for _ in range(2):
            attachment_id = uuid.uuid4().hex
            try:
                await self._write_with_retries(sync, sync.channel.attachment_path(attachment_id), blob)
            except AlreadyExistsError:
                logger.warning("Attachment id %s collided; regenerating", attachment_id)
                continue
            return attachment_id
        raise SendFailed("Could not allocate an attachment name") from DuplicateNameError(
            "attachment id collided twice"
        )

    async def _publish(
        self,
        sync: ChannelSync,
        envelope: MessageEnvelope,
        *,
        content: str,
        descriptor: FileDescriptor | None = None,
    ) -> MessageRecord:
        data = envelope.to_bytes()
        record = MessageRecord(
            channel_key=sync.channel.key,
            sender_id=envelope.sender_id,
            sender_handle=envelope.sender_handle,
            recipient_id=envelope.recipient_id,
            recipient_handle=envelope.recipient_handle,
            sent_at=envelope.sent_at,
            iv=envelope.iv,
            kind=envelope.kind.value,
            content=content,
            attachment_id=descriptor.attachment_id if descriptor else None,
            attachment_name=descriptor.original_name if descriptor else None,
            attachment_size=descriptor.byte_size if descriptor else None,
            attachment_mime_type=descriptor.mime_type if descriptor else None,
            entry_name=envelope.entry_name,
            delivery_state=DELIVERY_PENDING,
            raw_envelope=data,
        )
        stored = (await asyncio.to_thread(self.cache.upsert_message, record)).record
        return await self._deliver_record(sync, stored, data)

    async def _deliver_record(self, sync: ChannelSync, record: MessageRecord, data: bytes) -> MessageRecord:
        try:
            entry_name = await self._deliver(sync, data, record)
        except SendFailed as exc:
            failed = await asyncio.to_thread(self.cache.set_delivery_state, record, DELIVERY_FAILED)
            logger.error(
                "Sending %s on channel %s failed: %s",
                record.entry_name,
                sync.channel.key,
                exc,
                extra={"error_kind": error_kind_of(exc)},
            )
            self.events.send_failed(SendFailure(record=failed, error=exc))
            raise
        return await asyncio.to_thread(
            self.cache.set_delivery_state, record, DELIVERY_SENT, entry_name=entry_name
        )

    async def _deliver(self, sync: ChannelSync, data: bytes, record: MessageRecord) -> str:
        """Write ``data`` under a name no other writer uses; return the name used."""
        name = record.entry_name or build_entry_name(record.sent_at, record.iv)
        for collision_round in range(2):
            path = sync.channel.message_entry_path(name)
            try:
                await self._write_with_retries(sync, path, data)
                return name
            except AlreadyExistsError:
                try:
                    existing = await self.store.read_blob(path)
                except RemoteStoreError as exc:
                    raise SendFailed(f"Could not verify existing entry {name}: {exc}", entry_name=name) from exc
                if existing == data:
                    logger.info("Entry %s already present; treating as a retried send", name)
                    return name
                if collision_round == 0:
                    logger.warning("Entry name %s collided with another envelope; regenerating", name)
                    name = build_entry_name(record.sent_at, record.iv, disambiguate=True)
        raise SendFailed(f"Entry name collision for {name}", entry_name=name) from DuplicateNameError(name)

    async def _write_with_retries(self, sync: ChannelSync, path: str, data: bytes) -> None:
        """Write-if-absent with bounded immediate retries on transient failures.

        Raises:
            AlreadyExistsError: If the target already exists
            SendFailed: Once the retries are exhausted or on a permanent failure
        """
        attempts = self.settings.send_max_retries
        last_error: DavChatError | None = None
        for attempt in range(1, attempts + 1):
            if sync.state is ChannelState.UNINITIALIZED:
                await self._ensure_directories(sync)
            try:
                await self.store.write_blob(path, data, overwrite=False)
                return
            except AlreadyExistsError:
                raise
            except NotFoundError as exc:
                sync.state = ChannelState.UNINITIALIZED
                last_error = exc
            except TransientStoreError as exc:
                last_error = exc
            except RemoteStoreError as exc:
                raise SendFailed(f"Remote store rejected {path}: {exc}", entry_name=path) from exc
            logger.warning("Write of %s failed (attempt %d/%d): %s", path, attempt, attempts, last_error)
        raise SendFailed(
            f"Could not write {path} after {attempts} attempt(s): {last_error}",
            entry_name=path,
        ) from last_error

    async def resend_failed(self, peer: UserRecord) -> list[MessageRecord]:
        """Rewrite outbound messages of the channel that were never confirmed.

        Rewriting an entry that did reach the store is detected as a retried
        send, so this is safe to call at any time.
        """
        sync = self._channel_for(peer)
        pending = await asyncio.to_thread(
            self.cache.outbound_undelivered, sync.channel.key, self.local_user.id
        )
        delivered = []
        for record in pending:
            try:
                delivered.append(
                    await self._deliver_record(sync, record, record.raw_envelope or b"")
                )
            except SendFailed:
                continue
        return delivered

    # --- Attachments ----------------------------------------------------------------

    async def fetch_attachment(self, record: MessageRecord) -> bytes:
        """Download and decrypt the attachment referenced by ``record``.

        Raises:
            ValueError: If ``record`` is not a file message
            NotFoundError: If the blob is missing remotely
            DecryptionError: If the blob cannot be decrypted or has the wrong size
        """
        if record.kind != MessageKind.FILE.value or not record.attachment_id:
            raise ValueError("Message does not reference an attachment")
        channel = self.resolver.resolve(record.sender_id, record.recipient_id)
        blob = await self.store.read_blob(channel.attachment_path(record.attachment_id))
        data = self.codec.decrypt_blob(blob)
        if record.attachment_size is not None and len(data) != record.attachment_size:
            raise DecryptionError(
                f"Attachment {record.attachment_id} is {len(data)} bytes, expected {record.attachment_size}"
            )
        return data

    async def save_attachment(self, record: MessageRecord, directory: str | Path) -> Path:
        """Download an attachment into ``directory`` without overwriting files."""
        data = await self.fetch_attachment(record)
        target_dir = Path(directory)
        name = PurePath(record.attachment_name or record.attachment_id or "attachment").name
        target = target_dir / name
        counter = 1
        while target.exists():
            target = target_dir / f"{PurePath(name).stem} ({counter}){PurePath(name).suffix}"
            counter += 1
        await asyncio.to_thread(target.write_bytes, data)
        return target

    async def history(self, peer: UserRecord, since_exclusive: int | None = None) -> list[MessageRecord]:
        """Return the cached conversation with ``peer`` ordered by ``sent_at``."""
        return await asyncio.to_thread(
            self.cache.query_messages, self.local_user.id, peer.id, since_exclusive
        )

    # --- Background loop ------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background polling loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the background polling loop."""
        if self._task is None:
            return

        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.1, self.settings.poll_interval_seconds)

        while not self._stopping.is_set():
            for sync in list(self._channels.values()):
                if self._stopping.is_set():
                    break
                try:
                    await self._start_tick(sync)
                except DavChatError as e:
                    logger.warning(
                        "SyncEngine tick on %s failed: %s",
                        sync.channel.key,
                        e,
                        extra={"error_kind": error_kind_of(e)},
                    )
                except Exception as e:
                    # A failing tick never ends the loop; the channel is retried next interval.
                    logger.error(
                        "SyncEngine encountered an unexpected error on %s: %s",
                        sync.channel.key,
                        e,
                        exc_info=True,
                    )

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)
            except TimeoutError:
                continue
