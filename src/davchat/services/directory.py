"""Shared user directory kept next to the message channels.

Each registered user publishes an encrypted profile at
``<users_dir>/<user id>.json``. Clients refresh their local cache from it so
handles can be resolved to ids before a channel is opened.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from davchat.core.errors import (
    AlreadyExistsError,
    DecryptionError,
    DuplicateHandleError,
    NotFoundError,
    ParseError,
    RemoteStoreError,
    error_kind_of,
)
from davchat.core.settings import Settings
from davchat.schemas.profile import UserProfile
from davchat.services.cache import LocalCache, UserRecord
from davchat.services.crypto import CryptoCodec
from davchat.services.remote_store import RemoteStore

logger = logging.getLogger(__name__)

PROFILE_SUFFIX = ".json"


@dataclass
class DirectoryRefresh:
    """Outcome of one directory refresh."""

    users: list[UserRecord] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


class UserDirectory:
    """Publish and read user profiles in the remote ``users`` directory."""

    def __init__(
        self,
        store: RemoteStore,
        cache: LocalCache,
        codec: CryptoCodec,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.root = settings.remote_path(settings.users_dir)

    def profile_path(self, user_id: str) -> str:
        return f"{self.root}/{user_id}{PROFILE_SUFFIX}"

    async def ensure_root(self) -> None:
        try:
            await self.store.ensure_directory(self.root)
        except AlreadyExistsError:
            pass

    async def publish(self, user: UserRecord) -> None:
        """Write the encrypted profile of ``user``, replacing any older copy."""
        profile = UserProfile(
            id=user.id,
            handle=user.handle,
            created_at=user.created_at,
            last_seen_at=user.last_seen_at,
        )
        blob = self.codec.encrypt_blob(profile.to_bytes())
        try:
            await self.store.write_blob(self.profile_path(user.id), blob, overwrite=True)
        except NotFoundError:
            await self.ensure_root()
            await self.store.write_blob(self.profile_path(user.id), blob, overwrite=True)
        logger.debug("Published profile for %s", user.handle)

    async def refresh(self) -> DirectoryRefresh:
        """Load every published profile into the local cache.

        A profile that cannot be read, decrypted or stored is logged and
        skipped without affecting the others. A missing directory means no
        user has registered yet.
        """
        result = DirectoryRefresh()
        try:
            entries = await self.store.list(self.root)
        except NotFoundError:
            return result

        for entry in entries:
            if entry.is_directory or not entry.name.endswith(PROFILE_SUFFIX):
                continue
            try:
                blob = await self.store.read_blob(f"{self.root}/{entry.name}")
                profile = UserProfile.from_bytes(self.codec.decrypt_blob(blob))
                if f"{profile.id}{PROFILE_SUFFIX}" != entry.name:
                    raise ParseError(f"Profile {entry.name} carries id {profile.id}")
                record = await asyncio.to_thread(
                    self.cache.upsert_user,
                    UserRecord(
                        id=profile.id,
                        handle=profile.handle,
                        created_at=profile.created_at,
                        last_seen_at=profile.last_seen_at,
                    ),
                )
            except (ParseError, DecryptionError, DuplicateHandleError, RemoteStoreError) as exc:
                logger.warning(
                    "Skipping user profile %s: %s",
                    entry.name,
                    exc,
                    extra={"error_kind": error_kind_of(exc)},
                )
                result.skipped.append(entry.name)
                continue
            result.users.append(record)
        return result
