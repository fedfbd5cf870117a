"""Deterministic mapping from a pair of users to a remote channel."""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import quote

from davchat.core.settings import Settings

CHANNEL_SEPARATOR = "+"


def channel_key(user_a: str, user_b: str) -> str:
    """Return the order-independent key for the channel between two users.

    Ids are percent-encoded so that neither ``/`` nor the separator can appear
    inside a component; ``channel_key(a, b) == channel_key(b, a)``.
    """
    if not user_a or not user_b:
        raise ValueError("Channel participants must have non-empty ids")
    if user_a == user_b:
        raise ValueError("A channel needs two distinct participants")
    low, high = sorted((user_a, user_b))
    return f"{quote(low, safe='')}{CHANNEL_SEPARATOR}{quote(high, safe='')}"


@dataclass(frozen=True)
class Channel:
    """Resolved channel: remote paths plus the local cache filter."""

    key: str
    participants: tuple[str, str]
    messages_path: str
    files_path: str

    def includes(self, user_id: str) -> bool:
        return user_id in self.participants

    def peer_of(self, user_id: str) -> str:
        """Return the other participant."""
        first, second = self.participants
        if user_id == first:
            return second
        if user_id == second:
            return first
        raise ValueError(f"{user_id!r} is not a participant of channel {self.key}")

    def message_entry_path(self, entry_name: str) -> str:
        return f"{self.messages_path}/{entry_name}"

    def attachment_path(self, attachment_id: str) -> str:
        return f"{self.files_path}/{attachment_id}"


class ChannelResolver:
    """Resolve user pairs to channels below the configured remote root.

    ``resolve`` never performs I/O; the sync engine creates the directories.
    """

    def __init__(self, remote_root: str = "", messages_dir: str = "messages", files_dir: str = "files") -> None:
        self.remote_root = remote_root.strip("/")
        self.messages_dir = messages_dir.strip("/")
        self.files_dir = files_dir.strip("/")

    @classmethod
    def from_settings(cls, settings: Settings) -> ChannelResolver:
        return cls(settings.remote_root, settings.messages_dir, settings.files_dir)

    def _path(self, *parts: str) -> str:
        return "/".join(part for part in (self.remote_root, *parts) if part)

    @property
    def messages_root(self) -> str:
        return self._path(self.messages_dir)

    @property
    def files_root(self) -> str:
        return self._path(self.files_dir)

    def resolve(self, user_a: str, user_b: str) -> Channel:
        """Return the channel shared by ``user_a`` and ``user_b``."""
        key = channel_key(user_a, user_b)
        return Channel(
            key=key,
            participants=tuple(sorted((user_a, user_b))),  # type: ignore[arg-type]
            messages_path=self._path(self.messages_dir, key),
            files_path=self._path(self.files_dir, key),
        )
