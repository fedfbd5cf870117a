# src/davchat/services/__init__.py
"""Services implementing encrypted chat over a shared remote store."""

from .cache import LocalCache, MessageRecord, UpsertResult, UserRecord
from .channels import Channel, ChannelResolver, channel_key
from .crypto import CryptoCodec
from .directory import UserDirectory
from .events import DeliveryFailure, EventHub, SendFailure, SyncListener
from .remote_store import MemoryRemoteStore, RemoteEntry, RemoteStore, WebDAVStore
from .sync import ChannelState, SyncEngine, TickReport

__all__ = [
    "LocalCache", "MessageRecord", "UpsertResult", "UserRecord",
    "Channel", "ChannelResolver", "channel_key",
    "CryptoCodec",
    "UserDirectory",
    "DeliveryFailure", "EventHub", "SendFailure", "SyncListener",
    "MemoryRemoteStore", "RemoteEntry", "RemoteStore", "WebDAVStore",
    "ChannelState", "SyncEngine", "TickReport",
]
