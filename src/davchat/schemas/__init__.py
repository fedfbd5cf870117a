"""
Pydantic schemas for data exchanged through the remote store.

These schemas define the wire structure of envelopes, attachment descriptors
and published user profiles.
"""

from .envelope import FileDescriptor, FileMeta, MessageEnvelope, MessageKind
from .profile import UserProfile

__all__ = [
    "FileDescriptor", "FileMeta",
    "MessageEnvelope", "MessageKind",
    "UserProfile",
]
