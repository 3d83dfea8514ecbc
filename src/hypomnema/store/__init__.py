"""Hypomnema persistence layer."""

from hypomnema.store.lock import SessionBusyError, SessionLock
from hypomnema.store.records import (
    DuplicateIDError,
    RecordStore,
    SessionInfo,
    SessionNotFoundError,
    StorageIOError,
    StoreError,
)

__all__ = [
    "DuplicateIDError",
    "RecordStore",
    "SessionBusyError",
    "SessionInfo",
    "SessionLock",
    "SessionNotFoundError",
    "StorageIOError",
    "StoreError",
]
