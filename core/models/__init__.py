"""
Core data models for outline-sync

Pydantic models for identity records, operations and configuration.
"""

from .records import (
    SyncState,
    MergePolicy,
    OperationKind,
    FileRecord,
    RemoteSnapshot,
    DocumentPayload,
    SyncOperation,
    DeadLetterEntry,
)
from .config import (
    OutlineConfig,
    WatchConfig,
    DispatcherConfig,
    ReconcilerConfig,
    SyncConfig,
    GlobalSettings,
)

__all__ = [
    # Records
    "SyncState",
    "MergePolicy",
    "OperationKind",
    "FileRecord",
    "RemoteSnapshot",
    "DocumentPayload",
    "SyncOperation",
    "DeadLetterEntry",

    # Configuration
    "OutlineConfig",
    "WatchConfig",
    "DispatcherConfig",
    "ReconcilerConfig",
    "SyncConfig",
    "GlobalSettings",
]
