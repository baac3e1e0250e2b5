"""
outline-sync core package

Keeps a local markdown tree synchronized with an Outline knowledge base.
"""

__version__ = "0.1.0"

from .models import FileRecord, SyncState, MergePolicy, SyncConfig

__all__ = [
    "FileRecord",
    "SyncState",
    "MergePolicy",
    "SyncConfig",
]
