"""
outline-sync - keep a local markdown tree and an Outline knowledge base in step.

Watches a directory of markdown files with front matter and mirrors creates,
edits, renames and deletes into Outline collections.
"""

__version__ = "0.1.0"

from core.models.config import SyncConfig, GlobalSettings
from core.sync.engine import SyncEngine

__all__ = [
    "SyncConfig",
    "GlobalSettings",
    "SyncEngine",
    "__version__",
]
