"""
Remote document stores.
"""

from .base import RemoteCollection, RemoteDocument, RemoteDocumentStore
from .memory import InMemoryDocumentStore
from .outline import OutlineClient

__all__ = [
    "RemoteCollection",
    "RemoteDocument",
    "RemoteDocumentStore",
    "InMemoryDocumentStore",
    "OutlineClient",
]
