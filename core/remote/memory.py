"""
In-process document store.

Complete implementation of RemoteDocumentStore backed by dictionaries, used
for dry runs and tests. Failures can be scripted per operation.
"""

import logging
import uuid
from collections import defaultdict, deque
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Iterable, List, Optional

from core.sync.errors import VersionConflict
from .base import RemoteCollection, RemoteDocument, RemoteDocumentStore

logger = logging.getLogger(__name__)


class InMemoryDocumentStore(RemoteDocumentStore):
    """Dictionary-backed remote with optimistic versioning"""

    name = "memory"

    def __init__(self):
        self.documents: Dict[str, RemoteDocument] = {}
        self.collections: Dict[str, RemoteCollection] = {}
        self.calls: List[str] = []
        self._failures: Dict[str, Deque[Exception]] = defaultdict(deque)

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``"""
        for _ in range(times):
            self._failures[operation].append(error)

    def _enter(self, operation: str) -> None:
        self.calls.append(operation)
        failures = self._failures.get(operation)
        if failures:
            raise failures.popleft()

    def call_count(self, operation: str) -> int:
        return sum(1 for call in self.calls if call == operation)

    @staticmethod
    def _now() -> datetime:
        return datetime.now(timezone.utc)

    async def create_document(
        self,
        collection_id: str,
        title: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RemoteDocument:
        self._enter("create_document")
        document = RemoteDocument(
            id=uuid.uuid4().hex,
            title=title,
            text=text,
            collection_id=collection_id,
            version=1,
            updated_at=self._now(),
            metadata=dict(metadata or {}),
        )
        self.documents[document.id] = document
        return document

    async def update_document(
        self,
        remote_id: str,
        title: Optional[str],
        text: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None
    ) -> RemoteDocument:
        self._enter("update_document")
        current = self.documents.get(remote_id)
        if current is None:
            raise VersionConflict(f"Document {remote_id} no longer exists", expected_version, None)
        if expected_version is not None and current.version != expected_version:
            raise VersionConflict(
                expected_version=expected_version, actual_version=current.version
            )

        updated = current.model_copy(update={
            "title": title if title is not None else current.title,
            "text": text if text is not None else current.text,
            "metadata": {**current.metadata, **(metadata or {})},
            "version": current.version + 1,
            "updated_at": self._now(),
        })
        self.documents[remote_id] = updated
        return updated

    async def get_document(self, remote_id: str) -> Optional[RemoteDocument]:
        self._enter("get_document")
        return self.documents.get(remote_id)

    async def delete_document(self, remote_id: str) -> None:
        self._enter("delete_document")
        self.documents.pop(remote_id, None)

    async def list_collections(self) -> List[RemoteCollection]:
        self._enter("list_collections")
        return list(self.collections.values())

    async def create_collection(self, name: str) -> RemoteCollection:
        self._enter("create_collection")
        collection = RemoteCollection(id=uuid.uuid4().hex, name=name)
        self.collections[collection.id] = collection
        return collection

    async def find_document_by_source(
        self,
        collection_id: str,
        source_path: str,
        title: Optional[str] = None,
        exclude_ids: Iterable[str] = ()
    ) -> Optional[RemoteDocument]:
        self._enter("find_document_by_source")
        excluded = set(exclude_ids)
        for document in self.documents.values():
            if document.collection_id != collection_id or document.id in excluded:
                continue
            if document.metadata.get("source_path") == source_path:
                return document
        return None

    def edit_remotely(self, remote_id: str, text: str, title: Optional[str] = None) -> RemoteDocument:
        """Simulate an edit made directly in the knowledge base"""
        current = self.documents[remote_id]
        updated = current.model_copy(update={
            "text": text,
            "title": title or current.title,
            "version": current.version + 1,
            "updated_at": self._now(),
        })
        self.documents[remote_id] = updated
        return updated

    def documents_in(self, collection_name: str) -> List[RemoteDocument]:
        ids = {c.id for c in self.collections.values() if c.name == collection_name}
        return [d for d in self.documents.values() if d.collection_id in ids]
