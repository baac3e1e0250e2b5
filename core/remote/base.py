"""
Abstract remote document store.

The sync engine only talks to the knowledge base through this interface;
implementations classify their failures into the core.sync.errors taxonomy.
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from core.models.records import RemoteSnapshot


class RemoteCollection(BaseModel):
    """Remote collection (top-level grouping of documents)"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class RemoteDocument(BaseModel):
    """Remote document as returned by the store"""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    text: str = ""
    collection_id: Optional[str] = None
    version: int = 1
    updated_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    def to_snapshot(self, content_hash: Optional[str] = None) -> RemoteSnapshot:
        return RemoteSnapshot(
            remote_id=self.id,
            version=self.version,
            modified_at=self.updated_at,
            content_hash=content_hash,
            title=self.title,
            collection_id=self.collection_id,
            text=self.text,
        )


class RemoteDocumentStore(ABC):
    """Contract the dispatcher relies on"""

    name: str = "remote"

    @abstractmethod
    async def create_document(
        self,
        collection_id: str,
        title: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RemoteDocument:
        """Create and publish a document"""

    @abstractmethod
    async def update_document(
        self,
        remote_id: str,
        title: Optional[str],
        text: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None
    ) -> RemoteDocument:
        """
        Update a document.

        ``text=None`` leaves the body untouched. Raises VersionConflict when
        ``expected_version`` no longer matches the remote.
        """

    @abstractmethod
    async def get_document(self, remote_id: str) -> Optional[RemoteDocument]:
        """Fetch a document, None if it does not exist"""

    @abstractmethod
    async def delete_document(self, remote_id: str) -> None:
        """Delete a document; deleting a missing document is not an error"""

    @abstractmethod
    async def list_collections(self) -> List[RemoteCollection]:
        """All collections visible to the credentials"""

    @abstractmethod
    async def create_collection(self, name: str) -> RemoteCollection:
        """Create a collection"""

    @abstractmethod
    async def find_document_by_source(
        self,
        collection_id: str,
        source_path: str,
        title: Optional[str] = None,
        exclude_ids: Iterable[str] = ()
    ) -> Optional[RemoteDocument]:
        """
        Locate a document previously created for ``source_path``.

        Documents in ``exclude_ids`` are already owned by other files and are
        never returned.
        """

    async def close(self) -> None:
        """Release any held resources"""
