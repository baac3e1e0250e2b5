"""
Outline knowledge base client.

Implements RemoteDocumentStore over Outline's RPC-style HTTP API. Blocking
requests calls run in a worker thread so the event loop keeps serving other
paths while a call is in flight.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import requests

from core.models.config import OutlineConfig
from core.sync.errors import (
    PermanentError,
    RateLimited,
    SyncError,
    RemoteUnavailable,
    VersionConflict,
)
from .base import RemoteCollection, RemoteDocument, RemoteDocumentStore

logger = logging.getLogger(__name__)

PAGE_SIZE = 100


class DocumentNotFound(PermanentError):
    """Outline answered 404 for a document"""

    reason = "NotFound"


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _retry_after(response: requests.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class OutlineClient(RemoteDocumentStore):
    """
    Outline API client with error classification.

    Features:
    - Bearer token authentication
    - Transient/permanent error mapping for the dispatcher
    - Optimistic concurrency emulated through document revisions
    """

    name = "outline"

    def __init__(self, config: OutlineConfig, session: Optional[requests.Session] = None):
        self.config = config
        self._session = session or requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if config.api_key:
            self._session.headers["Authorization"] = f"Bearer {config.api_key}"

    def _post_sync(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.config.api_base}/{endpoint}"
        try:
            response = self._session.post(url, json=payload, timeout=self.config.timeout)
        except requests.Timeout as e:
            raise RemoteUnavailable(f"{endpoint} timed out: {e}") from e
        except requests.ConnectionError as e:
            raise RemoteUnavailable(f"{endpoint} connection failed: {e}") from e

        status = response.status_code
        if status == 429:
            raise RateLimited(f"{endpoint} rate limited", retry_after=_retry_after(response))
        if status >= 500:
            raise RemoteUnavailable(f"{endpoint} returned {status}", status_code=status)
        if status == 404:
            raise DocumentNotFound(f"{endpoint}: not found", status_code=status)
        if status == 409:
            raise VersionConflict(f"{endpoint}: remote rejected stale update")
        if status >= 400:
            raise PermanentError(f"{endpoint} returned {status}: {response.text[:200]}", status_code=status)

        try:
            body = response.json()
        except ValueError as e:
            raise PermanentError(f"{endpoint} returned malformed JSON") from e

        if not isinstance(body, dict):
            raise PermanentError(f"{endpoint} returned unexpected payload")
        return body

    async def _post(self, endpoint: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._post_sync, endpoint, payload)

    @staticmethod
    def _document_from(data: Dict[str, Any]) -> RemoteDocument:
        try:
            return RemoteDocument(
                id=data["id"],
                title=data.get("title") or "",
                text=data.get("text") or "",
                collection_id=data.get("collectionId"),
                version=int(data.get("revision") or 1),
                updated_at=_parse_datetime(data.get("updatedAt")),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentError(f"Malformed document payload: {e}") from e

    async def create_document(
        self,
        collection_id: str,
        title: str,
        text: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> RemoteDocument:
        body = await self._post("documents.create", {
            "collectionId": collection_id,
            "title": title,
            "text": text,
            "publish": True,
        })
        document = self._document_from(body.get("data") or {})
        logger.debug(f"Created Outline document {document.id} '{title}'")
        return document

    async def update_document(
        self,
        remote_id: str,
        title: Optional[str],
        text: Optional[str],
        metadata: Optional[Dict[str, Any]] = None,
        expected_version: Optional[int] = None
    ) -> RemoteDocument:
        if expected_version is not None:
            # Outline has no conditional update, so compare revisions first
            current = await self.get_document(remote_id)
            if current is None:
                raise VersionConflict(f"Document {remote_id} no longer exists", expected_version, None)
            if current.version != expected_version:
                raise VersionConflict(
                    expected_version=expected_version, actual_version=current.version
                )

        payload: Dict[str, Any] = {"id": remote_id, "publish": True}
        if title is not None:
            payload["title"] = title
        if text is not None:
            payload["text"] = text

        try:
            body = await self._post("documents.update", payload)
        except DocumentNotFound as e:
            raise VersionConflict(f"Document {remote_id} no longer exists", expected_version, None) from e
        return self._document_from(body.get("data") or {})

    async def get_document(self, remote_id: str) -> Optional[RemoteDocument]:
        try:
            body = await self._post("documents.info", {"id": remote_id})
        except DocumentNotFound:
            return None
        return self._document_from(body.get("data") or {})

    async def delete_document(self, remote_id: str) -> None:
        try:
            await self._post("documents.delete", {"id": remote_id})
        except DocumentNotFound:
            logger.debug(f"Outline document {remote_id} already deleted")

    async def list_collections(self) -> List[RemoteCollection]:
        collections: List[RemoteCollection] = []
        offset = 0
        while True:
            body = await self._post("collections.list", {"limit": PAGE_SIZE, "offset": offset})
            page = body.get("data") or []
            for item in page:
                collections.append(RemoteCollection(id=item["id"], name=item.get("name", "")))
            if len(page) < PAGE_SIZE:
                return collections
            offset += PAGE_SIZE

    async def create_collection(self, name: str) -> RemoteCollection:
        body = await self._post("collections.create", {"name": name})
        data = body.get("data") or {}
        if "id" not in data:
            raise PermanentError("collections.create returned no collection id")
        logger.info(f"Created Outline collection '{name}'")
        return RemoteCollection(id=data["id"], name=data.get("name", name))

    async def find_document_by_source(
        self,
        collection_id: str,
        source_path: str,
        title: Optional[str] = None,
        exclude_ids: Iterable[str] = ()
    ) -> Optional[RemoteDocument]:
        """
        Outline stores no custom metadata, so documents are matched by exact
        title inside the target collection, skipping ``exclude_ids``.
        """
        if not title:
            return None
        excluded = set(exclude_ids)
        body = await self._post("documents.search", {
            "query": title,
            "collectionId": collection_id,
            "limit": PAGE_SIZE,
        })
        for hit in body.get("data") or []:
            document = hit.get("document") or {}
            if document.get("id") in excluded:
                continue
            if document.get("title") == title and document.get("collectionId", collection_id) == collection_id:
                return self._document_from(document)
        return None

    def check_connection(self) -> bool:
        """Blocking reachability check for status output"""
        try:
            self._post_sync("auth.info", {})
            return True
        except SyncError as e:
            logger.debug(f"Outline connection check failed: {e}")
            return False

    async def close(self) -> None:
        self._session.close()
