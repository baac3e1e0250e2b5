"""
Local markdown document reading.

Hashes file content, parses front matter and builds the LocalChange the
resolver decides on.
"""

import hashlib
import logging
import os
from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, Iterator, Mapping, Optional

import aiofiles
import frontmatter
import yaml

from core.models.records import DocumentPayload
from .collections import resolve_collection
from .events import ChangeKind

logger = logging.getLogger(__name__)

FRONTMATTER_FIELDS = frozenset({
    "title", "description", "category", "tags", "collection",
    "parent_doc", "outline_id", "visibility", "author", "created", "modified",
})


def hash_bytes(data: bytes) -> str:
    """SHA-256 hex digest of raw content"""
    return hashlib.sha256(data).hexdigest()


def hash_text(text: str) -> str:
    return hash_bytes(text.encode('utf-8'))


def hash_file(file_path: Path) -> Optional[str]:
    """Compute SHA-256 hash of a file, None if it vanished"""
    sha = hashlib.sha256()
    try:
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(8192), b""):
                sha.update(chunk)
    except (FileNotFoundError, IsADirectoryError, PermissionError):
        return None
    return sha.hexdigest()


async def hash_file_async(file_path: Path) -> Optional[str]:
    """Compute SHA-256 hash of a file without blocking the loop"""
    sha = hashlib.sha256()
    try:
        async with aiofiles.open(file_path, 'rb') as f:
            while chunk := await f.read(8192):
                sha.update(chunk)
    except (FileNotFoundError, IsADirectoryError, PermissionError):
        return None
    return sha.hexdigest()


def iter_markdown_files(root: Path, is_excluded_dir, should_watch) -> Iterator[Path]:
    """Walk the tree, pruning excluded directories, yielding watched files"""
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if not is_excluded_dir(d))
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            if should_watch(path.relative_to(root)):
                yield path


@dataclass(frozen=True)
class LocalChange:
    """Current local state of a path as seen by the resolver"""
    kind: ChangeKind
    path: str
    relative_path: str
    content_hash: Optional[str] = None
    payload: Optional[DocumentPayload] = None
    modified_at: Optional[datetime] = None
    from_path: Optional[str] = None
    invalid_reason: Optional[str] = None

    @property
    def exists(self) -> bool:
        return self.content_hash is not None

    @property
    def is_valid(self) -> bool:
        return self.invalid_reason is None


def _normalize_metadata(metadata: Mapping[str, Any]) -> Dict[str, Any]:
    """Keep recognized fields in a JSON-safe form"""
    result: Dict[str, Any] = {}
    for key, value in metadata.items():
        if key not in FRONTMATTER_FIELDS:
            continue
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, (list, tuple)):
            value = [str(item) for item in value]
        result[key] = value
    return result


def parse_document(
    raw: str,
    relative_path: str,
    content_hash: str,
    collection_mapping: Mapping[str, str],
    default_collection: str
) -> DocumentPayload:
    """
    Parse markdown with front matter into a payload.

    Raises ValueError when the front matter is malformed or lacks a title.
    """
    try:
        post = frontmatter.loads(raw)
    except yaml.YAMLError as e:
        raise ValueError(f"malformed front matter: {e}") from e

    title = post.get("title")
    if title is None or not str(title).strip():
        raise ValueError("front matter has no title")

    metadata = _normalize_metadata(post.metadata)
    collection = resolve_collection(
        relative_path,
        collection_mapping,
        default_collection,
        override=metadata.get("collection"),
    )

    return DocumentPayload(
        title=str(title),
        text=post.content,
        collection=collection,
        source_path=relative_path,
        content_hash=content_hash,
        metadata=metadata,
    )


def read_local_change(
    path: Path,
    root: Path,
    kind: ChangeKind,
    collection_mapping: Mapping[str, str],
    default_collection: str,
    max_file_size_bytes: Optional[int] = None,
    from_path: Optional[Path] = None
) -> LocalChange:
    """Snapshot a local path: hash, parsed payload and modification time"""
    relative_path = path.relative_to(root).as_posix()
    from_str = str(from_path) if from_path else None

    try:
        stat = path.stat()
        data = path.read_bytes()
    except (FileNotFoundError, IsADirectoryError):
        return LocalChange(
            kind=ChangeKind.DELETE if kind != ChangeKind.MOVE else kind,
            path=str(path),
            relative_path=relative_path,
            from_path=from_str,
        )

    content_hash = hash_bytes(data)
    modified_at = datetime.fromtimestamp(stat.st_mtime)

    if max_file_size_bytes is not None and len(data) > max_file_size_bytes:
        return LocalChange(
            kind=kind, path=str(path), relative_path=relative_path,
            content_hash=content_hash, modified_at=modified_at, from_path=from_str,
            invalid_reason=f"file exceeds {max_file_size_bytes} bytes",
        )

    try:
        raw = data.decode('utf-8')
        payload = parse_document(
            raw, relative_path, content_hash, collection_mapping, default_collection
        )
    except (UnicodeDecodeError, ValueError) as e:
        logger.debug(f"Invalid document {relative_path}: {e}")
        return LocalChange(
            kind=kind, path=str(path), relative_path=relative_path,
            content_hash=content_hash, modified_at=modified_at, from_path=from_str,
            invalid_reason=str(e),
        )

    return LocalChange(
        kind=kind,
        path=str(path),
        relative_path=relative_path,
        content_hash=content_hash,
        payload=payload,
        modified_at=modified_at,
        from_path=from_str,
    )
