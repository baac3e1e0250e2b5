"""
Conflict resolution.

Pure decision logic: given the local change, the current record and a remote
snapshot, produce exactly one SyncOperation. No I/O happens here; the
caller supplies everything the decision depends on.
"""

import logging
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Callable, Optional

from core.models.records import (
    DocumentPayload,
    FileRecord,
    MergePolicy,
    OperationKind,
    RemoteSnapshot,
    SyncOperation,
    SyncState,
)
from .documents import LocalChange, hash_text
from .events import ChangeKind

logger = logging.getLogger(__name__)

CONFLICT_MARKER = "conflict"


def _timestamp(value: Optional[datetime]) -> Optional[float]:
    """Comparable epoch seconds; naive datetimes are local time"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.timestamp()
    return value.astimezone(timezone.utc).timestamp()


def local_wins_tie_break(
    local_hash: str,
    local_modified_at: Optional[datetime],
    remote: RemoteSnapshot
) -> bool:
    """
    Deterministic winner of a two-sided change.

    The newer modification wins; equal or unknown timestamps fall back to
    comparing the local content hash with the remote content hash (or the
    remote version when no hash is known). The greater value wins.
    """
    local_ts = _timestamp(local_modified_at)
    remote_ts = _timestamp(remote.modified_at)
    if local_ts is not None and remote_ts is not None and local_ts != remote_ts:
        return local_ts > remote_ts

    remote_key = remote.content_hash or str(remote.version)
    return local_hash > remote_key


def conflict_copy_name(stem: str, suffix: str, short_hash: str, counter: int = 1) -> str:
    base = f"{stem}.{CONFLICT_MARKER}-{short_hash}"
    if counter > 1:
        base = f"{base}-{counter}"
    return f"{base}{suffix or '.md'}"


class ConflictResolver:
    """Maps (local change, record, remote snapshot) onto one operation"""

    def __init__(
        self,
        merge_policy: MergePolicy = MergePolicy.REMOTE_WINS,
        collection_mapper: Optional[Callable[[str], str]] = None,
        path_taken: Optional[Callable[[str], bool]] = None
    ):
        self.merge_policy = merge_policy
        self.collection_mapper = collection_mapper or (lambda relative_path: "Inbox")
        self.path_taken = path_taken or (lambda path: Path(path).exists())

    def resolve(
        self,
        change: LocalChange,
        record: Optional[FileRecord],
        remote: Optional[RemoteSnapshot],
        old_record: Optional[FileRecord] = None
    ) -> SyncOperation:
        """Decide what happens to the remote for this change"""
        if change.kind == ChangeKind.MOVE and old_record is not None:
            operation = self._resolve_rename(change, old_record, remote)
            if operation is not None:
                return operation

        if not change.exists:
            return self._resolve_delete(change, record)

        if not change.is_valid:
            return self._invalid(change, record)

        if record is None or not record.is_synced:
            return SyncOperation(
                kind=OperationKind.CREATE_REMOTE,
                path=change.path,
                content_hash=change.content_hash,
                collection=change.payload.collection,
                payload=change.payload,
                local_modified_at=change.modified_at,
                adopt_existing=record is not None and record.sync_state == SyncState.UNSYNCED,
                reason="new" if record is None else f"record-{record.sync_state.value}",
            )

        if remote is None:
            logger.info(f"Remote document {record.remote_id} for {change.path} is gone, re-creating")
            return SyncOperation(
                kind=OperationKind.CREATE_REMOTE,
                path=change.path,
                content_hash=change.content_hash,
                collection=change.payload.collection,
                payload=change.payload,
                local_modified_at=change.modified_at,
                reason="remote-missing",
            )

        local_changed = change.content_hash != record.content_hash
        remote_changed = remote.version != record.remote_version

        if not local_changed and not remote_changed:
            return self._skip(change.path, "unchanged", change.content_hash)

        if local_changed and not remote_changed:
            return SyncOperation(
                kind=OperationKind.UPDATE_REMOTE,
                path=change.path,
                content_hash=change.content_hash,
                collection=record.collection,
                payload=change.payload,
                remote_id=record.remote_id,
                expected_version=record.remote_version,
                local_modified_at=change.modified_at,
                reason="local-changed",
            )

        if remote_changed and not local_changed:
            return SyncOperation(
                kind=OperationKind.SKIP,
                path=change.path,
                content_hash=change.content_hash,
                remote_id=record.remote_id,
                adopt_version=remote.version,
                adopt_modified_at=remote.modified_at,
                reason="remote-newer",
            )

        return self._resolve_conflict(change, record, remote)

    def _skip(self, path: str, reason: str, content_hash: Optional[str] = None) -> SyncOperation:
        return SyncOperation(
            kind=OperationKind.SKIP,
            path=path,
            content_hash=content_hash,
            reason=reason,
        )

    def _resolve_delete(self, change: LocalChange, record: Optional[FileRecord]) -> SyncOperation:
        if record is not None and record.is_synced:
            return SyncOperation(
                kind=OperationKind.DELETE_REMOTE,
                path=change.path,
                remote_id=record.remote_id,
                collection=record.collection,
                reason="local-deleted",
            )
        operation = self._skip(change.path, "untracked-delete")
        return operation.model_copy(update={"drop_record": record is not None})

    def _invalid(self, change: LocalChange, record: Optional[FileRecord]) -> SyncOperation:
        synced = record is not None and record.is_synced
        return SyncOperation(
            kind=OperationKind.UPDATE_REMOTE if synced else OperationKind.CREATE_REMOTE,
            path=change.path,
            content_hash=change.content_hash,
            collection=record.collection if record else self.collection_mapper(change.relative_path),
            remote_id=record.remote_id if synced else None,
            local_modified_at=change.modified_at,
            invalid_reason=change.invalid_reason,
            reason="invalid",
        )

    def _resolve_rename(
        self,
        change: LocalChange,
        old_record: FileRecord,
        remote: Optional[RemoteSnapshot]
    ) -> Optional[SyncOperation]:
        """A move that kept its content keeps its remote document"""
        if not old_record.is_synced or not change.exists or not change.is_valid:
            return None
        if change.content_hash != old_record.content_hash:
            return None

        if remote is None:
            return SyncOperation(
                kind=OperationKind.CREATE_REMOTE,
                path=change.path,
                from_path=old_record.path,
                content_hash=change.content_hash,
                collection=change.payload.collection,
                payload=change.payload,
                local_modified_at=change.modified_at,
                reason="remote-missing",
            )

        # Path-only change: the remote body is left alone
        payload = change.payload.model_copy(update={"text": None})
        return SyncOperation(
            kind=OperationKind.UPDATE_REMOTE,
            path=change.path,
            from_path=old_record.path,
            content_hash=change.content_hash,
            collection=old_record.collection,
            payload=payload,
            remote_id=old_record.remote_id,
            expected_version=remote.version,
            local_modified_at=change.modified_at,
            reason="rename",
        )

    def _resolve_conflict(
        self,
        change: LocalChange,
        record: FileRecord,
        remote: RemoteSnapshot
    ) -> SyncOperation:
        if self.merge_policy == MergePolicy.LOCAL_WINS:
            local_wins = True
        elif self.merge_policy == MergePolicy.REMOTE_WINS:
            local_wins = False
        else:
            local_wins = local_wins_tie_break(change.content_hash, change.modified_at, remote)

        conflict_path, conflict_relative = self.conflict_copy_path(change)
        short_hash = change.content_hash[:8]

        if local_wins:
            # Copy preserves what the remote had
            remote_text = remote.text or ""
            conflict_payload = DocumentPayload(
                title=f"{remote.title or change.payload.title} ({CONFLICT_MARKER} {short_hash})",
                text=remote_text,
                collection=record.collection,
                source_path=conflict_relative,
                content_hash=remote.content_hash or hash_text(remote_text),
                metadata={},
            )
        else:
            conflict_payload = change.payload.model_copy(update={
                "title": f"{change.payload.title} ({CONFLICT_MARKER} {short_hash})",
                "collection": record.collection,
                "source_path": conflict_relative,
            })

        logger.info(
            f"Conflict on {change.path}: local and remote both changed "
            f"({'local' if local_wins else 'remote'} wins, copy at {conflict_path})"
        )

        return SyncOperation(
            kind=OperationKind.CREATE_CONFLICT_COPY,
            path=change.path,
            content_hash=change.content_hash,
            collection=record.collection,
            payload=change.payload,
            remote_id=record.remote_id,
            expected_version=remote.version,
            conflict_path=conflict_path,
            conflict_payload=conflict_payload,
            local_wins=local_wins,
            manual_review=self.merge_policy == MergePolicy.MANUAL or not local_wins,
            adopt_version=remote.version,
            adopt_modified_at=remote.modified_at,
            local_modified_at=change.modified_at,
            reason="both-changed",
        )

    def conflict_copy_path(self, change: LocalChange):
        """Unique sibling path ``<stem>.conflict-<hash8>.md`` and its relative form"""
        path = Path(change.path)
        relative = PurePosixPath(change.relative_path)
        short_hash = change.content_hash[:8]

        counter = 1
        while True:
            name = conflict_copy_name(path.stem, path.suffix, short_hash, counter)
            candidate = path.with_name(name)
            if not self.path_taken(str(candidate)):
                return str(candidate), str(relative.with_name(name))
            counter += 1
