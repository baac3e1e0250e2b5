"""
Synchronization record models.

Durable identity records, remote snapshots, operations and dead-letter
entries exchanged between the sync components.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator
import uuid


class SyncState(Enum):
    """Synchronization state of a local file"""
    UNSYNCED = "unsynced"       # Observed, never confirmed on the remote
    SYNCED = "synced"           # Remote document matches last validated content
    CONFLICTED = "conflicted"   # Both sides diverged, awaiting review
    DEAD = "dead"               # Local document rejected permanently


class MergePolicy(Enum):
    """What the original remote document receives on a two-sided conflict"""
    LOCAL_WINS = "local-wins"
    REMOTE_WINS = "remote-wins"
    MANUAL = "manual"


class OperationKind(Enum):
    """Remote operations the resolver can emit"""
    CREATE_REMOTE = "create_remote"
    UPDATE_REMOTE = "update_remote"
    DELETE_REMOTE = "delete_remote"
    CREATE_CONFLICT_COPY = "create_conflict_copy"
    SKIP = "skip"


SYNCED_STATES = (SyncState.SYNCED, SyncState.CONFLICTED)


class FileRecord(BaseModel):
    """
    Durable mapping between a local file and its remote document.

    Only the identity store creates new versions of a record; every other
    component works on copies and proposes transitions.
    """
    model_config = ConfigDict(frozen=True)

    path: str
    content_hash: str
    remote_id: Optional[str] = None
    remote_version: Optional[int] = None
    local_modified_at: Optional[datetime] = None
    remote_modified_at: Optional[datetime] = None
    collection: str
    sync_state: SyncState = SyncState.UNSYNCED
    title: Optional[str] = None

    # Set on conflict copies: path of the record the copy was split from
    conflict_of: Optional[str] = None

    @field_validator('content_hash')
    @classmethod
    def validate_content_hash(cls, v: str) -> str:
        if not v:
            raise ValueError("content_hash cannot be empty")
        return v.lower()

    @model_validator(mode='after')
    def validate_remote_identity(self) -> 'FileRecord':
        """remote_id is present exactly when the record is synced or conflicted"""
        has_remote = self.remote_id is not None
        if has_remote != (self.sync_state in SYNCED_STATES):
            raise ValueError(
                f"remote_id must be set iff sync_state is synced or conflicted "
                f"(state={self.sync_state.value}, remote_id={self.remote_id})"
            )
        return self

    @property
    def is_synced(self) -> bool:
        return self.sync_state in SYNCED_STATES

    @property
    def is_conflict_copy(self) -> bool:
        return self.conflict_of is not None

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileRecord':
        return cls.model_validate(data)


class RemoteSnapshot(BaseModel):
    """Point-in-time view of a remote document used for conflict decisions"""
    model_config = ConfigDict(frozen=True)

    remote_id: str
    version: int
    modified_at: Optional[datetime] = None
    content_hash: Optional[str] = None
    title: Optional[str] = None
    collection_id: Optional[str] = None
    text: Optional[str] = None


class DocumentPayload(BaseModel):
    """Parsed local document ready to be sent to the remote"""
    model_config = ConfigDict(frozen=True)

    title: str
    text: Optional[str] = None
    collection: str
    source_path: str
    content_hash: str
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator('title')
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title cannot be empty")
        return v


class SyncOperation(BaseModel):
    """
    A single remote operation produced by the resolver.

    Owned by the dispatcher from submission until it reaches a terminal
    outcome (success, dead letter, conflict, circuit open).
    """
    model_config = ConfigDict(frozen=True)

    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    kind: OperationKind
    path: str
    content_hash: Optional[str] = None
    collection: Optional[str] = None
    payload: Optional[DocumentPayload] = None

    # Remote targeting
    remote_id: Optional[str] = None
    expected_version: Optional[int] = None

    # Rename
    from_path: Optional[str] = None

    # Conflict copy
    conflict_path: Optional[str] = None
    conflict_payload: Optional[DocumentPayload] = None
    local_wins: bool = False
    manual_review: bool = False

    # Skip transitions
    adopt_version: Optional[int] = None
    adopt_modified_at: Optional[datetime] = None
    drop_record: bool = False

    # Create of a record that may already exist remotely
    adopt_existing: bool = False

    local_modified_at: Optional[datetime] = None
    reason: Optional[str] = None
    invalid_reason: Optional[str] = None
    attempt: int = 0
    created_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_invalid(self) -> bool:
        return self.invalid_reason is not None

    def renewed(self) -> 'SyncOperation':
        """Fresh copy with a new id and the attempt counter reset"""
        return self.model_copy(update={
            'operation_id': uuid.uuid4().hex,
            'attempt': 0,
            'created_at': datetime.now(),
        })


class DeadLetterEntry(BaseModel):
    """Operation that exhausted retries or failed permanently"""

    entry_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    operation: SyncOperation
    attempt: int
    error_kind: str
    error_message: str
    failed_at: datetime = Field(default_factory=datetime.now)

    @property
    def path(self) -> str:
        return self.operation.path

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'DeadLetterEntry':
        return cls.model_validate(data)


def summarize_states(records: List[FileRecord]) -> Dict[str, int]:
    """Count records per sync state"""
    counts = {state.value: 0 for state in SyncState}
    for record in records:
        counts[record.sync_state.value] += 1
    return counts
