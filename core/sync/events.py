"""
File Change Event Models.

Defines raw filesystem notifications as delivered by the watcher and the
coalesced change events consumed by the sync workers.
"""

from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, field_validator, model_validator
import uuid


class ChangeKind(Enum):
    """Kinds of local change that trigger synchronization"""
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    MOVE = "move"


class EventSource(Enum):
    """Where a change event originated"""
    REALTIME = "realtime"
    RECONCILER = "reconciler"


class RawNotification(BaseModel):
    """
    Single notification from the filesystem event source.

    May be duplicated, reordered or partial; the normalizer turns a stream of
    these into coalesced ChangeEvents.
    """

    path: Path
    kind: ChangeKind
    from_path: Optional[Path] = None
    timestamp: datetime = Field(default_factory=datetime.now)

    @field_validator('path', 'from_path')
    @classmethod
    def validate_absolute(cls, v: Optional[Path]) -> Optional[Path]:
        """Ensure paths are absolute"""
        if v is not None and not v.is_absolute():
            raise ValueError('Notification paths must be absolute')
        return v


class ChangeEvent(BaseModel):
    """
    Coalesced, debounced change to a single local path.

    Ephemeral: consumed once by the sync engine.
    """

    event_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    path: Path
    kind: ChangeKind
    from_path: Optional[Path] = None
    observed_at: datetime = Field(default_factory=datetime.now)
    source: EventSource = EventSource.REALTIME

    @field_validator('path', 'from_path')
    @classmethod
    def validate_absolute(cls, v: Optional[Path]) -> Optional[Path]:
        """Ensure paths are absolute"""
        if v is not None and not v.is_absolute():
            raise ValueError('Event paths must be absolute')
        return v

    @model_validator(mode='after')
    def validate_move(self) -> 'ChangeEvent':
        if self.kind == ChangeKind.MOVE and self.from_path is None:
            raise ValueError('MOVE events require from_path')
        if self.kind != ChangeKind.MOVE and self.from_path is not None:
            raise ValueError('from_path is only valid on MOVE events')
        return self

    @classmethod
    def create(cls, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(kind=ChangeKind.CREATE, path=path, **kwargs)

    @classmethod
    def modify(cls, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(kind=ChangeKind.MODIFY, path=path, **kwargs)

    @classmethod
    def delete(cls, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(kind=ChangeKind.DELETE, path=path, **kwargs)

    @classmethod
    def move(cls, from_path: Path, path: Path, **kwargs) -> 'ChangeEvent':
        return cls(kind=ChangeKind.MOVE, path=path, from_path=from_path, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for logging"""
        return {
            "event_id": self.event_id,
            "kind": self.kind.value,
            "path": str(self.path),
            "from_path": str(self.from_path) if self.from_path else None,
            "observed_at": self.observed_at.isoformat(),
            "source": self.source.value,
        }

    def __str__(self) -> str:
        from_part = f" (from {self.from_path})" if self.from_path else ""
        return f"{self.kind.value.upper()}: {self.path}{from_part} [{self.source.value}]"
