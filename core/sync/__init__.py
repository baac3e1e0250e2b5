"""
Markdown tree to Outline synchronization.

Key Components:
- EventNormalizer: Debounces and coalesces raw filesystem notifications
- MarkdownTreeWatcher: watchdog bridge feeding the normalizer
- IdentityStore: Path to remote document records with leased reservations
- ConflictResolver: Decides one remote operation per change
- Dispatcher: Rate-limited, retried, breaker-guarded remote execution
- BatchReconciler: Periodic full-tree comparison
- SyncEngine: Central coordinator for one tree
"""

from .errors import (
    SyncError,
    TransientError,
    RateLimited,
    RemoteUnavailable,
    PermanentError,
    ValidationFailed,
    VersionConflict,
    StaleReservation,
    ReservationConflict,
    CircuitOpen,
)
from .events import ChangeEvent, ChangeKind, EventSource, RawNotification
from .collections import map_collection, resolve_collection
from .identity import IdentityStore, Reservation
from .deadletter import DeadLetterQueue
from .normalizer import EventNormalizer
from .resolver import ConflictResolver
from .dispatcher import Dispatcher, DispatchOutcome, OutcomeStatus
from .reconciler import BatchReconciler, PeriodicReconcileTask, ProcessResult, ReconcileReport
from .watcher import MarkdownTreeWatcher
from .engine import SyncEngine

__all__ = [
    "SyncError",
    "TransientError",
    "RateLimited",
    "RemoteUnavailable",
    "PermanentError",
    "ValidationFailed",
    "VersionConflict",
    "StaleReservation",
    "ReservationConflict",
    "CircuitOpen",
    "ChangeEvent",
    "ChangeKind",
    "EventSource",
    "RawNotification",
    "map_collection",
    "resolve_collection",
    "IdentityStore",
    "Reservation",
    "DeadLetterQueue",
    "EventNormalizer",
    "ConflictResolver",
    "Dispatcher",
    "DispatchOutcome",
    "OutcomeStatus",
    "BatchReconciler",
    "PeriodicReconcileTask",
    "ProcessResult",
    "ReconcileReport",
    "MarkdownTreeWatcher",
    "SyncEngine",
]
