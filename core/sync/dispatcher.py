"""
Remote operation dispatcher.

Executes SyncOperations against the remote document store under the
caller's reservation: bounded concurrency, per-category token buckets,
retry with exponential backoff and jitter, per-category circuit breakers
and routing of undeliverable operations to the dead-letter list.
"""

import asyncio
import logging
import random
import time
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.models.config import DispatcherConfig
from core.models.records import (
    DeadLetterEntry,
    FileRecord,
    OperationKind,
    RemoteSnapshot,
    SyncOperation,
    SyncState,
)
from core.remote.base import RemoteDocument, RemoteDocumentStore
from .backoff import compute_backoff
from .breaker import BreakerState, CircuitBreaker
from .deadletter import DeadLetterQueue
from .documents import hash_text
from .errors import (
    CircuitOpen,
    RemoteUnavailable,
    StaleReservation,
    SyncError,
    TransientError,
    ValidationFailed,
    VersionConflict,
)
from .identity import IdentityStore, Reservation
from .ratelimit import TokenBucket

logger = logging.getLogger(__name__)

CATEGORIES = ("create", "update", "delete", "list")


class OutcomeStatus(Enum):
    """Terminal outcome of a submitted operation"""
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    DEAD_LETTERED = "dead_lettered"
    CONFLICT = "conflict"
    CIRCUIT_OPEN = "circuit_open"
    STALE = "stale"


@dataclass
class DispatchOutcome:
    """Result of Dispatcher.submit"""
    status: OutcomeStatus
    operation: SyncOperation
    record: Optional[FileRecord] = None
    attempts: int = 0
    error: Optional[str] = None
    dead_letter: Optional[DeadLetterEntry] = None

    @property
    def succeeded(self) -> bool:
        return self.status in (OutcomeStatus.SUCCEEDED, OutcomeStatus.SKIPPED)


@dataclass
class DispatcherMetrics:
    """Counters for dispatched operations"""
    submitted: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    outcomes: Dict[str, int] = field(default_factory=lambda: defaultdict(int))
    remote_calls: int = 0
    retries: int = 0
    dead_letters: int = 0
    consecutive_errors: int = 0
    last_error: Optional[str] = None
    last_error_time: Optional[datetime] = None

    def record_error(self, error: str) -> None:
        self.consecutive_errors += 1
        self.last_error = error
        self.last_error_time = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "submitted": dict(self.submitted),
            "outcomes": dict(self.outcomes),
            "remote_calls": self.remote_calls,
            "retries": self.retries,
            "dead_letters": self.dead_letters,
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
        }


class _RetriesExhausted(Exception):
    def __init__(self, error: TransientError, attempts: int):
        super().__init__(str(error))
        self.error = error
        self.attempts = attempts


@dataclass
class _Attempts:
    """Attempt counter and the leases held for one operation"""
    count: int = 0
    reservations: List[Reservation] = field(default_factory=list)


class Dispatcher:
    """
    Single gateway to the remote document store.

    Every remote call, including snapshot reads for the resolver, passes
    through a category token bucket and circuit breaker.
    """

    def __init__(
        self,
        remote: RemoteDocumentStore,
        identity: IdentityStore,
        dead_letters: DeadLetterQueue,
        config: Optional[DispatcherConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self.remote = remote
        self.identity = identity
        self.dead_letters = dead_letters
        self.config = config or DispatcherConfig()
        self._sleep = sleep
        self._rng = rng or random.Random()

        self.buckets: Dict[str, TokenBucket] = {
            category: TokenBucket(
                self.config.rate_for(category),
                capacity=self.config.burst,
                clock=clock,
                sleep=sleep,
            )
            for category in CATEGORIES
        }
        self.breakers: Dict[str, CircuitBreaker] = {
            category: CircuitBreaker(
                name=category,
                failure_ratio=self.config.breaker_failure_ratio,
                window_seconds=self.config.breaker_window_seconds,
                min_calls=self.config.breaker_min_calls,
                cooldown_seconds=self.config.breaker_cooldown_seconds,
                clock=clock,
            )
            for category in CATEGORIES
        }

        self._semaphore = asyncio.Semaphore(self.config.max_concurrency)
        self._collection_ids: Dict[str, str] = {}
        self._collection_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.metrics = DispatcherMetrics()

    # Remote call plumbing

    async def _call(
        self,
        attempts: _Attempts,
        category: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any
    ) -> Any:
        """One remote call with rate limiting, breaker and retries"""
        bucket = self.buckets[category]
        breaker = self.breakers[category]
        attempt = 0

        while True:
            attempt += 1
            attempts.count = max(attempts.count, attempt)

            if not breaker.can_attempt():
                raise CircuitOpen(f"Circuit for '{category}' calls is open")

            await bucket.acquire()
            try:
                await self._renew_leases(attempts)
            except StaleReservation:
                breaker.abandon_trial()
                raise
            self.metrics.remote_calls += 1

            try:
                result = await func(*args, **kwargs)
            except asyncio.CancelledError:
                breaker.abandon_trial()
                raise
            except RemoteUnavailable as e:
                breaker.record_failure()
                error: TransientError = e
            except TransientError as e:
                # Throttled: the remote answered, so it counts as available
                breaker.record_success()
                error = e
            except SyncError:
                breaker.record_success()
                raise
            except Exception:
                breaker.record_failure()
                raise
            else:
                breaker.record_success()
                return result

            if attempt >= self.config.max_attempts:
                raise _RetriesExhausted(error, attempt)

            delay = compute_backoff(
                attempt - 1,
                base=self.config.base_delay,
                max_delay=self.config.max_delay,
                jitter=self.config.jitter,
                rng=self._rng,
                floor=getattr(error, "retry_after", None),
            )
            self.metrics.retries += 1
            logger.warning(
                f"{category} call failed ({error.reason}: {error}), "
                f"retry {attempt}/{self.config.max_attempts - 1} in {delay:.2f}s"
            )
            await self._sleep(delay)

    async def _renew_leases(self, attempts: _Attempts) -> None:
        """Extend the operation's leases so rate-limit and backoff waits cannot outlast them"""
        attempts.reservations = [
            await self.identity.renew(reservation) for reservation in attempts.reservations
        ]

    async def _collection_id(self, attempts: _Attempts, name: str) -> str:
        """Resolve a collection name to its remote id, creating it if needed"""
        if name in self._collection_ids:
            return self._collection_ids[name]

        async with self._collection_locks[name]:
            if name in self._collection_ids:
                return self._collection_ids[name]

            collections = await self._call(attempts, "list", self.remote.list_collections)
            for collection in collections:
                self._collection_ids.setdefault(collection.name, collection.id)

            if name not in self._collection_ids:
                created = await self._call(attempts, "create", self.remote.create_collection, name)
                self._collection_ids[name] = created.id

            return self._collection_ids[name]

    async def fetch_snapshot(self, remote_id: str) -> Optional[RemoteSnapshot]:
        """
        Current remote state of a document, None if it was deleted.

        Raises the last TransientError when retries are exhausted and
        CircuitOpen while the list breaker is open.
        """
        try:
            document = await self._call(_Attempts(), "list", self.remote.get_document, remote_id)
        except _RetriesExhausted as e:
            raise e.error
        if document is None:
            return None
        return document.to_snapshot(content_hash=hash_text(document.text))

    # Submission

    async def submit(
        self,
        operation: SyncOperation,
        reservation: Reservation,
        from_reservation: Optional[Reservation] = None
    ) -> DispatchOutcome:
        """
        Execute an operation under the caller's reservation.

        Reservations are released on every outcome except CONFLICT, where
        the caller keeps them to re-resolve with a fresh snapshot.
        """
        self.metrics.submitted[operation.kind.value] += 1
        keep_reservations = False

        try:
            async with self._semaphore:
                outcome = await self._dispatch(operation, reservation, from_reservation)
            keep_reservations = outcome.status == OutcomeStatus.CONFLICT
            self.metrics.outcomes[outcome.status.value] += 1
            return outcome
        finally:
            if not keep_reservations:
                await self.identity.release(reservation)
                if from_reservation is not None:
                    await self.identity.release(from_reservation)

    async def _dispatch(
        self,
        operation: SyncOperation,
        reservation: Reservation,
        from_reservation: Optional[Reservation]
    ) -> DispatchOutcome:
        if not self.identity.is_current(reservation):
            logger.warning(f"Dropping {operation.kind.value} for {operation.path}: reservation is stale")
            return DispatchOutcome(OutcomeStatus.STALE, operation, error="stale reservation")

        if operation.is_invalid:
            return await self._dead_letter_invalid(operation, reservation)

        attempts = _Attempts(reservations=[
            held for held in (reservation, from_reservation) if held is not None
        ])
        try:
            record = await self._execute(operation, reservation, from_reservation, attempts)
        except _RetriesExhausted as e:
            self.metrics.record_error(str(e.error))
            return await self._to_dead_letter(operation, e.attempts, e.error)
        except VersionConflict as e:
            logger.info(f"Version conflict on {operation.path}: {e}")
            return DispatchOutcome(
                OutcomeStatus.CONFLICT, operation, attempts=attempts.count, error=str(e)
            )
        except CircuitOpen as e:
            logger.warning(f"Skipping {operation.kind.value} for {operation.path}: {e}")
            return DispatchOutcome(
                OutcomeStatus.CIRCUIT_OPEN, operation, attempts=attempts.count, error=str(e)
            )
        except StaleReservation as e:
            logger.warning(f"Discarding result for {operation.path}: {e}")
            return DispatchOutcome(
                OutcomeStatus.STALE, operation, attempts=attempts.count, error=str(e)
            )
        except SyncError as e:
            self.metrics.record_error(str(e))
            return await self._to_dead_letter(operation, max(1, attempts.count), e)

        self.metrics.consecutive_errors = 0
        status = OutcomeStatus.SKIPPED if operation.kind == OperationKind.SKIP else OutcomeStatus.SUCCEEDED
        return DispatchOutcome(status, operation, record=record, attempts=attempts.count)

    async def _to_dead_letter(
        self,
        operation: SyncOperation,
        attempts: int,
        error: SyncError
    ) -> DispatchOutcome:
        failed = operation.model_copy(update={"attempt": attempts})
        entry = await self.dead_letters.add(failed, attempts, error.reason, str(error))
        self.metrics.dead_letters += 1
        return DispatchOutcome(
            OutcomeStatus.DEAD_LETTERED,
            failed,
            attempts=attempts,
            error=str(error),
            dead_letter=entry,
        )

    async def _dead_letter_invalid(
        self,
        operation: SyncOperation,
        reservation: Reservation
    ) -> DispatchOutcome:
        """Invalid documents never reach the remote"""
        error = ValidationFailed(operation.invalid_reason or "invalid document")
        outcome = await self._to_dead_letter(operation, 0, error)

        record = self.identity.lookup(operation.path)
        if (record is None or not record.is_synced) and operation.content_hash:
            dead = FileRecord(
                path=operation.path,
                content_hash=operation.content_hash,
                collection=operation.collection or (record.collection if record else "Inbox"),
                sync_state=SyncState.DEAD,
                local_modified_at=operation.local_modified_at,
            )
            outcome.record = await self.identity.commit(reservation, dead)
        return outcome

    # Operation execution

    async def _execute(
        self,
        operation: SyncOperation,
        reservation: Reservation,
        from_reservation: Optional[Reservation],
        attempts: _Attempts
    ) -> Optional[FileRecord]:
        kind = operation.kind
        if kind == OperationKind.CREATE_REMOTE:
            return await self._create(operation, reservation, from_reservation, attempts)
        if kind == OperationKind.UPDATE_REMOTE:
            return await self._update(operation, reservation, from_reservation, attempts)
        if kind == OperationKind.DELETE_REMOTE:
            await self._call(attempts, "delete", self.remote.delete_document, operation.remote_id)
            await self.identity.commit(reservation, None)
            logger.info(f"Deleted remote document {operation.remote_id} for {operation.path}")
            return None
        if kind == OperationKind.CREATE_CONFLICT_COPY:
            return await self._conflict_copy(operation, reservation, attempts)
        return await self._skip(operation, reservation)

    @staticmethod
    def _metadata(operation: SyncOperation, **extra: Any) -> Dict[str, Any]:
        payload = operation.payload
        return {**payload.metadata, "source_path": payload.source_path, **extra}

    def _synced_record(
        self,
        operation: SyncOperation,
        document: RemoteDocument,
        base: Optional[FileRecord] = None
    ) -> FileRecord:
        payload = operation.payload
        return FileRecord(
            path=operation.path,
            content_hash=operation.content_hash,
            remote_id=document.id,
            remote_version=document.version,
            local_modified_at=operation.local_modified_at,
            remote_modified_at=document.updated_at,
            collection=base.collection if base else payload.collection,
            sync_state=SyncState.SYNCED,
            title=payload.title,
        )

    async def _create(
        self,
        operation: SyncOperation,
        reservation: Reservation,
        from_reservation: Optional[Reservation],
        attempts: _Attempts
    ) -> FileRecord:
        payload = operation.payload
        record = self.identity.lookup(operation.path)

        if record is None or record.sync_state != SyncState.UNSYNCED:
            # Record the intent before the remote call so a crash in between
            # leaves an UNSYNCED record for the reconciler to repair
            pending = FileRecord(
                path=operation.path,
                content_hash=operation.content_hash,
                collection=payload.collection,
                sync_state=SyncState.UNSYNCED,
                local_modified_at=operation.local_modified_at,
                title=payload.title,
            )
            await self.identity.commit(reservation, pending)

        collection_id = await self._collection_id(attempts, payload.collection)

        existing = None
        if operation.adopt_existing:
            existing = await self._find_adoptable(attempts, operation, collection_id)

        if existing is not None:
            logger.info(f"Adopting existing remote document {existing.id} for {operation.path}")
            document = await self._call(
                attempts, "update", self.remote.update_document,
                existing.id, payload.title, payload.text,
                self._metadata(operation), existing.version,
            )
        else:
            document = await self._call(
                attempts, "create", self.remote.create_document,
                collection_id, payload.title, payload.text or "", self._metadata(operation),
            )
            logger.info(f"Created remote document {document.id} for {operation.path} in '{payload.collection}'")

        committed = await self.identity.commit(reservation, self._synced_record(operation, document))
        if operation.from_path and from_reservation is not None:
            await self.identity.commit(from_reservation, None)
        return committed

    async def _find_adoptable(
        self,
        attempts: _Attempts,
        operation: SyncOperation,
        collection_id: str
    ) -> Optional[RemoteDocument]:
        """
        Remote document left behind by an interrupted create of this path.

        Documents already recorded for another path are never adopted, even
        when the store matches them (Outline matches on title only).
        """
        path = self.identity.canonical(operation.path)
        claimed = {
            record.remote_id for record in self.identity.records()
            if record.remote_id and self.identity.canonical(record.path) != path
        }
        existing = await self._call(
            attempts, "list", self.remote.find_document_by_source,
            collection_id, operation.payload.source_path, operation.payload.title,
            exclude_ids=claimed,
        )
        if existing is None:
            return None

        owner = self.identity.find_by_remote_id(existing.id)
        if owner is not None and self.identity.canonical(owner.path) != path:
            logger.warning(
                f"Not adopting remote document {existing.id} for {operation.path}: "
                f"it belongs to {owner.path}"
            )
            return None
        return existing

    async def _update(
        self,
        operation: SyncOperation,
        reservation: Reservation,
        from_reservation: Optional[Reservation],
        attempts: _Attempts
    ) -> FileRecord:
        payload = operation.payload
        base = self.identity.lookup(operation.from_path or operation.path)

        document = await self._call(
            attempts, "update", self.remote.update_document,
            operation.remote_id, payload.title, payload.text,
            self._metadata(operation), operation.expected_version,
        )

        committed = await self.identity.commit(
            reservation, self._synced_record(operation, document, base)
        )
        if operation.from_path and from_reservation is not None:
            await self.identity.commit(from_reservation, None)
            logger.info(f"Renamed {operation.from_path} -> {operation.path} (remote {document.id})")
        else:
            logger.info(f"Updated remote document {document.id} for {operation.path} (v{document.version})")
        return committed

    async def _conflict_copy(
        self,
        operation: SyncOperation,
        reservation: Reservation,
        attempts: _Attempts
    ) -> FileRecord:
        """
        Create the conflict copy, then settle the original.

        Records are committed only after every remote step succeeded. A
        failure once the copy exists removes the copy again, so a retry or
        re-evaluation starts from the recorded state it saw before.
        """
        copy_payload = operation.conflict_payload
        copy_reservation = await self.identity.reserve(operation.conflict_path)
        attempts.reservations.append(copy_reservation)
        copy_document: Optional[RemoteDocument] = None
        copy_committed = False

        try:
            collection_id = await self._collection_id(attempts, copy_payload.collection)
            copy_document = await self._call(
                attempts, "create", self.remote.create_document,
                collection_id, copy_payload.title, copy_payload.text or "",
                {**copy_payload.metadata, "source_path": copy_payload.source_path,
                 "conflict_of": operation.payload.source_path},
            )

            original = self.identity.lookup(operation.path)
            if operation.local_wins:
                document = await self._call(
                    attempts, "update", self.remote.update_document,
                    operation.remote_id, operation.payload.title, operation.payload.text,
                    self._metadata(operation), operation.expected_version,
                )
                updated = self._synced_record(operation, document, original)
                if operation.manual_review:
                    updated = updated.model_copy(update={"sync_state": SyncState.CONFLICTED})
            else:
                updated = original.model_copy(update={
                    "content_hash": operation.content_hash,
                    "remote_version": operation.adopt_version,
                    "remote_modified_at": operation.adopt_modified_at,
                    "local_modified_at": operation.local_modified_at,
                    "sync_state": SyncState.CONFLICTED,
                })

            copy_record = FileRecord(
                path=operation.conflict_path,
                content_hash=copy_payload.content_hash,
                remote_id=copy_document.id,
                remote_version=copy_document.version,
                remote_modified_at=copy_document.updated_at,
                collection=copy_payload.collection,
                sync_state=SyncState.SYNCED,
                title=copy_payload.title,
                conflict_of=operation.path,
            )
            await self.identity.commit(copy_reservation, copy_record)
            copy_committed = True
            committed = await self.identity.commit(reservation, updated)
        except Exception:
            if copy_document is not None:
                await self._discard_copy(copy_reservation, copy_document.id, copy_committed)
            raise
        finally:
            attempts.reservations = [
                held for held in attempts.reservations if held.token != copy_reservation.token
            ]
            await self.identity.release(copy_reservation)

        logger.info(
            f"Conflict copy {operation.conflict_path} created for {operation.path} "
            f"(original now {committed.sync_state.value})"
        )
        return committed

    async def _discard_copy(
        self,
        copy_reservation: Reservation,
        remote_id: str,
        committed: bool
    ) -> None:
        """Undo a conflict copy whose original could not be settled"""
        logger.info(f"Removing conflict copy {remote_id} for {copy_reservation.path}")
        try:
            await self._call(_Attempts(), "delete", self.remote.delete_document, remote_id)
        except (SyncError, _RetriesExhausted) as e:
            logger.error(f"Could not remove conflict copy {remote_id}, it stays in Outline untracked: {e}")
        if committed and self.identity.is_current(copy_reservation):
            await self.identity.commit(copy_reservation, None)

    async def _skip(self, operation: SyncOperation, reservation: Reservation) -> Optional[FileRecord]:
        if operation.drop_record:
            await self.identity.commit(reservation, None)
            return None

        record = self.identity.lookup(operation.path)
        if operation.adopt_version is not None and record is not None:
            adopted = record.model_copy(update={
                "remote_version": operation.adopt_version,
                "remote_modified_at": operation.adopt_modified_at,
            })
            logger.info(f"Remote is newer for {operation.path}, adopting v{operation.adopt_version}")
            return await self.identity.commit(reservation, adopted)

        logger.debug(f"Skipping {operation.path}: {operation.reason}")
        return record

    # Dead letters

    async def replay(self, entry_id: str) -> DispatchOutcome:
        """
        Re-submit a dead-letter entry as a fresh operation.

        The entry leaves the list once the operation succeeds or is
        dead-lettered again under a new entry. Any other outcome, or
        cancellation, keeps it for a later replay.
        """
        entry = self.dead_letters.get(entry_id)
        if entry is None:
            raise KeyError(f"No dead-letter entry {entry_id}")

        operation = entry.operation.renewed()
        reservation = await self.identity.reserve(operation.path)
        from_reservation = None
        try:
            if operation.from_path:
                from_reservation = await self.identity.reserve(operation.from_path)
            logger.info(f"Replaying dead letter {entry_id} ({operation.kind.value} {operation.path})")
            outcome = await self.submit(operation, reservation, from_reservation)
            if outcome.succeeded or outcome.status == OutcomeStatus.DEAD_LETTERED:
                await self.dead_letters.remove(entry_id)
            else:
                logger.warning(f"Dead letter {entry_id} kept: replay ended {outcome.status.value}")
            return outcome
        finally:
            await self.identity.release(reservation)
            if from_reservation is not None:
                await self.identity.release(from_reservation)

    # Health

    def health(self) -> Dict[str, Any]:
        breakers = {name: breaker.get_status() for name, breaker in self.breakers.items()}
        open_categories = [
            name for name, breaker in self.breakers.items()
            if breaker.state == BreakerState.OPEN
        ]
        return {
            "healthy": not open_categories,
            "open_circuits": open_categories,
            "breakers": breakers,
            "rate_limits": {name: bucket.get_status() for name, bucket in self.buckets.items()},
            "dead_letters": len(self.dead_letters),
            "metrics": self.metrics.to_dict(),
        }
