"""
Sync Engine.

Central coordinator wiring the watcher, normalizer, identity store,
resolver, dispatcher and reconciler for one markdown tree.
"""

import asyncio
import dataclasses
import logging
import random
import time
import zlib
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from core.models.config import SyncConfig
from core.models.records import FileRecord
from core.remote.base import RemoteDocumentStore
from .collections import map_collection
from .deadletter import DeadLetterQueue
from .dispatcher import DispatchOutcome, Dispatcher, OutcomeStatus
from .documents import LocalChange, read_local_change
from .errors import CircuitOpen, ReservationConflict, TransientError
from .events import ChangeEvent, ChangeKind, EventSource
from .identity import IdentityStore, Reservation
from .normalizer import EventNormalizer
from .reconciler import BatchReconciler, PeriodicReconcileTask, ProcessResult, ReconcileReport
from .resolver import ConflictResolver
from .watcher import MarkdownTreeWatcher

logger = logging.getLogger(__name__)

BUSY_RETRY_SECONDS = 0.05


@dataclass
class SyncEngineMetrics:
    """Counters for processed change events"""
    events_processed: int = 0
    events_failed: int = 0
    events_busy: int = 0
    by_kind: Dict[str, int] = field(default_factory=dict)
    by_status: Dict[str, int] = field(default_factory=dict)
    moves_split: int = 0
    conflict_reevaluations: int = 0

    total_processing_time_ms: float = 0.0
    max_processing_time_ms: float = 0.0

    consecutive_errors: int = 0
    last_error_time: Optional[datetime] = None
    last_error_message: Optional[str] = None

    @property
    def avg_processing_time_ms(self) -> float:
        if self.events_processed == 0:
            return 0.0
        return self.total_processing_time_ms / self.events_processed

    def record(self, result: ProcessResult, elapsed_ms: float) -> None:
        self.events_processed += 1
        kind = result.event.kind.value
        self.by_kind[kind] = self.by_kind.get(kind, 0) + 1
        self.by_status[result.status] = self.by_status.get(result.status, 0) + 1
        self.total_processing_time_ms += elapsed_ms
        self.max_processing_time_ms = max(self.max_processing_time_ms, elapsed_ms)

        if result.busy:
            self.events_busy += 1
        elif result.error is not None:
            self.events_failed += 1
            self.consecutive_errors += 1
            self.last_error_message = result.error
            self.last_error_time = datetime.now()
        else:
            self.consecutive_errors = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "events_processed": self.events_processed,
            "events_failed": self.events_failed,
            "events_busy": self.events_busy,
            "by_kind": dict(self.by_kind),
            "by_status": dict(self.by_status),
            "moves_split": self.moves_split,
            "conflict_reevaluations": self.conflict_reevaluations,
            "avg_processing_time_ms": round(self.avg_processing_time_ms, 3),
            "max_processing_time_ms": round(self.max_processing_time_ms, 3),
            "consecutive_errors": self.consecutive_errors,
            "last_error": self.last_error_message,
            "last_error_time": self.last_error_time.isoformat() if self.last_error_time else None,
        }


class SyncEngine:
    """
    Keeps one markdown tree and its Outline collections in step.

    Normalized events are partitioned by path over ``worker_count`` queues,
    so each path has a single consumer and its events stay in order. Every
    event is processed under an Identity Store reservation: read the local
    file, fetch the remote snapshot, resolve, dispatch. The reconciler feeds
    the same path.
    """

    def __init__(
        self,
        config: SyncConfig,
        remote: RemoteDocumentStore,
        enable_watcher: bool = True,
        enable_reconciler: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
        clock: Callable[[], float] = time.monotonic,
        drain_timeout: float = 10.0
    ):
        self.config = config
        self.root = Path(config.root).resolve()
        self.remote = remote
        self.enable_watcher = enable_watcher
        self.enable_reconciler = enable_reconciler and config.reconciler.enabled
        self.drain_timeout = drain_timeout

        self.identity = IdentityStore(config.identity_file, config.lease_seconds, clock=clock)
        self.dead_letters = DeadLetterQueue(config.dead_letter_file)
        self.dispatcher = Dispatcher(
            remote, self.identity, self.dead_letters, config.dispatcher,
            sleep=sleep, rng=rng, clock=clock,
        )
        self.resolver = ConflictResolver(
            merge_policy=config.merge_policy,
            collection_mapper=self._map_collection,
            path_taken=self._path_taken,
        )
        self.normalizer = EventNormalizer(self.root, config.watch, hash_lookup=self._last_hash)
        self.watcher = MarkdownTreeWatcher(self.root, self.normalizer)
        self.reconciler = BatchReconciler(
            self.root, self.identity, self.process_event,
            watch_config=config.watch,
            concurrency=config.reconciler.concurrency,
        )
        self.reconcile_task = PeriodicReconcileTask(self.reconciler, config.reconciler)

        self._partitions: List[asyncio.Queue] = []
        self._workers: List[asyncio.Task] = []
        self._router: Optional[asyncio.Task] = None

        self.is_running = False
        self.start_time: Optional[datetime] = None
        self.metrics = SyncEngineMetrics()

        logger.info(f"Initialized SyncEngine for {self.root} with {config.worker_count} workers")

    # Collaborator callbacks

    def _map_collection(self, relative_path: str) -> str:
        return map_collection(
            relative_path, self.config.collection_mapping, self.config.default_collection
        )

    def _path_taken(self, path: str) -> bool:
        return Path(path).exists() or self.identity.lookup(path) is not None

    def _last_hash(self, path: Path) -> Optional[str]:
        record = self.identity.lookup(path)
        return record.content_hash if record else None

    # Lifecycle

    async def start(self) -> bool:
        """
        Load state and start workers, watcher and reconcile schedule.

        Returns:
            True if startup was successful, False otherwise
        """
        if self.is_running:
            logger.warning("Sync engine is already running")
            return True

        try:
            loaded = await self.identity.load()
            await self.dead_letters.load()
            logger.info(f"Loaded {loaded} identity records, {len(self.dead_letters)} dead letters")

            self._partitions = [
                asyncio.Queue() for _ in range(self.config.worker_count)
            ]
            self._workers = [
                asyncio.create_task(self._worker(f"worker-{i}", queue))
                for i, queue in enumerate(self._partitions)
            ]
            self._router = asyncio.create_task(self._route_events())
            self.is_running = True
            self.start_time = datetime.now()

            if self.enable_watcher and not await self.watcher.start_monitoring():
                logger.error("File watcher failed to start")
                await self.stop()
                return False

            if self.enable_reconciler:
                await self.reconcile_task.start()

            logger.info(f"Started sync engine for {self.root}")
            return True

        except (OSError, ValueError) as e:
            self.metrics.last_error_message = f"Failed to start sync engine: {e}"
            self.metrics.last_error_time = datetime.now()
            logger.error(self.metrics.last_error_message)
            return False

    async def stop(self) -> bool:
        """
        Stop watching, emit pending events and drain the queues.

        Returns:
            True if every queued event was processed before shutdown
        """
        if not self.is_running:
            return True

        logger.info("Stopping sync engine")
        await self.watcher.stop_monitoring()
        await self.reconcile_task.stop()

        await self.normalizer.flush()
        drained = await self.drain(self.drain_timeout)
        if not drained:
            logger.warning(f"Queues not drained within {self.drain_timeout}s, cancelling workers")
        await self.normalizer.stop()

        self.is_running = False
        tasks = list(self._workers) + ([self._router] if self._router else [])
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._router = None

        await self.identity.save()
        await self.dead_letters.save()
        logger.info("Stopped sync engine")
        return drained

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until normalized events and every partition are processed"""
        async def _join() -> None:
            await self.normalizer.events.join()
            for queue in self._partitions:
                await queue.join()

        try:
            await asyncio.wait_for(_join(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False

    # Event routing

    def partition_for(self, path: Path) -> int:
        return zlib.crc32(str(path).encode('utf-8')) % max(1, len(self._partitions))

    async def _route_events(self) -> None:
        """Move normalized events onto their path's partition"""
        while True:
            event = await self.normalizer.events.get()
            try:
                await self._partitions[self.partition_for(event.path)].put(event)
            finally:
                self.normalizer.events.task_done()

    async def _worker(self, name: str, queue: asyncio.Queue) -> None:
        logger.debug(f"Started event worker {name}")
        while True:
            event = await queue.get()
            try:
                await self.process_event(event)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error in {name} processing {event}: {e}")
                self.metrics.consecutive_errors += 1
                self.metrics.last_error_message = str(e)
                self.metrics.last_error_time = datetime.now()
            finally:
                queue.task_done()

    async def enqueue(self, event: ChangeEvent) -> None:
        """Hand an event to its partition directly, bypassing the normalizer"""
        await self._partitions[self.partition_for(event.path)].put(event)

    # Processing

    async def process_event(self, event: ChangeEvent) -> ProcessResult:
        """Run one change event through reserve, resolve and dispatch"""
        started = time.perf_counter()
        paths = [event.path]
        if event.kind == ChangeKind.MOVE:
            paths.append(event.from_path)

        reservations = await self._reserve(paths, wait=event.source == EventSource.REALTIME)
        if reservations is None:
            logger.debug(f"Skipping {event}: path is busy")
            result = ProcessResult(event, busy=True)
        else:
            try:
                result = await self._process_reserved(event, *reservations)
            finally:
                for reservation in reservations:
                    if reservation is not None:
                        await self.identity.release(reservation)

        self.metrics.record(result, (time.perf_counter() - started) * 1000)
        return result

    async def _reserve(
        self,
        paths: List[Path],
        wait: bool
    ) -> Optional[Tuple[Reservation, Optional[Reservation]]]:
        """
        Reserve the event's path and, for moves, its origin.

        Realtime events wait for the holder to finish, up to one lease;
        reconciler events give up straight away.
        """
        deadline = time.monotonic() + self.identity.lease_seconds
        order = sorted(range(len(paths)), key=lambda i: str(paths[i]))

        while True:
            taken: Dict[int, Reservation] = {}
            try:
                for index in order:
                    taken[index] = await self.identity.reserve(paths[index])
                return taken[0], taken.get(1)
            except ReservationConflict:
                for reservation in taken.values():
                    await self.identity.release(reservation)
                if not wait or time.monotonic() >= deadline:
                    return None
            await asyncio.sleep(BUSY_RETRY_SECONDS)

    def _read(self, path: Path, kind: ChangeKind, from_path: Optional[Path] = None) -> LocalChange:
        return read_local_change(
            path,
            self.root,
            kind,
            self.config.collection_mapping,
            self.config.default_collection,
            max_file_size_bytes=self.config.watch.max_file_size_bytes,
            from_path=from_path,
        )

    async def _process_reserved(
        self,
        event: ChangeEvent,
        reservation: Reservation,
        from_reservation: Optional[Reservation]
    ) -> ProcessResult:
        change = await asyncio.to_thread(self._read, event.path, event.kind, event.from_path)

        if event.kind != ChangeKind.MOVE:
            return await self._resolve_and_submit(event, change, reservation)

        old_record = self.identity.lookup(event.from_path)
        if (
            old_record is not None and old_record.is_synced
            and change.exists and change.is_valid
            and change.content_hash == old_record.content_hash
        ):
            return await self._resolve_and_submit(
                event, change, reservation, from_reservation, old_record
            )

        # Content changed on the way: retire the old document, then treat
        # the target like any other change
        self.metrics.moves_split += 1
        logger.info(f"Move {event.from_path} -> {event.path} changed content, splitting")
        removed = LocalChange(
            kind=ChangeKind.DELETE,
            path=str(event.from_path),
            relative_path=event.from_path.relative_to(self.root).as_posix(),
        )
        delete_result = await self._resolve_and_submit(event, removed, from_reservation)
        if delete_result.error is not None:
            logger.warning(f"Delete of moved-away {event.from_path} did not complete: {delete_result.error}")

        change = dataclasses.replace(
            change,
            kind=ChangeKind.CREATE if change.exists else ChangeKind.DELETE,
            from_path=None,
        )
        return await self._resolve_and_submit(event, change, reservation)

    async def _resolve_and_submit(
        self,
        event: ChangeEvent,
        change: LocalChange,
        reservation: Reservation,
        from_reservation: Optional[Reservation] = None,
        old_record: Optional[FileRecord] = None
    ) -> ProcessResult:
        """Resolve against a fresh snapshot, re-resolving on version conflicts"""
        rounds = self.config.dispatcher.conflict_reevaluations + 1
        outcome: Optional[DispatchOutcome] = None

        for round_number in range(rounds):
            if round_number:
                self.metrics.conflict_reevaluations += 1
                logger.info(f"Re-evaluating {change.path} after version conflict ({round_number}/{rounds - 1})")

            record = self.identity.lookup(change.path)
            tracked = old_record or record
            remote = None
            if change.exists and change.is_valid and tracked is not None and tracked.is_synced:
                try:
                    remote = await self.dispatcher.fetch_snapshot(tracked.remote_id)
                except (TransientError, CircuitOpen) as e:
                    logger.warning(f"Cannot fetch remote state for {change.path}: {e}")
                    return ProcessResult(event, error=f"{e.reason}: {e}")

            operation = self.resolver.resolve(change, record, remote, old_record=old_record)
            logger.debug(f"{change.path}: {operation.kind.value} ({operation.reason})")
            outcome = await self.dispatcher.submit(operation, reservation, from_reservation)
            if outcome.status != OutcomeStatus.CONFLICT:
                break

        error = None
        if outcome.status == OutcomeStatus.CONFLICT:
            error = f"unresolved version conflict after {rounds} attempts"
            logger.warning(f"Giving up on {change.path}: {error}")
        elif outcome.status in (OutcomeStatus.CIRCUIT_OPEN, OutcomeStatus.DEAD_LETTERED):
            error = outcome.error
        return ProcessResult(event, outcome=outcome, error=error)

    # Operations

    async def reconcile(self, dry_run: bool = False) -> ReconcileReport:
        return await self.reconciler.run_once(dry_run=dry_run)

    async def replay_dead_letter(self, entry_id: str) -> DispatchOutcome:
        return await self.dispatcher.replay(entry_id)

    async def replay_all_dead_letters(self) -> List[DispatchOutcome]:
        outcomes = []
        for entry in self.dead_letters.entries():
            try:
                outcomes.append(await self.dispatcher.replay(entry.entry_id))
            except ReservationConflict as e:
                logger.warning(f"Cannot replay {entry.entry_id} now: {e}")
        return outcomes

    @property
    def uptime_seconds(self) -> float:
        if not self.start_time:
            return 0.0
        return (datetime.now() - self.start_time).total_seconds()

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_running": self.is_running,
            "root": str(self.root),
            "uptime_seconds": self.uptime_seconds,
            "worker_count": len(self._workers),
            "queued": sum(queue.qsize() for queue in self._partitions),
            "metrics": self.metrics.to_dict(),
            "health": self.dispatcher.health(),
            "identity": self.identity.get_status(),
            "normalizer": self.normalizer.get_status(),
            "watcher": self.watcher.get_status(),
            "reconciler": self.reconcile_task.get_status(),
        }

    async def __aenter__(self):
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop()
