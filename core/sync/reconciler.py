"""
Batch reconciliation of the whole markdown tree.

Walks the tree, compares it with the Identity Store and feeds the differences
through the same processing path as realtime events. Catches changes the
watcher missed and repairs records left UNSYNCED by an interrupted create.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from core.models.config import ReconcilerConfig, WatchConfig
from core.models.records import SyncState
from .dispatcher import DispatchOutcome
from .documents import hash_file_async, iter_markdown_files
from .events import ChangeEvent, EventSource
from .identity import IdentityStore

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    """What happened to one change event in the processing path"""
    event: ChangeEvent
    outcome: Optional[DispatchOutcome] = None
    busy: bool = False
    error: Optional[str] = None

    @property
    def status(self) -> str:
        if self.busy:
            return "busy"
        if self.outcome is not None:
            return self.outcome.status.value
        if self.error is not None:
            return "failed"
        return "ignored"


EventProcessor = Callable[[ChangeEvent], Awaitable[ProcessResult]]


@dataclass
class ReconcileReport:
    """Summary of one reconciliation pass"""
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    scanned: int = 0
    unchanged: int = 0
    planned: Dict[str, int] = field(default_factory=dict)
    skipped_busy: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    events: List[ChangeEvent] = field(default_factory=list)
    dry_run: bool = False

    @property
    def duration_seconds(self) -> float:
        if self.finished_at is None:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
            "scanned": self.scanned,
            "unchanged": self.unchanged,
            "planned": dict(self.planned),
            "skipped_busy": self.skipped_busy,
            "outcomes": dict(self.outcomes),
            "errors": list(self.errors),
            "dry_run": self.dry_run,
        }


class BatchReconciler:
    """
    Derives change events from the difference between tree and records.

    - no record for a file: CREATE
    - hash differs, or the record never synced: MODIFY
    - record whose file is gone: DELETE
    DEAD records are retried only when their content changed. Paths with a
    live reservation are left to whoever holds it.
    """

    def __init__(
        self,
        root: Path,
        identity: IdentityStore,
        processor: Optional[EventProcessor] = None,
        watch_config: Optional[WatchConfig] = None,
        concurrency: int = 5
    ):
        self.root = Path(root).resolve()
        self.identity = identity
        self.processor = processor
        self.watch_config = watch_config or WatchConfig()
        self.concurrency = concurrency
        self.last_report: Optional[ReconcileReport] = None

    async def plan(self, report: Optional[ReconcileReport] = None) -> List[ChangeEvent]:
        """Compare the tree with the records and return the events to process"""
        report = report or ReconcileReport()
        events: List[ChangeEvent] = []
        seen = set()

        files = await asyncio.to_thread(
            lambda: list(iter_markdown_files(
                self.root, self.watch_config.is_excluded_dir, self.watch_config.should_watch
            ))
        )

        for path in files:
            key = IdentityStore.canonical(path)
            seen.add(key)
            report.scanned += 1

            record = self.identity.lookup(key)
            if record is None:
                events.append(ChangeEvent.create(path, source=EventSource.RECONCILER))
                continue

            content_hash = await hash_file_async(path)
            if content_hash is None:
                # Vanished during the walk; the record check below handles it
                seen.discard(key)
                continue

            if record.sync_state == SyncState.DEAD and content_hash == record.content_hash:
                report.unchanged += 1
                continue
            if content_hash != record.content_hash or record.sync_state == SyncState.UNSYNCED:
                events.append(ChangeEvent.modify(path, source=EventSource.RECONCILER))
            else:
                report.unchanged += 1

        for record in self.identity.records():
            if record.path in seen or record.is_conflict_copy:
                continue
            path = Path(record.path)
            try:
                path.relative_to(self.root)
            except ValueError:
                logger.warning(f"Record {record.path} is outside {self.root}, ignoring")
                continue
            if not path.exists():
                events.append(ChangeEvent.delete(path, source=EventSource.RECONCILER))

        for event in events:
            report.planned[event.kind.value] = report.planned.get(event.kind.value, 0) + 1
        report.events = events
        return events

    async def run_once(self, dry_run: bool = False) -> ReconcileReport:
        """One full pass; with dry_run only the plan is reported"""
        report = ReconcileReport(dry_run=dry_run)
        logger.info(f"Reconciling {self.root}{' (dry run)' if dry_run else ''}")

        events = await self.plan(report)

        if not dry_run and events:
            if self.processor is None:
                raise RuntimeError("BatchReconciler has no event processor")
            semaphore = asyncio.Semaphore(self.concurrency)

            async def process(event: ChangeEvent) -> None:
                async with semaphore:
                    if self.identity.is_reserved(event.path):
                        report.skipped_busy += 1
                        logger.debug(f"Skipping {event.path}: reserved by another worker")
                        return
                    try:
                        result = await self.processor(event)
                    except Exception as e:
                        report.errors.append(f"{event.path}: {e}")
                        logger.error(f"Reconciling {event.path} failed: {e}")
                        return
                    if result.busy:
                        report.skipped_busy += 1
                        return
                    if result.error:
                        report.errors.append(f"{event.path}: {result.error}")
                    report.outcomes[result.status] = report.outcomes.get(result.status, 0) + 1

            await asyncio.gather(*(process(event) for event in events))

        report.finished_at = datetime.now()
        self.last_report = report
        logger.info(
            f"Reconciliation finished in {report.duration_seconds:.2f}s: "
            f"{report.scanned} files, planned {report.planned}, "
            f"{report.skipped_busy} busy, {len(report.errors)} errors"
        )
        return report


class TaskStatus(Enum):
    """Status of the periodic reconcile task"""
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


@dataclass
class TaskMetrics:
    """Metrics for periodic reconciliation runs"""
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    consecutive_failures: int = 0
    last_run_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    last_failure_time: Optional[datetime] = None
    last_execution_duration_seconds: float = 0.0
    total_execution_time_seconds: float = 0.0

    def update_success(self, execution_time: float) -> None:
        self._update(execution_time)
        self.successful_runs += 1
        self.consecutive_failures = 0
        self.last_success_time = self.last_run_time

    def update_failure(self, execution_time: float) -> None:
        self._update(execution_time)
        self.failed_runs += 1
        self.consecutive_failures += 1
        self.last_failure_time = self.last_run_time

    def _update(self, execution_time: float) -> None:
        self.total_runs += 1
        self.last_run_time = datetime.now()
        self.last_execution_duration_seconds = execution_time
        self.total_execution_time_seconds += execution_time

    @property
    def average_execution_time_seconds(self) -> float:
        if self.total_runs == 0:
            return 0.0
        return self.total_execution_time_seconds / self.total_runs

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_runs": self.total_runs,
            "successful_runs": self.successful_runs,
            "failed_runs": self.failed_runs,
            "consecutive_failures": self.consecutive_failures,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "last_success_time": self.last_success_time.isoformat() if self.last_success_time else None,
            "last_failure_time": self.last_failure_time.isoformat() if self.last_failure_time else None,
            "last_execution_duration_seconds": self.last_execution_duration_seconds,
            "average_execution_time_seconds": self.average_execution_time_seconds,
        }


class PeriodicReconcileTask:
    """
    Runs BatchReconciler.run_once on an interval.

    The first run happens after ``initial_delay_minutes``; further runs every
    ``interval_minutes`` until stopped. Pausing skips runs without losing
    the schedule.
    """

    def __init__(self, reconciler: BatchReconciler, config: Optional[ReconcilerConfig] = None):
        self.reconciler = reconciler
        self.config = config or ReconcilerConfig()

        self.status = TaskStatus.STOPPED
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self._pause_event = asyncio.Event()
        self._run_lock = asyncio.Lock()
        self._lifecycle_lock = asyncio.Lock()

        self.metrics = TaskMetrics()
        self._last_error: Optional[str] = None
        self._start_time: Optional[datetime] = None

        logger.info(
            f"Initialized periodic reconcile task for {reconciler.root} "
            f"(interval: {self.config.interval_minutes}min, "
            f"initial_delay: {self.config.initial_delay_minutes}min)"
        )

    async def start(self) -> bool:
        async with self._lifecycle_lock:
            if self.status != TaskStatus.STOPPED:
                logger.warning(f"Periodic reconcile task is already {self.status.value}")
                return False

            self._shutdown_event.clear()
            self._pause_event.set()
            self._task = asyncio.create_task(self._run_periodic_task())
            self.status = TaskStatus.RUNNING
            self._start_time = datetime.now()
            logger.info("Started periodic reconcile task")
            return True

    async def stop(self) -> None:
        async with self._lifecycle_lock:
            if self.status == TaskStatus.STOPPED:
                return

            self._shutdown_event.set()
            self._pause_event.set()
            self.status = TaskStatus.STOPPED

            if self._task and not self._task.done():
                self._task.cancel()
                try:
                    await asyncio.wait_for(self._task, timeout=5.0)
                except (asyncio.CancelledError, asyncio.TimeoutError):
                    logger.debug("Reconcile task cancelled or timed out during shutdown")

            self._task = None
            logger.info("Periodic reconcile task stopped")

    async def pause(self) -> None:
        if self.status == TaskStatus.RUNNING:
            self._pause_event.clear()
            self.status = TaskStatus.PAUSED
            logger.info("Periodic reconcile task paused")

    async def resume(self) -> None:
        if self.status == TaskStatus.PAUSED:
            self._pause_event.set()
            self.status = TaskStatus.RUNNING
            logger.info("Periodic reconcile task resumed")

    async def trigger_immediate_run(self) -> Dict[str, Any]:
        """Run a pass now, outside the schedule"""
        if self.status == TaskStatus.STOPPED:
            return {"success": False, "error": "Task is not running"}
        logger.info("Triggering immediate reconciliation...")
        return await self._execute()

    async def _execute(self) -> Dict[str, Any]:
        start_time = time.perf_counter()
        async with self._run_lock:
            try:
                report = await asyncio.wait_for(
                    self.reconciler.run_once(),
                    timeout=self.config.timeout_seconds
                )
            except asyncio.TimeoutError:
                error_msg = f"Reconciliation timed out after {self.config.timeout_minutes} minutes"
            except Exception as e:
                error_msg = f"Reconciliation failed: {e}"
            else:
                execution_time = time.perf_counter() - start_time
                if report.success:
                    self.metrics.update_success(execution_time)
                else:
                    self.metrics.update_failure(execution_time)
                    self._last_error = report.errors[-1]
                return {
                    "success": report.success,
                    "execution_time_seconds": execution_time,
                    "report": report.to_dict(),
                }

        execution_time = time.perf_counter() - start_time
        logger.error(error_msg)
        self._last_error = error_msg
        self.metrics.update_failure(execution_time)
        return {"success": False, "error": error_msg, "execution_time_seconds": execution_time}

    async def _run_periodic_task(self) -> None:
        try:
            await asyncio.wait_for(
                self._shutdown_event.wait(),
                timeout=self.config.initial_delay_seconds
            )
            return
        except asyncio.TimeoutError:
            pass

        while not self._shutdown_event.is_set():
            try:
                await self._pause_event.wait()
                if self._shutdown_event.is_set():
                    break

                await self._execute()

                try:
                    await asyncio.wait_for(
                        self._shutdown_event.wait(),
                        timeout=self.config.interval_seconds
                    )
                    break
                except asyncio.TimeoutError:
                    continue
            except asyncio.CancelledError:
                logger.debug("Periodic reconcile task cancelled")
                break

    def get_status(self) -> Dict[str, Any]:
        next_run_time = None
        if self.status == TaskStatus.RUNNING and self._start_time:
            initial_delay = timedelta(seconds=self.config.initial_delay_seconds)
            interval = timedelta(seconds=self.config.interval_seconds)
            elapsed = datetime.now() - self._start_time
            if elapsed < initial_delay:
                next_run_time = self._start_time + initial_delay
            else:
                completed = int((elapsed - initial_delay) / interval)
                next_run_time = self._start_time + initial_delay + interval * (completed + 1)

        last_report = self.reconciler.last_report
        return {
            "status": self.status.value,
            "root": str(self.reconciler.root),
            "start_time": self._start_time.isoformat() if self._start_time else None,
            "next_run_time": next_run_time.isoformat() if next_run_time else None,
            "last_error": self._last_error,
            "last_report": last_report.to_dict() if last_report else None,
            "config": {
                "interval_minutes": self.config.interval_minutes,
                "initial_delay_minutes": self.config.initial_delay_minutes,
                "concurrency": self.config.concurrency,
                "timeout_minutes": self.config.timeout_minutes,
            },
            "metrics": self.metrics.to_dict(),
        }
