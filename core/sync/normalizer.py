"""
Event Normalizer.

Turns the raw, possibly duplicated or reordered notification stream of the
filesystem watcher into one coalesced ChangeEvent per path and debounce
window, correlating delete+create pairs into moves.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Tuple

from core.models.config import WatchConfig
from .documents import hash_file
from .events import ChangeEvent, ChangeKind, RawNotification

logger = logging.getLogger(__name__)


def merge_kinds(pending: ChangeKind, incoming: ChangeKind) -> Optional[Tuple[ChangeKind, bool]]:
    """
    Net effect of two consecutive changes to the same path.

    Returns ``(kind, recheck)`` where ``recheck`` means the file reappeared
    after a delete and must be compared against its last known hash, or
    None when the pair cancels out (create then delete).
    """
    if pending == ChangeKind.CREATE:
        if incoming == ChangeKind.DELETE:
            return None
        return ChangeKind.CREATE, False

    if pending == ChangeKind.DELETE:
        if incoming == ChangeKind.DELETE:
            return ChangeKind.DELETE, False
        return ChangeKind.MODIFY, True

    # MODIFY
    if incoming == ChangeKind.DELETE:
        return ChangeKind.DELETE, False
    return ChangeKind.MODIFY, False


@dataclass
class _PendingSlot:
    kind: ChangeKind
    first_seen: datetime
    last_seen: datetime
    from_path: Optional[Path] = None
    recheck: bool = False


@dataclass
class _HeldDelete:
    event: ChangeEvent
    last_hash: str
    task: Optional[asyncio.Task] = None


@dataclass
class NormalizerMetrics:
    """Counters for the notification stream"""
    received: int = 0
    filtered: int = 0
    coalesced: int = 0
    cancelled: int = 0
    unchanged_dropped: int = 0
    moves_correlated: int = 0
    emitted: Dict[str, int] = field(default_factory=lambda: {kind.value: 0 for kind in ChangeKind})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "received": self.received,
            "filtered": self.filtered,
            "coalesced": self.coalesced,
            "cancelled": self.cancelled,
            "unchanged_dropped": self.unchanged_dropped,
            "moves_correlated": self.moves_correlated,
            "emitted": dict(self.emitted),
            "emitted_total": sum(self.emitted.values()),
        }


class EventNormalizer:
    """
    Per-path debouncing and coalescing of raw notifications.

    Each path has one pending slot whose timer restarts on every new
    notification. When the timer fires the slot's net effect is emitted into
    the bounded ``events`` queue. Deletes of known files are held for the
    move window so a matching create elsewhere can turn the pair into a MOVE.
    """

    def __init__(
        self,
        root: Path,
        config: Optional[WatchConfig] = None,
        hash_lookup: Optional[Callable[[Path], Optional[str]]] = None,
        hasher: Callable[[Path], Optional[str]] = hash_file,
        queue: Optional[asyncio.Queue] = None
    ):
        self.root = Path(root).resolve()
        self.config = config or WatchConfig()
        self.hash_lookup = hash_lookup or (lambda path: None)
        self.hasher = hasher
        self.events: asyncio.Queue = queue or asyncio.Queue(maxsize=self.config.queue_max_size)

        self._pending: Dict[Path, _PendingSlot] = {}
        self._timers: Dict[Path, asyncio.Task] = {}
        self._held: Dict[Path, _HeldDelete] = {}
        self._stopped = False

        self.metrics = NormalizerMetrics()

    def accepts(self, path: Path) -> bool:
        """Check the path is a watched markdown file under the root"""
        try:
            relative = Path(path).relative_to(self.root)
        except ValueError:
            return False
        return self.config.should_watch(relative)

    @property
    def pending_count(self) -> int:
        return len(self._pending) + len(self._held)

    async def submit(self, notification: RawNotification) -> None:
        """Merge a raw notification into its path's pending slot"""
        if self._stopped:
            return
        self.metrics.received += 1

        if notification.kind == ChangeKind.MOVE:
            self._submit_move(notification)
            return

        if not self.accepts(notification.path):
            self.metrics.filtered += 1
            return

        self._merge(notification.path, notification.kind, notification.timestamp)

    def _submit_move(self, notification: RawNotification) -> None:
        source = notification.from_path
        target = notification.path
        source_watched = source is not None and self.accepts(source)
        target_watched = self.accepts(target)

        if not source_watched and not target_watched:
            self.metrics.filtered += 1
            return
        if not target_watched:
            # Renamed out of the synced set
            self._merge(source, ChangeKind.DELETE, notification.timestamp)
            return
        if not source_watched:
            self._merge(target, ChangeKind.CREATE, notification.timestamp)
            return

        self._cancel_timer(source)
        self._take_held(source)
        previous = self._pending.pop(source, None)

        if previous is not None and previous.kind == ChangeKind.CREATE:
            # Created and renamed within one window: a create at the new path
            self.metrics.coalesced += 1
            self._merge(target, ChangeKind.CREATE, notification.timestamp)
            return

        origin = source
        if previous is not None and previous.kind == ChangeKind.MOVE:
            origin = previous.from_path
            self.metrics.coalesced += 1

        self._cancel_timer(target)
        self._take_held(target)
        self._pending[target] = _PendingSlot(
            kind=ChangeKind.MOVE,
            first_seen=notification.timestamp,
            last_seen=notification.timestamp,
            from_path=origin,
        )
        self._schedule(target)

    def _merge(self, path: Path, kind: ChangeKind, timestamp: datetime) -> None:
        held = self._take_held(path)
        slot = self._pending.get(path)

        if slot is None and held is not None:
            # A held delete is still the latest state of this path
            slot = _PendingSlot(
                kind=ChangeKind.DELETE,
                first_seen=held.event.observed_at,
                last_seen=held.event.observed_at,
            )
            self._pending[path] = slot

        if slot is None:
            self._pending[path] = _PendingSlot(kind=kind, first_seen=timestamp, last_seen=timestamp)
            self._schedule(path)
            return

        self.metrics.coalesced += 1

        if slot.kind == ChangeKind.MOVE:
            if kind == ChangeKind.DELETE:
                # Moved then deleted: only the origin disappears
                self._cancel_timer(path)
                del self._pending[path]
                self._merge(slot.from_path, ChangeKind.DELETE, timestamp)
                return
            slot.last_seen = timestamp
            self._schedule(path)
            return

        merged = merge_kinds(slot.kind, kind)
        if merged is None:
            self._cancel_timer(path)
            del self._pending[path]
            self.metrics.cancelled += 1
            logger.debug(f"Create and delete of {path} cancelled out")
            return

        new_kind, recheck = merged
        slot.recheck = recheck or (slot.recheck and new_kind == ChangeKind.MODIFY)
        slot.kind = new_kind
        slot.last_seen = timestamp
        self._schedule(path)

    def _schedule(self, path: Path) -> None:
        """(Re)start the debounce timer for a path"""
        self._cancel_timer(path)
        self._timers[path] = asyncio.create_task(self._expire(path))

    def _cancel_timer(self, path: Path) -> None:
        task = self._timers.pop(path, None)
        if task is not None and not task.done():
            task.cancel()

    def _take_held(self, path: Path) -> Optional[_HeldDelete]:
        held = self._held.pop(path, None)
        if held is not None and held.task is not None and not held.task.done():
            held.task.cancel()
        return held

    async def _expire(self, path: Path) -> None:
        try:
            await asyncio.sleep(self.config.debounce_seconds)
        except asyncio.CancelledError:
            return

        # No awaits between waking and claiming the slot
        self._timers.pop(path, None)
        slot = self._pending.pop(path, None)
        if slot is None:
            return

        try:
            await self._finalize(path, slot, hold=True)
        except Exception as e:
            logger.error(f"Error finalizing change for {path}: {e}")

    async def _finalize(self, path: Path, slot: _PendingSlot, hold: bool) -> None:
        """Decide the net event of an expired slot and emit or hold it"""
        if slot.kind == ChangeKind.MOVE:
            await self._emit(ChangeEvent.move(slot.from_path, path, observed_at=slot.last_seen))
            return

        if slot.kind == ChangeKind.MODIFY:
            if slot.recheck:
                current = self.hasher(path)
                if current is not None and current == self.hash_lookup(path):
                    self.metrics.unchanged_dropped += 1
                    logger.debug(f"{path} reappeared unchanged, no event")
                    return
            await self._emit(ChangeEvent.modify(path, observed_at=slot.last_seen))
            return

        if slot.kind == ChangeKind.CREATE:
            current = self.hasher(path)
            if current is not None:
                origin = self._pair_with_delete(path, current)
                if origin is not None:
                    self.metrics.moves_correlated += 1
                    logger.debug(f"Correlated delete of {origin} and create of {path} into a move")
                    await self._emit(ChangeEvent.move(origin, path, observed_at=slot.last_seen))
                    return
            await self._emit(ChangeEvent.create(path, observed_at=slot.last_seen))
            return

        # DELETE
        event = ChangeEvent.delete(path, observed_at=slot.last_seen)
        last_hash = self.hash_lookup(path)
        if not hold or last_hash is None or self.config.move_window_seconds <= 0:
            await self._emit(event)
            return

        held = _HeldDelete(event=event, last_hash=last_hash)
        self._held[path] = held
        held.task = asyncio.create_task(self._release_held(path, held))

    def _pair_with_delete(self, path: Path, content_hash: str) -> Optional[Path]:
        """Find a held or pending delete whose last known hash matches"""
        for deleted_path, held in list(self._held.items()):
            if deleted_path != path and held.last_hash == content_hash:
                self._take_held(deleted_path)
                return deleted_path

        for pending_path, slot in list(self._pending.items()):
            if pending_path == path or slot.kind != ChangeKind.DELETE:
                continue
            if self.hash_lookup(pending_path) == content_hash:
                self._cancel_timer(pending_path)
                del self._pending[pending_path]
                return pending_path
        return None

    async def _release_held(self, path: Path, held: _HeldDelete) -> None:
        try:
            await asyncio.sleep(self.config.move_window_seconds)
        except asyncio.CancelledError:
            return

        if self._held.get(path) is not held:
            return
        del self._held[path]
        await self._emit(held.event)

    async def _emit(self, event: ChangeEvent) -> None:
        self.metrics.emitted[event.kind.value] += 1
        logger.debug(f"Emitting {event}")
        await self.events.put(event)

    async def flush(self) -> int:
        """Emit every pending and held event now; returns the number emitted"""
        before = sum(self.metrics.emitted.values())

        for path in list(self._timers):
            self._cancel_timer(path)

        # Deletes go last so creates can still claim them as moves
        while self._pending:
            path = min(
                self._pending,
                key=lambda p: self._pending[p].kind == ChangeKind.DELETE
            )
            slot = self._pending.pop(path)
            await self._finalize(path, slot, hold=False)

        for path in list(self._held):
            held = self._take_held(path)
            if held is not None:
                await self._emit(held.event)

        return sum(self.metrics.emitted.values()) - before

    async def stop(self, flush: bool = False) -> None:
        """Cancel all timers, optionally emitting what is pending first"""
        if flush:
            await self.flush()
        self._stopped = True

        tasks = list(self._timers.values()) + [
            held.task for held in self._held.values() if held.task is not None
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        self._timers.clear()
        self._pending.clear()
        self._held.clear()

    def get_status(self) -> Dict[str, Any]:
        return {
            "pending": len(self._pending),
            "held_deletes": len(self._held),
            "queue_size": self.events.qsize(),
            "queue_max_size": self.events.maxsize,
            "debounce_seconds": self.config.debounce_seconds,
            "move_window_seconds": self.config.move_window_seconds,
            **self.metrics.to_dict(),
        }
