"""
Durable local-to-remote identity map with leased per-path reservations.

The identity store is the only component that creates new versions of a
FileRecord. Writers must first reserve a path; commits made with a lease
that expired or was superseded are rejected with StaleReservation.
"""

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import aiofiles

from core.models.records import FileRecord, SyncState, summarize_states
from .errors import ReservationConflict, StaleReservation

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


@dataclass(frozen=True)
class Reservation:
    """Exclusive, leased right to commit a transition for one path"""
    path: str
    token: str
    acquired_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


class IdentityStore:
    """
    FileRecord table keyed by canonical path.

    Reads return copies (records are immutable models). Reservations live in
    memory only, so a restart frees every lease.
    """

    def __init__(
        self,
        state_file: Optional[Union[str, Path]] = None,
        lease_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        autosave: bool = True
    ):
        self.state_file = Path(state_file) if state_file else None
        self.lease_seconds = lease_seconds
        self._clock = clock
        self.autosave = autosave

        self._records: Dict[str, FileRecord] = {}
        self._reservations: Dict[str, Reservation] = {}
        self._save_lock = asyncio.Lock()
        self._loaded = False

        self.commits = 0
        self.stale_commits = 0
        self.reservation_conflicts = 0

    @staticmethod
    def canonical(path: Union[str, Path]) -> str:
        return str(Path(path))

    async def load(self) -> int:
        """Load records from disk; returns number of records loaded"""
        self._records.clear()
        self._loaded = True

        if not self.state_file or not self.state_file.exists():
            return 0

        try:
            async with aiofiles.open(self.state_file, 'r', encoding='utf-8') as f:
                raw_data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load identity state {self.state_file}: {e}. Starting empty.")
            return 0

        for record_dict in raw_data.get("records", []):
            try:
                record = FileRecord.from_dict(record_dict)
            except ValueError as e:
                logger.warning(f"Invalid identity record {record_dict.get('path')}: {e}")
                continue
            self._records[record.path] = record

        logger.info(f"Loaded {len(self._records)} identity records from {self.state_file}")
        return len(self._records)

    async def save(self) -> bool:
        """Persist all records atomically (temp file + rename)"""
        if not self.state_file:
            return True

        async with self._save_lock:
            snapshot = [record.to_dict() for record in self._records.values()]
            data = {"version": STATE_FORMAT_VERSION, "records": snapshot}

            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                temp_file = self.state_file.with_suffix('.tmp')
                async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                    await f.write(json.dumps(data, indent=2))
                temp_file.replace(self.state_file)
            except OSError as e:
                logger.error(f"Failed to save identity state {self.state_file}: {e}")
                return False

        logger.debug(f"Saved {len(snapshot)} identity records")
        return True

    def lookup(self, path: Union[str, Path]) -> Optional[FileRecord]:
        """Current record for a path, or None"""
        return self._records.get(self.canonical(path))

    def records(self) -> List[FileRecord]:
        return list(self._records.values())

    def find_by_remote_id(self, remote_id: str) -> Optional[FileRecord]:
        for record in self._records.values():
            if record.remote_id == remote_id:
                return record
        return None

    def _live_reservation(self, path: str) -> Optional[Reservation]:
        reservation = self._reservations.get(path)
        if reservation is None:
            return None
        if reservation.is_expired(self._clock()):
            del self._reservations[path]
            logger.debug(f"Reservation for {path} expired")
            return None
        return reservation

    async def reserve(self, path: Union[str, Path]) -> Reservation:
        """
        Take the exclusive lease on a path.

        Raises ReservationConflict while another live lease holds it; an
        expired lease is treated as free.
        """
        key = self.canonical(path)
        if self._live_reservation(key) is not None:
            self.reservation_conflicts += 1
            raise ReservationConflict(f"Path is reserved: {key}")

        now = self._clock()
        reservation = Reservation(
            path=key,
            token=uuid.uuid4().hex,
            acquired_at=now,
            expires_at=now + self.lease_seconds,
        )
        self._reservations[key] = reservation
        return reservation

    def is_current(self, reservation: Reservation) -> bool:
        live = self._live_reservation(reservation.path)
        return live is not None and live.token == reservation.token

    async def renew(self, reservation: Reservation) -> Reservation:
        """Extend a live lease"""
        if not self.is_current(reservation):
            raise StaleReservation(f"Cannot renew stale reservation for {reservation.path}")
        now = self._clock()
        renewed = Reservation(
            path=reservation.path,
            token=reservation.token,
            acquired_at=reservation.acquired_at,
            expires_at=now + self.lease_seconds,
        )
        self._reservations[reservation.path] = renewed
        return renewed

    async def commit(
        self,
        reservation: Reservation,
        record: Optional[FileRecord]
    ) -> Optional[FileRecord]:
        """
        Apply a proposed transition for the reserved path.

        ``None`` removes the record. The record is re-validated so the
        remote identity invariant holds for everything stored.
        """
        if not self.is_current(reservation):
            self.stale_commits += 1
            raise StaleReservation(
                f"Reservation for {reservation.path} expired or was superseded"
            )

        key = reservation.path
        if record is None:
            removed = self._records.pop(key, None)
            if removed is not None:
                logger.info(f"Removed identity record for {key} (remote {removed.remote_id})")
        else:
            if self.canonical(record.path) != key:
                raise ValueError(
                    f"Record path {record.path} does not match reservation {key}"
                )
            record = FileRecord.model_validate(record.model_dump())
            self._records[key] = record
            logger.debug(f"Committed {key}: {record.sync_state.value} v{record.remote_version}")

        self.commits += 1
        if self.autosave:
            await self.save()
        return record

    async def release(self, reservation: Reservation) -> None:
        """Drop the lease if it is still ours; safe to call repeatedly"""
        current = self._reservations.get(reservation.path)
        if current is not None and current.token == reservation.token:
            del self._reservations[reservation.path]

    def in_flight(self) -> List[str]:
        """Paths with a live reservation"""
        return [path for path in list(self._reservations) if self._live_reservation(path)]

    def is_reserved(self, path: Union[str, Path]) -> bool:
        return self._live_reservation(self.canonical(path)) is not None

    def get_status(self) -> Dict[str, Any]:
        records = self.records()
        return {
            "records": len(records),
            "states": summarize_states(records),
            "in_flight": len(self.in_flight()),
            "commits": self.commits,
            "stale_commits": self.stale_commits,
            "reservation_conflicts": self.reservation_conflicts,
            "state_file": str(self.state_file) if self.state_file else None,
        }

    def count_state(self, state: SyncState) -> int:
        return sum(1 for record in self._records.values() if record.sync_state == state)
