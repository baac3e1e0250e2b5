"""
Dead-letter list for operations that could not be delivered.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Union

import aiofiles

from core.models.records import DeadLetterEntry, SyncOperation

logger = logging.getLogger(__name__)


class DeadLetterQueue:
    """
    Durable list of failed operations.

    Entries are never retried automatically; they leave the list only
    through an explicit replay or clear.
    """

    def __init__(self, state_file: Optional[Union[str, Path]] = None):
        self.state_file = Path(state_file) if state_file else None
        self._entries: Dict[str, DeadLetterEntry] = {}
        self._save_lock = asyncio.Lock()

    async def load(self) -> int:
        self._entries.clear()
        if not self.state_file or not self.state_file.exists():
            return 0

        try:
            async with aiofiles.open(self.state_file, 'r', encoding='utf-8') as f:
                raw_data = json.loads(await f.read())
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to load dead letters {self.state_file}: {e}")
            return 0

        for entry_dict in raw_data.get("entries", []):
            try:
                entry = DeadLetterEntry.from_dict(entry_dict)
            except ValueError as e:
                logger.warning(f"Invalid dead-letter entry: {e}")
                continue
            self._entries[entry.entry_id] = entry

        if self._entries:
            logger.info(f"Loaded {len(self._entries)} dead-letter entries")
        return len(self._entries)

    async def save(self) -> bool:
        if not self.state_file:
            return True

        async with self._save_lock:
            data = {"entries": [entry.to_dict() for entry in self._entries.values()]}
            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                temp_file = self.state_file.with_suffix('.tmp')
                async with aiofiles.open(temp_file, 'w', encoding='utf-8') as f:
                    await f.write(json.dumps(data, indent=2))
                temp_file.replace(self.state_file)
            except OSError as e:
                logger.error(f"Failed to save dead letters {self.state_file}: {e}")
                return False
        return True

    async def add(
        self,
        operation: SyncOperation,
        attempt: int,
        error_kind: str,
        error_message: str
    ) -> DeadLetterEntry:
        entry = DeadLetterEntry(
            operation=operation,
            attempt=attempt,
            error_kind=error_kind,
            error_message=error_message,
        )
        self._entries[entry.entry_id] = entry
        logger.error(
            f"Dead-lettered {operation.kind.value} for {operation.path} "
            f"after {attempt} attempt(s): {error_kind}: {error_message}"
        )
        await self.save()
        return entry

    def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return self._entries.get(entry_id)

    def entries(self) -> List[DeadLetterEntry]:
        return sorted(self._entries.values(), key=lambda e: e.failed_at)

    def for_path(self, path: str) -> List[DeadLetterEntry]:
        return [entry for entry in self.entries() if entry.path == path]

    async def remove(self, entry_id: str) -> Optional[DeadLetterEntry]:
        entry = self._entries.pop(entry_id, None)
        if entry is not None:
            await self.save()
        return entry

    async def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        await self.save()
        logger.info(f"Cleared {count} dead-letter entries")
        return count

    def __len__(self) -> int:
        return len(self._entries)
