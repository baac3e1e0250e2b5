"""
Markdown Tree Watcher.

Bridges watchdog's observer thread into the event loop and forwards raw
notifications to the EventNormalizer.
"""

import asyncio
import logging
import platform
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler, FileSystemEvent as WatchdogEvent
from watchdog.events import FileCreatedEvent, FileModifiedEvent, FileDeletedEvent, FileMovedEvent

from .events import ChangeKind, RawNotification
from .normalizer import EventNormalizer

logger = logging.getLogger(__name__)


class MarkdownTreeWatcher:
    """
    Filesystem watcher for a synchronized markdown tree.

    Features:
    - Recursive monitoring via watchdog
    - Thread-safe hand-off of notifications to asyncio
    - Filtering delegated to the normalizer
    """

    def __init__(
        self,
        root: Path,
        normalizer: EventNormalizer,
        recursive: bool = True
    ):
        self.root = Path(root).resolve()
        self.normalizer = normalizer
        self.recursive = recursive

        self._platform = platform.system()

        self.observer: Optional[Observer] = None
        self.event_handler: Optional['SyncEventHandler'] = None

        self._is_monitoring = False
        self._monitor_start_time: Optional[datetime] = None

        self._notifications = 0
        self._error_count = 0
        self._last_error: Optional[str] = None
        self._last_error_time: Optional[datetime] = None

        logger.info(f"Initialized MarkdownTreeWatcher for {self.root}")

    async def start_monitoring(self) -> bool:
        """
        Start file system monitoring.

        Returns:
            True if monitoring started successfully, False otherwise
        """
        if self._is_monitoring:
            logger.warning("File system monitoring is already active")
            return True

        try:
            if not self.root.exists():
                raise FileNotFoundError(f"Sync root does not exist: {self.root}")
            if not self.root.is_dir():
                raise NotADirectoryError(f"Sync root is not a directory: {self.root}")

            self.event_handler = SyncEventHandler(self)
            try:
                self.event_handler.set_event_loop(asyncio.get_running_loop())
            except RuntimeError:
                logger.error("No running event loop found when starting watcher - events will be dropped")
                return False

            self.observer = Observer()
            self.observer.schedule(self.event_handler, str(self.root), recursive=self.recursive)
            self.observer.start()

            self._is_monitoring = True
            self._monitor_start_time = datetime.now()
            self._error_count = 0

            logger.info(f"Started monitoring {self.root} (recursive={self.recursive})")
            return True

        except (OSError, RuntimeError) as e:
            self._record_error(f"Failed to start file system monitoring: {e}")
            self.observer = None
            return False

    async def stop_monitoring(self) -> None:
        """Stop file system monitoring and cleanup resources."""
        if not self._is_monitoring:
            return

        self._is_monitoring = False

        if self.event_handler:
            self.event_handler.set_event_loop(None)

        if self.observer:
            try:
                self.observer.stop()
                await asyncio.to_thread(self.observer.join, 5.0)
            except RuntimeError as e:
                logger.warning(f"Error stopping observer: {e}")
            finally:
                self.observer = None

        self.event_handler = None
        logger.info(f"Stopped file system monitoring (duration: {self.monitoring_duration})")

    def convert_event(self, event: WatchdogEvent) -> Optional[RawNotification]:
        """
        Convert a watchdog event to a RawNotification.

        Returns None for directory events and event types that do not change
        content (opened, closed).
        """
        if event.is_directory:
            return None

        src_path = Path(str(event.src_path))
        if isinstance(event, FileMovedEvent):
            return RawNotification(
                path=Path(str(event.dest_path)),
                from_path=src_path,
                kind=ChangeKind.MOVE,
            )
        if isinstance(event, FileCreatedEvent):
            return RawNotification(path=src_path, kind=ChangeKind.CREATE)
        if isinstance(event, FileModifiedEvent):
            return RawNotification(path=src_path, kind=ChangeKind.MODIFY)
        if isinstance(event, FileDeletedEvent):
            return RawNotification(path=src_path, kind=ChangeKind.DELETE)

        logger.debug(f"Ignoring watchdog event type: {type(event).__name__}")
        return None

    async def handle_watchdog_event(self, event: WatchdogEvent) -> None:
        """Convert and forward a watchdog event to the normalizer."""
        try:
            notification = self.convert_event(event)
            if notification is None:
                return
            self._notifications += 1
            await self.normalizer.submit(notification)
        except ValueError as e:
            # Relative or malformed paths from the observer
            self._record_error(f"Error handling watchdog event {event}: {e}")

    def _record_error(self, message: str) -> None:
        logger.error(message)
        self._error_count += 1
        self._last_error = message
        self._last_error_time = datetime.now()

    @property
    def is_monitoring(self) -> bool:
        return self._is_monitoring

    @property
    def monitoring_duration(self) -> Optional[timedelta]:
        if not self._monitor_start_time:
            return None
        return datetime.now() - self._monitor_start_time

    def get_status(self) -> Dict[str, Any]:
        return {
            "is_monitoring": self._is_monitoring,
            "root": str(self.root),
            "platform": self._platform,
            "recursive": self.recursive,
            "monitoring_duration": str(self.monitoring_duration) if self.monitoring_duration else None,
            "notifications": self._notifications,
            "error_count": self._error_count,
            "last_error": self._last_error,
            "last_error_time": self._last_error_time.isoformat() if self._last_error_time else None
        }

    async def __aenter__(self):
        await self.start_monitoring()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.stop_monitoring()


class SyncEventHandler(FileSystemEventHandler):
    """
    Watchdog event handler that forwards events to MarkdownTreeWatcher.

    Watchdog calls handlers on its own thread; events are scheduled onto the
    watcher's event loop with call_soon_threadsafe.
    """

    def __init__(self, watcher: MarkdownTreeWatcher):
        super().__init__()
        self.watcher = watcher
        self._event_loop: Optional[asyncio.AbstractEventLoop] = None

    def set_event_loop(self, loop: Optional[asyncio.AbstractEventLoop]) -> None:
        self._event_loop = loop

    def on_any_event(self, event: WatchdogEvent) -> None:
        loop = self._event_loop
        if loop is None or loop.is_closed():
            logger.debug(f"No event loop available, dropping event: {event}")
            return
        try:
            loop.call_soon_threadsafe(
                lambda: asyncio.create_task(self.watcher.handle_watchdog_event(event))
            )
        except RuntimeError as e:
            # Loop is shutting down
            if "closed" not in str(e).lower():
                logger.error(f"Failed to schedule event on loop: {e}")
