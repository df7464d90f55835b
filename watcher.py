"""
Filesystem watcher for the cards folder.

watchdog delivers events on its observer thread; they are handed to the event
loop, where a debounce timer collapses bursts into one scan request. PNGs that
appeared during the burst must also hold the same size for a stability window
before the scan is requested, so half-written files are not parsed.
"""

import os
import asyncio
import logging
from typing import Optional, Dict

from watchdog.observers import Observer
from watchdog.observers.polling import PollingObserver
from watchdog.events import FileSystemEventHandler

import config
from sync import SyncOrchestrator, ORIGIN_FS

logger = logging.getLogger(__name__)


def is_png(path: str) -> bool:
    return path.lower().endswith('.png')


def _file_size(path: str) -> Optional[int]:
    try:
        return os.path.getsize(path)
    except OSError:
        return None


def _join_observer(observer, timeout: float = 5):
    """Wait for the observer thread, off the event loop when one is running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        observer.join(timeout=timeout)
        return
    loop.run_in_executor(None, observer.join, timeout)


class CardFolderHandler(FileSystemEventHandler):
    """Forwards PNG and directory add/remove events to the watcher."""

    def __init__(self, watcher: "FolderWatcher"):
        self.watcher = watcher

    def on_created(self, event):
        if event.is_directory:
            self.watcher.notify("addDir")
        elif is_png(event.src_path):
            self.watcher.notify("add", event.src_path)

    def on_deleted(self, event):
        if event.is_directory:
            self.watcher.notify("unlinkDir")
        elif is_png(event.src_path):
            self.watcher.notify("unlink")

    def on_moved(self, event):
        if event.is_directory:
            self.watcher.notify("moveDir")
            return
        if is_png(event.src_path):
            self.watcher.notify("unlink")
        if is_png(event.dest_path):
            self.watcher.notify("add", event.dest_path)


class FolderWatcher:
    """Watches one folder recursively and requests debounced scans."""

    def __init__(self, orchestrator: SyncOrchestrator,
                 debounce: float = config.WATCH_DEBOUNCE,
                 stability: float = config.WATCH_STABILITY,
                 polling: bool = config.WATCH_POLLING):
        self.orchestrator = orchestrator
        self.debounce = debounce
        self.stability = stability
        self.polling = polling

        self.current_path: Optional[str] = None
        self.library_id: Optional[str] = None
        self.observer = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._pending_sizes: Dict[str, Optional[int]] = {}
        self._last_reason = ""

    @property
    def watched_path(self) -> Optional[str]:
        return self.current_path

    def start(self, folder_path: str, library_id: str):
        """Start watching; call from the event loop thread."""
        if self.current_path == folder_path and self.library_id == library_id and self.observer:
            return
        self.stop()

        self.loop = asyncio.get_running_loop()
        self.current_path = folder_path
        self.library_id = library_id

        try:
            # Polling avoids inotify watch limits on very large trees
            observer = PollingObserver(timeout=5) if self.polling else Observer()
            observer.schedule(CardFolderHandler(self), folder_path, recursive=True)
            observer.start()
            self.observer = observer
            logger.info(f"FS watcher started: {folder_path} ({'polling' if self.polling else 'native'} mode)")
        except Exception as e:
            logger.error(f"FS watcher setup failed for {folder_path}: {e}")
            self.observer = None

    def stop(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._pending_sizes.clear()
        if self.observer is not None:
            try:
                self.observer.stop()
                _join_observer(self.observer)
            except Exception as e:
                logger.error(f"FS watcher stop failed: {e}")
            self.observer = None
            logger.info(f"FS watcher stopped: {self.current_path}")
        self.current_path = None
        self.library_id = None

    def restart(self, folder_path: Optional[str], library_id: Optional[str] = None):
        """Watch a new folder, or just stop when folder_path is None."""
        if not folder_path:
            self.stop()
            return
        self.start(folder_path, library_id)

    def notify(self, reason: str, path: Optional[str] = None):
        """Called on the observer thread."""
        loop = self.loop
        if loop is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(self._schedule, reason, path)
        except RuntimeError as e:
            logger.error(f"FS watcher could not schedule event: {e}")

    def _schedule(self, reason: str, path: Optional[str] = None):
        if not self.current_path:
            return
        if path is not None:
            self._pending_sizes[path] = _file_size(path)
        self._last_reason = reason
        self._arm(self.debounce)

    def _arm(self, delay: float):
        if self._timer is not None:
            self._timer.cancel()
        self._timer = self.loop.call_later(delay, self._fire)

    def _fire(self):
        self._timer = None
        if not self.current_path:
            return

        unsettled = {}
        for path, size in self._pending_sizes.items():
            current = _file_size(path)
            if current != size:
                unsettled[path] = current
        if unsettled:
            # Still being written, look again after the stability window
            self._pending_sizes.update(unsettled)
            self._arm(self.stability)
            return

        self._pending_sizes.clear()
        logger.info(f"FS watcher trigger scan ({self._last_reason})")
        self.orchestrator.request_scan(ORIGIN_FS, self.current_path, self.library_id)
