"""
Scan orchestration and live event fan-out.

SyncOrchestrator owns all scan scheduling state inside one actor task that
reads scan requests from a queue: at most one scan runs at a time, and every
request that arrives while it runs collapses into a single trailing re-scan
of the most recent target.

EventHub fans the orchestrator's lifecycle events out to subscribers
(the SSE endpoint in server.py).
"""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Set

from card_index import CardIndexDB, now_ms
from scanner import ScanService, ScanStarted, ScanProgress

logger = logging.getLogger(__name__)

EVENT_SCAN_STARTED = "cards:scan_started"
EVENT_SCAN_PROGRESS = "cards:scan_progress"
EVENT_SCAN_FINISHED = "cards:scan_finished"
EVENT_RESYNCED = "cards:resynced"

ORIGIN_FS = "fs"
ORIGIN_APP = "app"


@dataclass
class HubMessage:
    id: int
    event: str
    data: Dict[str, Any]


class EventHub:
    """Publish/subscribe over per-subscriber asyncio queues."""

    def __init__(self, max_queue: int = 256):
        self.max_queue = max_queue
        self._subscribers: Set[asyncio.Queue] = set()
        self._last_id = 0

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def subscribe(self) -> asyncio.Queue:
        queue = asyncio.Queue(maxsize=self.max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue):
        self._subscribers.discard(queue)

    def publish(self, event: str, data: Dict[str, Any]) -> HubMessage:
        """Deliver to every subscriber without blocking; slow subscribers lose their oldest message."""
        self._last_id += 1
        message = HubMessage(id=self._last_id, event=event, data=data)
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(message)
        return message

    def close_all(self):
        """Signal every subscriber stream to end."""
        for queue in list(self._subscribers):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(None)
        self._subscribers.clear()


@dataclass(frozen=True)
class ScanTarget:
    origin: str
    folder_path: str
    library_id: str


class SyncOrchestrator:
    """Single entry point for scans: serialized, coalesced, revisioned."""

    def __init__(self, index: CardIndexDB, hub: EventHub, scanner: Optional[ScanService] = None):
        self.index = index
        self.hub = hub
        self.scanner = scanner or ScanService(index)

        self.revision = 0
        self.running = False
        self.requested_again = False
        self.last_target: Optional[ScanTarget] = None
        self.last_error: Optional[str] = None

        self._requests: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None
        self._idle: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _ensure_started(self):
        if self._task is not None and not self._task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._requests = asyncio.Queue()
        self._idle = asyncio.Event()
        self._idle.set()
        self._task = self._loop.create_task(self._run())

    def request_scan(self, origin: str, folder_path: str, library_id: str):
        """
        Ask for a scan of folder_path. Never blocks.

        Must be called from the event loop thread.
        """
        self._ensure_started()
        target = ScanTarget(origin=origin, folder_path=folder_path, library_id=library_id)
        self.last_target = target
        if self.running:
            self.requested_again = True
        self._idle.clear()
        self._requests.put_nowait(target)

    def start(self):
        """Start the actor task on the running loop."""
        self._ensure_started()

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.running = False
        self.requested_again = False

    async def wait_idle(self):
        """Wait until no scan is running or queued."""
        if self._idle is not None:
            await self._idle.wait()

    def _drain_latest(self, target: Optional[ScanTarget]) -> Optional[ScanTarget]:
        while not self._requests.empty():
            target = self._requests.get_nowait()
        return target

    async def _run(self):
        while True:
            if self._requests.empty():
                self._idle.set()
            target = await self._requests.get()
            target = self._drain_latest(target)

            self.running = True
            try:
                while True:
                    self.requested_again = False
                    await self._run_scan(target)
                    if self._requests.empty():
                        break
                    # Coalesced re-run of the latest target, presumed filesystem-triggered
                    target = replace(self._drain_latest(None), origin=ORIGIN_FS)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.last_error = str(e)
                logger.exception(f"Scan of {target.folder_path} failed")
                # Requests queued behind a failed scan are dropped, not retried
                self._drain_latest(None)
            finally:
                self.running = False
                self.requested_again = False

    async def _run_scan(self, target: ScanTarget):
        revision = self.revision + 1
        started_at = now_ms()
        logger.info(f"scan:start origin={target.origin} at={_iso(started_at)} path=\"{target.folder_path}\"")

        base = {
            "origin": target.origin,
            "libraryId": target.library_id,
            "folderPath": target.folder_path,
        }
        before_ids = self.index.card_ids(target.library_id)

        events: asyncio.Queue = asyncio.Queue()
        scan_task = asyncio.ensure_future(
            self.scanner.scan_folder(target.folder_path, target.library_id, events)
        )

        total_files = 0
        processed_files = 0
        while True:
            try:
                event = await events.get()
            except asyncio.CancelledError:
                scan_task.cancel()
                raise
            if event is None:
                break
            if isinstance(event, ScanStarted):
                total_files = event.total_files
                self.hub.publish(EVENT_SCAN_STARTED, {
                    "revision": revision, **base,
                    "totalFiles": total_files, "startedAt": started_at,
                })
            elif isinstance(event, ScanProgress):
                processed_files = max(processed_files, event.processed_files)
                self.hub.publish(EVENT_SCAN_PROGRESS, {
                    "revision": revision, **base,
                    "processedFiles": processed_files, "totalFiles": event.total_files,
                    "updatedAt": now_ms(),
                })

        await scan_task

        after_ids = self.index.card_ids(target.library_id)
        added_cards = len(after_ids - before_ids)
        removed_cards = len(before_ids - after_ids)
        finished_at = now_ms()
        duration_ms = finished_at - started_at
        logger.info(
            f"scan:done origin={target.origin} at={_iso(finished_at)} "
            f"durationMs={duration_ms} path=\"{target.folder_path}\""
        )

        self.revision = revision
        self.last_error = None
        self.hub.publish(EVENT_SCAN_FINISHED, {
            "revision": revision, **base,
            "processedFiles": processed_files, "totalFiles": total_files,
            "startedAt": started_at, "finishedAt": finished_at, "durationMs": duration_ms,
        })
        self.hub.publish(EVENT_RESYNCED, {
            "revision": revision, **base,
            "addedCards": added_cards, "removedCards": removed_cards,
            "startedAt": started_at, "finishedAt": finished_at, "durationMs": duration_ms,
        })
        logger.info(f"cards:resynced rev={revision} origin={target.origin} +{added_cards} -{removed_cards} ({duration_ms}ms)")

    def status(self) -> Dict[str, Any]:
        target = self.last_target
        return {
            "revision": self.revision,
            "running": self.running,
            "requested_again": self.requested_again,
            "last_folder_path": target.folder_path if target else None,
            "last_library_id": target.library_id if target else None,
            "last_error": self.last_error,
        }


def _iso(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).isoformat()
