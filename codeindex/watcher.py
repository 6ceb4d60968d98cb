"""
Watcher - Real-time file change detection.

Uses watchdog for cross-platform file system monitoring. Events cross from
the observer thread into the event loop through call_soon_threadsafe and
land on an asyncio.Queue as ChangeEvents with workspace-relative paths.

Components:
- EventDebouncer: coalesces queued events by path into batches
- Watcher: watchdog observer feeding the queue
- PollingWatcher: periodic rescans when native events are unavailable
- FileSystemObserver: picks one of the two and falls back on failure
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import EngineContext, WatchConfig
from .models import ChangeEvent, ChangeType
from .scanner import IgnoreDecision, Scanner, default_ignore, to_relative


logger = logging.getLogger(__name__)


def expand_event(event: ChangeEvent) -> List[ChangeEvent]:
    """Renames become a deletion of the old path and a creation of the new one."""
    if event.kind is ChangeType.RENAMED and event.old_path:
        return [
            ChangeEvent(ChangeType.DELETED, event.old_path, timestamp=event.timestamp),
            ChangeEvent(ChangeType.CREATED, event.path, timestamp=event.timestamp),
        ]
    return [event]


class EventDebouncer:
    """
    Coalesces change events by path.

    A batch closes once no new event arrived for ``debounce_ms``, or after
    ``max_batch_wait_ms`` since its first event, whichever comes first.
    Later events for a path override earlier ones, except that a
    modification never downgrades a pending creation.
    """

    def __init__(self, config: WatchConfig):
        self.debounce_s = config.debounce_ms / 1000.0
        self.max_wait_s = config.max_batch_wait_ms / 1000.0
        self._pending: Dict[str, ChangeEvent] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def add(self, event: ChangeEvent):
        for item in expand_event(event):
            previous = self._pending.pop(item.path, None)
            if (
                previous is not None
                and previous.kind is ChangeType.CREATED
                and item.kind is ChangeType.MODIFIED
            ):
                item = previous
            # Re-insert so batch order follows the latest activity
            self._pending[item.path] = item

    def drain(self) -> List[ChangeEvent]:
        batch = list(self._pending.values())
        self._pending.clear()
        return batch

    async def collect(self, queue: "asyncio.Queue[ChangeEvent]") -> List[ChangeEvent]:
        """Wait for the next event, then gather followers until the batch closes."""
        self.add(await queue.get())
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.max_wait_s

        while True:
            timeout = min(self.debounce_s, deadline - loop.time())
            if timeout <= 0:
                break
            try:
                event = await asyncio.wait_for(queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                break
            self.add(event)

        batch = self.drain()
        logger.debug(f"Debounced batch of {len(batch)} changes")
        return batch


class Watcher:
    """
    Native file system watcher.

    Runs a watchdog Observer over the workspace root; events for ignored
    paths are dropped before they reach the queue.
    """

    def __init__(
        self,
        root: Path,
        is_ignored: IgnoreDecision,
        emit: Callable[[ChangeEvent], None],
    ):
        self.root = root
        self.is_ignored = is_ignored
        self.emit = emit
        self._observer: Optional[Observer] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def start(self):
        """Start the observer thread. Raises if the platform backend cannot start."""
        self._loop = asyncio.get_running_loop()
        watcher = self

        class EventHandler(FileSystemEventHandler):
            def on_created(self, event: FileSystemEvent):
                if not event.is_directory:
                    watcher._queue_change(ChangeType.CREATED, event.src_path)

            def on_modified(self, event: FileSystemEvent):
                if not event.is_directory:
                    watcher._queue_change(ChangeType.MODIFIED, event.src_path)

            def on_deleted(self, event: FileSystemEvent):
                watcher._queue_change(ChangeType.DELETED, event.src_path)

            def on_moved(self, event: FileSystemEvent):
                if event.is_directory:
                    watcher._queue_directory_move(event.src_path, event.dest_path)
                else:
                    watcher._queue_change(ChangeType.RENAMED, event.dest_path, event.src_path)

        self._observer = Observer()
        self._observer.schedule(EventHandler(), str(self.root), recursive=True)
        self._observer.start()
        logger.info(f"Watching: {self.root}")

    def stop(self):
        if self._observer:
            self._observer.stop()
            self._observer.join(timeout=2)
            self._observer = None
        logger.info("File watcher stopped")

    def is_alive(self) -> bool:
        return self._observer is not None and self._observer.is_alive()

    def _queue_change(self, kind: ChangeType, path: str, old_path: Optional[str] = None):
        """Called on the observer thread."""
        rel_path = to_relative(self.root, os.fsdecode(path))
        if rel_path is None or self.is_ignored(rel_path):
            return

        rel_old = None
        if old_path is not None:
            rel_old = to_relative(self.root, os.fsdecode(old_path))
            if rel_old is not None and self.is_ignored(rel_old):
                rel_old = None
            if rel_old is None:
                kind = ChangeType.CREATED

        event = ChangeEvent(kind, rel_path, old_path=rel_old)
        if self._loop:
            self._loop.call_soon_threadsafe(self.emit, event)

    def _queue_directory_move(self, src: str, dest: str):
        self._queue_change(ChangeType.DELETED, src)
        for dirpath, _, filenames in os.walk(os.fsdecode(dest)):
            for name in filenames:
                self._queue_change(ChangeType.CREATED, os.path.join(dirpath, name))


class PollingWatcher:
    """
    Fallback watcher that rescans the workspace every ``poll_interval_s``.

    Compares (size, mtime) per path against the previous scan.
    """

    def __init__(
        self,
        scanner: Scanner,
        emit: Callable[[ChangeEvent], None],
        interval_s: float,
    ):
        self.scanner = scanner
        self.emit = emit
        self.interval_s = interval_s
        self._known: Dict[str, Tuple[int, float]] = {}
        self._task: Optional[asyncio.Task] = None

    async def poll_once(self) -> int:
        """Rescan and emit events for differences. Returns the number emitted."""
        current = {
            info.path: (info.size, info.mtime)
            for info in await self.scanner.scan()
        }
        emitted = 0
        for path, stat in current.items():
            previous = self._known.get(path)
            if previous is None:
                self.emit(ChangeEvent(ChangeType.CREATED, path))
                emitted += 1
            elif previous != stat:
                self.emit(ChangeEvent(ChangeType.MODIFIED, path))
                emitted += 1
        for path in self._known.keys() - current.keys():
            self.emit(ChangeEvent(ChangeType.DELETED, path))
            emitted += 1
        self._known = current
        return emitted

    async def start(self):
        # Seed the baseline so existing files are not reported as created
        self._known = {
            info.path: (info.size, info.mtime)
            for info in await self.scanner.scan()
        }
        self._task = asyncio.create_task(self._run())
        logger.info(f"Polling workspace every {self.interval_s:.1f}s")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                count = await self.poll_once()
            except OSError as e:
                logger.warning(f"Polling scan failed: {e}")
                continue
            if count:
                logger.debug(f"Polling found {count} changes")

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class FileSystemObserver:
    """
    Change-event source for the coordinator.

    Prefers the native watcher; when it cannot start, or its thread dies,
    switches to polling and reports the reason through ``on_degraded``.
    """

    def __init__(
        self,
        context: EngineContext,
        emit: Callable[[ChangeEvent], None],
        is_ignored: Optional[IgnoreDecision] = None,
        on_degraded: Optional[Callable[[str], None]] = None,
    ):
        self.context = context
        self.config = context.config.watch
        self.emit = emit
        self.is_ignored = is_ignored or default_ignore(
            context.config.scan, context.relative_cache_dir()
        )
        self.on_degraded = on_degraded
        self.degraded_reason: Optional[str] = None

        self._native: Optional[Watcher] = None
        self._polling: Optional[PollingWatcher] = None
        self._monitor: Optional[asyncio.Task] = None

    @property
    def mode(self) -> str:
        if self._native:
            return "native"
        if self._polling:
            return "polling"
        return "stopped"

    async def start(self):
        if self.config.use_polling:
            await self._start_polling()
            return

        native = Watcher(self.context.workspace_root, self.is_ignored, self.emit)
        try:
            native.start()
        except Exception as e:
            logger.warning(f"Native file watcher unavailable, falling back to polling: {e}")
            await self._fall_back(f"watcher failed to start: {e}")
            return

        self._native = native
        self._monitor = asyncio.create_task(self._watch_health())

    async def stop(self):
        if self._monitor:
            self._monitor.cancel()
            try:
                await self._monitor
            except asyncio.CancelledError:
                pass
            self._monitor = None
        if self._native:
            self._native.stop()
            self._native = None
        if self._polling:
            await self._polling.stop()
            self._polling = None

    async def _start_polling(self):
        scanner = Scanner(self.context, self.is_ignored)
        self._polling = PollingWatcher(scanner, self.emit, self.config.poll_interval_s)
        await self._polling.start()

    async def _fall_back(self, reason: str):
        self.degraded_reason = reason
        await self._start_polling()
        if self.on_degraded:
            try:
                self.on_degraded(reason)
            except Exception as e:
                logger.error(f"Degraded callback error: {e}")

    async def _watch_health(self):
        while True:
            await asyncio.sleep(self.config.poll_interval_s)
            if self._native and not self._native.is_alive():
                logger.warning("Native file watcher stopped unexpectedly, switching to polling")
                self._native.stop()
                self._native = None
                await self._fall_back("watcher thread died")
                return
