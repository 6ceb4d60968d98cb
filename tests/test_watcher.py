"""
Watcher Tests - Change detection, debouncing and the polling fallback.

Tests:
- Debounce coalescing (later events override, creations kept)
- Batch closing on quiet period and max wait
- Native event translation to relative paths
- Polling diff and observer fallback
"""

import asyncio
from unittest.mock import patch

import pytest

from codeindex.config import WatchConfig
from codeindex.models import ChangeEvent, ChangeType
from codeindex.scanner import Scanner, default_ignore
from codeindex.watcher import (
    EventDebouncer, FileSystemObserver, PollingWatcher, Watcher, expand_event,
)


class TestEventDebouncer:
    """Tests for EventDebouncer coalescing."""

    @pytest.fixture
    def debouncer(self):
        return EventDebouncer(WatchConfig(debounce_ms=20, max_batch_wait_ms=200))

    def test_coalesces_by_path(self, debouncer):
        """Several events for one path collapse to one."""
        debouncer.add(ChangeEvent(ChangeType.MODIFIED, "a.py"))
        debouncer.add(ChangeEvent(ChangeType.MODIFIED, "a.py"))
        debouncer.add(ChangeEvent(ChangeType.MODIFIED, "b.py"))
        assert len(debouncer) == 2

    def test_later_change_overrides(self, debouncer):
        """A deletion after a modification wins."""
        debouncer.add(ChangeEvent(ChangeType.MODIFIED, "a.py"))
        debouncer.add(ChangeEvent(ChangeType.DELETED, "a.py"))
        assert [e.kind for e in debouncer.drain()] == [ChangeType.DELETED]

    def test_modify_keeps_creation(self, debouncer):
        """A modification right after a creation stays a creation."""
        debouncer.add(ChangeEvent(ChangeType.CREATED, "a.py"))
        debouncer.add(ChangeEvent(ChangeType.MODIFIED, "a.py"))
        assert [e.kind for e in debouncer.drain()] == [ChangeType.CREATED]

    def test_rename_expands(self, debouncer):
        """A rename becomes a deletion plus a creation."""
        debouncer.add(ChangeEvent(ChangeType.RENAMED, "new.py", old_path="old.py"))
        batch = {e.path: e.kind for e in debouncer.drain()}
        assert batch == {"old.py": ChangeType.DELETED, "new.py": ChangeType.CREATED}
        assert len(debouncer) == 0

    def test_expand_plain_event(self):
        event = ChangeEvent(ChangeType.MODIFIED, "a.py")
        assert expand_event(event) == [event]

    @pytest.mark.asyncio
    async def test_collect_waits_for_quiet_period(self, debouncer):
        """Events arriving within the window share one batch."""
        queue: asyncio.Queue = asyncio.Queue()
        for name in ("a.py", "b.py", "a.py"):
            queue.put_nowait(ChangeEvent(ChangeType.MODIFIED, name))
        batch = await debouncer.collect(queue)
        assert sorted(e.path for e in batch) == ["a.py", "b.py"]

    @pytest.mark.asyncio
    async def test_collect_capped_by_max_wait(self):
        """A steady stream of events cannot hold a batch open forever."""
        debouncer = EventDebouncer(WatchConfig(debounce_ms=50, max_batch_wait_ms=120))
        queue: asyncio.Queue = asyncio.Queue()

        async def produce():
            for i in range(40):
                queue.put_nowait(ChangeEvent(ChangeType.MODIFIED, f"f{i}.py"))
                await asyncio.sleep(0.02)

        producer = asyncio.create_task(produce())
        batch = await asyncio.wait_for(debouncer.collect(queue), timeout=2)
        producer.cancel()
        assert 0 < len(batch) < 40


class TestWatcher:
    """Tests for native event translation."""

    @pytest.mark.asyncio
    async def test_queue_change_relative(self, workspace):
        """Absolute watchdog paths become relative events on the loop."""
        received = []
        watcher = Watcher(workspace, lambda p: False, received.append)
        watcher._loop = asyncio.get_running_loop()

        watcher._queue_change(ChangeType.MODIFIED, str(workspace / "pkg" / "a.py"))
        await asyncio.sleep(0)
        assert received == [ChangeEvent(ChangeType.MODIFIED, "pkg/a.py")]

    @pytest.mark.asyncio
    async def test_ignored_paths_dropped(self, workspace, test_config):
        """Events for ignored paths never reach the queue."""
        received = []
        watcher = Watcher(workspace, default_ignore(test_config.scan), received.append)
        watcher._loop = asyncio.get_running_loop()

        watcher._queue_change(ChangeType.MODIFIED, str(workspace / ".git" / "index"))
        watcher._queue_change(ChangeType.CREATED, str(workspace / "node_modules" / "x.js"))
        await asyncio.sleep(0)
        assert received == []

    @pytest.mark.asyncio
    async def test_move_from_ignored_is_creation(self, workspace, test_config):
        """Moving a file out of an ignored location creates it."""
        received = []
        watcher = Watcher(workspace, default_ignore(test_config.scan), received.append)
        watcher._loop = asyncio.get_running_loop()

        watcher._queue_change(
            ChangeType.RENAMED, str(workspace / "a.py"), str(workspace / ".tmp" / "a.py")
        )
        await asyncio.sleep(0)
        assert received == [ChangeEvent(ChangeType.CREATED, "a.py")]

    @pytest.mark.asyncio
    async def test_directory_move(self, workspace):
        """A moved directory deletes the old prefix and creates each file."""
        received = []
        (workspace / "new" / "sub").mkdir(parents=True)
        (workspace / "new" / "x.py").write_text("x")
        (workspace / "new" / "sub" / "y.py").write_text("y")
        watcher = Watcher(workspace, lambda p: False, received.append)
        watcher._loop = asyncio.get_running_loop()

        watcher._queue_directory_move(str(workspace / "old"), str(workspace / "new"))
        await asyncio.sleep(0)
        assert received[0] == ChangeEvent(ChangeType.DELETED, "old")
        assert sorted(e.path for e in received[1:]) == ["new/sub/y.py", "new/x.py"]


class TestPollingWatcher:
    """Tests for the polling fallback."""

    @pytest.mark.asyncio
    async def test_poll_diff(self, context, sample_workspace):
        """Polling reports creations, modifications and deletions."""
        received = []
        poller = PollingWatcher(Scanner(context), received.append, interval_s=60)
        await poller.start()
        try:
            assert await poller.poll_once() == 0

            (sample_workspace / "c.py").write_text("new file\n")
            (sample_workspace / "b.py").write_text("changed and longer than before\n" * 3)
            (sample_workspace / "pkg" / "util.py").unlink()

            assert await poller.poll_once() == 3
            kinds = {e.path: e.kind for e in received}
            assert kinds == {
                "c.py": ChangeType.CREATED,
                "b.py": ChangeType.MODIFIED,
                "pkg/util.py": ChangeType.DELETED,
            }
        finally:
            await poller.stop()


class TestFileSystemObserver:
    """Tests for observer mode selection and fallback."""

    @pytest.mark.asyncio
    async def test_polling_mode(self, context, sample_workspace):
        """use_polling skips the native watcher without degrading."""
        context.config.watch.use_polling = True
        observer = FileSystemObserver(context, emit=lambda e: None)
        await observer.start()
        try:
            assert observer.mode == "polling"
            assert observer.degraded_reason is None
        finally:
            await observer.stop()
        assert observer.mode == "stopped"

    @pytest.mark.asyncio
    async def test_native_failure_falls_back(self, context, sample_workspace):
        """A watcher that cannot start degrades to polling and reports why."""
        reasons = []
        observer = FileSystemObserver(context, emit=lambda e: None, on_degraded=reasons.append)
        with patch.object(Watcher, "start", side_effect=OSError("inotify limit reached")):
            await observer.start()
        try:
            assert observer.mode == "polling"
            assert "inotify limit reached" in reasons[0]
        finally:
            await observer.stop()

    @pytest.mark.asyncio
    async def test_polling_emits_events(self, context, sample_workspace):
        """The polling loop delivers changes through emit."""
        context.config.watch.use_polling = True
        received = []
        observer = FileSystemObserver(context, emit=received.append)
        await observer.start()
        try:
            (sample_workspace / "fresh.py").write_text("print('hi')\n")
            for _ in range(100):
                if received:
                    break
                await asyncio.sleep(0.02)
            assert ChangeEvent(ChangeType.CREATED, "fresh.py") in received
        finally:
            await observer.stop()
