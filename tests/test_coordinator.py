"""
Coordinator Tests - Builds, incremental updates, restore and degradation.

Tests:
- State machine transitions
- Full and incremental builds, idempotent rebuilds
- Editing one line re-embeds exactly one chunk
- Restore from disk without re-embedding; corrupted caches rebuild
- Model change policies
- Provider failure degrades to lexical search and recovers
- Lifecycle notifications and watcher-driven updates
"""

import asyncio
import threading

import pytest

from codeindex.coordinator import MODEL_CHANGED, TRANSITIONS, IndexCoordinator
from codeindex.errors import IndexStateError, TransientProviderError
from codeindex.models import (
    BuildMode, ChangeEvent, ChangeType, IndexState, IndexUpdated, QueryCompleted, QueryMode,
)

from fakes import FakeEmbedder, ScriptedEmbedder


def chunk_ids(coordinator, path=None):
    generation = coordinator.generation
    if path is not None:
        return list(generation.by_path.get(path, ()))
    return set(generation.chunks)


class TestStateMachine:
    """Tests for index state transitions."""

    def test_transition_table(self):
        assert TRANSITIONS[IndexState.EMPTY] == {IndexState.BUILDING, IndexState.REBUILDING}
        assert IndexState.UPDATING not in TRANSITIONS[IndexState.REBUILDING]
        for targets in TRANSITIONS.values():
            assert IndexState.EMPTY not in targets

    @pytest.mark.asyncio
    async def test_illegal_transition(self, coordinator):
        assert coordinator.state is IndexState.EMPTY
        with pytest.raises(IndexStateError):
            coordinator._transition(IndexState.READY)

    @pytest.mark.asyncio
    async def test_build_reaches_ready(self, coordinator, sample_workspace):
        stats = await coordinator.build_index()
        assert coordinator.state is IndexState.READY
        assert stats.files_scanned == 3
        assert stats.files_indexed == 3
        assert stats.chunks_embedded == stats.chunks_created

        status = coordinator.index_status()
        assert status.generation == 1
        assert status.file_count == 3
        assert status.chunk_count == len(chunk_ids(coordinator))
        assert status.pending_dirty_chunks == 0
        assert status.pending_events == 0
        assert not status.degraded
        assert status.embedding_model == "fake-bow"
        assert status.dimension == 64

    @pytest.mark.asyncio
    async def test_build_marks_files_indexed_once(self, coordinator, sample_workspace):
        """Indexed files are stamped in the tree with a single snapshot swap."""
        await coordinator.build_index()
        assert coordinator.tree.revision == 2
        assert all(r.last_indexed is not None for r in coordinator.tree.snapshot().records.values())

    @pytest.mark.asyncio
    async def test_changes_before_first_build_only_touch_tree(self, coordinator, sample_workspace):
        """An unbuilt index records changes in the tree and publishes nothing."""
        stats = await coordinator.apply_changes([ChangeEvent(ChangeType.CREATED, "a.py")])
        assert stats.files_indexed == 0
        assert coordinator.state is IndexState.EMPTY
        assert coordinator.generation is None
        assert "a.py" in coordinator.tree.snapshot()


class TestIncremental:
    """Tests for incremental updates."""

    @pytest.mark.asyncio
    async def test_edit_one_line(self, coordinator, fake_embedder, long_module, sample_workspace):
        """Editing line 10 re-embeds one chunk and leaves other files alone."""
        await coordinator.build_index()
        generation = coordinator.generation.generation
        b_ids = chunk_ids(coordinator, "b.py")
        fake_embedder.calls.clear()

        lines = long_module.read_text().splitlines(keepends=True)
        lines[9] = "    value = a_much_longer_replacement_call(input, extra=True)\n"
        long_module.write_text("".join(lines))

        stats = await coordinator.apply_changes([ChangeEvent(ChangeType.MODIFIED, "long.py")])

        assert len(fake_embedder.embedded_texts) == 1
        assert "a_much_longer_replacement_call" in fake_embedder.embedded_texts[0]
        assert stats.chunks_embedded == 1
        assert stats.chunks_reused == 9
        assert stats.files_indexed == 1
        assert coordinator.generation.generation == generation + 1
        assert chunk_ids(coordinator, "b.py") == b_ids
        assert coordinator.index_status().pending_dirty_chunks == 0
        assert coordinator.state is IndexState.READY

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, coordinator, fake_embedder, sample_workspace):
        """A second incremental build with no changes embeds nothing."""
        await coordinator.build_index()
        ids = chunk_ids(coordinator)
        fake_embedder.calls.clear()

        stats = await coordinator.build_index()
        assert fake_embedder.calls == []
        assert stats.files_indexed == 0
        assert chunk_ids(coordinator) == ids

    @pytest.mark.asyncio
    async def test_replayed_event_is_noop(self, coordinator, fake_embedder, sample_workspace):
        await coordinator.build_index()
        generation = coordinator.generation.generation
        fake_embedder.calls.clear()

        await coordinator.apply_changes([ChangeEvent(ChangeType.MODIFIED, "a.py")])
        assert coordinator.generation.generation == generation
        assert fake_embedder.calls == []

    @pytest.mark.asyncio
    async def test_full_rebuild_same_ids(self, coordinator, fake_embedder, sample_workspace):
        """A full rebuild re-embeds everything and reproduces the same chunk ids."""
        await coordinator.build_index()
        ids = chunk_ids(coordinator)
        fake_embedder.calls.clear()

        await coordinator.build_index(BuildMode.FULL)
        assert chunk_ids(coordinator) == ids
        assert len(fake_embedder.embedded_texts) == len(ids)
        assert coordinator.state is IndexState.READY

    @pytest.mark.asyncio
    async def test_delete(self, coordinator, sample_workspace):
        await coordinator.build_index()
        chunks_before, _ = coordinator.store.counts()
        removed = len(chunk_ids(coordinator, "b.py"))

        (sample_workspace / "b.py").unlink()
        stats = await coordinator.apply_changes([ChangeEvent(ChangeType.DELETED, "b.py")])

        assert stats.files_removed == 1
        assert "b.py" not in coordinator.generation.by_path
        assert "b.py" not in coordinator.generation.tree
        assert coordinator.store.counts()[0] == chunks_before - removed

    @pytest.mark.asyncio
    async def test_rename(self, coordinator, sample_workspace):
        await coordinator.build_index()
        (sample_workspace / "b.py").rename(sample_workspace / "c.py")
        await coordinator.apply_changes([ChangeEvent(ChangeType.RENAMED, "c.py", old_path="b.py")])

        assert "b.py" not in coordinator.generation.by_path
        assert "c.py" in coordinator.generation.by_path
        response = await coordinator.query("load_document", mode=QueryMode.LEXICAL)
        assert response.results[0].path == "c.py"

    @pytest.mark.asyncio
    async def test_file_changing_mid_update_is_requeued(self, coordinator, sample_workspace, monkeypatch):
        """Content that no longer matches the tree is not indexed; the path is requeued."""
        await coordinator.build_index()
        path = sample_workspace / "pkg" / "util.py"
        path.write_text("def helper():\n    return 43\n")

        original = coordinator.tree.apply_many

        def apply_then_edit(events, fingerprints=None):
            changed = original(events, fingerprints)
            path.write_text("def helper():\n    return 'final_value'\n")
            return changed

        monkeypatch.setattr(coordinator.tree, "apply_many", apply_then_edit)
        stats = await coordinator.apply_changes([ChangeEvent(ChangeType.MODIFIED, "pkg/util.py")])
        monkeypatch.undo()

        assert stats.requeued == 1
        assert stats.files_indexed == 0
        await coordinator.wait_until_idle()
        texts = [c.text for c in coordinator.generation.chunks_for("pkg/util.py")]
        assert any("final_value" in t for t in texts)

    @pytest.mark.asyncio
    async def test_update_io_runs_off_event_loop(self, coordinator, sample_workspace, monkeypatch):
        """Fingerprinting and tree persistence run on worker threads."""
        await coordinator.build_index()
        threads = []
        fingerprint = coordinator.fingerprinter.fingerprint
        persist = coordinator.tree.persist

        def recording_fingerprint(path):
            threads.append(threading.current_thread())
            return fingerprint(path)

        def recording_persist():
            threads.append(threading.current_thread())
            persist()

        monkeypatch.setattr(coordinator.fingerprinter, "fingerprint", recording_fingerprint)
        monkeypatch.setattr(coordinator.tree, "persist", recording_persist)
        (sample_workspace / "b.py").write_text("def load_document(raw):\n    return raw\n")
        await coordinator.apply_changes([ChangeEvent(ChangeType.MODIFIED, "b.py")])
        monkeypatch.undo()

        assert len(threads) == 2
        assert threading.main_thread() not in threads

    @pytest.mark.asyncio
    async def test_submit_and_wait(self, coordinator, sample_workspace):
        """Submitted events are debounced, applied and published by the worker."""
        await coordinator.build_index()
        (sample_workspace / "b.py").unlink()
        coordinator.submit(ChangeEvent(ChangeType.DELETED, "b.py"))
        await coordinator.wait_until_idle()
        assert "b.py" not in coordinator.generation.by_path


class TestRestore:
    """Tests for reopening a persisted index."""

    @pytest.mark.asyncio
    async def test_reopen_without_reembedding(self, context, coordinator, sample_workspace):
        await coordinator.build_index()
        ids = chunk_ids(coordinator)
        await coordinator.close()

        embedder = FakeEmbedder()
        reopened = IndexCoordinator(context, embedder)
        try:
            assert await reopened.open() is False
            assert reopened.state is IndexState.READY
            assert chunk_ids(reopened) == ids

            await reopened.build_index()
            assert embedder.calls == []
            response = await reopened.query("parse json")
            assert response.mode is QueryMode.HYBRID
            assert response.results[0].path == "a.py"
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_corrupted_tree_cache(self, context, coordinator, sample_workspace):
        """A corrupted tree cache asks for a full build that reproduces the index."""
        await coordinator.build_index()
        ids = chunk_ids(coordinator)
        await coordinator.close()
        context.tree_cache_path.write_bytes(b"garbage\n{}\n[]")

        reopened = IndexCoordinator(context, FakeEmbedder())
        try:
            assert await reopened.open() is True
            assert reopened.state is IndexState.EMPTY
            await reopened.build_index(BuildMode.FULL)
            assert chunk_ids(reopened) == ids
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_corrupted_index_store(self, context, coordinator, sample_workspace):
        await coordinator.build_index()
        ids = chunk_ids(coordinator)
        await coordinator.close()
        db_path = context.index_db_path
        for suffix in ("-wal", "-shm"):
            db_path.with_name(db_path.name + suffix).unlink(missing_ok=True)
        db_path.write_bytes(b"this is not a database" * 100)

        reopened = IndexCoordinator(context, FakeEmbedder())
        try:
            assert await reopened.open() is True
            await reopened.build_index(BuildMode.FULL)
            assert chunk_ids(reopened) == ids
            assert reopened.store.counts()[0] == len(ids)
        finally:
            await reopened.close()


class TestModelChange:
    """Tests for a different embedding model than the stored index."""

    @pytest.mark.asyncio
    async def test_rebuild_policy(self, context, coordinator, sample_workspace):
        await coordinator.build_index()
        await coordinator.close()

        embedder = FakeEmbedder(model_id="other-model")
        reopened = IndexCoordinator(context, embedder)
        try:
            assert await reopened.open() is True
            await reopened.build_index(BuildMode.FULL)
            assert reopened.state is IndexState.READY
            assert reopened.store.read_metadata().embedding_model == "other-model"
        finally:
            await reopened.close()

    @pytest.mark.asyncio
    async def test_manual_policy(self, context, coordinator, sample_workspace):
        """Manual policy keeps lexical search alive until a full rebuild."""
        await coordinator.build_index()
        await coordinator.close()
        context.config.coordinator.model_change_policy = "manual"

        embedder = FakeEmbedder(model_id="other-model")
        reopened = IndexCoordinator(context, embedder)
        try:
            assert await reopened.open() is False
            assert reopened.state is IndexState.DEGRADED
            assert MODEL_CHANGED in reopened.index_status().degraded_reasons

            response = await reopened.query("parse json")
            assert response.mode is QueryMode.LEXICAL
            assert response.degraded
            assert response.results[0].path == "a.py"
            assert embedder.calls == []
            # The stored stamp still names the old model
            assert reopened.store.read_metadata().embedding_model == "fake-bow"

            await reopened.build_index(BuildMode.FULL)
            assert reopened.state is IndexState.READY
            response = await reopened.query("parse json")
            assert response.mode is QueryMode.HYBRID
        finally:
            await reopened.close()


class TestProviderFailure:
    """Tests for a failing embedding provider."""

    @pytest.mark.asyncio
    async def test_failing_provider_degrades_then_recovers(self, context, sample_workspace):
        # Three files, one batch each, four attempts per batch
        embedder = ScriptedEmbedder([TransientProviderError("503")] * 12)
        coordinator = IndexCoordinator(context, embedder)
        try:
            await coordinator.open()
            stats = await coordinator.build_index()

            assert coordinator.state is IndexState.DEGRADED
            assert stats.chunks_embedded == 0
            status = coordinator.index_status()
            assert status.degraded
            assert status.degraded_chunks == status.chunk_count

            attempts = embedder.attempts
            response = await coordinator.query("parse json")
            assert response.mode is QueryMode.LEXICAL
            assert response.results[0].path == "a.py"
            assert embedder.attempts == attempts

            with open(sample_workspace / "a.py", "a") as f:
                f.write("\ndef parse_json_again():\n    return None\n")
            await coordinator.apply_changes([ChangeEvent(ChangeType.MODIFIED, "a.py")])
            assert coordinator.state is IndexState.READY
            assert coordinator.embeddings.failure_streak == 0
        finally:
            await coordinator.close()

    @pytest.mark.asyncio
    async def test_build_retries_chunks_degraded_by_outage(self, context, sample_workspace):
        """Once the provider is back, the next build embeds what the outage left degraded."""
        embedder = ScriptedEmbedder([TransientProviderError("503")] * 50)
        coordinator = IndexCoordinator(context, embedder)
        try:
            await coordinator.open()
            await coordinator.build_index()
            assert coordinator.state is IndexState.DEGRADED

            embedder.script.clear()
            stats = await coordinator.build_index()

            assert stats.files_indexed == 3
            assert coordinator.state is IndexState.READY
            assert coordinator.embeddings.failure_streak == 0
            status = coordinator.index_status()
            assert status.degraded_chunks == 0
            assert stats.chunks_embedded == status.chunk_count
            response = await coordinator.query("parse json")
            assert response.mode is QueryMode.HYBRID
        finally:
            await coordinator.close()

    @pytest.mark.asyncio
    async def test_rejected_chunk_degrades_alone(self, context, sample_workspace):
        """A chunk the provider rejects is excluded from semantic search only."""
        coordinator = IndexCoordinator(context, ScriptedEmbedder(reject="close_socket"))
        try:
            await coordinator.open()
            await coordinator.build_index()

            assert coordinator.state is IndexState.READY
            assert coordinator.index_status().degraded_chunks == 1
            response = await coordinator.query("close_socket", mode=QueryMode.LEXICAL)
            assert response.results[0].path == "a.py"
        finally:
            await coordinator.close()


class TestNotifications:
    """Tests for lifecycle events."""

    @pytest.mark.asyncio
    async def test_events(self, coordinator, sample_workspace):
        events = []
        received = []

        async def on_event(event):
            received.append(event)

        def broken(event):
            raise RuntimeError("subscriber bug")

        coordinator.notifier.subscribe(broken)
        unsubscribe = coordinator.notifier.subscribe(events.append)
        coordinator.notifier.subscribe(on_event)

        await coordinator.build_index()
        response = await coordinator.query("parse json")
        await asyncio.sleep(0)

        assert isinstance(events[0], IndexUpdated)
        assert events[0].generation == 1
        assert "a.py" in events[0].changed_paths
        assert events[1] == QueryCompleted(response.query_id, len(response))
        assert received == events

        unsubscribe()
        await coordinator.query("parse json")
        assert len(events) == 2


class TestWatching:
    """Tests for watcher-driven updates."""

    @pytest.mark.asyncio
    async def test_polling_watcher_updates_index(self, context, coordinator, sample_workspace):
        context.config.watch.use_polling = True
        await coordinator.build_index()

        updated = asyncio.Event()

        def on_event(event):
            if isinstance(event, IndexUpdated) and "pkg/util.py" in event.changed_paths:
                updated.set()

        coordinator.notifier.subscribe(on_event)
        await coordinator.start_watching()
        (sample_workspace / "pkg" / "util.py").write_text("def helper():\n    return 'watched change'\n")

        await asyncio.wait_for(updated.wait(), timeout=5)
        texts = [c.text for c in coordinator.generation.chunks_for("pkg/util.py")]
        assert any("watched change" in t for t in texts)
        await coordinator.stop_watching()
