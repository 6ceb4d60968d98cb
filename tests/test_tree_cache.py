"""
Tree Cache Tests - Incremental apply, snapshots and persistence.

Tests:
- Event application and revision semantics
- Ignored paths never enter the tree
- Directory deletion and renames
- Atomic persistence, corruption and schema detection
"""

import os
import threading

import pytest

from codeindex.errors import CacheCorruption, SchemaMismatch
from codeindex.hasher import ContentFingerprinter, hash_bytes
from codeindex.models import ChangeEvent, ChangeType
from codeindex.scanner import Scanner, default_ignore
from codeindex.tree_cache import MAGIC, TreeCache


@pytest.fixture
def is_ignored(test_config):
    return default_ignore(test_config.scan)


@pytest.fixture
def tree(context, is_ignored):
    fingerprinter = ContentFingerprinter(context.workspace_root, context.config.scan)
    cache = TreeCache(context.tree_cache_path, fingerprinter, is_ignored)
    yield cache
    fingerprinter.close()


async def full_scan(tree: TreeCache, context) -> None:
    files = await Scanner(context, tree.is_ignored).scan()
    records = await tree.fingerprinter.fingerprint_files(files, tree.snapshot().records)
    tree.replace_all(records)


class TestApply:
    """Tests for incremental event application."""

    def test_create(self, tree, workspace):
        """A created file enters the tree with its content hash."""
        (workspace / "a.py").write_text("x = 1\n")
        assert tree.apply(ChangeEvent(ChangeType.CREATED, "a.py")) == ["a.py"]
        assert tree.get("a.py").content_hash == hash_bytes(b"x = 1\n")
        assert tree.revision == 1

    def test_noop_replay(self, tree, workspace):
        """Replaying an event that changes nothing keeps the revision."""
        (workspace / "a.py").write_text("x = 1\n")
        tree.apply(ChangeEvent(ChangeType.CREATED, "a.py"))
        revision = tree.revision
        assert tree.apply(ChangeEvent(ChangeType.MODIFIED, "a.py")) == []
        assert tree.revision == revision

    def test_touch_refreshes_stat(self, tree, workspace):
        """A touch without a content change is not reported as changed."""
        path = workspace / "a.py"
        path.write_text("x = 1\n")
        tree.apply(ChangeEvent(ChangeType.CREATED, "a.py"))
        tree.mark_indexed("a.py", 123.0)
        stat = path.stat()
        os.utime(path, (stat.st_atime, stat.st_mtime + 10))

        assert tree.apply(ChangeEvent(ChangeType.MODIFIED, "a.py")) == []
        record = tree.get("a.py")
        assert record.mtime == stat.st_mtime + 10
        assert record.last_indexed == 123.0

    def test_modify(self, tree, workspace):
        """A content change replaces the record."""
        path = workspace / "a.py"
        path.write_text("x = 1\n")
        tree.apply(ChangeEvent(ChangeType.CREATED, "a.py"))
        path.write_text("x = 2\n")
        assert tree.apply(ChangeEvent(ChangeType.MODIFIED, "a.py")) == ["a.py"]
        assert tree.get("a.py").content_hash == hash_bytes(b"x = 2\n")

    def test_delete_directory(self, tree, workspace):
        """Deleting a directory removes every record below it."""
        (workspace / "pkg").mkdir()
        (workspace / "pkg" / "a.py").write_text("a")
        (workspace / "pkg" / "b.py").write_text("b")
        (workspace / "pkgx.py").write_text("c")
        tree.apply_many([
            ChangeEvent(ChangeType.CREATED, "pkg/a.py"),
            ChangeEvent(ChangeType.CREATED, "pkg/b.py"),
            ChangeEvent(ChangeType.CREATED, "pkgx.py"),
        ])
        removed = tree.apply(ChangeEvent(ChangeType.DELETED, "pkg"))
        assert sorted(removed) == ["pkg/a.py", "pkg/b.py"]
        assert "pkgx.py" in tree.snapshot()

    def test_rename(self, tree, workspace):
        """A rename moves the record."""
        (workspace / "old.py").write_text("x")
        tree.apply(ChangeEvent(ChangeType.CREATED, "old.py"))
        (workspace / "old.py").rename(workspace / "new.py")
        changed = tree.apply(ChangeEvent(ChangeType.RENAMED, "new.py", old_path="old.py"))
        assert sorted(changed) == ["new.py", "old.py"]
        assert "old.py" not in tree.snapshot()
        assert "new.py" in tree.snapshot()

    def test_vanished_file(self, tree, workspace):
        """A modification event for a file that is gone removes it."""
        (workspace / "a.py").write_text("x")
        tree.apply(ChangeEvent(ChangeType.CREATED, "a.py"))
        (workspace / "a.py").unlink()
        assert tree.apply(ChangeEvent(ChangeType.MODIFIED, "a.py")) == ["a.py"]
        assert len(tree) == 0

    def test_ignored_never_admitted(self, tree, workspace):
        """Ignored paths never reach the tree."""
        (workspace / ".env").write_text("SECRET=1")
        assert tree.apply(ChangeEvent(ChangeType.CREATED, ".env")) == []
        assert ".env" not in tree.snapshot()

    def test_snapshot_is_immutable(self, tree, workspace):
        """A snapshot taken earlier is not affected by later changes."""
        (workspace / "a.py").write_text("x")
        before = tree.snapshot()
        tree.apply(ChangeEvent(ChangeType.CREATED, "a.py"))
        assert "a.py" not in before
        with pytest.raises(TypeError):
            before.records["a.py"] = None

    def test_mark_indexed_many(self, tree, workspace):
        """Marking a batch swaps the snapshot once; unknown paths are skipped."""
        (workspace / "a.py").write_text("x = 1\n")
        (workspace / "b.py").write_text("y = 2\n")
        tree.apply_many([ChangeEvent(ChangeType.CREATED, "a.py"), ChangeEvent(ChangeType.CREATED, "b.py")])
        revision = tree.revision

        assert tree.mark_indexed_many(["a.py", "b.py", "gone.py"], 5.0) == 2
        assert tree.revision == revision + 1
        assert tree.get("a.py").last_indexed == tree.get("b.py").last_indexed == 5.0
        assert tree.mark_indexed_many(["gone.py"]) == 0
        assert tree.revision == revision + 1

    @pytest.mark.asyncio
    async def test_apply_batch_fingerprints_on_pool(self, tree, workspace, monkeypatch):
        """Event paths are hashed on the hasher threads before the batch is applied."""
        (workspace / "a.py").write_text("x = 1\n")
        (workspace / "b.py").write_text("y = 2\n")
        threads = []
        fingerprint = tree.fingerprinter.fingerprint

        def recording_fingerprint(path):
            threads.append(threading.current_thread())
            return fingerprint(path)

        monkeypatch.setattr(tree.fingerprinter, "fingerprint", recording_fingerprint)
        changed = await tree.apply_batch([
            ChangeEvent(ChangeType.CREATED, "a.py"),
            ChangeEvent(ChangeType.CREATED, "b.py"),
            ChangeEvent(ChangeType.DELETED, "c.py"),
        ])

        assert changed == ["a.py", "b.py"]
        assert tree.revision == 1
        assert len(threads) == 2
        assert threading.main_thread() not in threads


class TestReplaceAll:
    """Tests for full-scan replacement."""

    @pytest.mark.asyncio
    async def test_changed_and_removed(self, tree, context, sample_workspace):
        """A rescan reports what changed and what vanished."""
        await full_scan(tree, context)
        assert sorted(tree.snapshot().records) == ["a.py", "b.py", "pkg/util.py"]

        (sample_workspace / "b.py").write_text("changed\n")
        (sample_workspace / "pkg" / "util.py").unlink()
        files = await Scanner(context, tree.is_ignored).scan()
        records = await tree.fingerprinter.fingerprint_files(files)
        changed, removed = tree.replace_all(records)
        assert changed == ["b.py"]
        assert removed == ["pkg/util.py"]

    @pytest.mark.asyncio
    async def test_directory_fingerprint(self, tree, context, sample_workspace):
        """Directory fingerprints change only when something below changes."""
        await full_scan(tree, context)
        pkg = tree.directory_fingerprint("pkg")
        root = tree.directory_fingerprint()

        (sample_workspace / "a.py").write_text("different\n")
        tree.apply(ChangeEvent(ChangeType.MODIFIED, "a.py"))
        assert tree.directory_fingerprint("pkg/") == pkg
        assert tree.directory_fingerprint() != root


class TestPersistence:
    """Tests for persist/load."""

    @pytest.mark.asyncio
    async def test_round_trip(self, tree, context, sample_workspace, is_ignored):
        """Persisted records load back identically."""
        await full_scan(tree, context)
        tree.metadata = {"generation": 3}
        tree.persist()

        loaded = TreeCache(context.tree_cache_path, tree.fingerprinter, is_ignored)
        assert loaded.load() is True
        assert dict(loaded.snapshot().records) == dict(tree.snapshot().records)
        assert loaded.metadata == {"generation": 3}

    def test_missing_file(self, tree):
        """No cache file is not an error."""
        assert tree.load() is False

    @pytest.mark.asyncio
    async def test_corrupted_header(self, tree, context, sample_workspace):
        """A damaged magic line is detected."""
        await full_scan(tree, context)
        tree.persist()
        raw = context.tree_cache_path.read_bytes()
        context.tree_cache_path.write_bytes(b"GARBAGE" + raw[len(MAGIC):])
        with pytest.raises(CacheCorruption):
            tree.load()

    @pytest.mark.asyncio
    async def test_corrupted_body(self, tree, context, sample_workspace):
        """A flipped byte in the body fails the checksum."""
        await full_scan(tree, context)
        tree.persist()
        raw = bytearray(context.tree_cache_path.read_bytes())
        raw[-2] = ord("X") if raw[-2] != ord("X") else ord("Y")
        context.tree_cache_path.write_bytes(bytes(raw))
        with pytest.raises(CacheCorruption):
            tree.load()

    @pytest.mark.asyncio
    async def test_truncated(self, tree, context, sample_workspace):
        """A truncated file fails the length check."""
        await full_scan(tree, context)
        tree.persist()
        raw = context.tree_cache_path.read_bytes()
        context.tree_cache_path.write_bytes(raw[:-10])
        with pytest.raises(CacheCorruption):
            tree.load()

    def test_schema_mismatch(self, tree, context):
        """Another schema version is a mismatch, not corruption."""
        context.tree_cache_path.write_bytes(
            MAGIC + b'\n{"schema_version": 99, "checksum": "", "length": 2}\n[]'
        )
        with pytest.raises(SchemaMismatch):
            tree.load()

    @pytest.mark.asyncio
    async def test_rescan_after_corruption_matches_fresh_scan(
        self, tree, context, sample_workspace, is_ignored
    ):
        """After corruption a rescan rebuilds exactly what a fresh scan sees."""
        await full_scan(tree, context)
        tree.persist()
        context.tree_cache_path.write_bytes(b"\x00corrupt")

        recovered = TreeCache(context.tree_cache_path, tree.fingerprinter, is_ignored)
        with pytest.raises(CacheCorruption):
            recovered.load()
        await full_scan(recovered, context)

        fresh = TreeCache(context.cache_dir / "fresh.cache", tree.fingerprinter, is_ignored)
        await full_scan(fresh, context)
        assert dict(recovered.snapshot().records) == dict(fresh.snapshot().records)
