"""
Scanner Tests - Workspace traversal and the default ignore decision.
"""

from pathlib import Path

import pytest

from codeindex.config import EngineContext, ScanConfig
from codeindex.scanner import Scanner, default_ignore, to_relative


class TestDefaultIgnore:
    """Tests for default_ignore."""

    @pytest.fixture
    def is_ignored(self):
        return default_ignore(ScanConfig(), cache_dir=".codeindex")

    def test_admits_source(self, is_ignored):
        """Ordinary source files and directories pass."""
        assert not is_ignored("src/main.py")
        assert not is_ignored("src/")
        assert not is_ignored("")

    def test_hidden_and_vcs(self, is_ignored):
        """Hidden entries anywhere in the path are ignored."""
        assert is_ignored(".git/")
        assert is_ignored(".env")
        assert is_ignored("src/.secret/key.py")

    def test_dependency_dirs(self, is_ignored):
        """Dependency and build directories are ignored with their contents."""
        assert is_ignored("node_modules/")
        assert is_ignored("web/node_modules/react/index.js")
        assert is_ignored("build/lib/x.py")

    def test_binary_extensions(self, is_ignored):
        """Binary extensions are ignored, case-insensitively."""
        assert is_ignored("assets/logo.PNG")
        assert is_ignored("poetry.lock")
        assert not is_ignored("assets/")

    def test_cache_dir_always_ignored(self):
        """The cache directory is ignored even without a leading dot."""
        is_ignored = default_ignore(ScanConfig(), cache_dir="var/index")
        assert is_ignored("var/index/")
        assert is_ignored("var/index/tree.cache")
        assert not is_ignored("var/indexer.py")

    def test_system_files(self, is_ignored):
        """OS metadata files are ignored."""
        assert is_ignored("docs/Thumbs.db")


class TestScanner:
    """Tests for Scanner."""

    @pytest.mark.asyncio
    async def test_scan_admitted_files(self, context, sample_workspace):
        """Scanning yields only admitted files, as relative POSIX paths."""
        files = await Scanner(context).scan()
        assert [f.path for f in files] == ["a.py", "b.py", "pkg/util.py"]

    @pytest.mark.asyncio
    async def test_scan_records_stat(self, context, sample_workspace):
        """FileInfo carries size and mtime from stat."""
        files = {f.path: f for f in await Scanner(context).scan()}
        stat = (sample_workspace / "pkg" / "util.py").stat()
        assert files["pkg/util.py"].size == stat.st_size
        assert files["pkg/util.py"].mtime == stat.st_mtime

    @pytest.mark.asyncio
    async def test_scan_prefix(self, context, sample_workspace):
        """A prefix restricts the scan to one subdirectory."""
        files = await Scanner(context).scan("pkg")
        assert [f.path for f in files] == ["pkg/util.py"]

    @pytest.mark.asyncio
    async def test_scan_missing_prefix(self, context, sample_workspace):
        """A missing prefix yields nothing."""
        assert await Scanner(context).scan("nope") == []

    @pytest.mark.asyncio
    async def test_custom_ignore(self, context, sample_workspace):
        """An injected ignore decision replaces the default."""
        scanner = Scanner(context, is_ignored=lambda p: p.startswith("pkg"))
        paths = [f.path for f in await scanner.scan()]
        assert "pkg/util.py" not in paths
        assert ".hidden" in paths

    @pytest.mark.asyncio
    async def test_default_cache_dir_skipped(self, workspace, test_config):
        """The default in-workspace cache directory is never scanned."""
        (workspace / "main.py").write_text("x = 1\n")
        context = EngineContext(workspace_root=workspace, config=test_config)
        (context.cache_dir / "tree.cache").write_bytes(b"data")
        files = await Scanner(context).scan()
        assert [f.path for f in files] == ["main.py"]


class TestToRelative:
    def test_inside(self, workspace):
        assert to_relative(workspace, workspace / "a" / "b.py") == "a/b.py"

    def test_outside(self, workspace):
        assert to_relative(workspace, Path("/")) is None
