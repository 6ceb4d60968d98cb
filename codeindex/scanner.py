"""
Scanner - Workspace traversal with an injected ignore decision.

Walks the workspace with os.scandir and controlled concurrency, asking the
ignore decision about every entry before it is yielded. The decision works
on workspace-relative POSIX paths; directory paths end with "/".
"""

import asyncio
import logging
import os
import time
from pathlib import Path
from typing import AsyncGenerator, Callable, List, Optional

from .config import EngineContext, ScanConfig
from .errors import handle_error
from .models import FileInfo


logger = logging.getLogger(__name__)

IgnoreDecision = Callable[[str], bool]

SYSTEM_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}


def default_ignore(config: ScanConfig, cache_dir: Optional[str] = None) -> IgnoreDecision:
    """
    Build the default ignore decision.

    Skips hidden entries, VCS/dependency/build directories, binary
    extensions and the engine's own cache directory.

    Args:
        config: Scan settings with skip_dirs/skip_extensions
        cache_dir: Workspace-relative cache directory, always ignored
    """
    cache_prefix = cache_dir.rstrip("/") + "/" if cache_dir else None

    def is_ignored(rel_path: str) -> bool:
        if not rel_path:
            return False
        if cache_prefix and (rel_path + "/").startswith(cache_prefix):
            return True

        is_dir = rel_path.endswith("/")
        parts = rel_path.rstrip("/").split("/")

        for part in parts:
            if part.startswith(".") or part in config.skip_dirs:
                return True

        if is_dir:
            return False

        name = parts[-1]
        if name in SYSTEM_FILES:
            return True
        return Path(name).suffix.lower() in config.skip_extensions

    return is_ignored


def to_relative(workspace_root: Path, path: Path | str) -> Optional[str]:
    """Workspace-relative POSIX path, or None if the path is outside the workspace."""
    try:
        return Path(path).resolve().relative_to(workspace_root).as_posix()
    except ValueError:
        return None


class Scanner:
    """
    Parallel workspace scanner.

    Yields FileInfo objects for each regular file the ignore decision
    admits; ignored directories are never descended into.
    """

    def __init__(self, context: EngineContext, is_ignored: Optional[IgnoreDecision] = None):
        self.root = context.workspace_root
        self.config = context.config.scan
        self.is_ignored = is_ignored or default_ignore(self.config, context.relative_cache_dir())
        self._semaphore: asyncio.Semaphore | None = None

    async def scan(self, prefix: str = "") -> List[FileInfo]:
        """
        Scan the workspace (or one subdirectory) and return every admitted file.

        Args:
            prefix: Workspace-relative directory to restrict the scan to
        """
        self._semaphore = asyncio.Semaphore(self.config.scanner_concurrency)

        start_time = time.monotonic()
        files = [info async for info in self.scan_iter(prefix)]
        duration = time.monotonic() - start_time

        logger.info(f"Scanned {len(files)} files in {duration:.1f}s")
        return files

    async def scan_iter(self, prefix: str = "") -> AsyncGenerator[FileInfo, None]:
        """
        Iterate over admitted files.

        Streaming interface: files are yielded as they're found.
        """
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.config.scanner_concurrency)

        prefix = prefix.strip("/")
        start = self.root / prefix if prefix else self.root
        if not start.is_dir():
            logger.warning(f"Scan root not found: {start}")
            return

        async for file_info in self._scan_directory(start, prefix):
            yield file_info

    async def _scan_directory(self, directory: Path, rel_dir: str) -> AsyncGenerator[FileInfo, None]:
        try:
            entries = sorted(os.scandir(directory), key=lambda e: e.name)
        except OSError as e:
            handle_error(e, directory, "scan_directory")
            return

        subdirs: List[tuple[Path, str]] = []

        for entry in entries:
            rel_path = f"{rel_dir}/{entry.name}" if rel_dir else entry.name
            try:
                if entry.is_dir(follow_symlinks=False):
                    if self.is_ignored(rel_path + "/"):
                        continue
                    subdirs.append((Path(entry.path), rel_path))

                elif entry.is_file(follow_symlinks=False):
                    if self.is_ignored(rel_path):
                        continue

                    async with self._semaphore:
                        file_info = self._get_file_info(entry, rel_path)
                    if file_info:
                        yield file_info

            except OSError as e:
                handle_error(e, Path(entry.path), "scan_entry")
                continue

        for subdir, rel_subdir in subdirs:
            async for file_info in self._scan_directory(subdir, rel_subdir):
                yield file_info

    def _get_file_info(self, entry: os.DirEntry, rel_path: str) -> FileInfo | None:
        try:
            stat = entry.stat(follow_symlinks=False)
            return FileInfo(path=rel_path, size=stat.st_size, mtime=stat.st_mtime)
        except OSError as e:
            handle_error(e, Path(entry.path), "stat")
            return None
