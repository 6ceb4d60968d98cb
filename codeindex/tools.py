"""
Tools - Cacheable workspace tools.

read_file, list_dir and grep_files are deterministic given the workspace
state, so their results are memoized in the ToolResultCache under keys that
include the fingerprints they depend on:
- read_file: the file's content hash
- list_dir: the aggregated fingerprint of the directory
- grep_files: the TreeCache revision
"""

import asyncio
import fnmatch
import logging
import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import EngineContext
from .errors import ToolArgumentError, handle_error
from .hasher import hash_file
from .scanner import IgnoreDecision
from .tool_cache import ToolResultCache, build_tool_cache_key
from .tree_cache import TreeCache


logger = logging.getLogger(__name__)


class ToolExecutor:
    """Runs workspace tools through the tool result cache."""

    def __init__(
        self,
        context: EngineContext,
        tree_cache: TreeCache,
        tool_cache: ToolResultCache,
        is_ignored: IgnoreDecision,
    ):
        self.root = context.workspace_root
        self.cache_config = context.config.tool_cache
        self.tree_cache = tree_cache
        self.tool_cache = tool_cache
        self.is_ignored = is_ignored

    def _resolve(self, path: str, directory: bool = False) -> str:
        """Validate a workspace-relative path and return it normalized."""
        if os.path.isabs(path):
            raise ToolArgumentError(f"Path must be workspace-relative: {path}")
        rel = Path(os.path.normpath(path or ".")).as_posix()
        if rel == ".":
            return ""
        if rel == ".." or rel.startswith("../"):
            raise ToolArgumentError(f"Path escapes the workspace: {path}")
        if self.is_ignored(rel + "/" if directory else rel):
            raise ToolArgumentError(f"Path is ignored: {path}")
        return rel

    def _file_fingerprint(self, rel_path: str) -> str:
        record = self.tree_cache.get(rel_path)
        if record is not None:
            return record.content_hash
        try:
            return hash_file(self.root / rel_path)
        except FileNotFoundError as e:
            raise ToolArgumentError(f"No such file: {rel_path}") from e
        except IsADirectoryError as e:
            raise ToolArgumentError(f"Not a file: {rel_path}") from e

    async def read_file(self, path: str, offset: int = 0, limit: Optional[int] = None) -> Dict[str, Any]:
        """
        Read a file, optionally a window of lines.

        Args:
            path: Workspace-relative file path
            offset: First line to return (0-based)
            limit: Maximum number of lines
        """
        if offset < 0:
            raise ToolArgumentError(f"offset must be >= 0, got {offset}")
        if limit is not None and limit <= 0:
            raise ToolArgumentError(f"limit must be positive, got {limit}")
        rel = self._resolve(path)
        fingerprint = self._file_fingerprint(rel)
        args = {"path": rel, "offset": offset, "limit": limit}
        key = build_tool_cache_key("read_file", args, {rel: fingerprint})

        async def compute():
            loop = asyncio.get_running_loop()
            text = await loop.run_in_executor(None, self._read_text, rel)
            lines = text.splitlines(keepends=True)
            end = len(lines) if limit is None else offset + limit
            return {
                "path": rel,
                "start_line": offset + 1,
                "total_lines": len(lines),
                "content": "".join(lines[offset:end]),
            }

        return await self.tool_cache.get_or_compute(
            key, compute, ttl=self.cache_config.ttl_for("read_file"), dependencies=[rel]
        )

    def _read_text(self, rel: str) -> str:
        return (self.root / rel).read_text(encoding="utf-8", errors="replace")

    async def list_dir(self, path: str = "", depth: int = 1) -> List[str]:
        """
        List a directory; subdirectories end with "/".

        Args:
            path: Workspace-relative directory ("" for the root)
            depth: How many levels to descend (1 = direct children)
        """
        if depth < 1:
            raise ToolArgumentError(f"depth must be >= 1, got {depth}")
        rel = self._resolve(path, directory=True)
        if not (self.root / rel).is_dir():
            raise ToolArgumentError(f"Not a directory: {path}")

        fingerprint = self.tree_cache.directory_fingerprint(rel)
        key = build_tool_cache_key("list_dir", {"path": rel, "depth": depth}, {rel: fingerprint})

        async def compute():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._walk, rel, depth)

        return await self.tool_cache.get_or_compute(
            key, compute, ttl=self.cache_config.ttl_for("list_dir"), dependencies=[rel]
        )

    def _walk(self, rel: str, depth: int) -> List[str]:
        entries: List[str] = []
        pending = [(rel, 1)]
        while pending:
            current, level = pending.pop()
            try:
                children = list(os.scandir(self.root / current))
            except OSError as e:
                handle_error(e, self.root / current, "list_dir")
                continue
            for entry in children:
                child = f"{current}/{entry.name}" if current else entry.name
                if entry.is_dir(follow_symlinks=False):
                    if self.is_ignored(child + "/"):
                        continue
                    entries.append(child + "/")
                    if level < depth:
                        pending.append((child, level + 1))
                elif not self.is_ignored(child):
                    entries.append(child)
        return sorted(entries)

    async def grep_files(
        self,
        pattern: str,
        include: Optional[str] = None,
        path: str = "",
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        """
        Regex search over tracked files.

        Args:
            pattern: Regular expression
            include: Glob filter on file names, e.g. "*.py"
            path: Restrict to a workspace-relative directory
            limit: Maximum number of matching lines
        """
        if not pattern:
            raise ToolArgumentError("pattern must not be empty")
        if limit <= 0:
            raise ToolArgumentError(f"limit must be positive, got {limit}")
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ToolArgumentError(f"Invalid pattern {pattern!r}: {e}") from e
        rel = self._resolve(path, directory=True)

        snapshot = self.tree_cache.snapshot()
        args = {"pattern": pattern, "include": include, "path": rel, "limit": limit}
        key = build_tool_cache_key("grep_files", args, {rel: self.tree_cache.directory_fingerprint(rel)})
        prefix = rel + "/" if rel else ""
        candidates = sorted(
            p for p in snapshot.records
            if p.startswith(prefix)
            and (include is None or fnmatch.fnmatch(p.rsplit("/", 1)[-1], include))
        )

        async def compute():
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, self._grep, regex, candidates, limit)

        return await self.tool_cache.get_or_compute(
            key, compute, ttl=self.cache_config.ttl_for("grep_files"), dependencies=[rel]
        )

    def _grep(self, regex: "re.Pattern[str]", paths: List[str], limit: int) -> List[Dict[str, Any]]:
        matches: List[Dict[str, Any]] = []
        for rel in paths:
            try:
                with open(self.root / rel, encoding="utf-8") as f:
                    for number, line in enumerate(f, start=1):
                        if regex.search(line):
                            matches.append({"path": rel, "line": number, "text": line.rstrip("\n")})
                            if len(matches) >= limit:
                                return matches
            except (OSError, UnicodeDecodeError) as e:
                handle_error(e, rel, "grep_files")
        return matches
