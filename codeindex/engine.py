"""
Engine - The process-scoped retrieval engine and its command line.

RetrievalEngine wires one EngineContext into every component:
- ToolResultCache + cacheable tools (read_file, list_dir, grep_files)
- IndexCoordinator (tree cache, chunker, embeddings, vector store)
- Notifier for IndexUpdated / QueryCompleted subscribers

Usage:
    async with await RetrievalEngine.open("~/project") as engine:
        await engine.build_index()
        response = await engine.query("where is the config parsed")
"""

import asyncio
import json
import logging
import shutil
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional

from .config import EngineConfig, EngineContext
from .coordinator import IndexCoordinator, Notifier
from .embedder import EmbeddingPort, create_embedder
from .errors import CacheCorruption, PersistenceError, handle_error
from .models import (
    BuildMode, CacheLookup, IndexStatus, IndexingStats, LifecycleEvent,
    QueryMode, SearchResponse, ToolCacheStatus,
)
from .scanner import IgnoreDecision, default_ignore
from .tool_cache import DiskResultStore, ToolResultCache, build_tool_cache_key
from .tools import ToolExecutor


logger = logging.getLogger(__name__)


class RetrievalEngine:
    """Facade over the tool cache, the index coordinator and the retriever."""

    def __init__(
        self,
        context: EngineContext,
        embedder: Optional[EmbeddingPort] = None,
        is_ignored: Optional[IgnoreDecision] = None,
    ):
        self.context = context
        self.config = context.config
        self.is_ignored = is_ignored or default_ignore(self.config.scan, context.relative_cache_dir())

        backing = None
        if self.config.tool_cache.enabled and self.config.tool_cache.persist:
            backing = DiskResultStore(context.tool_cache_db_path, self.config.tool_cache.max_bytes)
        self.tool_cache = ToolResultCache(self.config.tool_cache, backing=backing)
        self.notifier = Notifier()
        self.coordinator = IndexCoordinator(
            context,
            embedder or create_embedder(self.config.embedding),
            is_ignored=self.is_ignored,
            tool_cache=self.tool_cache,
            notifier=self.notifier,
        )
        self.tools = ToolExecutor(context, self.coordinator.tree, self.tool_cache, self.is_ignored)
        self._needs_full_build = False
        self._closed = False

    @classmethod
    async def open(
        cls,
        workspace_root: Path | str,
        cache_dir: Optional[Path | str] = None,
        config: Optional[EngineConfig] = None,
        embedder: Optional[EmbeddingPort] = None,
        is_ignored: Optional[IgnoreDecision] = None,
    ) -> "RetrievalEngine":
        """Create the context once and restore persisted state."""
        context = EngineContext(
            workspace_root=Path(workspace_root),
            cache_dir=Path(cache_dir) if cache_dir else None,
            config=config or EngineConfig.from_env(),
        )
        engine = cls(context, embedder=embedder, is_ignored=is_ignored)
        await engine.start()
        return engine

    async def start(self):
        self._needs_full_build = await self.coordinator.open()
        if self._needs_full_build:
            logger.info("Persisted index unusable, next build will be a full rebuild")

    async def __aenter__(self) -> "RetrievalEngine":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    # ─────────────────────────────────────────────────────────────────────
    # Tool result cache
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def tool_cache_key(
        operation: str, args: Mapping[str, Any], fingerprints: Optional[Mapping[str, str]] = None
    ) -> str:
        return build_tool_cache_key(operation, args, fingerprints)

    async def lookup_tool_result(self, key: str) -> CacheLookup:
        """
        Hit, wait on an in-flight computation, or become its owner.

        An owner must follow up with store_tool_result() or abandon_tool_result().
        """
        return await self.tool_cache.lookup(key)

    def store_tool_result(
        self,
        key: str,
        value: Any,
        ttl: Optional[float] = None,
        dependencies: Iterable[str] = (),
    ) -> bool:
        return self.tool_cache.store(key, value, ttl=ttl, dependencies=dependencies)

    def abandon_tool_result(self, key: str, error: Optional[BaseException] = None):
        self.tool_cache.abandon(key, error)

    def invalidate_tool_result(self, path_prefix: str = "") -> int:
        """Drop every cached result depending on a path under ``path_prefix``."""
        return self.tool_cache.invalidate(path_prefix)

    async def get_or_compute_tool_result(
        self,
        key: str,
        compute: Callable[[], Awaitable[Any]],
        ttl: Optional[float] = None,
        dependencies: Iterable[str] = (),
    ) -> Any:
        return await self.tool_cache.get_or_compute(key, compute, ttl=ttl, dependencies=dependencies)

    def cache_status(self) -> ToolCacheStatus:
        return self.tool_cache.status()

    # Cacheable tools

    async def read_file(self, path: str, offset: int = 0, limit: Optional[int] = None) -> Dict[str, Any]:
        return await self.tools.read_file(path, offset=offset, limit=limit)

    async def list_dir(self, path: str = "", depth: int = 1) -> List[str]:
        return await self.tools.list_dir(path, depth=depth)

    async def grep_files(
        self,
        pattern: str,
        include: Optional[str] = None,
        path: str = "",
        limit: int = 100,
    ) -> List[Dict[str, Any]]:
        return await self.tools.grep_files(pattern, include=include, path=path, limit=limit)

    # ─────────────────────────────────────────────────────────────────────
    # Index
    # ─────────────────────────────────────────────────────────────────────

    async def build_index(self, mode: BuildMode = BuildMode.INCREMENTAL) -> IndexingStats:
        if self._needs_full_build and mode is BuildMode.INCREMENTAL:
            mode = BuildMode.FULL
        stats = await self.coordinator.build_index(mode)
        self._needs_full_build = False
        return stats

    async def query(
        self,
        text: str,
        mode: QueryMode = QueryMode.HYBRID,
        top_k: Optional[int] = None,
        **options,
    ) -> SearchResponse:
        """
        Ranked chunks for a natural-language query.

        Options: ``path_prefix``, ``regex`` and ``cancel`` (an asyncio.Event).
        """
        return await self.coordinator.query(text, mode, top_k, **options)

    def index_status(self) -> IndexStatus:
        return self.coordinator.index_status()

    async def start_watching(self):
        await self.coordinator.start_watching()

    def subscribe(self, callback: Callable[[LifecycleEvent], object]) -> Callable[[], None]:
        return self.notifier.subscribe(callback)

    async def close(self):
        if self._closed:
            return
        self._closed = True
        await self.coordinator.close()
        self.tool_cache.close()


def clear_cache_dir(context: EngineContext) -> List[Path]:
    """Delete the persisted tree cache and index. Returns what was removed."""
    removed = []
    for path in sorted(context.cache_dir.iterdir()):
        if path.is_dir():
            shutil.rmtree(path)
        else:
            path.unlink()
        removed.append(path)
    return removed


def _print_tool_cache_status(context: EngineContext):
    max_bytes = context.config.tool_cache.max_bytes
    entries, size, hits, misses = 0, 0, 0, 0
    if context.tool_cache_db_path.exists():
        store = DiskResultStore(context.tool_cache_db_path, max_bytes)
        try:
            store.prune_expired()
            entries, size = store.stats()
            hits, misses = store.lookup_counts()
        except (CacheCorruption, PersistenceError) as e:
            handle_error(e, context.tool_cache_db_path, "cache status")
        finally:
            store.close()

    lookups = hits + misses
    print("Tool results:")
    print(f"  Entries: {entries}")
    print(f"  Size:    {_format_size(size)} of {_format_size(max_bytes)}")
    print(f"  Hit rate: {hits / lookups:.1%} ({hits}/{lookups})" if lookups else "  Hit rate: n/a")


def _format_size(size: int) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size < 1024:
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def _print_response(response: SearchResponse, snippet_lines: int, max_chars: int):
    if response.degraded:
        print(f"(degraded: {response.mode.value} results only)")
    if not response.results:
        print("No results.")
    for result in response.results:
        chunk = result.chunk
        print(f"{chunk.path}:{chunk.start_line}-{chunk.end_line} score={result.score:.3f}")
        lines = chunk.text[:max_chars].splitlines()
        for number, line in enumerate(lines[:snippet_lines], start=chunk.start_line):
            print(f"  {number:>5} | {line}")
        if len(lines) > snippet_lines:
            print("        | ...")
        print()


def _print_status(status: IndexStatus):
    age = f"{status.age_seconds:.0f}s ago" if status.age_seconds is not None else "never"
    print(f"State:        {status.state.value}")
    print(f"Generation:   {status.generation} (published {age})")
    print(f"Files:        {status.file_count}")
    print(f"Chunks:       {status.chunk_count} ({status.degraded_chunks} degraded)")
    print(f"Model:        {status.embedding_model} (dim={status.dimension or '?'})")
    print(f"Pending:      {status.pending_events} events, {status.pending_dirty_chunks} dirty chunks")
    for reason in status.degraded_reasons:
        print(f"Degraded:     {reason}")


def main(argv: Optional[List[str]] = None):
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(prog="codeindex", description="Hybrid code retrieval index")
    parser.add_argument("--workspace", "-w", default=".", help="Workspace root (default: current directory)")
    parser.add_argument("--cache-dir", help="Cache directory (default: <workspace>/.codeindex)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    commands = parser.add_subparsers(dest="command", required=True)

    index_parser = commands.add_parser("index", help="Build or inspect the index")
    index_commands = index_parser.add_subparsers(dest="action", required=True)
    build_parser = index_commands.add_parser("build", help="Build or update the index")
    build_parser.add_argument("--full", action="store_true", help="Discard the index and rebuild")
    index_commands.add_parser("status", help="Show index status")
    index_commands.add_parser("clear", help="Drop all chunks and vectors")

    search_parser = commands.add_parser("search", help="Query the index")
    search_parser.add_argument("query", nargs="+", help="Query text")
    search_parser.add_argument("--mode", choices=[m.value for m in QueryMode], default=QueryMode.HYBRID.value)
    search_parser.add_argument("--topk", type=int, help="Number of results")
    search_parser.add_argument("--path", help="Only search under this workspace-relative prefix")
    search_parser.add_argument("--regex", action="store_true", help="Treat the query as a regular expression")
    search_parser.add_argument("--lines", type=int, default=8, help="Snippet lines per result")
    search_parser.add_argument("--json", action="store_true", help="Print results as JSON")

    commands.add_parser("watch", help="Build, then keep the index updated until interrupted")

    cache_parser = commands.add_parser("cache", help="Inspect or clear the cache directory")
    cache_commands = cache_parser.add_subparsers(dest="action", required=True)
    cache_commands.add_parser("status", help="Show cache directory contents")
    cache_commands.add_parser("clear", help="Delete every cached file")

    args = parser.parse_args(argv)

    # Configure logging
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(name)s: %(message)s"
    )

    config = EngineConfig.from_env()
    workspace = Path(args.workspace).expanduser().resolve()

    if args.command == "cache":
        context = EngineContext(workspace, Path(args.cache_dir) if args.cache_dir else None, config)
        if args.action == "clear":
            removed = clear_cache_dir(context)
            print(f"Removed {len(removed)} entries from {context.cache_dir}")
        else:
            print(f"Cache directory: {context.cache_dir}")
            total = 0
            for path in sorted(context.cache_dir.iterdir()):
                size = path.stat().st_size if path.is_file() else 0
                total += size
                print(f"  {path.name:<24} {_format_size(size)}")
            print(f"Total: {_format_size(total)}")
            _print_tool_cache_status(context)
        return 0

    async def _main() -> int:
        engine = await RetrievalEngine.open(workspace, args.cache_dir, config)
        try:
            if args.command == "index":
                if args.action == "build":
                    stats = await engine.build_index(BuildMode.FULL if args.full else BuildMode.INCREMENTAL)
                    print(f"\n{stats}")
                elif args.action == "clear":
                    engine.coordinator.store.reset()
                    print(f"Cleared index in {engine.context.index_db_path}")
                else:
                    _print_status(engine.index_status())

            elif args.command == "search":
                if engine.index_status().generation == 0:
                    await engine.build_index()
                response = await engine.query(
                    " ".join(args.query),
                    QueryMode(args.mode),
                    args.topk,
                    path_prefix=args.path,
                    regex=args.regex,
                )
                if args.json:
                    max_chars = config.retriever.max_snippet_chars
                    print(json.dumps({
                        "query_id": response.query_id,
                        "mode": response.mode.value,
                        "generation": response.generation,
                        "degraded": response.degraded,
                        "results": [r.to_dict(max_chars) for r in response.results],
                    }, indent=2))
                else:
                    _print_response(response, args.lines, config.retriever.max_snippet_chars)

            elif args.command == "watch":
                stats = await engine.build_index()
                print(f"\n{stats}")
                print("\nWatching for changes (Ctrl+C to stop)...")
                await engine.start_watching()
                await asyncio.Event().wait()
        finally:
            await engine.close()
        return 0

    try:
        return asyncio.run(_main())
    except KeyboardInterrupt:
        print("\nStopped.")
        return 0


if __name__ == "__main__":
    sys.exit(main())
