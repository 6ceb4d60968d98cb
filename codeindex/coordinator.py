"""
Coordinator - Keeps the index in step with the workspace.

Update pipeline (one debounced batch at a time):
    TreeCache → Chunker diff → embed dirty chunks → VectorStore → publish

Each stage filters out work the next one would otherwise repeat: unchanged
fingerprints stop at the tree, unchanged chunk content stops at the diff,
and only new content reaches the embedding provider. A new IndexGeneration
is published by swapping one reference, so queries read either the old or
the new generation, never a mix.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from pathlib import Path
from types import MappingProxyType
from typing import Callable, Deque, Dict, Iterable, List, Optional, Set

import numpy as np

from .chunker import Chunker
from .config import EngineContext
from .embedder import EmbeddingPort, EmbeddingService
from .errors import (
    CacheCorruption, ErrorAction, IndexStateError, PersistenceError,
    SchemaMismatch, StaleWriteError, handle_error,
)
from .hasher import ContentFingerprinter, hash_bytes, workspace_fingerprint
from .models import (
    BuildMode, ChangeEvent, ChangeType, Chunk, IndexMetadata, IndexState,
    IndexStatus, IndexUpdated, IndexingStats, LifecycleEvent, QueryCompleted,
    QueryMode, SearchResponse,
)
from .retriever import HybridRetriever, IndexGeneration
from .scanner import IgnoreDecision, Scanner, default_ignore
from .store import INDEX_SCHEMA_VERSION, IndexStore
from .tool_cache import ToolResultCache
from .tree_cache import TreeCache
from .vector_store import VectorStore
from .watcher import EventDebouncer, FileSystemObserver


logger = logging.getLogger(__name__)


TRANSITIONS: Dict[IndexState, Set[IndexState]] = {
    IndexState.EMPTY: {IndexState.BUILDING, IndexState.REBUILDING},
    IndexState.BUILDING: {IndexState.READY, IndexState.DEGRADED, IndexState.REBUILDING},
    IndexState.READY: {IndexState.UPDATING, IndexState.DEGRADED, IndexState.REBUILDING},
    IndexState.UPDATING: {IndexState.READY, IndexState.DEGRADED, IndexState.REBUILDING},
    IndexState.DEGRADED: {IndexState.UPDATING, IndexState.READY, IndexState.REBUILDING},
    IndexState.REBUILDING: {IndexState.READY, IndexState.DEGRADED},
}

LEXICAL_ONLY_STATES = {IndexState.EMPTY, IndexState.BUILDING, IndexState.DEGRADED}

MODEL_CHANGED = "embedding model changed"
EMBEDDING_FAILED = "embedding failed"


class Notifier:
    """
    Delivers lifecycle events to subscribers.

    Callbacks may be plain functions or coroutine functions. A failing
    subscriber is logged and never affects the publisher or other
    subscribers.
    """

    def __init__(self):
        self._subscribers: List[Callable[[LifecycleEvent], object]] = []
        self._tasks: Set[asyncio.Task] = set()

    def subscribe(self, callback: Callable[[LifecycleEvent], object]) -> Callable[[], None]:
        """Register a callback. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: LifecycleEvent):
        for callback in list(self._subscribers):
            try:
                result = callback(event)
            except Exception as e:
                logger.error(f"Subscriber {getattr(callback, '__name__', callback)} failed: {e}")
                continue
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task):
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Subscriber failed: {task.exception()}")


class IndexCoordinator:
    """
    Owns the index state machine and the update pipeline.

    Usage:
        coordinator = IndexCoordinator(context, embedder)
        await coordinator.open()
        await coordinator.build_index()
        response = await coordinator.query("parse json")
    """

    def __init__(
        self,
        context: EngineContext,
        embedder: EmbeddingPort,
        is_ignored: Optional[IgnoreDecision] = None,
        tool_cache: Optional[ToolResultCache] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.context = context
        self.config = context.config
        self.is_ignored = is_ignored or default_ignore(self.config.scan, context.relative_cache_dir())

        self.fingerprinter = ContentFingerprinter(context.workspace_root, self.config.scan)
        self.scanner = Scanner(context, self.is_ignored)
        self.tree = TreeCache(context.tree_cache_path, self.fingerprinter, self.is_ignored)
        self.chunker = Chunker(self.config.chunker, max_file_bytes=self.config.scan.max_file_bytes)
        self.embeddings = EmbeddingService(embedder, self.config.embedding)
        self.vectors = VectorStore()
        self.store = IndexStore(context.index_db_path)
        self.tool_cache = tool_cache
        self.notifier = notifier or Notifier()
        self.retriever = HybridRetriever(
            self.config.retriever, self.chunker, self.embeddings,
            context.workspace_root, self.is_ignored,
        )

        self._state = IndexState.EMPTY
        self._generation: Optional[IndexGeneration] = None
        self._generation_counter = 0
        self._chunks: Dict[str, List[Chunk]] = {}     # Writer's working copy, path -> chunks

        self._queue: "asyncio.Queue[ChangeEvent]" = asyncio.Queue()
        self._debouncer = EventDebouncer(self.config.watch)
        self._update_lock = asyncio.Lock()
        self._path_locks: Dict[str, asyncio.Lock] = {}
        self._file_slots = asyncio.Semaphore(self.config.coordinator.max_parallel_files)
        self._worker: Optional[asyncio.Task] = None
        self._busy = False
        self._tasks: Set[asyncio.Task] = set()

        self._pending_dirty = 0
        self._degraded_reasons: Dict[str, str] = {}
        self._semantic_enabled = True
        self._recent: Deque[str] = deque(maxlen=self.config.coordinator.recent_paths)
        self._observer: Optional[FileSystemObserver] = None

    # ─────────────────────────────────────────────────────────────────────
    # State machine
    # ─────────────────────────────────────────────────────────────────────

    @property
    def state(self) -> IndexState:
        return self._state

    @property
    def generation(self) -> Optional[IndexGeneration]:
        return self._generation

    def _transition(self, target: IndexState):
        if target is self._state:
            return
        if target not in TRANSITIONS[self._state]:
            raise IndexStateError(f"Illegal transition {self._state.value} -> {target.value}")
        logger.debug(f"Index state {self._state.value} -> {target.value}")
        self._state = target

    def _settle(self):
        """Leave a working state for READY or DEGRADED."""
        self._transition(IndexState.DEGRADED if self._degraded_reasons else IndexState.READY)

    def _degrade(self, key: str, reason: str):
        if key not in self._degraded_reasons:
            logger.warning(f"Index degraded: {reason}")
        self._degraded_reasons[key] = reason
        if self._state in (IndexState.READY, IndexState.BUILDING, IndexState.UPDATING):
            self._transition(IndexState.DEGRADED)

    def _recover(self, key: str):
        if self._degraded_reasons.pop(key, None) is not None:
            logger.info(f"Index recovered from {key} degradation")
            if not self._degraded_reasons and self._state is IndexState.DEGRADED and self._generation:
                self._transition(IndexState.READY)

    # ─────────────────────────────────────────────────────────────────────
    # Startup
    # ─────────────────────────────────────────────────────────────────────

    def _active_metadata(self, generation: int, dimension: Optional[int] = None) -> IndexMetadata:
        return IndexMetadata(
            schema_version=INDEX_SCHEMA_VERSION,
            embedding_model=self.embeddings.model_id,
            dimension=self.vectors.dimension if dimension is None else dimension,
            workspace_fingerprint=workspace_fingerprint(self.context.workspace_root),
            generation=generation,
        )

    async def open(self) -> bool:
        """
        Restore persisted state.

        Returns:
            True if a full build is required before the index is usable
        """
        try:
            self.tree.load()
        except (CacheCorruption, SchemaMismatch) as e:
            handle_error(e, self.context.tree_cache_path, "open")
            self.tree.clear()
            return True

        try:
            stored = self.store.read_metadata()
        except CacheCorruption as e:
            handle_error(e, self.context.index_db_path, "open")
            self.store.close()
            db_path = self.context.index_db_path
            for path in (db_path, db_path.with_name(db_path.name + "-wal"), db_path.with_name(db_path.name + "-shm")):
                path.unlink(missing_ok=True)
            return True

        if stored is None:
            return True

        # The provider reports dimension 0 until a lazily loaded model has run
        active = self._active_metadata(stored.generation, self.embeddings.dimension)
        if not stored.compatible_with(active):
            error = SchemaMismatch(
                f"Index written by {stored.embedding_model} (schema {stored.schema_version}), "
                f"active {active.embedding_model} (schema {INDEX_SCHEMA_VERSION})"
            )
            handle_error(error, self.context.index_db_path, "open")
            if self.config.coordinator.model_change_policy == "rebuild":
                return True
            # Manual: keep lexical search on the stored chunks, semantic off until a full build
            self._semantic_enabled = False
            self._restore(stored, load_vectors=False)
            self._degrade("model", MODEL_CHANGED)
            return False

        self._restore(stored, load_vectors=True)
        return False

    def _restore(self, stored: IndexMetadata, load_vectors: bool):
        snapshot = self.tree.snapshot()
        chunks = self.store.load_chunks()
        # Never resurrect chunks of files the tree no longer knows
        self._chunks = {p: cs for p, cs in chunks.items() if p in snapshot}
        if load_vectors:
            vectors, degraded = self.store.load_vectors()
            live = {c.chunk_id for cs in self._chunks.values() for c in cs}
            self.vectors.load(
                {cid: v for cid, v in vectors.items() if cid in live},
                {cid: r for cid, r in degraded.items() if cid in live},
            )
        else:
            for cs in self._chunks.values():
                for c in cs:
                    self.vectors.mark_degraded(c.chunk_id, MODEL_CHANGED)

        self._generation_counter = stored.generation
        self._transition(IndexState.BUILDING)
        self._publish([])
        self._settle()
        logger.info(
            f"Restored generation {stored.generation}: {len(self.tree)} files, "
            f"{sum(len(cs) for cs in self._chunks.values())} chunks"
        )

    # ─────────────────────────────────────────────────────────────────────
    # Builds
    # ─────────────────────────────────────────────────────────────────────

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def build_index(self, mode: BuildMode = BuildMode.INCREMENTAL) -> IndexingStats:
        """
        Build or catch up the index.

        FULL discards every store and re-embeds everything; INCREMENTAL
        rescans the workspace and processes only differences. The build
        runs in its own task: cancelling the caller does not stop it.
        """
        return await asyncio.shield(self._spawn(self._build(mode)))

    async def _build(self, mode: BuildMode) -> IndexingStats:
        async with self._update_lock:
            start_time = time.monotonic()
            stats = IndexingStats()
            full = mode is BuildMode.FULL

            if self._state is IndexState.EMPTY:
                self._transition(IndexState.BUILDING)
            elif full:
                self._transition(IndexState.REBUILDING)
            else:
                self._transition(IndexState.UPDATING)

            logger.info(f"Starting {mode.value} build of {self.context.workspace_root}")

            try:
                if full:
                    self._reset()

                # PHASE 1: SCAN
                phase_start = time.monotonic()
                files = await self.scanner.scan()
                stats.files_scanned = len(files)
                logger.info(f"Phase 1/3: {len(files)} files scanned in {time.monotonic() - phase_start:.1f}s")

                # PHASE 2: FINGERPRINT (known size/mtime reuse the cached hash)
                phase_start = time.monotonic()
                records = await self.fingerprinter.fingerprint_files(files, self.tree.snapshot().records)
                changed, removed = self.tree.replace_all(records)
                snapshot = self.tree.snapshot()
                pending = set(changed) | set(removed)
                pending |= {p for p in snapshot.records if p not in self._chunks}
                pending |= {p for p in self._chunks if p not in snapshot}
                if self._semantic_enabled:
                    # Chunks the provider failed on get another attempt
                    degraded = self.vectors.degraded
                    pending |= {
                        path for path, chunks in self._chunks.items()
                        if path in snapshot
                        and any(degraded.get(c.chunk_id) == EMBEDDING_FAILED for c in chunks)
                    }
                logger.info(
                    f"Phase 2/3: {len(changed)} changed, {len(removed)} removed, "
                    f"{len(pending)} to process in {time.monotonic() - phase_start:.1f}s"
                )
                self._invalidate_tools(pending)

                # PHASE 3: CHUNK + EMBED
                phase_start = time.monotonic()
                await self._process_paths(sorted(pending), stats)
                logger.info(f"Phase 3/3: processed in {time.monotonic() - phase_start:.1f}s")

                self._check_provider()
                self._publish(sorted(pending))
                await self._persist_tree()
            except BaseException:
                self._settle()
                raise

            self._settle()
            stats.duration_seconds = time.monotonic() - start_time
            logger.info(f"Build complete: {stats}")
            return stats

    def _reset(self):
        self.store.reset()
        self.vectors.reset()
        self._chunks = {}
        self.tree.clear()
        self._semantic_enabled = True
        self._degraded_reasons.pop("model", None)
        self._invalidate_tools([""])

    # ─────────────────────────────────────────────────────────────────────
    # Incremental updates
    # ─────────────────────────────────────────────────────────────────────

    def submit(self, event: ChangeEvent):
        """Queue a change event for the background worker."""
        self._ensure_worker()
        self._queue.put_nowait(event)

    def _ensure_worker(self):
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run_worker())

    async def _run_worker(self):
        while True:
            batch = await self._debouncer.collect(self._queue)
            self._busy = True
            try:
                await self.apply_changes(batch)
            except PersistenceError as e:
                handle_error(e, self.context.cache_dir, "update")
            except Exception as e:
                logger.error(f"Update failed: {e}", exc_info=True)
            finally:
                self._busy = False

    async def apply_changes(self, events: Iterable[ChangeEvent]) -> IndexingStats:
        """Run one batch of change events through the pipeline and publish."""
        events = list(events)
        async with self._update_lock:
            start_time = time.monotonic()
            stats = IndexingStats()

            changed = await self.tree.apply_batch(events)
            touched = set(changed)
            for event in events:
                touched.add(event.path)
                if event.old_path:
                    touched.add(event.old_path)
            self._invalidate_tools(touched)
            for path in changed:
                if path in self.tree.snapshot():
                    self._recent.appendleft(path)

            if self._state is IndexState.EMPTY or not changed:
                # Nothing published yet, or a no-op replay: the tree is all there is to update
                return stats

            self._transition(IndexState.UPDATING)
            try:
                await self._process_paths(changed, stats)
                self._check_provider()
                self._publish(changed)
                await self._persist_tree()
            finally:
                self._settle()

            stats.duration_seconds = time.monotonic() - start_time
            logger.info(f"Incremental update: {stats}")
            return stats

    async def _process_paths(self, paths: List[str], stats: IndexingStats):
        results = await asyncio.gather(
            *(self._update_file(path, stats) for path in paths),
            return_exceptions=True,
        )
        fatal = None
        indexed: List[str] = []
        for path, result in zip(paths, results):
            if isinstance(result, PersistenceError):
                fatal = fatal or result
            elif isinstance(result, BaseException):
                stats.errors += 1
                handle_error(result, path, "update_file")
            elif result:
                indexed.append(path)
        self.tree.mark_indexed_many(indexed)
        if fatal is not None:
            raise fatal

    def _lock_for(self, path: str) -> asyncio.Lock:
        lock = self._path_locks.get(path)
        if lock is None:
            lock = self._path_locks[path] = asyncio.Lock()
        return lock

    async def _update_file(self, path: str, stats: IndexingStats) -> bool:
        """Bring one file's chunks up to date. Returns True if the file was indexed."""
        async with self._lock_for(path), self._file_slots:
            record = self.tree.get(path)
            old = self._chunks.get(path, [])

            if record is None:
                self._drop_file(path, old, stats)
                return False

            loop = asyncio.get_running_loop()
            try:
                data = await loop.run_in_executor(None, (self.context.workspace_root / path).read_bytes)
                if hash_bytes(data) != record.content_hash:
                    raise StaleWriteError(path)
            except (StaleWriteError, FileNotFoundError) as e:
                if handle_error(e, path, "update_file") in (ErrorAction.REQUEUE, ErrorAction.SKIP):
                    stats.requeued += 1
                    self.submit(ChangeEvent(ChangeType.MODIFIED, path))
                return False

            try:
                new = self.chunker.chunk_bytes(path, data)
            except UnicodeDecodeError as e:
                handle_error(e, path, "chunk")
                new = []
                stats.files_skipped += 1

            await self._replace_chunks(path, old, new, stats)
            stats.files_indexed += 1
            return True

    def _drop_file(self, path: str, old: List[Chunk], stats: IndexingStats):
        for chunk in old:
            self.vectors.remove(chunk.chunk_id)
        self._chunks.pop(path, None)
        self._path_locks.pop(path, None)
        self.store.remove_file(path)
        if old:
            stats.files_removed += 1
            stats.chunks_removed += len(old)

    async def _replace_chunks(self, path: str, old: List[Chunk], new: List[Chunk], stats: IndexingStats):
        diff = self.chunker.diff(old, new)

        # Unchanged content keeps its vector even if its byte range moved
        reuse: Dict[str, np.ndarray] = {}
        for chunk in old:
            vector = self.vectors.get(chunk.chunk_id)
            if vector is not None:
                reuse[chunk.content_hash] = vector

        dirty = [c for c in new if c.content_hash not in reuse]
        embedded: Dict[str, np.ndarray] = {}
        self._pending_dirty += len(dirty)
        try:
            if dirty and self._semantic_enabled:
                vectors = await self.embeddings.embed_texts([c.text for c in dirty])
                embedded = {c.content_hash: v for c, v in zip(dirty, vectors) if v is not None}
        finally:
            self._pending_dirty -= len(dirty)

        for chunk in old:
            self.vectors.remove(chunk.chunk_id)

        stored_vectors: Dict[str, np.ndarray] = {}
        degraded: Dict[str, str] = {}
        for chunk in new:
            vector = reuse.get(chunk.content_hash)
            if vector is None:
                vector = embedded.get(chunk.content_hash)
            if vector is not None and self.vectors.upsert(chunk.chunk_id, vector):
                stored_vectors[chunk.chunk_id] = vector
                continue
            if vector is None:
                reason = EMBEDDING_FAILED if self._semantic_enabled else MODEL_CHANGED
                self.vectors.mark_degraded(chunk.chunk_id, reason)
            else:
                # upsert() already marked it degraded
                reason = f"dimension {len(vector)} != {self.vectors.dimension}"
            degraded[chunk.chunk_id] = reason

        self._chunks[path] = new
        self.store.replace_file_chunks(path, new, stored_vectors, degraded, self.embeddings.model_id)

        stats.chunks_created += len(new)
        stats.chunks_reused += len(new) - len(dirty)
        stats.chunks_removed += len(diff.removed)
        stats.chunks_embedded += sum(1 for c in dirty if c.content_hash in embedded)
        stats.chunks_degraded += len(degraded)
        logger.debug(
            f"{path}: {len(diff.unchanged)} unchanged, {len(diff.added)} added, "
            f"{len(diff.removed)} removed, {len(dirty)} embedded"
        )

    async def _persist_tree(self):
        """Write the tree cache off the event loop (it fsyncs)."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self.tree.persist)

    def _invalidate_tools(self, paths: Iterable[str]):
        if self.tool_cache is None:
            return
        for path in paths:
            self.tool_cache.invalidate(path)

    def _check_provider(self):
        budget = self.config.coordinator.provider_failure_budget
        after_s = self.config.coordinator.degraded_after_s
        if self.embeddings.is_failing(budget, after_s):
            self._degrade("provider", f"embedding provider failing ({self.embeddings.failure_streak} batches)")
        elif self.embeddings.failure_streak == 0:
            self._recover("provider")

    def _on_observer_degraded(self, reason: str):
        self._degrade("observer", f"file watcher fell back to polling: {reason}")

    # ─────────────────────────────────────────────────────────────────────
    # Publishing
    # ─────────────────────────────────────────────────────────────────────

    def _publish(self, changed_paths: List[str]):
        """Freeze the working state into a new generation and swap it in."""
        snapshot = self.tree.snapshot()
        self._generation_counter += 1
        metadata = self._active_metadata(self._generation_counter)

        live = {p: cs for p, cs in self._chunks.items() if p in snapshot}
        chunks = {c.chunk_id: c for cs in live.values() for c in cs}
        by_path = {p: tuple(c.chunk_id for c in cs) for p, cs in live.items()}

        self._generation = IndexGeneration(
            metadata=metadata,
            tree=snapshot,
            chunks=MappingProxyType(chunks),
            by_path=MappingProxyType(by_path),
            vectors=self.vectors.publish(self._generation_counter),
        )
        if self._semantic_enabled:
            self.store.write_metadata(metadata)
        self.tree.metadata = {"generation": metadata.generation, "embedding_model": metadata.embedding_model}

        logger.info(f"Published generation {metadata.generation} ({len(chunks)} chunks)")
        self.notifier.publish(IndexUpdated(metadata.generation, tuple(changed_paths)))

    # ─────────────────────────────────────────────────────────────────────
    # Queries and status
    # ─────────────────────────────────────────────────────────────────────

    async def query(
        self,
        text: str,
        mode: QueryMode = QueryMode.HYBRID,
        top_k: Optional[int] = None,
        *,
        path_prefix: Optional[str] = None,
        regex: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> SearchResponse:
        generation = self._generation
        response = await self.retriever.query(
            text,
            generation,
            mode,
            top_k,
            tree=self.tree.snapshot(),
            semantic_available=self._semantic_enabled and self._state not in LEXICAL_ONLY_STATES,
            recent_paths=list(self._recent),
            path_prefix=path_prefix,
            regex=regex,
            cancel=cancel,
        )
        self.notifier.publish(QueryCompleted(response.query_id, len(response)))
        return response

    def index_status(self) -> IndexStatus:
        generation = self._generation
        return IndexStatus(
            generation=generation.generation if generation else 0,
            age_seconds=time.time() - generation.published_at if generation else None,
            pending_dirty_chunks=self._pending_dirty,
            pending_events=self._queue.qsize() + len(self._debouncer),
            degraded=bool(self._degraded_reasons) or self._state is IndexState.DEGRADED,
            state=self._state,
            degraded_reasons=tuple(sorted(self._degraded_reasons.values())),
            degraded_chunks=len(generation.vectors.degraded) if generation else 0,
            file_count=len(self.tree),
            chunk_count=len(generation.chunks) if generation else 0,
            embedding_model=self.embeddings.model_id,
            dimension=self.vectors.dimension or None,
        )

    async def wait_until_idle(self, timeout: float = 10.0):
        """Wait until every submitted event has been processed."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while (
            not self._queue.empty()
            or len(self._debouncer)
            or self._busy
            or self._update_lock.locked()
        ):
            if loop.time() > deadline:
                raise asyncio.TimeoutError(f"Index not idle after {timeout}s")
            await asyncio.sleep(0.01)

    # ─────────────────────────────────────────────────────────────────────
    # Watching and shutdown
    # ─────────────────────────────────────────────────────────────────────

    async def start_watching(self):
        """Start the file system observer feeding the update worker."""
        if self._observer is not None:
            return
        self._ensure_worker()
        self._observer = FileSystemObserver(
            self.context,
            emit=self.submit,
            is_ignored=self.is_ignored,
            on_degraded=self._on_observer_degraded,
        )
        await self._observer.start()
        logger.info(f"Started file watching ({self._observer.mode})")

    async def stop_watching(self):
        if self._observer is not None:
            await self._observer.stop()
            self._observer = None

    async def close(self):
        """Stop background work and persist the tree."""
        await self.stop_watching()
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        if self._state is not IndexState.EMPTY:
            try:
                await self._persist_tree()
            except PersistenceError as e:
                handle_error(e, self.context.tree_cache_path, "close")

        self.store.close()
        self.fingerprinter.close()
        await self.embeddings.close()
