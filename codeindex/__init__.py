"""
codeindex - Hybrid lexical + semantic retrieval over a code workspace.

Modules:
    - config: Per-component configuration and the process EngineContext
    - hasher: xxHash content fingerprints
    - scanner: Workspace traversal and the default ignore decision
    - watcher: watchdog change events, polling fallback, debouncing
    - tree_cache: Authoritative path → FileRecord map with atomic persistence
    - tool_cache: Memoized tool results (TTL, LRU byte budget, single-flight)
    - tools: Cacheable read_file / list_dir / grep_files
    - chunker: Content-addressed chunks at natural boundaries
    - embedder: Embedding providers and the retrying batch service
    - vector_store: Generation-versioned exact cosine search
    - store: SQLite chunk and vector persistence
    - retriever: Lexical + semantic + priors fusion with MMR
    - coordinator: Index state machine and incremental updates
    - engine: RetrievalEngine facade and CLI

Update Flow:
    Watch → TreeCache → Chunk diff → Embed (dirty only) → Publish generation

Usage:
    from codeindex import RetrievalEngine

    engine = await RetrievalEngine.open("~/project")
    await engine.build_index()
    response = await engine.query("parse json")
"""

from .config import EngineConfig, EngineContext
from .engine import RetrievalEngine
from .models import BuildMode, ChangeEvent, ChangeType, IndexState, QueryMode

__all__ = [
    "BuildMode",
    "ChangeEvent",
    "ChangeType",
    "EngineConfig",
    "EngineContext",
    "IndexState",
    "QueryMode",
    "RetrievalEngine",
]
