"""
Data Models - Type definitions shared across the engine.

These dataclasses represent the data flowing between the tree cache,
chunker, vector store, retriever and coordinator. Records that are shared
with concurrent readers are frozen so a published generation can never be
mutated in place.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, FrozenSet, Mapping, Optional, Tuple, Union


class ChangeType(Enum):
    """Type of file system change."""
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


@dataclass(frozen=True)
class ChangeEvent:
    """A file system change, paths relative to the workspace root (POSIX)."""
    kind: ChangeType
    path: str
    old_path: Optional[str] = None  # For RENAMED events
    timestamp: float = field(default_factory=time.monotonic, compare=False)


@dataclass(frozen=True)
class FileInfo:
    """
    Basic file information from the scanner.

    This is the lightest-weight representation, containing only what we
    get from stat() without reading file content.
    """
    path: str           # Workspace-relative POSIX path
    size: int
    mtime: float

    @property
    def name(self) -> str:
        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class FileRecord:
    """One TreeCache entry per live path."""
    path: str
    size: int
    mtime: float
    content_hash: str
    ignored: bool = False
    last_indexed: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "size": self.size,
            "mtime": self.mtime,
            "content_hash": self.content_hash,
            "ignored": self.ignored,
            "last_indexed": self.last_indexed,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FileRecord":
        return cls(
            path=data["path"],
            size=int(data["size"]),
            mtime=float(data["mtime"]),
            content_hash=data["content_hash"],
            ignored=bool(data.get("ignored", False)),
            last_indexed=data.get("last_indexed"),
        )

    def same_content(self, other: Optional["FileRecord"]) -> bool:
        return other is not None and other.content_hash == self.content_hash


@dataclass(frozen=True)
class TreeSnapshot:
    """Immutable path -> FileRecord view at one revision."""
    revision: int
    records: Mapping[str, FileRecord]
    captured_at: float = field(default_factory=time.time, compare=False)

    def __contains__(self, path: str) -> bool:
        return path in self.records

    def __len__(self) -> int:
        return len(self.records)

    def get(self, path: str) -> Optional[FileRecord]:
        return self.records.get(path)


@dataclass(frozen=True)
class Chunk:
    """
    A content-addressed slice of a file.

    The identifier hashes (path, byte range, content hash), so an edit that
    doesn't touch the range leaves it unchanged.
    """
    chunk_id: str
    path: str
    start_byte: int
    end_byte: int
    start_line: int     # 1-based, inclusive
    end_line: int       # 1-based, inclusive
    content_hash: str
    symbols: Tuple[str, ...] = ()
    text: str = field(default="", repr=False, compare=False)

    @property
    def directory(self) -> str:
        return self.path.rsplit("/", 1)[0] if "/" in self.path else ""


@dataclass(frozen=True)
class ChunkDiff:
    """Partition of a file's chunks by content hash."""
    unchanged: Tuple[Chunk, ...]    # New chunks whose content was already embedded
    added: Tuple[Chunk, ...]        # New content: must be embedded
    removed: Tuple[Chunk, ...]      # Old chunks whose content is gone

    @property
    def dirty_count(self) -> int:
        return len(self.added)


@dataclass
class CacheEntry:
    """One ToolResultCache value. Recency is the entry's position in the LRU order."""
    key: str
    value: Any
    size_bytes: int
    created_at: float
    ttl: float
    dependencies: FrozenSet[str] = frozenset()

    def is_expired(self, now: float) -> bool:
        if self.ttl <= 0:
            return True
        return now - self.created_at > self.ttl


@dataclass(frozen=True)
class CacheLookup:
    """Result of ToolResultCache.lookup()."""
    hit: bool
    value: Any = None
    owner: bool = False     # Caller installed the in-flight marker and must store or abandon


@dataclass(frozen=True)
class ToolCacheStatus:
    enabled: bool
    entries: int
    total_bytes: int
    max_bytes: int
    in_flight: int
    hits: int
    misses: int
    stores: int
    evictions: int
    hit_rate: Optional[float] = None    # hits / lookups, None before the first lookup
    persisted_entries: int = 0
    persisted_bytes: int = 0


@dataclass(frozen=True)
class IndexMetadata:
    """Stamp written into every persisted store."""
    schema_version: int
    embedding_model: str
    dimension: int
    workspace_fingerprint: str
    generation: int = 0

    def to_dict(self) -> dict:
        return {
            "schema_version": self.schema_version,
            "embedding_model": self.embedding_model,
            "dimension": self.dimension,
            "workspace_fingerprint": self.workspace_fingerprint,
            "generation": self.generation,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "IndexMetadata":
        return cls(
            schema_version=int(data["schema_version"]),
            embedding_model=str(data["embedding_model"]),
            dimension=int(data["dimension"]),
            workspace_fingerprint=str(data["workspace_fingerprint"]),
            generation=int(data.get("generation", 0)),
        )

    def compatible_with(self, other: "IndexMetadata") -> bool:
        """Same schema and model; dimension 0 means 'not yet known'."""
        if self.schema_version != other.schema_version:
            return False
        if self.embedding_model != other.embedding_model:
            return False
        return 0 in (self.dimension, other.dimension) or self.dimension == other.dimension


class IndexState(Enum):
    EMPTY = "empty"
    BUILDING = "building"
    READY = "ready"
    UPDATING = "updating"
    DEGRADED = "degraded"
    REBUILDING = "rebuilding"


class BuildMode(Enum):
    FULL = "full"
    INCREMENTAL = "incremental"


class QueryMode(Enum):
    LEXICAL = "lexical"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class IndexStatus:
    generation: int
    age_seconds: Optional[float]    # Since the last publish, None before the first
    pending_dirty_chunks: int
    pending_events: int
    degraded: bool
    state: IndexState
    degraded_reasons: Tuple[str, ...] = ()
    degraded_chunks: int = 0
    file_count: int = 0
    chunk_count: int = 0
    embedding_model: Optional[str] = None
    dimension: Optional[int] = None


@dataclass(frozen=True)
class SignalBreakdown:
    """Why a result was ranked where it was."""
    semantic: float = 0.0
    lexical: float = 0.0
    priors: float = 0.0
    recency: float = 0.0
    proximity: float = 0.0
    symbol: float = 0.0
    fused: float = 0.0
    mmr_penalty: float = 0.0


@dataclass(frozen=True)
class SearchResult:
    chunk: Chunk
    score: float
    signals: SignalBreakdown
    reasons: Tuple[str, ...]    # Signals that contributed: "semantic", "lexical", "recency", ...

    @property
    def path(self) -> str:
        return self.chunk.path

    def to_dict(self, max_chars: Optional[int] = None) -> dict:
        text = self.chunk.text
        if max_chars is not None and len(text) > max_chars:
            text = text[:max_chars]
        return {
            "chunk_id": self.chunk.chunk_id,
            "path": self.chunk.path,
            "start_line": self.chunk.start_line,
            "end_line": self.chunk.end_line,
            "score": round(self.score, 4),
            "reasons": list(self.reasons),
            "signals": {
                "semantic": round(self.signals.semantic, 4),
                "lexical": round(self.signals.lexical, 4),
                "priors": round(self.signals.priors, 4),
                "mmr_penalty": round(self.signals.mmr_penalty, 4),
            },
            "snippet": text,
        }


@dataclass(frozen=True)
class SearchResponse:
    query_id: str
    query: str
    mode: QueryMode             # Mode actually used (may be LEXICAL when degraded)
    generation: int
    results: Tuple[SearchResult, ...]
    degraded: bool = False

    def __len__(self) -> int:
        return len(self.results)


@dataclass
class IndexingStats:
    """Statistics from an indexing run."""
    files_scanned: int = 0
    files_indexed: int = 0
    files_removed: int = 0
    files_skipped: int = 0
    chunks_created: int = 0
    chunks_reused: int = 0
    chunks_removed: int = 0
    chunks_embedded: int = 0
    chunks_degraded: int = 0
    requeued: int = 0
    errors: int = 0
    duration_seconds: float = 0.0

    def __str__(self) -> str:
        return (
            f"Indexed {self.files_indexed} files "
            f"({self.chunks_embedded} chunks embedded, "
            f"{self.chunks_reused} reused, "
            f"{self.chunks_removed} removed, "
            f"{self.chunks_degraded} degraded, "
            f"{self.files_removed} files removed, "
            f"{self.errors} errors) "
            f"in {self.duration_seconds:.1f}s"
        )


@dataclass(frozen=True)
class IndexUpdated:
    """Lifecycle notification: a new generation was published."""
    generation: int
    changed_paths: Tuple[str, ...] = ()


@dataclass(frozen=True)
class QueryCompleted:
    """Lifecycle notification: a query finished."""
    query_id: str
    result_count: int


LifecycleEvent = Union[IndexUpdated, QueryCompleted]
