"""
Configuration - One settings structure per component.

Every field has a default so ``EngineConfig()`` is usable as-is. Environment
variables (``CODEINDEX_*``) override defaults via ``EngineConfig.from_env()``.
Nothing here is global: the resolved config travels inside an
``EngineContext`` that is created once per process and handed to every
component.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional, Set


DEFAULT_CACHE_DIR_NAME = ".codeindex"


@dataclass
class ScanConfig:
    """What the scanner and default ignore decision skip."""

    skip_dirs: Set[str] = field(default_factory=lambda: {
        # Version control
        ".git", ".svn", ".hg",
        # Dependencies
        "node_modules", "__pycache__", ".venv", "venv", "env",
        ".mypy_cache", ".pytest_cache", ".tox",
        # Build outputs
        "build", "dist", "target", "out", ".next",
        # IDE/Editor
        ".idea", ".vscode",
        # Cache
        ".cache", ".npm", ".yarn",
    })

    skip_extensions: Set[str] = field(default_factory=lambda: {
        # Archives
        ".zip", ".tar", ".gz", ".rar", ".7z", ".whl",
        # Executables and objects
        ".exe", ".dll", ".so", ".dylib", ".o", ".a", ".pyc", ".class",
        # Media
        ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico", ".pdf",
        ".mp4", ".mov", ".mp3", ".wav",
        # Lock files
        ".lock", ".lockb",
    })

    max_file_bytes: int = 2 * 1024 * 1024   # Larger files are tracked but not chunked
    scanner_concurrency: int = 32           # Parallel stat operations
    hasher_concurrency: int = 8             # Parallel xxHash reads


@dataclass
class WatchConfig:
    debounce_ms: int = 800          # Quiet period that closes a batch
    max_batch_wait_ms: int = 5000   # Upper bound on how long a busy batch stays open
    poll_interval_s: float = 2.0    # Polling fallback scan interval
    use_polling: bool = False       # Skip watchdog entirely


# Per-tool TTLs; tools missing here use ToolCacheConfig.default_ttl_s
DEFAULT_TOOL_TTL_S: Dict[str, float] = {
    "read_file": 300.0,
    "grep_files": 10.0,
}


@dataclass
class ToolCacheConfig:
    enabled: bool = True
    max_bytes: int = 256 * 1024 * 1024
    default_ttl_s: float = 60.0
    tool_ttl_s: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_TOOL_TTL_S))
    persist: bool = True            # Back the memory cache with <cache_dir>/tool_results.sqlite

    def ttl_for(self, tool_name: str) -> float:
        """TTL for a tool, falling back to the default TTL."""
        return self.tool_ttl_s.get(tool_name, self.default_ttl_s)


@dataclass
class ChunkerConfig:
    max_chunk_bytes: int = 4000     # Roughly 1000 tokens
    max_chunk_lines: int = 120


@dataclass
class EmbeddingConfig:
    model: str = "all-MiniLM-L6-v2"
    batch_size: int = 32
    max_in_flight: int = 2          # Concurrent background batches
    max_retries: int = 3            # Retries after the first attempt
    backoff_base_s: float = 0.5
    backoff_max_s: float = 8.0
    deadline_s: float = 30.0        # Per provider call
    endpoint: Optional[str] = None  # Set to use the HTTP provider
    api_key: Optional[str] = None


@dataclass
class RetrieverConfig:
    alpha: float = 0.65             # Semantic weight
    beta: float = 0.30              # Lexical weight
    gamma: float = 0.05             # Priors weight
    top_k: int = 8
    mmr_lambda: float = 0.7         # 1.0 = pure relevance, 0.0 = pure diversity
    candidate_multiplier: int = 4   # Candidates pulled per signal = top_k * multiplier
    recency_half_life_s: float = 86400.0
    max_snippet_chars: int = 12000


@dataclass
class CoordinatorConfig:
    max_parallel_files: int = 8
    provider_failure_budget: int = 5    # Consecutive failed batches before the clock starts
    degraded_after_s: float = 60.0      # Sustained failure period before DEGRADED
    model_change_policy: str = "rebuild"  # "rebuild" or "manual"
    recent_paths: int = 32              # Recently touched files kept for proximity priors

    def __post_init__(self):
        if self.model_change_policy not in {"rebuild", "manual"}:
            raise ValueError(
                f"model_change_policy must be 'rebuild' or 'manual', got {self.model_change_policy!r}"
            )


@dataclass
class EngineConfig:
    """Aggregate of every component's configuration."""

    scan: ScanConfig = field(default_factory=ScanConfig)
    watch: WatchConfig = field(default_factory=WatchConfig)
    tool_cache: ToolCacheConfig = field(default_factory=ToolCacheConfig)
    chunker: ChunkerConfig = field(default_factory=ChunkerConfig)
    embedding: EmbeddingConfig = field(default_factory=EmbeddingConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)

    @classmethod
    def from_env(cls) -> "EngineConfig":
        """
        Create config from environment variables.

        Supported env vars:
            CODEINDEX_EMBEDDING_MODEL: Embedding model identifier
            CODEINDEX_EMBEDDING_ENDPOINT: Base URL of an /embeddings HTTP API
            CODEINDEX_EMBEDDING_API_KEY: Bearer token for the HTTP API
            CODEINDEX_CACHE_MAX_BYTES: ToolResultCache byte budget
            CODEINDEX_TOOL_CACHE_PERSIST: "0" keeps tool results in memory only
            CODEINDEX_DEBOUNCE_MS: Change-event debounce window
            CODEINDEX_TOP_K: Default number of query results
            CODEINDEX_MODEL_CHANGE_POLICY: "rebuild" or "manual"
        """
        config = cls()

        if model := os.environ.get("CODEINDEX_EMBEDDING_MODEL"):
            config.embedding.model = model

        if endpoint := os.environ.get("CODEINDEX_EMBEDDING_ENDPOINT"):
            config.embedding.endpoint = endpoint

        if api_key := os.environ.get("CODEINDEX_EMBEDDING_API_KEY"):
            config.embedding.api_key = api_key

        if max_bytes := os.environ.get("CODEINDEX_CACHE_MAX_BYTES"):
            config.tool_cache.max_bytes = int(max_bytes)

        if (persist := os.environ.get("CODEINDEX_TOOL_CACHE_PERSIST")) is not None:
            config.tool_cache.persist = persist.lower() not in {"0", "false", "no"}

        if debounce := os.environ.get("CODEINDEX_DEBOUNCE_MS"):
            config.watch.debounce_ms = int(debounce)

        if top_k := os.environ.get("CODEINDEX_TOP_K"):
            config.retriever.top_k = int(top_k)

        if policy := os.environ.get("CODEINDEX_MODEL_CHANGE_POLICY"):
            config.coordinator.model_change_policy = policy
            config.coordinator.__post_init__()

        return config


@dataclass
class EngineContext:
    """
    Process-scoped context handed to every component.

    Created once with the workspace root and cache directory; the cache
    directory defaults to ``<workspace>/.codeindex``.
    """

    workspace_root: Path
    cache_dir: Optional[Path] = None
    config: EngineConfig = field(default_factory=EngineConfig)

    def __post_init__(self):
        """Ensure all paths are absolute and the cache directory exists."""
        self.workspace_root = Path(self.workspace_root).expanduser().resolve()
        if self.cache_dir is None:
            self.cache_dir = self.workspace_root / DEFAULT_CACHE_DIR_NAME
        self.cache_dir = Path(self.cache_dir).expanduser().resolve()
        self.cache_dir.mkdir(parents=True, exist_ok=True)

    @property
    def tree_cache_path(self) -> Path:
        return self.cache_dir / "tree.cache"

    @property
    def index_db_path(self) -> Path:
        return self.cache_dir / "index.sqlite"

    @property
    def tool_cache_db_path(self) -> Path:
        return self.cache_dir / "tool_results.sqlite"

    def relative_cache_dir(self) -> Optional[str]:
        """Cache dir as a workspace-relative POSIX path, if it lives inside the workspace."""
        try:
            return self.cache_dir.relative_to(self.workspace_root).as_posix()
        except ValueError:
            return None
