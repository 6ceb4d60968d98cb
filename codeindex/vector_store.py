"""
Vector Store - Generation-versioned exact cosine search.

Writers stage upserts and removals against a working map; publish() freezes
the map into an immutable VectorGeneration holding a row-normalized numpy
matrix. Readers query whichever generation they obtained and never see a
half-applied update.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Tuple

import numpy as np


logger = logging.getLogger(__name__)


def normalize(vector: np.ndarray) -> np.ndarray:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector
    return vector / norm


@dataclass(frozen=True)
class VectorGeneration:
    """Immutable search structure for one published generation."""
    generation: int
    dimension: int
    ids: Tuple[str, ...]                 # Sorted ascending
    matrix: np.ndarray = field(repr=False)  # (len(ids), dimension), rows unit-length
    degraded: Mapping[str, str] = field(default_factory=dict)
    rows: Mapping[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self):
        if len(self.rows) != len(self.ids):
            object.__setattr__(self, "rows", {cid: i for i, cid in enumerate(self.ids)})

    def __len__(self) -> int:
        return len(self.ids)

    def __contains__(self, chunk_id: str) -> bool:
        return self._row(chunk_id) is not None

    def _row(self, chunk_id: str) -> Optional[int]:
        return self.rows.get(chunk_id)

    def vector(self, chunk_id: str) -> Optional[np.ndarray]:
        row = self._row(chunk_id)
        return None if row is None else self.matrix[row]

    def similarity(self, a: str, b: str) -> Optional[float]:
        """Cosine similarity of two stored chunks, None if either is missing."""
        va, vb = self.vector(a), self.vector(b)
        if va is None or vb is None:
            return None
        return float(np.dot(va, vb))

    def query(self, vector: np.ndarray, k: int, allowed: Optional[set] = None) -> List[Tuple[str, float]]:
        """
        Exact k nearest neighbours by cosine similarity.

        Ties are broken by ascending chunk id.

        Args:
            vector: Query vector of this generation's dimension
            k: Number of results
            allowed: Optional subset of chunk ids to consider
        """
        if k <= 0 or not self.ids:
            return []
        query = np.asarray(vector, dtype=np.float32).reshape(-1)
        if query.shape[0] != self.dimension:
            raise ValueError(f"Query dimension {query.shape[0]} != index dimension {self.dimension}")

        scores = self.matrix @ normalize(query)
        rows = np.arange(len(self.ids))
        if allowed is not None:
            rows = np.array([i for i, cid in enumerate(self.ids) if cid in allowed], dtype=np.int64)
            if rows.size == 0:
                return []

        # ids are sorted, so row index order equals chunk id order
        order = np.lexsort((rows, -scores[rows]))
        return [(self.ids[rows[i]], float(scores[rows[i]])) for i in order[:k]]


EMPTY_GENERATION = VectorGeneration(
    generation=0, dimension=0, ids=(), matrix=np.zeros((0, 0), dtype=np.float32)
)


class VectorStore:
    """
    Mutable staging area plus the latest published generation.

    Usage:
        store.upsert("abc", vector)
        store.remove("def")
        generation = store.publish(generation=7)
    """

    def __init__(self, dimension: int = 0):
        self.dimension = dimension
        self._vectors: Dict[str, np.ndarray] = {}
        self._degraded: Dict[str, str] = {}
        self._current = EMPTY_GENERATION

    def __len__(self) -> int:
        return len(self._vectors)

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self._vectors

    @property
    def current(self) -> VectorGeneration:
        return self._current

    @property
    def degraded(self) -> Mapping[str, str]:
        return dict(self._degraded)

    def get(self, chunk_id: str) -> Optional[np.ndarray]:
        return self._vectors.get(chunk_id)

    def upsert(self, chunk_id: str, vector: np.ndarray) -> bool:
        """
        Stage a vector. A vector of the wrong dimension degrades the chunk instead.

        Returns:
            True if the vector was staged
        """
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if self.dimension == 0:
            self.dimension = vector.shape[0]
        if vector.shape[0] != self.dimension:
            self.mark_degraded(chunk_id, f"dimension {vector.shape[0]} != {self.dimension}")
            return False
        self._vectors[chunk_id] = normalize(vector)
        self._degraded.pop(chunk_id, None)
        return True

    def remove(self, chunk_id: str):
        self._vectors.pop(chunk_id, None)
        self._degraded.pop(chunk_id, None)

    def mark_degraded(self, chunk_id: str, reason: str):
        """Exclude a chunk from semantic search until it is embedded successfully."""
        self._vectors.pop(chunk_id, None)
        self._degraded[chunk_id] = reason
        logger.debug(f"Chunk {chunk_id[:12]} degraded: {reason}")

    def reset(self, dimension: int = 0):
        self.dimension = dimension
        self._vectors.clear()
        self._degraded.clear()

    def publish(self, generation: int) -> VectorGeneration:
        """Freeze the staged state into a new immutable generation."""
        ids = tuple(sorted(self._vectors))
        if ids:
            matrix = np.vstack([self._vectors[i] for i in ids]).astype(np.float32)
        else:
            matrix = np.zeros((0, self.dimension), dtype=np.float32)
        matrix.setflags(write=False)
        self._current = VectorGeneration(
            generation=generation,
            dimension=self.dimension,
            ids=ids,
            matrix=matrix,
            degraded=dict(self._degraded),
        )
        return self._current

    def load(self, vectors: Mapping[str, np.ndarray], degraded: Optional[Mapping[str, str]] = None):
        """Bulk-stage vectors restored from persistent storage."""
        for chunk_id, vector in vectors.items():
            self.upsert(chunk_id, vector)
        for chunk_id, reason in (degraded or {}).items():
            self.mark_degraded(chunk_id, reason)
