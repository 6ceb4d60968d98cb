"""
Retriever - Hybrid lexical + semantic search over one index generation.

Pipeline per query:
1. Candidates: chunks of the generation that pass the ignore decision and
   path filter (or chunks cut on the fly from the tree when nothing has
   been published yet)
2. Lexical: phrase and term density (or regex matches), max-scaled to [0, 1]
3. Semantic: query embedding through the priority lane, cosine top-K
4. Priors: recency, directory proximity to recently touched files, symbol match
5. Fusion: alpha*semantic + beta*lexical + gamma*priors
6. MMR re-rank for diversity; every tie goes to the smaller chunk id

The caller's cancel event is checked between stages and MMR steps.
"""

import asyncio
import logging
import math
import re
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .chunker import Chunker
from .config import RetrieverConfig
from .embedder import EmbeddingService
from .errors import ProviderError, QueryCancelled, handle_error
from .models import (
    Chunk, IndexMetadata, QueryMode, SearchResponse, SearchResult,
    SignalBreakdown, TreeSnapshot,
)
from .scanner import IgnoreDecision
from .vector_store import VectorGeneration


logger = logging.getLogger(__name__)

TERM = re.compile(r"[A-Za-z0-9_]+")
PHRASE_WEIGHT = 2.0
SAME_FILE_SIMILARITY = 0.6
RECENCY_REASON_THRESHOLD = 0.5


@dataclass(frozen=True)
class IndexGeneration:
    """Everything a query reads, published together by one reference swap."""
    metadata: IndexMetadata
    tree: TreeSnapshot
    chunks: Mapping[str, Chunk]                 # chunk_id -> Chunk
    by_path: Mapping[str, Tuple[str, ...]]      # path -> chunk ids in file order
    vectors: VectorGeneration
    published_at: float = field(default_factory=time.time)

    @property
    def generation(self) -> int:
        return self.metadata.generation

    def chunks_for(self, path: str) -> List[Chunk]:
        return [self.chunks[cid] for cid in self.by_path.get(path, ())]


@dataclass
class _Candidate:
    chunk: Chunk
    lexical: float = 0.0
    semantic: float = 0.0
    recency: float = 0.0
    proximity: float = 0.0
    symbol: float = 0.0
    fused: float = 0.0

    @property
    def priors(self) -> float:
        return (self.recency + self.proximity + self.symbol) / 3.0


def query_terms(text: str) -> List[str]:
    """Lowercased distinct terms in query order."""
    return list(dict.fromkeys(t.lower() for t in TERM.findall(text)))


def lexical_density(text: str, phrase: str, terms: Sequence[str], pattern: Optional["re.Pattern[str]"] = None) -> float:
    """
    Weighted hits per sqrt(line count).

    A literal phrase hit counts PHRASE_WEIGHT, each term hit counts 1.
    With a pattern, every regex match counts 1.
    """
    lines = max(1, text.count("\n") + (0 if text.endswith("\n") else 1))
    if pattern is not None:
        hits = float(sum(1 for _ in pattern.finditer(text)))
    else:
        lowered = text.lower()
        hits = sum(lowered.count(term) for term in terms)
        if phrase and len(terms) > 1:
            hits += PHRASE_WEIGHT * lowered.count(phrase)
    return hits / math.sqrt(lines)


class HybridRetriever:
    """
    Ranks chunks for a query.

    Holds no index state of its own: every query is answered from the
    IndexGeneration passed in, so concurrent publishes cannot mix
    generations within one query.
    """

    def __init__(
        self,
        config: RetrieverConfig,
        chunker: Chunker,
        embeddings: Optional[EmbeddingService],
        workspace_root: Path,
        is_ignored: IgnoreDecision,
    ):
        self.config = config
        self.chunker = chunker
        self.embeddings = embeddings
        self.workspace_root = workspace_root
        self.is_ignored = is_ignored

    async def query(
        self,
        text: str,
        generation: Optional[IndexGeneration],
        mode: QueryMode = QueryMode.HYBRID,
        top_k: Optional[int] = None,
        *,
        tree: Optional[TreeSnapshot] = None,
        semantic_available: bool = True,
        recent_paths: Sequence[str] = (),
        path_prefix: Optional[str] = None,
        regex: bool = False,
        cancel: Optional[asyncio.Event] = None,
    ) -> SearchResponse:
        """
        Run one query.

        Args:
            text: Query text (or a regular expression when regex=True)
            generation: Published generation to read, None before the first publish
            mode: LEXICAL, SEMANTIC or HYBRID
            top_k: Number of results (default from config)
            tree: Tree snapshot for on-the-fly chunking when generation is None
            semantic_available: False while the index is building or degraded
            recent_paths: Recently touched files, most recent first
            path_prefix: Restrict results to paths under this prefix
            regex: Treat text as a regular expression for lexical matching
            cancel: Set by the caller to abandon the query

        Raises:
            QueryCancelled: cancel was set before the query finished
        """
        top_k = self.config.top_k if top_k is None else top_k
        query_id = uuid.uuid4().hex[:12]
        start = time.monotonic()

        degraded = generation is None or not semantic_available
        effective = QueryMode.LEXICAL if degraded else mode

        self._check(cancel)
        chunks = await self._candidates(generation, tree, path_prefix)
        self._check(cancel)

        candidates: Dict[str, _Candidate] = {}
        pool_size = max(top_k, top_k * self.config.candidate_multiplier)

        lexical: Dict[str, float] = {}
        if effective is not QueryMode.SEMANTIC:
            lexical = self._lexical(text, chunks, regex)
            self._admit_lexical(candidates, chunks, lexical, pool_size)
        self._check(cancel)

        if effective is not QueryMode.LEXICAL:
            semantic = await self._semantic(text, generation, chunks, pool_size)
            if semantic is None:
                degraded = True
                if effective is QueryMode.SEMANTIC:
                    lexical = self._lexical(text, chunks, regex)
                    self._admit_lexical(candidates, chunks, lexical, pool_size)
                effective = QueryMode.LEXICAL
            else:
                for chunk_id, score in semantic:
                    candidate = candidates.get(chunk_id)
                    if candidate is None and score <= 0:
                        continue
                    if candidate is None:
                        # Lexical scores of semantic-only candidates still count in fusion
                        candidate = _Candidate(chunk=chunks[chunk_id], lexical=lexical.get(chunk_id, 0.0))
                        candidates[chunk_id] = candidate
                    candidate.semantic = score
        self._check(cancel)

        self._apply_priors(candidates.values(), text, generation, tree, recent_paths)
        for candidate in candidates.values():
            candidate.fused = self._fuse(candidate, effective)

        vectors = generation.vectors if generation is not None else None
        ranked = self._mmr(list(candidates.values()), top_k, vectors, cancel)

        results = tuple(self._result(candidate, penalty) for candidate, penalty in ranked)
        logger.debug(
            f"Query {query_id} ({effective.value}) returned {len(results)} results "
            f"from {len(candidates)} candidates in {time.monotonic() - start:.3f}s"
        )
        return SearchResponse(
            query_id=query_id,
            query=text,
            mode=effective,
            generation=generation.generation if generation is not None else 0,
            results=results,
            degraded=degraded,
        )

    @staticmethod
    def _check(cancel: Optional[asyncio.Event]):
        if cancel is not None and cancel.is_set():
            raise QueryCancelled("Query cancelled by caller")

    def _admitted(self, path: str, path_prefix: Optional[str]) -> bool:
        if self.is_ignored(path):
            return False
        if path_prefix:
            prefix = path_prefix.strip("/")
            return path == prefix or path.startswith(prefix + "/")
        return True

    async def _candidates(
        self,
        generation: Optional[IndexGeneration],
        tree: Optional[TreeSnapshot],
        path_prefix: Optional[str],
    ) -> Dict[str, Chunk]:
        if generation is not None:
            return {
                cid: chunk for cid, chunk in generation.chunks.items()
                if self._admitted(chunk.path, path_prefix)
            }
        if tree is None:
            return {}

        paths = sorted(p for p in tree.records if self._admitted(p, path_prefix))
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._chunk_paths, paths)

    def _chunk_paths(self, paths: Iterable[str]) -> Dict[str, Chunk]:
        """Chunk files straight from disk (no published generation yet)."""
        chunks: Dict[str, Chunk] = {}
        for path in paths:
            try:
                data = (self.workspace_root / path).read_bytes()
                for chunk in self.chunker.chunk_bytes(path, data):
                    chunks[chunk.chunk_id] = chunk
            except (OSError, UnicodeDecodeError) as e:
                handle_error(e, path, "lexical fallback")
        return chunks

    @staticmethod
    def _admit_lexical(
        candidates: Dict[str, _Candidate],
        chunks: Mapping[str, Chunk],
        lexical: Mapping[str, float],
        limit: int,
    ):
        best = sorted(lexical.items(), key=lambda kv: (-kv[1], kv[0]))[:limit]
        for chunk_id, score in best:
            candidates[chunk_id] = _Candidate(chunk=chunks[chunk_id], lexical=score)

    def _lexical(self, text: str, chunks: Mapping[str, Chunk], regex: bool) -> Dict[str, float]:
        """Max-scaled lexical score for every chunk with at least one hit."""
        pattern = None
        if regex:
            try:
                pattern = re.compile(text, re.IGNORECASE | re.MULTILINE)
            except re.error as e:
                logger.warning(f"Invalid regex {text!r}, falling back to literal search: {e}")
        phrase = " ".join(text.lower().split())
        terms = query_terms(text)
        if pattern is None and not terms:
            return {}

        densities = {}
        for chunk_id, chunk in chunks.items():
            density = lexical_density(chunk.text, phrase, terms, pattern)
            if density > 0:
                densities[chunk_id] = density
        if not densities:
            return {}
        top = max(densities.values())
        return {cid: d / top for cid, d in densities.items()}

    async def _semantic(
        self,
        text: str,
        generation: Optional[IndexGeneration],
        chunks: Mapping[str, Chunk],
        k: int,
    ) -> Optional[List[Tuple[str, float]]]:
        """Cosine hits clipped to [0, 1], or None when semantic search is unavailable."""
        if self.embeddings is None or generation is None or not len(generation.vectors):
            return None
        try:
            vector = await self.embeddings.embed_query(text)
            hits = generation.vectors.query(
                vector, k, allowed=set(chunks) if len(chunks) != len(generation.chunks) else None
            )
        except ProviderError as e:
            handle_error(e, None, "query embedding")
            return None
        except ValueError as e:
            logger.warning(f"Semantic search unavailable: {e}")
            return None
        return [(cid, max(0.0, score)) for cid, score in hits if cid in chunks]

    def _apply_priors(
        self,
        candidates: Iterable[_Candidate],
        text: str,
        generation: Optional[IndexGeneration],
        tree: Optional[TreeSnapshot],
        recent_paths: Sequence[str],
    ):
        snapshot = generation.tree if generation is not None else tree
        # Ages are measured from when the searched state was captured
        if generation is not None:
            now = generation.published_at
        else:
            now = snapshot.captured_at if snapshot is not None else 0.0
        half_life = self.config.recency_half_life_s
        recent_dirs = {p.rsplit("/", 1)[0] if "/" in p else "" for p in recent_paths}
        terms = set(query_terms(text))

        for candidate in candidates:
            chunk = candidate.chunk
            record = snapshot.get(chunk.path) if snapshot is not None else None
            if record is not None and half_life > 0:
                age = max(0.0, now - record.mtime)
                candidate.recency = math.exp(-math.log(2) * age / half_life)
            candidate.proximity = directory_proximity(chunk.directory, recent_dirs)
            if terms and any(symbol.lower() in terms for symbol in chunk.symbols):
                candidate.symbol = 1.0

    def _fuse(self, candidate: _Candidate, mode: QueryMode) -> float:
        alpha, beta, gamma = self.config.alpha, self.config.beta, self.config.gamma
        if mode is QueryMode.LEXICAL:
            total = beta + gamma
            return (beta * candidate.lexical + gamma * candidate.priors) / total if total else candidate.lexical
        if mode is QueryMode.SEMANTIC:
            total = alpha + gamma
            return (alpha * candidate.semantic + gamma * candidate.priors) / total if total else candidate.semantic
        return alpha * candidate.semantic + beta * candidate.lexical + gamma * candidate.priors

    def _similarity(self, a: Chunk, b: Chunk, vectors: Optional[VectorGeneration]) -> float:
        if a.content_hash == b.content_hash:
            return 1.0
        similarity = SAME_FILE_SIMILARITY if a.path == b.path else 0.0
        if vectors is not None:
            cosine = vectors.similarity(a.chunk_id, b.chunk_id)
            if cosine is not None:
                similarity = max(similarity, cosine)
        return similarity

    def _mmr(
        self,
        candidates: List[_Candidate],
        top_k: int,
        vectors: Optional[VectorGeneration],
        cancel: Optional[asyncio.Event],
    ) -> List[Tuple[_Candidate, float]]:
        """Maximal marginal relevance selection. Returns (candidate, penalty) in rank order."""
        lam = self.config.mmr_lambda
        remaining = sorted(candidates, key=lambda c: (-c.fused, c.chunk.chunk_id))
        max_sim = {c.chunk.chunk_id: 0.0 for c in remaining}
        selected: List[Tuple[_Candidate, float]] = []

        while remaining and len(selected) < top_k:
            self._check(cancel)
            best_index = 0
            best_value = -math.inf
            for i, candidate in enumerate(remaining):
                value = lam * candidate.fused - (1 - lam) * max_sim[candidate.chunk.chunk_id]
                if value > best_value or (
                    value == best_value
                    and candidate.chunk.chunk_id < remaining[best_index].chunk.chunk_id
                ):
                    best_index, best_value = i, value

            chosen = remaining.pop(best_index)
            selected.append((chosen, max_sim[chosen.chunk.chunk_id]))
            for candidate in remaining:
                sim = self._similarity(candidate.chunk, chosen.chunk, vectors)
                if sim > max_sim[candidate.chunk.chunk_id]:
                    max_sim[candidate.chunk.chunk_id] = sim
        return selected

    def _result(self, candidate: _Candidate, penalty: float) -> SearchResult:
        reasons = []
        if candidate.semantic > 0:
            reasons.append("semantic")
        if candidate.lexical > 0:
            reasons.append("lexical")
        if candidate.recency >= RECENCY_REASON_THRESHOLD:
            reasons.append("recency")
        if candidate.proximity > 0:
            reasons.append("proximity")
        if candidate.symbol > 0:
            reasons.append("symbol")
        return SearchResult(
            chunk=candidate.chunk,
            score=candidate.fused,
            signals=SignalBreakdown(
                semantic=candidate.semantic,
                lexical=candidate.lexical,
                priors=candidate.priors,
                recency=candidate.recency,
                proximity=candidate.proximity,
                symbol=candidate.symbol,
                fused=candidate.fused,
                mmr_penalty=penalty,
            ),
            reasons=tuple(reasons),
        )


def _parent(directory: str) -> str:
    return directory.rsplit("/", 1)[0] if "/" in directory else ""


def directory_proximity(directory: str, recent_dirs: Iterable[str]) -> float:
    """1.0 for a recently touched directory, 0.5 for its parent or child, else 0."""
    best = 0.0
    for recent in recent_dirs:
        if directory == recent:
            return 1.0
        if _parent(directory) == recent or _parent(recent) == directory:
            best = 0.5
    return best
