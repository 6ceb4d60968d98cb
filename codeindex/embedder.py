"""
Embedder - Text-to-vector embedding behind a provider port.

Components:
- EmbeddingPort: the provider contract (embed, model_id, dimension)
- SentenceTransformerEmbedder: local model, run in a thread pool
- HttpEmbedder: OpenAI-style /embeddings endpoint over httpx
- EmbeddingService: batching, bounded in-flight batches, a priority lane
  for interactive queries, per-call deadlines, retry with backoff and
  isolation of permanently failing texts
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, List, Optional, Sequence

import httpx
import numpy as np

from .config import EmbeddingConfig
from .errors import PermanentProviderError, TransientProviderError, handle_error


logger = logging.getLogger(__name__)


class EmbeddingPort(ABC):
    """
    Embedding provider contract.

    ``embed`` returns a float32 array of shape (len(texts), dimension) or
    raises TransientProviderError / PermanentProviderError.
    """

    @property
    @abstractmethod
    def model_id(self) -> str:
        ...

    @property
    @abstractmethod
    def dimension(self) -> int:
        """Vector dimension; 0 while unknown."""
        ...

    @abstractmethod
    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        ...

    async def close(self):
        pass


class SentenceTransformerEmbedder(EmbeddingPort):
    """
    Local sentence-transformers model.

    Features:
    - Lazy model loading
    - Normalized embeddings (cosine = dot product)
    - Encoding in a single worker thread, off the event loop
    """

    def __init__(self, config: EmbeddingConfig | None = None):
        self.config = config or EmbeddingConfig()
        self._model = None
        self._dimension = 0
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedder")

    def _get_model(self):
        """Lazy-load the embedding model on the best available device."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
                import torch
            except ImportError:
                logger.error("sentence-transformers not installed. Run: pip install sentence-transformers")
                raise

            device = "cpu"
            if torch.backends.mps.is_available():
                device = "mps"
            elif torch.cuda.is_available():
                device = "cuda"

            self._model = SentenceTransformer(self.config.model, device=device)
            self._dimension = self._model.get_sentence_embedding_dimension()
            logger.info(f"Loaded embedding model {self.config.model} (dim={self._dimension}) on {device}")
        return self._model

    @property
    def model_id(self) -> str:
        return self.config.model

    @property
    def dimension(self) -> int:
        """Embedding dimension (loads model if needed)."""
        self._get_model()
        return self._dimension

    def _encode(self, texts: List[str]) -> np.ndarray:
        model = self._get_model()
        return model.encode(
            texts,
            batch_size=self.config.batch_size,
            convert_to_numpy=True,
            normalize_embeddings=True,
        ).astype(np.float32)

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dimension), dtype=np.float32)
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(self._executor, self._encode, list(texts))
        except (ValueError, TypeError) as e:
            raise PermanentProviderError(f"Model rejected input: {e}") from e
        except RuntimeError as e:
            # Device errors (out of memory, busy accelerator) may clear
            raise TransientProviderError(f"Model runtime error: {e}") from e

    async def close(self):
        self._executor.shutdown(wait=False)


class HttpEmbedder(EmbeddingPort):
    """
    Remote embeddings via an OpenAI-compatible ``POST {endpoint}/embeddings``.

    429, 5xx, timeouts and connection failures are transient; any other
    4xx is permanent. Response items are re-ordered by their ``index``.
    """

    def __init__(self, config: EmbeddingConfig, client: Optional[httpx.AsyncClient] = None):
        if not config.endpoint:
            raise ValueError("HttpEmbedder requires EmbeddingConfig.endpoint")
        self.config = config
        self.base_url = config.endpoint.rstrip("/")
        self._client = client
        self._dimension = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=httpx.Timeout(self.config.deadline_s, connect=10.0),
            )
        return self._client

    @property
    def model_id(self) -> str:
        return self.config.model

    @property
    def dimension(self) -> int:
        return self._dimension

    async def embed(self, texts: Sequence[str]) -> np.ndarray:
        if not texts:
            return np.zeros((0, self._dimension), dtype=np.float32)

        client = self._get_client()
        try:
            response = await client.post(
                "/embeddings", json={"model": self.config.model, "input": list(texts)}
            )
        except httpx.TimeoutException as e:
            raise TransientProviderError(f"Embedding request timed out: {e}") from e
        except httpx.TransportError as e:
            raise TransientProviderError(f"Cannot reach {self.base_url}: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            raise TransientProviderError(f"Embedding API returned {status}")
        if status >= 400:
            raise PermanentProviderError(f"Embedding API returned {status}: {response.text[:200]}")

        try:
            data = sorted(response.json()["data"], key=lambda item: item["index"])
            vectors = np.asarray([item["embedding"] for item in data], dtype=np.float32)
        except (ValueError, KeyError, TypeError) as e:
            raise PermanentProviderError(f"Malformed embedding response: {e}") from e

        if vectors.ndim != 2 or vectors.shape[0] != len(texts):
            raise PermanentProviderError(
                f"Expected {len(texts)} embeddings, got shape {vectors.shape}"
            )
        self._dimension = vectors.shape[1]
        return vectors

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def create_embedder(config: EmbeddingConfig) -> EmbeddingPort:
    """HTTP provider when an endpoint is configured, local model otherwise."""
    if config.endpoint:
        return HttpEmbedder(config)
    return SentenceTransformerEmbedder(config)


class EmbeddingService:
    """
    Reliable embedding on top of an EmbeddingPort.

    Background (indexing) batches share a semaphore of ``max_in_flight``
    slots; query embeddings use the priority lane and never wait for it.
    """

    def __init__(
        self,
        port: EmbeddingPort,
        config: EmbeddingConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.port = port
        self.config = config or EmbeddingConfig()
        self._sleep = sleep
        self._background = asyncio.Semaphore(self.config.max_in_flight)

        self.failure_streak = 0
        self.failing_since: Optional[float] = None
        self.calls = 0
        self.retries = 0

    @property
    def model_id(self) -> str:
        return self.port.model_id

    @property
    def dimension(self) -> int:
        return self.port.dimension

    def backoff(self, attempt: int) -> float:
        return min(self.config.backoff_base_s * (2 ** attempt), self.config.backoff_max_s)

    def is_failing(self, budget: int, after_s: float) -> bool:
        """True once more than ``budget`` consecutive batches failed for at least ``after_s``."""
        if self.failing_since is None or self.failure_streak <= budget:
            return False
        return time.monotonic() - self.failing_since >= after_s

    def _record_success(self):
        if self.failure_streak:
            logger.info(f"Embedding provider recovered after {self.failure_streak} failed batches")
        self.failure_streak = 0
        self.failing_since = None

    def _record_failure(self):
        self.failure_streak += 1
        if self.failing_since is None:
            self.failing_since = time.monotonic()

    async def _call(self, texts: List[str]) -> np.ndarray:
        """One provider call with retries. Raises the last error once retries are exhausted."""
        attempt = 0
        while True:
            self.calls += 1
            try:
                vectors = await asyncio.wait_for(self.port.embed(texts), timeout=self.config.deadline_s)
            except asyncio.TimeoutError:
                error: TransientProviderError = TransientProviderError(
                    f"Embedding call exceeded {self.config.deadline_s}s deadline"
                )
            except TransientProviderError as e:
                error = e
            else:
                vectors = np.asarray(vectors, dtype=np.float32)
                if vectors.ndim != 2 or vectors.shape[0] != len(texts):
                    raise PermanentProviderError(
                        f"Provider returned shape {vectors.shape} for {len(texts)} texts"
                    )
                self._record_success()
                return vectors

            handle_error(error, None, f"embed attempt {attempt + 1}")
            if attempt == self.config.max_retries:
                self._record_failure()
                raise error
            self.retries += 1
            await self._sleep(self.backoff(attempt))
            attempt += 1

    async def embed_query(self, text: str) -> np.ndarray:
        """Priority lane: embed one query without waiting for background batches."""
        return (await self._call([text]))[0]

    async def embed_texts(self, texts: Sequence[str]) -> List[Optional[np.ndarray]]:
        """
        Embed texts for indexing.

        Returns:
            One vector per text, or None where the text could not be
            embedded (the caller marks those chunks degraded)
        """
        texts = list(texts)
        size = max(1, self.config.batch_size)
        batches = [texts[i:i + size] for i in range(0, len(texts), size)]
        results = await asyncio.gather(*(self._embed_batch(batch) for batch in batches))
        return [vector for batch in results for vector in batch]

    async def _embed_batch(self, batch: List[str]) -> List[Optional[np.ndarray]]:
        async with self._background:
            try:
                vectors = await self._call(batch)
                return list(vectors)
            except TransientProviderError:
                return [None] * len(batch)
            except PermanentProviderError as e:
                if len(batch) == 1:
                    handle_error(e, None, "embed")
                    return [None]
                logger.info(f"Batch of {len(batch)} rejected, isolating offending texts")

            isolated: List[Optional[np.ndarray]] = []
            for text in batch:
                try:
                    isolated.append((await self._call([text]))[0])
                except (TransientProviderError, PermanentProviderError) as e:
                    handle_error(e, None, "embed")
                    isolated.append(None)
            return isolated

    async def close(self):
        await self.port.close()
