"""
Concept embeddings via the Ollama API.

Backs the optional ``SIMILARITY_BACKEND=embedding`` mode: concept labels are
embedded once, kept in a bounded LRU cache and compared by cosine similarity.

Provides:
- OllamaEmbeddingService: concurrency-limited, retrying, caching embedder
- cosine_similarity: numpy cosine of two unit vectors
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional

import httpx
import numpy as np
from cachetools import LRUCache

from app.config import settings
from app.utils.helpers import generate_hash

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pure vector helpers
# ---------------------------------------------------------------------------

def _normalize(vector: Iterable[float]) -> np.ndarray:
    """Unit-length float32 copy of *vector* (zero vectors are returned as-is)."""
    arr = np.asarray(list(vector), dtype=np.float32)
    magnitude = float(np.linalg.norm(arr))
    if magnitude == 0.0:
        return arr
    return arr / magnitude


def cosine_similarity(a: Optional[np.ndarray], b: Optional[np.ndarray]) -> float:
    """Cosine similarity clipped to [0, 1]; 0.0 for missing or mismatched vectors."""
    if a is None or b is None or a.shape != b.shape or a.size == 0:
        return 0.0
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom == 0.0:
        return 0.0
    return float(np.clip(np.dot(a, b) / denom, 0.0, 1.0))


# ---------------------------------------------------------------------------
# Main service class
# ---------------------------------------------------------------------------

class OllamaEmbeddingService:
    """
    Concept embedding via Ollama:

    * Semaphore caps concurrent Ollama calls (MAX_CONCURRENT = 3)
    * Exponential-backoff retries on connection / HTTP errors (MAX_RETRIES = 3)
    * Unit-length normalization so cosine reduces to a dot product
    * LRU cache keyed by content hash, bounded by EMBEDDING_CACHE_MAX_ENTRIES
    """

    MAX_CONCURRENT: int = 3
    MAX_RETRIES: int = 3

    def __init__(self, client: Optional[httpx.AsyncClient] = None) -> None:
        self.base_url = settings.OLLAMA_BASE_URL
        self.model = settings.OLLAMA_EMBED_MODEL
        self.expected_dim = settings.VECTOR_DIMENSION
        self.timeout = httpx.Timeout(float(settings.OLLAMA_TIMEOUT), connect=10.0)
        self._client = client
        self._semaphore = asyncio.Semaphore(self.MAX_CONCURRENT)
        self._cache: LRUCache = LRUCache(maxsize=settings.EMBEDDING_CACHE_MAX_ENTRIES)

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def embed_text(self, text: str) -> Optional[np.ndarray]:
        """
        Embed a single string.

        Returns a unit-length vector, or ``None`` on permanent failure.
        Results are cached by SHA-256 of the stripped, lowercased text.
        """
        if not text or not text.strip():
            return None

        text = text.strip()
        key = generate_hash(text.lower())
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        embedding = await self._call_ollama_with_retry(text)
        if embedding is not None:
            self._cache[key] = embedding
        return embedding

    async def embed_many(self, texts: Iterable[str]) -> Dict[str, np.ndarray]:
        """
        Embed distinct *texts* concurrently (bounded by the semaphore).

        Returns ``{text: vector}`` for the texts that embedded successfully.
        """
        unique = list(dict.fromkeys(t.strip() for t in texts if t and t.strip()))
        if not unique:
            return {}

        gathered = await asyncio.gather(
            *[self.embed_text(t) for t in unique],
            return_exceptions=True,
        )

        vectors: Dict[str, np.ndarray] = {}
        for text, res in zip(unique, gathered):
            if isinstance(res, Exception):
                logger.error("embed_many: %r raised: %s", text, res)
            elif res is not None:
                vectors[text] = res

        logger.info(
            "embed_many: %d/%d embeddings available", len(vectors), len(unique)
        )
        return vectors

    def cached(self, text: str) -> Optional[np.ndarray]:
        """Cached vector for *text* without any I/O."""
        if not text or not text.strip():
            return None
        return self._cache.get(generate_hash(text.strip().lower()))

    async def check_ollama_health(self) -> bool:
        """Return ``True`` if Ollama is reachable and returns HTTP 200."""
        url = f"{self.base_url}/api/tags"
        try:
            if self._client is not None:
                resp = await self._client.get(url, timeout=5.0)
            else:
                async with httpx.AsyncClient(timeout=5.0) as client:
                    resp = await client.get(url)
            return resp.status_code == 200
        except httpx.HTTPError as exc:
            logger.error("Ollama health check failed: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _post(self, text: str) -> httpx.Response:
        payload = {"model": self.model, "prompt": text}
        url = f"{self.base_url}/api/embeddings"
        if self._client is not None:
            return await self._client.post(url, json=payload, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload)

    async def _call_ollama_with_retry(self, text: str) -> Optional[np.ndarray]:
        """
        POST to Ollama /api/embeddings with up to MAX_RETRIES attempts.
        Uses the semaphore to cap concurrency.  Exponential backoff on
        transient errors (connection failures, non-200 responses).
        """
        async with self._semaphore:
            for attempt in range(1, self.MAX_RETRIES + 1):
                try:
                    t0 = time.perf_counter()
                    resp = await self._post(text)
                    elapsed_ms = (time.perf_counter() - t0) * 1000

                    if resp.status_code != 200:
                        logger.error(
                            "Ollama /api/embeddings returned %d (attempt %d/%d): %s",
                            resp.status_code,
                            attempt,
                            self.MAX_RETRIES,
                            resp.text[:300],
                        )
                        if attempt < self.MAX_RETRIES:
                            await asyncio.sleep(2 ** (attempt - 1))
                        continue

                    raw: Optional[List[float]] = resp.json().get("embedding")
                    if not raw:
                        logger.error(
                            "Ollama response missing 'embedding' field (attempt %d/%d)",
                            attempt,
                            self.MAX_RETRIES,
                        )
                        if attempt < self.MAX_RETRIES:
                            await asyncio.sleep(2 ** (attempt - 1))
                        continue

                    if len(raw) != self.expected_dim:
                        # Wrong dimension is a hard failure, not retried
                        logger.error(
                            "Dimension mismatch: expected %d, got %d",
                            self.expected_dim,
                            len(raw),
                        )
                        return None

                    logger.debug(
                        "Embedded %r → %d-dim in %.1f ms",
                        text,
                        self.expected_dim,
                        elapsed_ms,
                    )
                    return _normalize(raw)

                except (httpx.ConnectError, httpx.TimeoutException) as exc:
                    logger.warning(
                        "Ollama transport error (attempt %d/%d): %s",
                        attempt,
                        self.MAX_RETRIES,
                        exc,
                    )
                    if attempt < self.MAX_RETRIES:
                        await asyncio.sleep(2 ** (attempt - 1))

                except (httpx.HTTPError, ValueError) as exc:
                    logger.error("Unexpected error calling Ollama: %s", exc)
                    return None

        logger.error(
            "All %d embedding attempts failed for %r", self.MAX_RETRIES, text
        )
        return None
