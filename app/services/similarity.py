"""
Concept similarity — the classifier behind "known" and "related" gap tests.

Two implementations share one interface:

LexicalConceptSimilarity    equal → 1.0, containment → 0.8, else token Jaccard
EmbeddingConceptSimilarity  Ollama embeddings + cosine, lexical fallback

``prime`` is awaited once per detection run with every label that will be
compared, so that ``similarity`` itself stays synchronous and cheap.
"""
from __future__ import annotations

import logging
from typing import Iterable, Optional, Protocol

from app.services.embedding import OllamaEmbeddingService, cosine_similarity
from app.utils.helpers import safe_divide, tokenize

logger = logging.getLogger(__name__)


class ConceptSimilarity(Protocol):
    async def prime(self, texts: Iterable[str]) -> None:
        ...

    def similarity(self, a: str, b: str) -> float:
        ...


class LexicalConceptSimilarity:
    """Substring / token-Jaccard heuristic on lowercased text."""

    async def prime(self, texts: Iterable[str]) -> None:
        return None

    def similarity(self, a: str, b: str) -> float:
        left = a.lower().strip()
        right = b.lower().strip()
        if not left or not right:
            return 0.0
        if left == right:
            return 1.0
        if left in right or right in left:
            return 0.8

        words_a = set(tokenize(left))
        words_b = set(tokenize(right))
        return safe_divide(len(words_a & words_b), len(words_a | words_b))


class EmbeddingConceptSimilarity:
    """
    Cosine similarity of Ollama embeddings.

    Exact matches still score 1.0.  Pairs where either side failed to embed
    are scored by the lexical heuristic instead.
    """

    def __init__(
        self,
        embedder: Optional[OllamaEmbeddingService] = None,
        fallback: Optional[LexicalConceptSimilarity] = None,
    ) -> None:
        self.embedder = embedder or OllamaEmbeddingService()
        self.fallback = fallback or LexicalConceptSimilarity()

    async def prime(self, texts: Iterable[str]) -> None:
        vectors = await self.embedder.embed_many(texts)
        logger.debug("Primed %d concept embeddings", len(vectors))

    def similarity(self, a: str, b: str) -> float:
        if a.lower().strip() == b.lower().strip() and a.strip():
            return 1.0
        vec_a = self.embedder.cached(a)
        vec_b = self.embedder.cached(b)
        if vec_a is None or vec_b is None:
            return self.fallback.similarity(a, b)
        return cosine_similarity(vec_a, vec_b)


def build_similarity(backend: str) -> ConceptSimilarity:
    """Similarity implementation for a SIMILARITY_BACKEND value."""
    if backend.lower() == "embedding":
        return EmbeddingConceptSimilarity()
    if backend.lower() != "lexical":
        logger.warning("Unknown SIMILARITY_BACKEND %r — using lexical", backend)
    return LexicalConceptSimilarity()
