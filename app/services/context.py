"""
Context store boundary.

The engine never reads notes or books directly; it asks a ``ContextRetriever``
for a ``ContextBundle`` per concept.  Two adapters are provided:

HttpContextRetriever    GET {CONTEXT_STORE_URL}/api/context?concept=...
StaticContextRetriever  in-memory map, optionally seeded from a JSON file

"No match" is never an error: both return an empty bundle.  Only a store
that cannot be reached (or answers garbage) raises ``ContextStoreError``.
"""
from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol, Union

import httpx
from pydantic import ValidationError

from app.config import settings
from app.models.schemas import ContextBundle, QueryMetadata
from app.services.errors import ContextStoreError

logger = logging.getLogger(__name__)


class ContextRetriever(Protocol):
    async def get_context_bundle(self, concept: str) -> ContextBundle:
        ...


class HttpContextRetriever:
    """Context bundles from a remote store over HTTP."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.base_url = (base_url or settings.CONTEXT_STORE_URL or "").rstrip("/")
        self._client = client
        self.timeout = httpx.Timeout(timeout or settings.CONTEXT_STORE_TIMEOUT)

    async def get_context_bundle(self, concept: str) -> ContextBundle:
        t0 = time.perf_counter()
        try:
            resp = await self._get(concept)
        except httpx.HTTPError as exc:
            raise ContextStoreError(f"context store unreachable for {concept!r}: {exc}") from exc

        if resp.status_code == 404:
            return ContextBundle.empty(concept)
        if resp.status_code != 200:
            raise ContextStoreError(
                f"context store returned {resp.status_code} for {concept!r}"
            )

        try:
            data: Dict[str, Any] = resp.json()
            data.setdefault("target_concept", concept)
            bundle = ContextBundle.model_validate(data)
        except (ValueError, ValidationError, AttributeError) as exc:
            raise ContextStoreError(f"malformed context bundle for {concept!r}: {exc}") from exc

        if "query_metadata" not in data:
            bundle.query_metadata = QueryMetadata(
                execution_time_ms=round((time.perf_counter() - t0) * 1000, 2),
                result_count=len(bundle.relevant_notes) + len(bundle.book_excerpts),
            )
        return bundle

    async def ping(self) -> bool:
        try:
            await self.get_context_bundle("__health__")
            return True
        except ContextStoreError as exc:
            logger.warning("Context store health check failed: %s", exc)
            return False

    async def _get(self, concept: str) -> httpx.Response:
        url = f"{self.base_url}/api/context"
        params = {"concept": concept}
        if self._client is not None:
            return await self._client.get(url, params=params, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.get(url, params=params)


class StaticContextRetriever:
    """
    Context bundles held in memory, keyed case-insensitively by concept.

    The seed maps a concept to a bundle-shaped dict (or ContextBundle), e.g.::

        {"neural network": {"relevant_notes": [{"content": "...", "tags": ["ml"]}],
                            "related_concepts": ["backpropagation"]}}
    """

    def __init__(self, bundles: Optional[Mapping[str, Union[ContextBundle, Dict[str, Any]]]] = None) -> None:
        self._bundles: Dict[str, ContextBundle] = {}
        for concept, bundle in (bundles or {}).items():
            self.add(concept, bundle)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "StaticContextRetriever":
        file_path = Path(path)
        with file_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ContextStoreError(f"{file_path}: expected a JSON object keyed by concept")
        logger.info("Loaded %d context bundles from %s", len(data), file_path)
        return cls(data)

    def add(self, concept: str, bundle: Union[ContextBundle, Dict[str, Any]]) -> None:
        if isinstance(bundle, ContextBundle):
            model = bundle.model_copy(update={"target_concept": concept})
        else:
            model = ContextBundle.model_validate({**bundle, "target_concept": concept})
        self._bundles[concept.strip().lower()] = model

    async def get_context_bundle(self, concept: str) -> ContextBundle:
        t0 = time.perf_counter()
        stored = self._bundles.get(concept.strip().lower())
        if stored is None:
            bundle = ContextBundle.empty(concept)
        else:
            # Deep copy: callers get a fresh bundle per call
            bundle = stored.model_copy(deep=True, update={"target_concept": concept})
        bundle.query_metadata = QueryMetadata(
            execution_time_ms=round((time.perf_counter() - t0) * 1000, 3),
            result_count=len(bundle.relevant_notes) + len(bundle.book_excerpts),
        )
        return bundle

    async def ping(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._bundles)
