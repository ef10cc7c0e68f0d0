"""
External ontology client — concept enrichment from Wikidata and DBpedia.

Each configured provider is queried over SPARQL-over-HTTP in parallel.
A provider query does three things:

  * label / alias match for the concept,
  * the description in the configured language,
  * one hop of category (instance-of / rdf:type) and subclass / part-of /
    subject relations, which later feed multi-hop reasoning.

Results are merged by URI (highest score wins), scored with a lexical
relevance heuristic, sorted and cached per lowercase concept in a bounded
TTL cache.

Failure isolation
-----------------
A provider that errors, times out or returns garbage contributes nothing;
``search_concept`` never raises because of it.  If *every* provider failed
the empty result is returned but not cached, so the next call retries.

Public API
----------
ExternalOntologyClient.search_concept(concept)             -> List[ExternalOntologyResult]
ExternalOntologyClient.search_concept_with_status(concept) -> OntologyLookup
ExternalOntologyClient.convert_to_property_graph(results)  -> PropertyGraph
ExternalOntologyClient.health_check()                      -> Dict[str, bool]
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

import httpx
from cachetools import TTLCache

from app.config import settings
from app.models.schemas import (
    ExternalOntologyResult,
    OntologySource,
    PropertyGraph,
    PropertyGraphEdge,
    PropertyGraphNode,
)
from app.services.errors import OntologyProviderError
from app.utils.concurrency import gather_settled
from app.utils.helpers import safe_divide

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def escape_sparql(value: str) -> str:
    """
    Escape *value* for use inside a double-quoted SPARQL string literal.

    Backslashes go first so the escapes added afterwards survive.  Control
    characters without a SPARQL escape are dropped.
    """
    escaped = (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("'", "\\'")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return _CONTROL_CHARS.sub("", escaped)


def relevance_score(label: str, concept: str) -> float:
    """
    Lexical relevance of an ontology *label* to the searched *concept*, 0–100.

    exact = 100, prefix = 80, substring = 60, otherwise up to 40 for the
    share of concept words that overlap a label word.  Longer labels lose
    ``(len(label) - len(concept)) / 100``.
    """
    if not label or not concept:
        return 0.0

    label_lower = label.lower()
    concept_lower = concept.lower()

    if label_lower == concept_lower:
        score = 100.0
    elif label_lower.startswith(concept_lower):
        score = 80.0
    elif concept_lower in label_lower:
        score = 60.0
    else:
        concept_words = concept_lower.split()
        label_words = label_lower.split()
        matching = [
            word
            for word in concept_words
            if any(lw in word or word in lw for lw in label_words)
        ]
        score = safe_divide(len(matching), len(concept_words)) * 40.0

    length_penalty = max(0.0, (len(label) - len(concept)) / 100.0)
    score = max(0.0, min(100.0, score - length_penalty))
    return round(score, 2)


def merge_results(results: Sequence[ExternalOntologyResult]) -> List[ExternalOntologyResult]:
    """De-duplicate by URI keeping the highest score; sort by score desc."""
    best: Dict[str, ExternalOntologyResult] = {}
    for result in results:
        existing = best.get(result.uri)
        if existing is None or result.relevance_score > existing.relevance_score:
            best[result.uri] = result
    return sorted(best.values(), key=lambda r: (-r.relevance_score, r.label.lower(), r.uri))


# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------

class OntologyProvider(Protocol):
    """What the client needs from one external ontology."""

    source: OntologySource

    async def search(self, concept: str) -> List[ExternalOntologyResult]:
        ...

    async def ping(self) -> bool:
        ...


_WIKIDATA_QUERY = """\
PREFIX wd: <http://www.wikidata.org/entity/>
PREFIX wdt: <http://www.wikidata.org/prop/direct/>
PREFIX wikibase: <http://wikiba.se/ontology#>
PREFIX mwapi: <https://www.mediawiki.org/ontology#API/>
PREFIX bd: <http://www.bigdata.com/rdf#>
PREFIX rdfs: <http://www.w3.org/2000/01/rdf-schema#>
PREFIX schema: <http://schema.org/>

SELECT DISTINCT ?item ?itemLabel ?itemDescription ?categoryLabel ?relatedItemLabel WHERE {{
  SERVICE wikibase:mwapi {{
    bd:serviceParam wikibase:endpoint "www.wikidata.org" ;
                    wikibase:api "EntitySearch" ;
                    mwapi:search "{concept}" ;
                    mwapi:language "{lang}" .
    ?item wikibase:apiOutputItem mwapi:item .
  }}
  ?item rdfs:label ?itemLabel .
  FILTER(LANG(?itemLabel) = "{lang}")
  OPTIONAL {{
    ?item schema:description ?itemDescription .
    FILTER(LANG(?itemDescription) = "{lang}")
  }}
  OPTIONAL {{
    ?item wdt:P31 ?category .
    ?category rdfs:label ?categoryLabel .
    FILTER(LANG(?categoryLabel) = "{lang}")
  }}
  OPTIONAL {{
    {{ ?item wdt:P279 ?relatedItem . }}
    UNION {{ ?item wdt:P361 ?relatedItem . }}
    UNION {{ ?item wdt:P1269 ?relatedItem . }}
    ?relatedItem rdfs:label ?relatedItemLabel .
    FILTER(LANG(?relatedItemLabel) = "{lang}")
  }}
}}
LIMIT {limit}\
"""

_DBPEDIA_QUERY = """\
PREFIX dbo: <http://dbpedia.org/ontology/>
PREFIX rdf: <http://www.w3.org/1999/02/22-rdf-syntax-ns#>
PREFIX rdfs: <http://www.w3.org/2000/01/rdf-schema#>
PREFIX dct: <http://purl.org/dc/terms/>

SELECT DISTINCT ?resource ?label ?abstract ?typeLabel ?relatedLabel WHERE {{
  {{ ?resource rdfs:label ?matchLabel . }}
  UNION {{
    ?alias dbo:wikiPageRedirects ?resource .
    ?alias rdfs:label ?matchLabel .
  }}
  FILTER(LANG(?matchLabel) = "{lang}")
  FILTER(CONTAINS(LCASE(STR(?matchLabel)), "{concept}"))
  ?resource rdfs:label ?label .
  FILTER(LANG(?label) = "{lang}")
  OPTIONAL {{
    ?resource dbo:abstract ?abstract .
    FILTER(LANG(?abstract) = "{lang}")
  }}
  OPTIONAL {{
    ?resource rdf:type ?type .
    ?type rdfs:label ?typeLabel .
    FILTER(STRSTARTS(STR(?type), "http://dbpedia.org/ontology/"))
    FILTER(LANG(?typeLabel) = "{lang}")
  }}
  OPTIONAL {{
    ?resource dct:subject ?related .
    ?related rdfs:label ?relatedLabel .
    FILTER(LANG(?relatedLabel) = "{lang}")
  }}
}}
LIMIT {limit}\
"""

_PING_QUERY = "SELECT ?s WHERE { ?s ?p ?o } LIMIT 1"

_RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504})


class SparqlOntologyProvider:
    """
    One SPARQL endpoint with explicit timeouts and bounded retries.

    Subclasses supply the query template and the names of the result
    variables; row aggregation and scoring are shared.
    """

    source: OntologySource
    query_template: str
    uri_var: str
    label_var: str
    description_var: str
    category_var: str
    related_var: str
    lowercase_concept: bool = False

    def __init__(
        self,
        endpoint_url: str,
        client: Optional[httpx.AsyncClient] = None,
        max_attempts: Optional[int] = None,
        request_timeout: Optional[float] = None,
    ) -> None:
        self.endpoint_url = endpoint_url
        self._client = client
        self.max_attempts = max(1, max_attempts or settings.ONTOLOGY_MAX_RETRIES)
        if request_timeout is None:
            request_timeout = min(
                settings.ONTOLOGY_REQUEST_TIMEOUT,
                settings.ONTOLOGY_TIMEOUT / self.max_attempts,
            )
        self.request_timeout = request_timeout
        self.language = settings.ONTOLOGY_LANGUAGE
        self.limit = settings.ONTOLOGY_RESULT_LIMIT
        self.backoff = settings.ONTOLOGY_RETRY_BACKOFF
        self.timeout = httpx.Timeout(
            request_timeout,
            connect=min(settings.ONTOLOGY_CONNECT_TIMEOUT, request_timeout),
        )
        self._headers = {
            "User-Agent": settings.ONTOLOGY_USER_AGENT,
            "Accept": "application/sparql-results+json",
        }

    # ------------------------------------------------------------------
    # Public
    # ------------------------------------------------------------------

    def build_query(self, concept: str) -> str:
        text = concept.lower() if self.lowercase_concept else concept
        return self.query_template.format(
            concept=escape_sparql(text),
            lang=escape_sparql(self.language),
            limit=int(self.limit),
        )

    async def search(self, concept: str) -> List[ExternalOntologyResult]:
        """Run the concept query and fold the rows into scored results."""
        rows = await self.run_query(self.build_query(concept))
        return self.process_rows(rows, concept)

    async def ping(self) -> bool:
        try:
            await self.run_query(_PING_QUERY)
            return True
        except OntologyProviderError as exc:
            logger.warning("%s health check failed: %s", self.source.value, exc)
            return False

    async def run_query(self, query: str) -> List[Dict[str, Any]]:
        """
        POST *query* and return the SPARQL JSON bindings.

        Each attempt runs under ``request_timeout``.  Transport errors,
        timeouts and 429/5xx responses are retried with exponential backoff;
        other failures raise immediately.
        """
        last_error = "no attempt made"
        for attempt in range(1, self.max_attempts + 1):
            try:
                t0 = time.perf_counter()
                resp = await asyncio.wait_for(self._post(query), self.request_timeout)
                elapsed_ms = (time.perf_counter() - t0) * 1000

                if resp.status_code in _RETRYABLE_STATUS:
                    last_error = f"HTTP {resp.status_code}"
                    logger.warning(
                        "%s returned %d (attempt %d/%d)",
                        self.source.value,
                        resp.status_code,
                        attempt,
                        self.max_attempts,
                    )
                    await self._backoff(attempt)
                    continue

                if resp.status_code != 200:
                    raise OntologyProviderError(
                        self.source.value,
                        f"HTTP {resp.status_code}: {resp.text[:200]}",
                    )

                try:
                    payload = resp.json()
                    bindings = payload["results"]["bindings"]
                except (ValueError, KeyError, TypeError) as exc:
                    raise OntologyProviderError(
                        self.source.value, f"malformed SPARQL JSON: {exc}"
                    ) from exc

                logger.debug(
                    "%s query → %d rows in %.1f ms",
                    self.source.value,
                    len(bindings),
                    elapsed_ms,
                )
                return list(bindings)

            except (httpx.ConnectError, httpx.TimeoutException, asyncio.TimeoutError) as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                logger.warning(
                    "%s transport error (attempt %d/%d): %s",
                    self.source.value,
                    attempt,
                    self.max_attempts,
                    exc,
                )
                await self._backoff(attempt)

            except httpx.HTTPError as exc:
                raise OntologyProviderError(self.source.value, str(exc)) from exc

        raise OntologyProviderError(
            self.source.value,
            f"all {self.max_attempts} attempts failed ({last_error})",
        )

    def process_rows(
        self, rows: List[Dict[str, Any]], concept: str
    ) -> List[ExternalOntologyResult]:
        """Aggregate one-row-per-combination SPARQL output per URI."""
        accumulated: Dict[str, Dict[str, Any]] = {}

        for row in rows:
            uri = _binding(row, self.uri_var)
            if not uri:
                continue

            entry = accumulated.get(uri)
            if entry is None:
                entry = {
                    "label": _binding(row, self.label_var) or "",
                    "description": None,
                    "categories": [],
                    "related": [],
                }
                accumulated[uri] = entry

            description = _binding(row, self.description_var)
            if description and not entry["description"]:
                entry["description"] = description

            category = _binding(row, self.category_var)
            if category and category not in entry["categories"]:
                entry["categories"].append(category)

            related = _binding(row, self.related_var)
            if related and related not in entry["related"]:
                entry["related"].append(related)

        return [
            ExternalOntologyResult(
                uri=uri,
                label=entry["label"],
                description=entry["description"],
                categories=entry["categories"],
                related_concepts=entry["related"],
                relevance_score=relevance_score(entry["label"], concept),
                source=self.source,
            )
            for uri, entry in accumulated.items()
        ]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _post(self, query: str) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                self.endpoint_url,
                data={"query": query},
                headers=self._headers,
                timeout=self.timeout,
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                self.endpoint_url, data={"query": query}, headers=self._headers
            )

    async def _backoff(self, attempt: int) -> None:
        if attempt < self.max_attempts and self.backoff > 0:
            await asyncio.sleep(self.backoff * 2 ** (attempt - 1))


class WikidataProvider(SparqlOntologyProvider):
    source = OntologySource.WIKIDATA
    query_template = _WIKIDATA_QUERY
    uri_var = "item"
    label_var = "itemLabel"
    description_var = "itemDescription"
    category_var = "categoryLabel"
    related_var = "relatedItemLabel"

    def __init__(self, client: Optional[httpx.AsyncClient] = None, **kwargs: Any) -> None:
        super().__init__(settings.WIKIDATA_SPARQL_URL, client=client, **kwargs)


class DBpediaProvider(SparqlOntologyProvider):
    source = OntologySource.DBPEDIA
    query_template = _DBPEDIA_QUERY
    uri_var = "resource"
    label_var = "label"
    description_var = "abstract"
    category_var = "typeLabel"
    related_var = "relatedLabel"
    # Matched with CONTAINS(LCASE(...)), so the needle is lowercased up front
    lowercase_concept = True

    def __init__(self, client: Optional[httpx.AsyncClient] = None, **kwargs: Any) -> None:
        super().__init__(settings.DBPEDIA_SPARQL_URL, client=client, **kwargs)


def _binding(row: Dict[str, Any], var: str) -> Optional[str]:
    cell = row.get(var)
    if isinstance(cell, dict):
        value = cell.get("value")
        return str(value) if value is not None else None
    return None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class OntologyLookup:
    """Results of one ``search_concept`` call plus which providers failed."""

    concept: str
    results: List[ExternalOntologyResult]
    failed_sources: List[str] = dataclasses.field(default_factory=list)
    from_cache: bool = False

    @property
    def all_failed(self) -> bool:
        return bool(self.failed_sources) and not self.results and not self.from_cache


class ExternalOntologyClient:
    """
    Parallel, cached, failure-isolated search over external ontologies.

    * Cache: ``TTLCache`` keyed by lowercase concept, bounded by
      ONTOLOGY_CACHE_MAX_ENTRIES and expiring after ONTOLOGY_CACHE_TTL_SECONDS
    * Each provider call runs under an ONTOLOGY_TIMEOUT deadline
    * Cached values are tuples of frozen models and are never mutated
    """

    def __init__(
        self,
        providers: Optional[Sequence[OntologyProvider]] = None,
        cache_ttl: Optional[float] = None,
        cache_maxsize: Optional[int] = None,
        call_timeout: Optional[float] = None,
    ) -> None:
        if providers is None:
            providers = [WikidataProvider(), DBpediaProvider()]
        self.providers: List[OntologyProvider] = list(providers)
        self.call_timeout = call_timeout if call_timeout is not None else settings.ONTOLOGY_TIMEOUT
        self._cache: TTLCache = TTLCache(
            maxsize=cache_maxsize or settings.ONTOLOGY_CACHE_MAX_ENTRIES,
            ttl=cache_ttl or settings.ONTOLOGY_CACHE_TTL_SECONDS,
        )

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def search_concept(self, concept: str) -> List[ExternalOntologyResult]:
        """Ontology matches for *concept*, sorted by relevance (highest first)."""
        lookup = await self.search_concept_with_status(concept)
        return lookup.results

    async def search_concept_with_status(self, concept: str) -> OntologyLookup:
        concept = (concept or "").strip()
        if not concept:
            return OntologyLookup(concept=concept, results=[])

        key = concept.lower()
        cached: Optional[Tuple[ExternalOntologyResult, ...]] = self._cache.get(key)
        if cached is not None:
            logger.debug("Ontology cache hit for concept %r", concept)
            return OntologyLookup(concept=concept, results=list(cached), from_cache=True)

        logger.info(
            "Searching %d external ontologies for concept %r",
            len(self.providers),
            concept,
        )
        outcomes = await gather_settled(
            (provider.search(concept) for provider in self.providers),
            timeout=self.call_timeout,
        )

        collected: List[ExternalOntologyResult] = []
        failed: List[str] = []
        for provider, outcome in zip(self.providers, outcomes):
            if outcome.ok:
                collected.extend(outcome.value or [])
            else:
                failed.append(provider.source.value)
                logger.warning(
                    "Ontology provider %s failed for %r: %s",
                    provider.source.value,
                    concept,
                    outcome.error or "unknown error",
                )

        results = merge_results(collected)

        if self.providers and len(failed) == len(self.providers):
            logger.warning(
                "All ontology providers failed for %r — result not cached", concept
            )
        else:
            self._cache[key] = tuple(results)

        logger.info(
            "Ontology search for %r: %d result(s), %d provider failure(s)",
            concept,
            len(results),
            len(failed),
        )
        return OntologyLookup(concept=concept, results=results, failed_sources=failed)

    def convert_to_property_graph(
        self, results: Sequence[ExternalOntologyResult]
    ) -> PropertyGraph:
        """
        Project results onto a property graph: one node per result, related
        concept and category; RELATED_TO and BELONGS_TO edges.
        """
        nodes: List[PropertyGraphNode] = []
        edges: List[PropertyGraphEdge] = []
        node_ids: set = set()

        for result in results:
            if result.uri not in node_ids:
                nodes.append(
                    PropertyGraphNode(
                        id=result.uri,
                        label=result.label,
                        properties={
                            "description": result.description,
                            "source": result.source.value,
                            "relevance_score": result.relevance_score,
                            "categories": list(result.categories),
                        },
                    )
                )
                node_ids.add(result.uri)

            for related in result.related_concepts:
                related_id = f"concept:{related}"
                if related_id not in node_ids:
                    nodes.append(
                        PropertyGraphNode(
                            id=related_id,
                            label=related,
                            properties={"type": "related_concept"},
                        )
                    )
                    node_ids.add(related_id)
                edges.append(
                    PropertyGraphEdge(
                        source=result.uri,
                        target=related_id,
                        label="RELATED_TO",
                        properties={"source": result.source.value},
                    )
                )

            for category in result.categories:
                category_id = f"category:{category}"
                if category_id not in node_ids:
                    nodes.append(
                        PropertyGraphNode(
                            id=category_id,
                            label=category,
                            properties={"type": "category"},
                        )
                    )
                    node_ids.add(category_id)
                edges.append(
                    PropertyGraphEdge(
                        source=result.uri,
                        target=category_id,
                        label="BELONGS_TO",
                        properties={"source": result.source.value},
                    )
                )

        return PropertyGraph(nodes=nodes, edges=edges)

    async def health_check(self) -> Dict[str, bool]:
        """Ping every provider in parallel; ``{source: reachable}``."""
        outcomes = await gather_settled(
            (provider.ping() for provider in self.providers),
            timeout=self.call_timeout,
        )
        return {
            provider.source.value: bool(outcome.ok and outcome.value)
            for provider, outcome in zip(self.providers, outcomes)
        }

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("Ontology cache cleared")

    @property
    def cache_size(self) -> int:
        return len(self._cache)
