"""
Schema graph construction for multi-hop reasoning.

For a concept set the builder fetches every concept's context bundle and,
concurrently, its external ontology matches, then merges both into one
adjacency map:

  * entity node per concept, weight = notes + book excerpts
  * internal related concept → entity node (weight 1), edges both ways
  * relation node ``<concept>_to_<related>`` joined to both ends, so that
    hop search passes through explicit relations
  * related concepts of the top external matches → entity nodes
    (weight 0.5, origin "external"), edges both ways

Node ids are resolved case-insensitively so an external label like
"Machine learning" lands on the user's "machine learning" node.

Graphs built while a dependency failed are marked ``degraded`` and are not
cached; complete graphs are cached per sorted concept set.

Public API
----------
SchemaGraphBuilder.build_dynamic_schema(concepts) -> SchemaGraph
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Dict, Iterable, List, Optional, Set

from cachetools import TTLCache

from app.config import settings
from app.models.schemas import ContextBundle
from app.services.context import ContextRetriever
from app.services.ontology import ExternalOntologyClient, OntologyLookup
from app.utils.concurrency import gather_settled
from app.utils.helpers import normalize_concepts

logger = logging.getLogger(__name__)

ENTITY = "entity"
RELATION = "relation"

ORIGIN_INTERNAL = "internal"
ORIGIN_EXTERNAL = "external"

EXTERNAL_NODE_WEIGHT = 0.5
RELATION_NODE_WEIGHT = 0.5


@dataclasses.dataclass
class SchemaNode:
    concept: str
    node_type: str = ENTITY
    neighbors: List[str] = dataclasses.field(default_factory=list)
    weight: float = 1.0
    origins: Set[str] = dataclasses.field(default_factory=set)

    def add_neighbor(self, node_id: str) -> None:
        if node_id != self.concept and node_id not in self.neighbors:
            self.neighbors.append(node_id)


class SchemaGraph(Dict[str, SchemaNode]):
    """Adjacency map ``node id → SchemaNode`` plus dependency-failure notes."""

    def __init__(self) -> None:
        super().__init__()
        self.context_failures: List[str] = []
        self.ontology_failures: List[str] = []
        self._ids_by_key: Dict[str, str] = {}

    @property
    def degraded(self) -> bool:
        return bool(self.context_failures or self.ontology_failures)

    def resolve(self, label: str) -> str:
        """Existing node id matching *label* case-insensitively, else *label*."""
        return self._ids_by_key.get(label.strip().lower(), label.strip())

    def upsert(
        self,
        label: str,
        origin: str,
        weight: Optional[float] = None,
        node_type: str = ENTITY,
        default_weight: float = 1.0,
    ) -> SchemaNode:
        """Create-or-update a node; an explicit *weight* overwrites the current one."""
        node_id = self.resolve(label)
        node = self.get(node_id)
        if node is None:
            node = SchemaNode(
                concept=node_id,
                node_type=node_type,
                weight=default_weight if weight is None else weight,
            )
            self[node_id] = node
            self._ids_by_key[node_id.lower()] = node_id
        elif weight is not None:
            node.weight = weight
        node.origins.add(origin)
        return node

    def connect(self, a: str, b: str) -> None:
        if a == b:
            return
        self[a].add_neighbor(b)
        self[b].add_neighbor(a)

    def relations(self) -> List[SchemaNode]:
        return [node for node in self.values() if node.node_type == RELATION]

    def entities(self) -> List[SchemaNode]:
        return [node for node in self.values() if node.node_type == ENTITY]


class SchemaGraphBuilder:
    """
    Builds (and caches) the schema graph for a concept set.

    Context and ontology fetches for all concepts run as two concurrent task
    groups; each call is isolated, so one failing concept only marks the
    graph degraded.
    """

    def __init__(
        self,
        context_retriever: ContextRetriever,
        ontology_client: ExternalOntologyClient,
        cache_ttl: Optional[float] = None,
        cache_maxsize: Optional[int] = None,
        external_results: Optional[int] = None,
        context_timeout: Optional[float] = None,
    ) -> None:
        self.context_retriever = context_retriever
        self.ontology_client = ontology_client
        self.external_results = (
            external_results if external_results is not None else settings.SCHEMA_EXTERNAL_RESULTS
        )
        self.context_timeout = context_timeout or settings.CONTEXT_STORE_TIMEOUT
        self._cache: TTLCache = TTLCache(
            maxsize=cache_maxsize or settings.SCHEMA_CACHE_MAX_ENTRIES,
            ttl=cache_ttl or settings.SCHEMA_CACHE_TTL_SECONDS,
        )

    async def build_dynamic_schema(self, concepts: Iterable[str]) -> SchemaGraph:
        """
        Schema graph for *concepts*.  The returned graph may be shared with
        later callers through the cache and must be treated as read-only.
        """
        names = normalize_concepts(concepts)
        if not names:
            return SchemaGraph()

        cache_key = "|".join(sorted(names))
        cached: Optional[SchemaGraph] = self._cache.get(cache_key)
        if cached is not None:
            logger.info("Schema cache hit (%d concepts, %d nodes)", len(names), len(cached))
            return cached

        logger.info("Building schema graph for %d concepts", len(names))
        context_outcomes, external_outcomes = await asyncio.gather(
            gather_settled(
                (self.context_retriever.get_context_bundle(c) for c in names),
                timeout=self.context_timeout,
            ),
            gather_settled(self.ontology_client.search_concept_with_status(c) for c in names),
        )

        graph = SchemaGraph()
        # Input concepts own their spelling; related labels resolve onto them
        for concept in names:
            graph.upsert(concept, ORIGIN_INTERNAL, weight=0.0)

        for concept, outcome in zip(names, context_outcomes):
            if outcome.ok and outcome.value is not None:
                self._merge_context(graph, concept, outcome.value)
            else:
                logger.warning("Context fetch failed for %r: %s", concept, outcome.error)
                graph.context_failures.append(concept)

        for concept, outcome in zip(names, external_outcomes):
            if not outcome.ok or outcome.value is None:
                logger.warning("External lookup failed for %r: %s", concept, outcome.error)
                graph.ontology_failures.append(concept)
                continue
            lookup: OntologyLookup = outcome.value
            if lookup.failed_sources:
                graph.ontology_failures.append(concept)
            self._merge_external(graph, concept, lookup)

        if graph.degraded:
            logger.warning(
                "Schema graph degraded (%d context, %d ontology failures) — not cached",
                len(graph.context_failures),
                len(graph.ontology_failures),
            )
        else:
            self._cache[cache_key] = graph

        logger.info(
            "Schema graph built: %d nodes (%d relations)",
            len(graph),
            len(graph.relations()),
        )
        return graph

    def clear_cache(self) -> None:
        self._cache.clear()

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    @staticmethod
    def _merge_context(graph: SchemaGraph, concept: str, bundle: ContextBundle) -> None:
        node = graph.upsert(
            concept,
            ORIGIN_INTERNAL,
            weight=float(len(bundle.relevant_notes) + len(bundle.book_excerpts)),
        )

        for raw in bundle.related_concepts:
            related = (raw or "").strip()
            if not related or related.lower() == node.concept.lower():
                continue
            related_node = graph.upsert(related, ORIGIN_INTERNAL)
            graph.connect(node.concept, related_node.concept)

            relation_id = f"{node.concept}_to_{related_node.concept}"
            relation = graph.upsert(
                relation_id,
                ORIGIN_INTERNAL,
                node_type=RELATION,
                default_weight=RELATION_NODE_WEIGHT,
            )
            graph.connect(relation.concept, node.concept)
            graph.connect(relation.concept, related_node.concept)

    def _merge_external(self, graph: SchemaGraph, concept: str, lookup: OntologyLookup) -> None:
        node = graph.upsert(concept, ORIGIN_INTERNAL)
        for result in lookup.results[: self.external_results]:
            for raw in result.related_concepts:
                related = (raw or "").strip()
                if not related or related.lower() == node.concept.lower():
                    continue
                related_node = graph.upsert(
                    related, ORIGIN_EXTERNAL, default_weight=EXTERNAL_NODE_WEIGHT
                )
                graph.connect(node.concept, related_node.concept)
