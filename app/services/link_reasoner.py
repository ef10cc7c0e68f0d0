"""
Hidden link detection — bounded multi-hop search over the schema graph.

For every unordered pair of input concepts three searches run over the
schema graph built by ``SchemaGraphBuilder``:

  forward        depth-first from the first concept to the second
  backward       depth-first from the second concept, paths reversed
  bidirectional  ``max_hops // 2`` hops out from each end, stitched where
                 the two frontiers meet or are adjacent

No node repeats within a path and every search stops after
MAX_PATHS_PER_PAIR paths or MAX_PATH_EXPANSIONS expansions.  The searches for
a pair run in a worker thread under PAIR_SEARCH_TIMEOUT.  Paths of three or
more nodes become candidate links, scored by strength and confidence:

  strength   = 0.8 ** (hops - 1) / ln(len(path) + 1)
  confidence = 50 + max(0, 30 - 8 * hops) + 20 * strength
               + 15 if the path touches a relation cluster
               + method bonus (bidirectional 10, forward 5, backward 3)

Pairs are searched in batches of LINK_WORKER_COUNT or one at a time; the
search per pair is deterministic so both modes return the same links.

When the pipeline fails (an unexpected exception, or a degraded schema that
yielded no candidate at all) each pair gets one direct fallback link at
confidence 30.

Public API
----------
LinkReasoner.detect_hidden_links(concepts, options) -> List[HiddenLink]
"""
from __future__ import annotations

import asyncio
import itertools
import logging
import math
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from app.config import settings
from app.models.schemas import (
    HiddenLink,
    HiddenLinkDetectionOptions,
    LinkReasoning,
    LinkSource,
    LinkType,
    ReasoningMethod,
)
from app.services.relation_clusters import RelationCluster, RelationClusterer
from app.services.schema_graph import (
    ORIGIN_EXTERNAL,
    ORIGIN_INTERNAL,
    RELATION,
    SchemaGraph,
    SchemaGraphBuilder,
)
from app.utils.concurrency import Outcome, run_in_batches, settle
from app.utils.helpers import clamp, normalize_concepts, stable_id

logger = logging.getLogger(__name__)

Path = List[str]

METHOD_BONUS: Dict[ReasoningMethod, float] = {
    ReasoningMethod.BIDIRECTIONAL: 10.0,
    ReasoningMethod.FORWARD: 5.0,
    ReasoningMethod.BACKWARD: 3.0,
}

FALLBACK_CONFIDENCE = 30.0
FALLBACK_STRENGTH = 0.3


# ---------------------------------------------------------------------------
# Path search (pure, synchronous)
# ---------------------------------------------------------------------------

def enumerate_paths(
    schema: SchemaGraph,
    start: str,
    max_hops: int,
    limit: int,
    target: Optional[str] = None,
    max_expansions: Optional[int] = None,
) -> List[Path]:
    """
    Simple paths out of *start* with at most *max_hops* edges.

    With a *target*, only paths ending there (and of at least one edge) are
    returned.  Without one, every prefix is returned, ``[start]`` included;
    that is the frontier used for bidirectional stitching.

    The search stops after *limit* paths or *max_expansions* stack pops,
    whichever comes first.
    """
    if start not in schema or limit <= 0:
        return []
    if max_expansions is None:
        max_expansions = settings.MAX_PATH_EXPANSIONS

    paths: List[Path] = []
    stack: List[Tuple[Path, FrozenSet[str]]] = [([start], frozenset((start,)))]
    expansions = 0
    while stack and len(paths) < limit:
        if expansions >= max_expansions:
            logger.debug(
                "Path search from %r stopped after %d expansions (%d path(s))",
                start,
                expansions,
                len(paths),
            )
            break
        expansions += 1
        path, visited = stack.pop()
        node = path[-1]

        if target is None:
            paths.append(path)
        elif node == target:
            if len(path) > 1:
                paths.append(path)
            continue

        if len(path) - 1 >= max_hops:
            continue
        schema_node = schema.get(node)
        if schema_node is None:
            continue
        # Reversed push keeps neighbor order on pop
        for neighbor in reversed(schema_node.neighbors):
            if neighbor not in visited:
                stack.append((path + [neighbor], visited | {neighbor}))
    return paths


def forward_paths(
    schema: SchemaGraph,
    start: str,
    target: str,
    max_hops: int,
    limit: int,
    max_expansions: Optional[int] = None,
) -> List[Path]:
    return enumerate_paths(schema, start, max_hops, limit, target=target, max_expansions=max_expansions)


def backward_paths(
    schema: SchemaGraph,
    start: str,
    target: str,
    max_hops: int,
    limit: int,
    max_expansions: Optional[int] = None,
) -> List[Path]:
    paths = enumerate_paths(schema, target, max_hops, limit, target=start, max_expansions=max_expansions)
    return [list(reversed(p)) for p in paths]


def bidirectional_paths(
    schema: SchemaGraph,
    start: str,
    target: str,
    max_hops: int,
    limit: int,
    max_expansions: Optional[int] = None,
) -> List[Path]:
    half = max_hops // 2
    frontier_limit = limit * 10
    from_start = enumerate_paths(schema, start, half, frontier_limit, max_expansions=max_expansions)
    from_target = enumerate_paths(schema, target, half, frontier_limit, max_expansions=max_expansions)

    stitched: List[Path] = []
    seen = set()
    for head in from_start:
        meet = head[-1]
        meet_node = schema.get(meet)
        for tail in from_target:
            end = tail[-1]
            if meet == end:
                path = head + list(reversed(tail))[1:]
            elif meet_node is not None and end in meet_node.neighbors:
                path = head + list(reversed(tail))
            else:
                continue

            key = tuple(path)
            if (
                key in seen
                or path[0] != start
                or path[-1] != target
                or len(path) - 1 > max_hops
                or len(set(path)) != len(path)
            ):
                continue
            seen.add(key)
            stitched.append(path)
            if len(stitched) >= limit:
                return stitched
    return stitched


# ---------------------------------------------------------------------------
# LinkReasoner
# ---------------------------------------------------------------------------

class LinkReasoner:
    """
    Finds hidden links between every pair of input concepts.

    Owns no state of its own: the schema builder caches graphs and the
    clusterer (shared, lock-protected) holds relation clusters.
    """

    # ---- tunables ----------------------------------------------------------
    INDIRECT_HOPS: int = 3                  # hops above this = indirect link
    CLUSTER_BONUS: float = 15.0
    # -----------------------------------------------------------------------

    def __init__(
        self,
        schema_builder: SchemaGraphBuilder,
        clusterer: RelationClusterer,
        max_paths_per_pair: Optional[int] = None,
        worker_count: Optional[int] = None,
        pair_timeout: Optional[float] = None,
        max_expansions: Optional[int] = None,
    ) -> None:
        self.schema_builder = schema_builder
        self.clusterer = clusterer
        self.max_paths_per_pair = max_paths_per_pair or settings.MAX_PATHS_PER_PAIR
        self.worker_count = worker_count or settings.LINK_WORKER_COUNT
        self.pair_timeout = pair_timeout or settings.PAIR_SEARCH_TIMEOUT
        self.max_expansions = max_expansions or settings.MAX_PATH_EXPANSIONS

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def detect_hidden_links(
        self,
        concepts: Iterable[str],
        options: Optional[HiddenLinkDetectionOptions] = None,
    ) -> List[HiddenLink]:
        options = options or HiddenLinkDetectionOptions()
        names = normalize_concepts(concepts)
        if len(names) < 2:
            return []

        pairs = list(itertools.combinations(names, 2))
        logger.info(
            "LinkReasoner: %d concept(s), %d pair(s), max_hops=%d",
            len(names),
            len(pairs),
            options.max_hops,
        )

        try:
            schema = await self.schema_builder.build_dynamic_schema(names)

            if options.enable_super_relations:
                clusters = await self.clusterer.update_relation_clusters(schema)
            else:
                clusters = self.clusterer.clusters

            candidates = await self._search_pairs(
                pairs, schema, clusters, options.max_hops, options.enable_parallel_processing
            )

            if not candidates and schema.degraded:
                logger.warning(
                    "LinkReasoner: degraded schema produced no links — using direct fallback"
                )
                return self._basic_direct_links(pairs)

            kept = [link for link in candidates if link.confidence_score >= options.min_confidence_score]
            kept.sort(key=_rank_key)
            final = kept[: options.max_links_to_return]
            logger.info(
                "LinkReasoner: complete. candidates=%d kept=%d returned=%d",
                len(candidates),
                len(kept),
                len(final),
            )
            return final

        except Exception:
            logger.error("LinkReasoner: detection failed — using direct fallback", exc_info=True)
            return self._basic_direct_links(pairs)

    # ------------------------------------------------------------------
    # Pair search
    # ------------------------------------------------------------------

    async def _search_pairs(
        self,
        pairs: Sequence[Tuple[str, str]],
        schema: SchemaGraph,
        clusters: List[RelationCluster],
        max_hops: int,
        parallel: bool,
    ) -> List[HiddenLink]:
        async def search(pair: Tuple[str, str]) -> List[HiddenLink]:
            return await self._search_pair(pair, schema, clusters, max_hops)

        outcomes: List[Outcome[List[HiddenLink]]]
        if parallel:
            outcomes = await run_in_batches(pairs, search, self.worker_count, self.pair_timeout)
        else:
            outcomes = []
            for pair in pairs:
                outcomes.append(await settle(search(pair), self.pair_timeout))

        links: List[HiddenLink] = []
        for pair, outcome in zip(pairs, outcomes):
            if outcome.ok:
                links.extend(outcome.value or [])
            else:
                logger.warning("Pair search %s ↔ %s failed: %s", pair[0], pair[1], outcome.error)
        return links

    async def _search_pair(
        self,
        pair: Tuple[str, str],
        schema: SchemaGraph,
        clusters: List[RelationCluster],
        max_hops: int,
    ) -> List[HiddenLink]:
        start, target = schema.resolve(pair[0]), schema.resolve(pair[1])
        # Searches run in a worker thread so the pair deadline can fire while
        # the event loop keeps serving other requests
        found = await asyncio.to_thread(self._collect_paths, schema, start, target, max_hops)
        return [
            self._build_link(pair[0], pair[1], list(path), method, schema, clusters)
            for path, method in found.items()
        ]

    def _collect_paths(
        self, schema: SchemaGraph, start: str, target: str, max_hops: int
    ) -> Dict[Tuple[str, ...], ReasoningMethod]:
        """Candidate paths (three or more nodes) keyed to their best method."""
        found: Dict[Tuple[str, ...], ReasoningMethod] = {}
        searches = (
            (ReasoningMethod.FORWARD, forward_paths),
            (ReasoningMethod.BACKWARD, backward_paths),
            (ReasoningMethod.BIDIRECTIONAL, bidirectional_paths),
        )
        for method, search in searches:
            paths = search(
                schema, start, target, max_hops, self.max_paths_per_pair, self.max_expansions
            )
            for path in paths:
                if len(path) <= 2:
                    continue
                key = tuple(path)
                current = found.get(key)
                if current is None or METHOD_BONUS[method] > METHOD_BONUS[current]:
                    found[key] = method
        return found

    # ------------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------------

    def _build_link(
        self,
        from_concept: str,
        to_concept: str,
        path: Path,
        method: ReasoningMethod,
        schema: SchemaGraph,
        clusters: List[RelationCluster],
    ) -> HiddenLink:
        hops = len(path) - 1
        intermediates = path[1:-1]

        strength = (0.8 ** (hops - 1)) * (1.0 / math.log(len(path) + 1))
        matched = [c.semantic_type for c in clusters if any(c.matches(node) for node in path)]

        confidence = 50.0 + max(0.0, 30.0 - 8.0 * hops) + 20.0 * strength
        if matched:
            confidence += self.CLUSTER_BONUS
        confidence += METHOD_BONUS[method]

        evidence = [
            f"relation:{node}"
            for node in intermediates
            if node in schema and schema[node].node_type == RELATION
        ]
        evidence.extend(f"cluster:{kind}" for kind in matched)

        return HiddenLink(
            id=stable_id("link", from_concept, to_concept, *path),
            from_concept=from_concept,
            to_concept=to_concept,
            link_type=LinkType.INDIRECT if hops > self.INDIRECT_HOPS else LinkType.DIRECT,
            connection_path=path,
            confidence_score=round(clamp(confidence), 2),
            reasoning=LinkReasoning(
                method=method,
                hops=hops,
                intermediate_nodes=intermediates,
                evidence=evidence,
            ),
            source=_path_source(intermediates, schema),
            strength=round(strength, 4),
            categories=matched,
        )

    @staticmethod
    def _basic_direct_links(pairs: Sequence[Tuple[str, str]]) -> List[HiddenLink]:
        return [
            HiddenLink(
                id=stable_id("link", a, b, "direct"),
                from_concept=a,
                to_concept=b,
                link_type=LinkType.DIRECT,
                connection_path=[a, b],
                confidence_score=FALLBACK_CONFIDENCE,
                reasoning=LinkReasoning(
                    method=ReasoningMethod.FORWARD,
                    hops=1,
                    intermediate_nodes=[],
                    evidence=["direct pair fallback"],
                ),
                source=LinkSource.INTERNAL,
                strength=FALLBACK_STRENGTH,
                categories=["fallback"],
            )
            for a, b in pairs
        ]


def _path_source(intermediates: Path, schema: SchemaGraph) -> LinkSource:
    """internal / external / hybrid from the origins of the intermediate nodes."""
    origins = set()
    for node in intermediates:
        if node in schema:
            origins |= schema[node].origins
    if ORIGIN_INTERNAL in origins and ORIGIN_EXTERNAL in origins:
        return LinkSource.HYBRID
    if ORIGIN_EXTERNAL in origins:
        return LinkSource.EXTERNAL
    return LinkSource.INTERNAL


def _rank_key(link: HiddenLink):
    return (
        -link.confidence_score,
        -link.strength,
        link.reasoning.hops,
        tuple(link.connection_path),
    )
