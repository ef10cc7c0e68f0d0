"""
Relation clustering ("super-relations").

Relation nodes are grouped by semantic type using keyword containment; a
group with more than one member replaces the registry's cluster of that
type.  Cluster membership only ever adds a confidence bonus to a link.

The registry is the one piece of mutable state shared between link
detection runs, so every update holds an ``asyncio.Lock``.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Tuple

from app.services.schema_graph import SchemaGraph

logger = logging.getLogger(__name__)

CAUSAL = "causal"
SPATIAL = "spatial"
TEMPORAL = "temporal"
HIERARCHICAL = "hierarchical"
GENERIC = "generic"

# Checked in order; first keyword hit wins
_SEMANTIC_KEYWORDS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    (CAUSAL, ("cause", "lead", "result")),
    (SPATIAL, ("contain", "location", "near")),
    (TEMPORAL, ("before", "after", "during")),
    (HIERARCHICAL, ("is_a", "part", "subclass")),
)


@dataclasses.dataclass(frozen=True)
class RelationCluster:
    cluster_id: str
    relations: Tuple[str, ...]
    strength: float
    semantic_type: str

    def matches(self, node_id: str) -> bool:
        """True when *node_id* contains one of this cluster's relations."""
        return any(relation in node_id for relation in self.relations)


def default_clusters() -> List[RelationCluster]:
    return [
        RelationCluster(
            "causal_relations", ("causes", "leads_to", "results_in", "triggers"), 0.8, CAUSAL
        ),
        RelationCluster(
            "spatial_relations", ("contains", "located_in", "near", "adjacent_to"), 0.7, SPATIAL
        ),
        RelationCluster(
            "temporal_relations", ("before", "after", "during", "concurrent_with"), 0.6, TEMPORAL
        ),
        RelationCluster(
            "hierarchical_relations",
            ("is_a", "part_of", "subclass_of", "instance_of"),
            0.9,
            HIERARCHICAL,
        ),
    ]


def semantic_type(relation: str) -> str:
    text = relation.lower()
    for kind, keywords in _SEMANTIC_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return kind
    return GENERIC


class RelationClusterer:
    """Process-wide registry of relation clusters, one per semantic type."""

    def __init__(self, clusters: Iterable[RelationCluster] = ()) -> None:
        seed = list(clusters) or default_clusters()
        self._clusters: "OrderedDict[str, RelationCluster]" = OrderedDict(
            (cluster.semantic_type, cluster) for cluster in seed
        )
        self._lock = asyncio.Lock()

    @property
    def clusters(self) -> List[RelationCluster]:
        """Snapshot of the current clusters."""
        return list(self._clusters.values())

    async def update_relation_clusters(self, schema: SchemaGraph) -> List[RelationCluster]:
        """Regroup the schema's relation nodes; returns the resulting snapshot."""
        relations = [node.concept for node in schema.relations()]
        groups: Dict[str, List[str]] = {}
        for relation in relations:
            groups.setdefault(semantic_type(relation), []).append(relation)

        async with self._lock:
            replaced = 0
            for kind, members in groups.items():
                if len(members) <= 1:
                    continue
                self._clusters[kind] = RelationCluster(
                    cluster_id=f"cluster_{kind}",
                    relations=tuple(members),
                    strength=len(members) / len(relations),
                    semantic_type=kind,
                )
                replaced += 1
            snapshot = list(self._clusters.values())

        logger.info(
            "Relation clusters updated: %d relations, %d cluster(s) replaced, %d total",
            len(relations),
            replaced,
            len(snapshot),
        )
        return snapshot

    async def reset(self) -> None:
        """Restore the default clusters."""
        async with self._lock:
            self._clusters = OrderedDict((c.semantic_type, c) for c in default_clusters())
