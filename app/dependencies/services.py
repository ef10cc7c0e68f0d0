"""
Composition root and FastAPI dependency providers.

``build_engine`` wires every service once per process: the ontology
client, context retriever and relation clusterer are shared by the
detectors built on top of them.  Routers receive services through the
``get_*`` providers below, which tests replace with
``app.dependency_overrides``.
"""
from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from fastapi import Request

from app.config import Settings, settings
from app.services.context import (
    ContextRetriever,
    HttpContextRetriever,
    StaticContextRetriever,
)
from app.services.gap_detector import GapDetector
from app.services.link_reasoner import LinkReasoner
from app.services.ontology import ExternalOntologyClient
from app.services.ranking import RankingEngine
from app.services.relation_clusters import RelationClusterer
from app.services.schema_graph import SchemaGraphBuilder
from app.services.similarity import ConceptSimilarity, build_similarity

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class InsightEngine:
    ontology_client: ExternalOntologyClient
    context_retriever: ContextRetriever
    similarity: ConceptSimilarity
    schema_builder: SchemaGraphBuilder
    clusterer: RelationClusterer
    gap_detector: GapDetector
    link_reasoner: LinkReasoner
    ranking: RankingEngine


def build_context_retriever(config: Settings = settings) -> ContextRetriever:
    if config.CONTEXT_STORE_URL:
        logger.info("Context store: HTTP %s", config.CONTEXT_STORE_URL)
        return HttpContextRetriever(config.CONTEXT_STORE_URL)
    if config.CONTEXT_STORE_FILE:
        logger.info("Context store: static file %s", config.CONTEXT_STORE_FILE)
        return StaticContextRetriever.from_file(config.CONTEXT_STORE_FILE)
    logger.info("Context store: empty in-memory store")
    return StaticContextRetriever()


def build_engine(
    config: Settings = settings,
    ontology_client: Optional[ExternalOntologyClient] = None,
    context_retriever: Optional[ContextRetriever] = None,
    similarity: Optional[ConceptSimilarity] = None,
) -> InsightEngine:
    """Wire the full service graph; any collaborator may be injected."""
    if ontology_client is None:
        ontology_client = ExternalOntologyClient()
    if context_retriever is None:
        context_retriever = build_context_retriever(config)
    if similarity is None:
        similarity = build_similarity(config.SIMILARITY_BACKEND)

    schema_builder = SchemaGraphBuilder(context_retriever, ontology_client)
    clusterer = RelationClusterer()
    gap_detector = GapDetector(context_retriever, ontology_client, similarity)
    link_reasoner = LinkReasoner(schema_builder, clusterer)
    ranking = RankingEngine(gap_detector, link_reasoner)

    return InsightEngine(
        ontology_client=ontology_client,
        context_retriever=context_retriever,
        similarity=similarity,
        schema_builder=schema_builder,
        clusterer=clusterer,
        gap_detector=gap_detector,
        link_reasoner=link_reasoner,
        ranking=ranking,
    )


# ---------------------------------------------------------------------------
# FastAPI providers
# ---------------------------------------------------------------------------

def get_engine(request: Request) -> InsightEngine:
    """The engine built at startup (built lazily when no lifespan ran)."""
    engine: Optional[InsightEngine] = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine()
        request.app.state.engine = engine
    return engine
