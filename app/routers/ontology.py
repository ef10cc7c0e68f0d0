"""
External ontology endpoints.

Route summary
-------------
GET    /search          — Wikidata + DBpedia matches for one concept
POST   /property-graph  — search several concepts, return one property graph
DELETE /cache           — drop cached ontology results
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.dependencies.services import InsightEngine, get_engine
from app.models.schemas import (
    ExternalOntologyResult,
    OntologySearchResponse,
    PropertyGraph,
    PropertyGraphRequest,
)
from app.utils.concurrency import gather_settled
from app.utils.helpers import normalize_concepts

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/search", response_model=OntologySearchResponse)
async def search_concept(
    concept: str = Query(..., min_length=1, description="Concept to look up"),
    engine: InsightEngine = Depends(get_engine),
) -> OntologySearchResponse:
    """
    Search every configured ontology for *concept*.

    Results are merged by URI, sorted by relevance (0–100, highest first)
    and cached for ONTOLOGY_CACHE_TTL_SECONDS.  A provider that fails is
    skipped; the call itself only fails on a blank concept.
    """
    if not concept.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="concept must not be blank",
        )
    results = await engine.ontology_client.search_concept(concept)
    return OntologySearchResponse(
        concept=concept.strip(),
        results=results,
        total_results=len(results),
    )


@router.post("/property-graph", response_model=PropertyGraph)
async def property_graph(
    request: PropertyGraphRequest,
    engine: InsightEngine = Depends(get_engine),
) -> PropertyGraph:
    """Search each concept and project all results onto one property graph."""
    concepts = normalize_concepts(request.concepts)
    outcomes = await gather_settled(
        engine.ontology_client.search_concept(c) for c in concepts
    )
    results: List[ExternalOntologyResult] = []
    for outcome in outcomes:
        if outcome.ok:
            results.extend(outcome.value or [])

    graph = engine.ontology_client.convert_to_property_graph(results)
    logger.info(
        "Property graph for %d concept(s): %d nodes, %d edges",
        len(concepts),
        len(graph.nodes),
        len(graph.edges),
    )
    return graph


@router.delete("/cache", status_code=status.HTTP_204_NO_CONTENT)
async def clear_cache(engine: InsightEngine = Depends(get_engine)) -> None:
    """Drop cached ontology results and schema graphs."""
    engine.ontology_client.clear_cache()
    engine.schema_builder.clear_cache()
