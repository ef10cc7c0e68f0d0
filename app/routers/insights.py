"""
Insight endpoints: knowledge gaps, hidden links and the unified ranking.

Route summary
-------------
POST /gaps            — knowledge gaps for a concept set
POST /links           — hidden multi-hop links between concepts
POST /ranking         — gaps + links merged into one ranked list, with stats
POST /ranking/update  — merge results for new concepts into an existing ranking
POST /ranking/stats   — summary statistics for a ranking

Every endpoint returns an empty list (not an error) for an empty concept set.
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from app.dependencies.services import InsightEngine, get_engine
from app.models.schemas import (
    GapDetectionRequest,
    GapDetectionResponse,
    HiddenLinkRequest,
    HiddenLinkResponse,
    PerformanceStats,
    RankingRequest,
    RankingResponse,
    RankingStatsRequest,
    RankingUpdateRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# POST /gaps
# ---------------------------------------------------------------------------

@router.post("/gaps", response_model=GapDetectionResponse)
async def detect_gaps(
    request: GapDetectionRequest,
    engine: InsightEngine = Depends(get_engine),
) -> GapDetectionResponse:
    """
    Detect concepts the user has not covered but that sit next to what they
    know, scored by reward shaping (relevance, interest alignment, path
    length, difficulty) and sorted by ``gap_score``.
    """
    gaps = await engine.gap_detector.detect_knowledge_gaps(request.concepts, request.config)
    return GapDetectionResponse(gaps=gaps, total_gaps=len(gaps))


# ---------------------------------------------------------------------------
# POST /links
# ---------------------------------------------------------------------------

@router.post("/links", response_model=HiddenLinkResponse)
async def detect_links(
    request: HiddenLinkRequest,
    engine: InsightEngine = Depends(get_engine),
) -> HiddenLinkResponse:
    """
    Find multi-hop paths between every pair of concepts (forward, backward
    and bidirectional search), sorted by confidence.
    """
    links = await engine.link_reasoner.detect_hidden_links(request.concepts, request.options)
    return HiddenLinkResponse(links=links, total_links=len(links))


# ---------------------------------------------------------------------------
# Ranking
# ---------------------------------------------------------------------------

@router.post("/ranking", response_model=RankingResponse)
async def generate_ranking(
    request: RankingRequest,
    engine: InsightEngine = Depends(get_engine),
) -> RankingResponse:
    """Unified, filtered ranking of gaps and links for the learner profile."""
    results = await engine.ranking.generate_unified_ranking(
        request.concepts, request.profile, request.options, request.weights
    )
    return RankingResponse(
        results=results,
        total_results=len(results),
        stats=engine.ranking.generate_performance_stats(results),
    )


@router.post("/ranking/update", response_model=RankingResponse)
async def update_ranking(
    request: RankingUpdateRequest,
    engine: InsightEngine = Depends(get_engine),
) -> RankingResponse:
    """Rank the new concepts and merge them into an existing ranking by id."""
    results = await engine.ranking.update_real_time_ranking(
        request.existing, request.new_concepts, request.profile
    )
    return RankingResponse(
        results=results,
        total_results=len(results),
        stats=engine.ranking.generate_performance_stats(results),
    )


@router.post("/ranking/stats", response_model=PerformanceStats)
async def ranking_stats(
    request: RankingStatsRequest,
    engine: InsightEngine = Depends(get_engine),
) -> PerformanceStats:
    return engine.ranking.generate_performance_stats(request.results)
