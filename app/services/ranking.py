"""
Unified ranking of knowledge gaps and hidden links.

Gap detection and link detection run concurrently under one deadline; a
detector that fails or runs late contributes nothing.  Each gap and link is
converted into a ``UnifiedResult`` carrying six component scores, a
weighted ``unified_score`` and a priority, then filtered, sorted and
truncated.

Sort order: unified score, priority, user interest, learning impact,
discovery time (newest first), all descending.

Public API
----------
RankingEngine.generate_unified_ranking(concepts, profile, options, weights) -> List[UnifiedResult]
RankingEngine.update_real_time_ranking(existing, new_concepts, profile)      -> List[UnifiedResult]
RankingEngine.generate_performance_stats(results)                            -> PerformanceStats
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np

from app.config import settings
from app.models.schemas import (
    ComponentScores,
    Difficulty,
    GapResult,
    HiddenLink,
    KnowledgeGap,
    LinkResult,
    PerformanceStats,
    RankingOptions,
    ResultPriority,
    ResultType,
    ScoringWeights,
    UnifiedResult,
    UserLearningProfile,
)
from app.services import scoring
from app.services.gap_detector import GapDetector
from app.services.link_reasoner import LinkReasoner
from app.utils.concurrency import gather_settled
from app.utils.helpers import normalize_concepts, stable_id

logger = logging.getLogger(__name__)

REALTIME_MAX_RESULTS = 10


def rank_key(result: UnifiedResult):
    return (
        -result.unified_score,
        -scoring.PRIORITY_RANK[result.priority],
        -result.scores.user_interest,
        -result.scores.learning_impact,
        -scoring.as_utc(result.discovered_at).timestamp(),
        result.id,
    )


class RankingEngine:
    """Merges gaps and links into one weighted, filterable ranking."""

    def __init__(
        self,
        gap_detector: GapDetector,
        link_reasoner: LinkReasoner,
        deadline: Optional[float] = None,
    ) -> None:
        self.gap_detector = gap_detector
        self.link_reasoner = link_reasoner
        self.deadline = deadline or settings.RANKING_DEADLINE_SECONDS

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    async def generate_unified_ranking(
        self,
        concepts: Iterable[str],
        profile: Optional[UserLearningProfile] = None,
        options: Optional[RankingOptions] = None,
        weights: Optional[ScoringWeights] = None,
    ) -> List[UnifiedResult]:
        profile = profile or UserLearningProfile()
        options = options or RankingOptions()
        weights = (weights or ScoringWeights()).normalized()

        names = normalize_concepts(concepts)
        if not names:
            return []

        logger.info(
            "Ranking: %d concept(s), max_results=%d, min_score=%.1f",
            len(names),
            options.max_results,
            options.min_unified_score,
        )

        try:
            gap_outcome, link_outcome = await gather_settled(
                [
                    self.gap_detector.detect_knowledge_gaps(names, options.gap_detection),
                    self.link_reasoner.detect_hidden_links(names, options.link_detection),
                ],
                timeout=self.deadline,
            )
            if not gap_outcome.ok:
                logger.warning("Ranking: gap detection failed: %s", gap_outcome.error)
            if not link_outcome.ok:
                logger.warning("Ranking: link detection failed: %s", link_outcome.error)
            gaps: List[KnowledgeGap] = (gap_outcome.value or []) if gap_outcome.ok else []
            links: List[HiddenLink] = (link_outcome.value or []) if link_outcome.ok else []
            logger.info("Ranking: %d gap(s), %d link(s) detected", len(gaps), len(links))

            now = datetime.now(timezone.utc)
            results: List[UnifiedResult] = [
                self._convert_gap(gap, profile, weights, now) for gap in gaps
            ]
            results.extend(self._convert_link(link, profile, weights, now) for link in links)

            filtered = self._apply_filters(results, options)
            ranked = sorted(filtered, key=rank_key)
            final = [r for r in ranked if r.unified_score >= options.min_unified_score]
            final = final[: options.max_results]

            if options.include_recommendations:
                final = [self._with_recommendations(r, profile) for r in final]

            logger.info("Ranking: %d result(s) returned", len(final))
            return final

        except Exception:
            logger.error("Ranking failed — returning no results", exc_info=True)
            return []

    async def update_real_time_ranking(
        self,
        existing: Sequence[UnifiedResult],
        new_concepts: Iterable[str],
        profile: Optional[UserLearningProfile] = None,
    ) -> List[UnifiedResult]:
        """Rank *new_concepts* and merge into *existing*; an id seen twice keeps the existing entry."""
        fresh = await self.generate_unified_ranking(
            new_concepts, profile, RankingOptions(max_results=REALTIME_MAX_RESULTS)
        )

        merged: Dict[str, UnifiedResult] = {}
        for result in [*existing, *fresh]:
            merged.setdefault(result.id, result)

        reranked = sorted(merged.values(), key=rank_key)
        logger.info(
            "Real-time ranking: %d existing + %d new → %d result(s)",
            len(existing),
            len(fresh),
            len(reranked),
        )
        return reranked

    @staticmethod
    def generate_performance_stats(results: Sequence[UnifiedResult]) -> PerformanceStats:
        type_dist = {t.value: 0 for t in ResultType}
        priority_dist = {p.value: 0 for p in ResultPriority}
        difficulty_dist = {d.value: 0 for d in Difficulty}

        if not results:
            return PerformanceStats(
                type_distribution=type_dist,
                priority_distribution=priority_dist,
                difficulty_distribution=difficulty_dist,
            )

        scores = np.array([r.unified_score for r in results], dtype=float)
        minutes = np.array([r.estimated_learning_time for r in results], dtype=float)
        for r in results:
            type_dist[r.type] += 1
            priority_dist[r.priority.value] += 1
            difficulty_dist[r.difficulty.value] += 1

        return PerformanceStats(
            total_results=len(results),
            average_score=round(float(scores.mean()), 2),
            max_score=float(scores.max()),
            min_score=float(scores.min()),
            type_distribution=type_dist,
            priority_distribution=priority_dist,
            difficulty_distribution=difficulty_dist,
            average_learning_time=round(float(minutes.mean()), 2),
        )

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    @staticmethod
    def _convert_gap(
        gap: KnowledgeGap,
        profile: UserLearningProfile,
        weights: ScoringWeights,
        now: datetime,
    ) -> GapResult:
        scores = ComponentScores(
            relevance=gap.confidence_score,
            user_interest=scoring.user_interest_score(gap.missing_concept, profile),
            learning_impact=scoring.gap_learning_impact(gap),
            ontology_strength=gap.gap_score * 0.8,
            recency=scoring.recency_score(now, now),
            difficulty=scoring.gap_difficulty_score(gap.priority.value, profile),
        )
        unified = scoring.weighted_score(scores, weights)
        return GapResult(
            id=stable_id("unified", gap.id),
            title=f"Knowledge gap: {gap.missing_concept}",
            description=f'Learning "{gap.missing_concept}" would close a gap next to concepts you already know.',
            unified_score=unified,
            priority=scoring.result_priority(unified),
            scores=scores,
            estimated_learning_time=scoring.gap_learning_time(gap),
            difficulty=scoring.gap_difficulty(gap),
            categories=[gap.source.value, gap.priority.value, *gap.categories],
            related_concepts=list(gap.related_user_concepts),
            learning_path=list(gap.suggested_learning_path),
            discovered_at=now,
            original_data=gap,
        )

    @staticmethod
    def _convert_link(
        link: HiddenLink,
        profile: UserLearningProfile,
        weights: ScoringWeights,
        now: datetime,
    ) -> LinkResult:
        scores = ComponentScores(
            relevance=link.confidence_score,
            user_interest=max(
                scoring.user_interest_score(link.from_concept, profile),
                scoring.user_interest_score(link.to_concept, profile),
            ),
            learning_impact=scoring.link_learning_impact(link),
            ontology_strength=min(100.0, link.strength * 100.0),
            recency=scoring.recency_score(link.discovered_at, now),
            difficulty=scoring.link_difficulty_score(link, profile),
        )
        unified = scoring.weighted_score(scores, weights)
        return LinkResult(
            id=stable_id("unified", link.id),
            title=f"Hidden link: {link.from_concept} ↔ {link.to_concept}",
            description=(
                f'Found a {link.link_type.value} connection between '
                f'"{link.from_concept}" and "{link.to_concept}".'
            ),
            unified_score=unified,
            priority=scoring.result_priority(unified),
            scores=scores,
            estimated_learning_time=scoring.link_learning_time(link),
            difficulty=scoring.link_difficulty(link),
            categories=[link.source.value, link.link_type.value, *link.categories],
            related_concepts=[
                link.from_concept,
                link.to_concept,
                *link.reasoning.intermediate_nodes,
            ],
            learning_path=list(link.connection_path),
            discovered_at=link.discovered_at,
            original_data=link,
        )

    # ------------------------------------------------------------------
    # Filters & recommendations
    # ------------------------------------------------------------------

    @staticmethod
    def _apply_filters(
        results: List[UnifiedResult], options: RankingOptions
    ) -> List[UnifiedResult]:
        filtered = results

        if options.priority_filter:
            filtered = [r for r in filtered if r.priority in options.priority_filter]

        if options.type_filter:
            allowed = {t.value for t in options.type_filter}
            filtered = [r for r in filtered if r.type in allowed]

        if options.difficulty_filter:
            filtered = [r for r in filtered if r.difficulty in options.difficulty_filter]

        if options.category_filter:
            needles = [f.lower() for f in options.category_filter if f]
            filtered = [
                r
                for r in filtered
                if any(needle in category.lower() for category in r.categories for needle in needles)
            ]

        if options.time_constraint is not None:
            filtered = [
                r for r in filtered if r.estimated_learning_time <= options.time_constraint
            ]

        return filtered

    @staticmethod
    def _with_recommendations(
        result: UnifiedResult, profile: UserLearningProfile
    ) -> UnifiedResult:
        recs: List[str] = []

        if result.estimated_learning_time > profile.available_time_per_session:
            recs.append(
                f"This takes about {result.estimated_learning_time} minutes; "
                "split it across several sessions."
            )

        if result.difficulty == Difficulty.ADVANCED and profile.current_level == Difficulty.BEGINNER:
            recs.append("This is advanced material; cover the fundamentals first.")
        elif result.difficulty == Difficulty.BEGINNER and profile.current_level == Difficulty.ADVANCED:
            recs.append("This is introductory material; review it quickly and move on to applications.")

        if len(result.learning_path) > 1:
            recs.append("Suggested order: " + " → ".join(result.learning_path))

        if result.related_concepts:
            recs.append("Related concepts: " + ", ".join(result.related_concepts[:3]))

        if isinstance(result, GapResult):
            recs.append("Closing this gap strengthens your overall understanding of the area.")
        elif isinstance(result, LinkResult):
            recs.append("Understanding this connection deepens how these concepts relate.")

        return result.model_copy(update={"recommendations": recs})
