"""
Knowledge gap detection.

A knowledge gap is an external-ontology concept the user has not covered
but that sits next to concepts they already know.  Detection runs in five
passes:

Pass 1 — Profile
    Each user concept's context bundle yields its related concepts and note
    tags.  ``interest_weights[tag] = tag_count / len(user_concepts)``.

Pass 2 — Candidates
    External matches for every user concept, fetched in small sequential
    batches (GAP_CANDIDATE_BATCH_SIZE, concurrent within a batch),
    de-duplicated by lowercase label keeping the best relevance score.

Pass 3 — Identification
    A candidate is a gap when it is not already known (similarity to a user
    concept > 0.8) and is related to at least one user concept (similarity
    in (0.3, 0.8), or one of its categories appears among the user's tags).
    Each gap gets a learning path that starts at a user concept and ends at
    the missing concept.

Pass 4 — Reward shaping
    gap_score = concept relevance + interest alignment + path length score
    + difficulty score, clamped to [0, 100].

Pass 5 — Filter & rank
    Drop gaps under ``min_gap_score``; sort by score; truncate.

A failing concept or provider only removes its own contribution.  Anything
unexpected aborts the run and yields ``[]``.

Public API
----------
GapDetector.detect_knowledge_gaps(user_concepts, config) -> List[KnowledgeGap]
"""
from __future__ import annotations

import dataclasses
import logging
from collections import Counter
from typing import Dict, Iterable, List, Optional, Set

from app.config import settings
from app.models.schemas import (
    Difficulty,
    ExternalOntologyResult,
    GapDetectionConfig,
    GapPriority,
    KnowledgeGap,
    RewardSignal,
)
from app.services.context import ContextRetriever
from app.services.errors import ComputationError
from app.services.ontology import ExternalOntologyClient
from app.services.similarity import ConceptSimilarity, LexicalConceptSimilarity
from app.utils.concurrency import gather_settled, run_in_batches
from app.utils.helpers import clamp, normalize_concepts, stable_id

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Profile dataclass
# ---------------------------------------------------------------------------

@dataclasses.dataclass
class UserKnowledgeProfile:
    """What the user's own notes say about their concepts."""

    concepts: List[str]
    concept_frequency: Dict[str, int]
    related_concepts: Set[str]
    tag_histogram: Dict[str, int]
    interest_weights: Dict[str, float]

    @property
    def total_concepts(self) -> int:
        return len(self.concepts)


# ---------------------------------------------------------------------------
# GapDetector
# ---------------------------------------------------------------------------

class GapDetector:
    """
    Detects knowledge gaps for a set of user concepts.

    Call ``await detector.detect_knowledge_gaps(concepts, config)``.
    """

    # ---- tunables ----------------------------------------------------------
    KNOWN_THRESHOLD: float = 0.8            # similarity above this = already known
    RELATED_THRESHOLD: float = 0.3          # similarity above this = related
    MAX_RELATED_USER_CONCEPTS: int = 5
    HIGH_PRIORITY_SCORE: float = 80.0
    MEDIUM_PRIORITY_SCORE: float = 50.0
    # -----------------------------------------------------------------------

    def __init__(
        self,
        context_retriever: ContextRetriever,
        ontology_client: ExternalOntologyClient,
        similarity: Optional[ConceptSimilarity] = None,
        batch_size: Optional[int] = None,
        context_timeout: Optional[float] = None,
    ) -> None:
        self.context_retriever = context_retriever
        self.ontology_client = ontology_client
        self.similarity = similarity or LexicalConceptSimilarity()
        self.batch_size = batch_size or settings.GAP_CANDIDATE_BATCH_SIZE
        self.context_timeout = context_timeout or settings.CONTEXT_STORE_TIMEOUT

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def detect_knowledge_gaps(
        self,
        user_concepts: Iterable[str],
        config: Optional[GapDetectionConfig] = None,
    ) -> List[KnowledgeGap]:
        config = config or GapDetectionConfig()
        concepts = normalize_concepts(user_concepts)
        if not concepts:
            return []

        try:
            logger.info("GapDetector: Pass 1 — profiling %d concept(s)...", len(concepts))
            profile = await self._analyze_profile(concepts)

            logger.info("GapDetector: Pass 2 — gathering external candidates...")
            candidates = await self._gather_external_concepts(concepts)
            logger.info("GapDetector: Pass 2 done — %d unique candidate(s)", len(candidates))

            await self.similarity.prime([*concepts, *(c.label for c in candidates)])

            logger.info("GapDetector: Pass 3 — identifying gaps...")
            gaps = self._identify_gaps(profile, candidates, config)

            logger.info("GapDetector: Pass 4 — reward shaping %d gap(s)...", len(gaps))
            scored = [self._apply_reward(gap, profile, config) for gap in gaps]

            final = self._filter_and_rank(scored, config)
            logger.info(
                "GapDetector: complete. candidates=%d identified=%d returned=%d",
                len(candidates),
                len(gaps),
                len(final),
            )
            return final

        except Exception:
            logger.error("GapDetector: detection failed — returning no gaps", exc_info=True)
            return []

    # ------------------------------------------------------------------
    # Pass 1: profile
    # ------------------------------------------------------------------

    async def _analyze_profile(self, concepts: List[str]) -> UserKnowledgeProfile:
        outcomes = await gather_settled(
            (self.context_retriever.get_context_bundle(c) for c in concepts),
            timeout=self.context_timeout,
        )

        frequency: Counter = Counter()
        related: Set[str] = set()
        tags: Counter = Counter()

        for concept, outcome in zip(concepts, outcomes):
            if not outcome.ok or outcome.value is None:
                logger.warning("Profile: context fetch failed for %r: %s", concept, outcome.error)
                continue
            bundle = outcome.value
            frequency[concept] += 1
            related.update(r for r in bundle.related_concepts if r and r != concept)
            for note in bundle.relevant_notes:
                tags.update(tag for tag in note.tags if tag)

        weights = {tag: count / len(concepts) for tag, count in tags.items()}
        return UserKnowledgeProfile(
            concepts=list(concepts),
            concept_frequency=dict(frequency),
            related_concepts=related,
            tag_histogram=dict(tags),
            interest_weights=weights,
        )

    # ------------------------------------------------------------------
    # Pass 2: candidates
    # ------------------------------------------------------------------

    async def _gather_external_concepts(
        self, concepts: List[str]
    ) -> List[ExternalOntologyResult]:
        outcomes = await run_in_batches(
            concepts, self.ontology_client.search_concept, self.batch_size
        )

        best: Dict[str, ExternalOntologyResult] = {}
        for concept, outcome in zip(concepts, outcomes):
            if not outcome.ok:
                logger.warning("External search failed for %r: %s", concept, outcome.error)
                continue
            for result in outcome.value or []:
                key = result.label.lower()
                existing = best.get(key)
                if existing is None or result.relevance_score > existing.relevance_score:
                    best[key] = result

        return sorted(best.values(), key=lambda r: (-r.relevance_score, r.label.lower()))

    # ------------------------------------------------------------------
    # Pass 3: identification
    # ------------------------------------------------------------------

    def _identify_gaps(
        self,
        profile: UserKnowledgeProfile,
        candidates: List[ExternalOntologyResult],
        config: GapDetectionConfig,
    ) -> List[KnowledgeGap]:
        gaps: List[KnowledgeGap] = []
        for candidate in candidates:
            if not candidate.label.strip():
                continue
            if self._is_known(candidate.label, profile):
                continue

            related = self._find_related_user_concepts(candidate, profile)
            if not related:
                continue

            try:
                path = self._build_learning_path(
                    candidate, related, profile, config.max_learning_path_length
                )
            except ComputationError as exc:
                logger.debug("Dropping gap candidate %r: %s", candidate.label, exc)
                continue

            gaps.append(
                KnowledgeGap(
                    id=stable_id("gap", candidate.label.lower(), candidate.source.value),
                    missing_concept=candidate.label,
                    description=candidate.description,
                    related_user_concepts=related,
                    suggested_learning_path=path,
                    confidence_score=candidate.relevance_score,
                    source=candidate.source,
                    categories=list(candidate.categories),
                    estimated_learning_time=self._estimate_learning_time(candidate, path),
                )
            )
        return gaps

    def _is_known(self, label: str, profile: UserKnowledgeProfile) -> bool:
        return any(
            self.similarity.similarity(concept, label) > self.KNOWN_THRESHOLD
            for concept in profile.concepts
        )

    def _find_related_user_concepts(
        self, candidate: ExternalOntologyResult, profile: UserKnowledgeProfile
    ) -> List[str]:
        scored = []
        for concept in profile.concepts:
            sim = self.similarity.similarity(concept, candidate.label)
            if self.RELATED_THRESHOLD < sim < self.KNOWN_THRESHOLD:
                scored.append((sim, concept))
        # Most similar first; ties keep input order
        scored.sort(key=lambda item: -item[0])
        related = [concept for _, concept in scored]

        if any(category in profile.tag_histogram for category in candidate.categories):
            related.extend(c for c in profile.concepts if c not in related)

        return related[: self.MAX_RELATED_USER_CONCEPTS]

    @staticmethod
    def _build_learning_path(
        candidate: ExternalOntologyResult,
        related: List[str],
        profile: UserKnowledgeProfile,
        max_length: int,
    ) -> List[str]:
        start = related[0]
        target_key = candidate.label.lower()
        seen = {start.lower(), target_key}
        seen.update(r.lower() for r in related)

        intermediates: List[str] = []
        for step in candidate.related_concepts:
            if len(intermediates) >= max(0, max_length - 2):
                break
            if step and step.lower() not in seen:
                intermediates.append(step)
                seen.add(step.lower())

        path = [start, *intermediates, candidate.label][:max_length]

        if not path or len(path) > max_length:
            raise ComputationError(f"learning path length {len(path)} outside 1..{max_length}")
        if len(path) < 2:
            raise ComputationError("learning path needs a start and a target")
        if path[0] not in profile.concepts:
            raise ComputationError(f"learning path starts at non-user concept {path[0]!r}")
        return path

    @staticmethod
    def _estimate_learning_time(candidate: ExternalOntologyResult, path: List[str]) -> int:
        """Minutes: 30 base + 15 per path step + 10 per unit of complexity."""
        complexity = (
            min(len(candidate.description) / 100.0, 3.0) if candidate.description else 1.0
        )
        return int(round(30 + 15 * len(path) + 10 * complexity))

    # ------------------------------------------------------------------
    # Pass 4: reward shaping
    # ------------------------------------------------------------------

    def _apply_reward(
        self,
        gap: KnowledgeGap,
        profile: UserKnowledgeProfile,
        config: GapDetectionConfig,
    ) -> KnowledgeGap:
        path_len = len(gap.suggested_learning_path)

        concept_relevance = 10.0 * len(gap.related_user_concepts)
        interest_alignment = sum(
            profile.interest_weights.get(category, 0.0) * 25.0 for category in gap.categories
        )
        path_length_score = max(0.0, 20.0 - 4.0 * path_len)

        difficulty_score = 15.0
        preference = config.difficulty_preference
        if preference == Difficulty.BEGINNER and path_len <= 2:
            difficulty_score += 10.0
        elif preference == Difficulty.ADVANCED and path_len >= 4:
            difficulty_score += 10.0
        elif preference == Difficulty.INTERMEDIATE:
            difficulty_score += 5.0

        total = clamp(
            concept_relevance + interest_alignment + path_length_score + difficulty_score
        )
        reward = RewardSignal(
            concept_relevance=concept_relevance,
            user_interest_alignment=round(interest_alignment, 4),
            path_length_score=path_length_score,
            difficulty_score=difficulty_score,
            total_reward=round(total, 2),
        )

        if total >= self.HIGH_PRIORITY_SCORE:
            priority = GapPriority.HIGH
        elif total >= self.MEDIUM_PRIORITY_SCORE:
            priority = GapPriority.MEDIUM
        else:
            priority = GapPriority.LOW

        return gap.model_copy(
            update={"gap_score": round(total, 2), "priority": priority, "reward": reward}
        )

    # ------------------------------------------------------------------
    # Pass 5: filter & rank
    # ------------------------------------------------------------------

    @staticmethod
    def _filter_and_rank(
        gaps: List[KnowledgeGap], config: GapDetectionConfig
    ) -> List[KnowledgeGap]:
        kept = [gap for gap in gaps if gap.gap_score >= config.min_gap_score]
        kept.sort(key=lambda g: (-g.gap_score, g.missing_concept.lower()))
        return kept[: config.max_gaps_to_return]
