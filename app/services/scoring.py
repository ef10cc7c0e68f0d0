"""
Component scores for unified ranking.

Pure functions, no I/O.  Every score is on a 0–100 scale and clamped.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict, Iterable, Optional

from app.models.schemas import (
    ComponentScores,
    Difficulty,
    GapPriority,
    HiddenLink,
    KnowledgeGap,
    LinkType,
    PreferredDifficulty,
    ReasoningMethod,
    ResultPriority,
    ScoringWeights,
    UserLearningProfile,
)
from app.utils.helpers import clamp

PRIORITY_RANK: Dict[ResultPriority, int] = {
    ResultPriority.CRITICAL: 4,
    ResultPriority.HIGH: 3,
    ResultPriority.MEDIUM: 2,
    ResultPriority.LOW: 1,
}

# Priority → content difficulty, for scoring a gap against the learner
_PRIORITY_DIFFICULTY: Dict[str, Difficulty] = {
    "critical": Difficulty.ADVANCED,
    "high": Difficulty.INTERMEDIATE,
    "medium": Difficulty.INTERMEDIATE,
    "low": Difficulty.BEGINNER,
}

_PREFERENCE_MATCH: Dict[PreferredDifficulty, Difficulty] = {
    PreferredDifficulty.EASY: Difficulty.BEGINNER,
    PreferredDifficulty.MODERATE: Difficulty.INTERMEDIATE,
    PreferredDifficulty.CHALLENGING: Difficulty.ADVANCED,
}

# (content, learner) pairs where the content is one level below the learner
_ONE_LEVEL_BELOW = {
    (Difficulty.BEGINNER, Difficulty.INTERMEDIATE),
    (Difficulty.INTERMEDIATE, Difficulty.ADVANCED),
}


def as_utc(moment: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


def _mentions(concept: str, items: Iterable[str]) -> bool:
    text = concept.lower()
    for item in items:
        other = item.lower().strip()
        if other and (other in text or text in other):
            return True
    return False


# ---------------------------------------------------------------------------
# User interest
# ---------------------------------------------------------------------------

def user_interest_score(concept: str, profile: UserLearningProfile) -> float:
    score = 50.0
    if _mentions(concept, profile.interests):
        score += 30.0
    if _mentions(concept, profile.learning_goals):
        score += 20.0
    if _mentions(concept, profile.focus_areas):
        score += 15.0
    if _mentions(concept, profile.past_learning_history):
        score += 10.0
    return clamp(score)


# ---------------------------------------------------------------------------
# Learning impact
# ---------------------------------------------------------------------------

_GAP_PRIORITY_IMPACT = {GapPriority.HIGH: 20.0, GapPriority.MEDIUM: 10.0, GapPriority.LOW: 5.0}
_LINK_TYPE_IMPACT = {LinkType.SUPER_RELATION: 20.0, LinkType.INDIRECT: 15.0, LinkType.DIRECT: 10.0}
_METHOD_IMPACT = {
    ReasoningMethod.BIDIRECTIONAL: 15.0,
    ReasoningMethod.FORWARD: 10.0,
    ReasoningMethod.BACKWARD: 8.0,
}


def gap_learning_impact(gap: KnowledgeGap) -> float:
    score = gap.gap_score + _GAP_PRIORITY_IMPACT[gap.priority]
    path_len = len(gap.suggested_learning_path)
    if path_len <= 3:
        score += 10.0
    elif path_len <= 5:
        score += 5.0
    score += min(15.0, 2.0 * len(gap.related_user_concepts))
    return clamp(score)


def link_learning_impact(link: HiddenLink) -> float:
    score = link.confidence_score
    score += _LINK_TYPE_IMPACT[link.link_type]
    score += _METHOD_IMPACT[link.reasoning.method]
    hops = link.reasoning.hops
    if 2 <= hops <= 4:
        score += 10.0
    elif hops > 4:
        score -= 5.0
    return clamp(score)


# ---------------------------------------------------------------------------
# Recency
# ---------------------------------------------------------------------------

def recency_score(discovered_at: datetime, now: Optional[datetime] = None) -> float:
    now = as_utc(now) if now is not None else datetime.now(timezone.utc)
    age_hours = (now - as_utc(discovered_at)).total_seconds() / 3600.0
    if age_hours <= 1:
        return 100.0
    if age_hours <= 6:
        return 90.0
    if age_hours <= 24:
        return 80.0
    if age_hours <= 72:
        return 70.0
    if age_hours <= 168:
        return 60.0
    return 50.0


# ---------------------------------------------------------------------------
# Difficulty
# ---------------------------------------------------------------------------

def gap_difficulty(gap: KnowledgeGap) -> Difficulty:
    """Content difficulty of a gap: high → advanced, medium → intermediate."""
    if gap.priority == GapPriority.HIGH:
        return Difficulty.ADVANCED
    if gap.priority == GapPriority.MEDIUM:
        return Difficulty.INTERMEDIATE
    return Difficulty.BEGINNER


def link_difficulty(link: HiddenLink) -> Difficulty:
    hops = link.reasoning.hops
    if hops <= 2:
        return Difficulty.BEGINNER
    if hops <= 4:
        return Difficulty.INTERMEDIATE
    return Difficulty.ADVANCED


def gap_difficulty_score(priority: str, profile: UserLearningProfile) -> float:
    content = _PRIORITY_DIFFICULTY.get(priority, Difficulty.INTERMEDIATE)
    level = profile.current_level

    score = 50.0
    if content == level:
        score += 30.0
    elif (content, level) in _ONE_LEVEL_BELOW:
        score += 20.0
    elif content == Difficulty.ADVANCED and level == Difficulty.BEGINNER:
        score -= 20.0

    if _PREFERENCE_MATCH[profile.preferred_difficulty] == content:
        score += 15.0
    return clamp(score)


def link_difficulty_score(link: HiddenLink, profile: UserLearningProfile) -> float:
    content = link_difficulty(link)
    level = profile.current_level

    score = 50.0
    if content == level:
        score += 30.0
    elif (content, level) in _ONE_LEVEL_BELOW:
        score += 20.0

    if link.link_type == LinkType.SUPER_RELATION:
        score += 10.0
    return clamp(score)


# ---------------------------------------------------------------------------
# Learning time (minutes)
# ---------------------------------------------------------------------------

def gap_learning_time(gap: KnowledgeGap) -> int:
    minutes = 30 + {GapPriority.HIGH: 60, GapPriority.MEDIUM: 30, GapPriority.LOW: 15}[gap.priority]
    minutes += 10 * len(gap.suggested_learning_path)
    minutes += 5 * len(gap.related_user_concepts)
    return int(clamp(minutes, 15, 180))


def link_learning_time(link: HiddenLink) -> int:
    minutes = 20 + {LinkType.SUPER_RELATION: 40, LinkType.INDIRECT: 30, LinkType.DIRECT: 20}[link.link_type]
    minutes += 10 * link.reasoning.hops
    minutes += 5 * len(link.reasoning.intermediate_nodes)
    return int(clamp(minutes, 10, 120))


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def weighted_score(scores: ComponentScores, weights: ScoringWeights) -> float:
    w = weights.normalized()
    total = (
        scores.relevance * w.relevance
        + scores.user_interest * w.user_interest
        + scores.learning_impact * w.learning_impact
        + scores.ontology_strength * w.ontology_strength
        + scores.recency * w.recency
        + scores.difficulty * w.difficulty
    )
    return round(clamp(total), 2)


def result_priority(score: float) -> ResultPriority:
    if score >= 90:
        return ResultPriority.CRITICAL
    if score >= 75:
        return ResultPriority.HIGH
    if score >= 60:
        return ResultPriority.MEDIUM
    return ResultPriority.LOW
