"""Data model and API schemas for the insight engine."""
from app.models.schemas import (
    ContextBundle,
    ExternalOntologyResult,
    GapDetectionConfig,
    GapResult,
    HiddenLink,
    HiddenLinkDetectionOptions,
    KnowledgeGap,
    LinkResult,
    PerformanceStats,
    PropertyGraph,
    RankingOptions,
    ScoringWeights,
    UnifiedResult,
    UserLearningProfile,
)

__all__ = [
    "ContextBundle",
    "ExternalOntologyResult",
    "GapDetectionConfig",
    "GapResult",
    "HiddenLink",
    "HiddenLinkDetectionOptions",
    "KnowledgeGap",
    "LinkResult",
    "PerformanceStats",
    "PropertyGraph",
    "RankingOptions",
    "ScoringWeights",
    "UnifiedResult",
    "UserLearningProfile",
]
