"""
Pydantic schemas for the insight engine's data model and API payloads.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Enums
class OntologySource(str, Enum):
    """External ontology providers."""

    WIKIDATA = "wikidata"
    DBPEDIA = "dbpedia"


class Difficulty(str, Enum):
    """Content difficulty / learner level."""

    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


class PreferredDifficulty(str, Enum):
    """How hard a learner likes their material."""

    EASY = "easy"
    MODERATE = "moderate"
    CHALLENGING = "challenging"


class GapPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class ResultPriority(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class LinkType(str, Enum):
    DIRECT = "direct"
    INDIRECT = "indirect"
    SUPER_RELATION = "super-relation"


class ReasoningMethod(str, Enum):
    FORWARD = "forward"
    BACKWARD = "backward"
    BIDIRECTIONAL = "bidirectional"


class LinkSource(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    HYBRID = "hybrid"


class ResultType(str, Enum):
    KNOWLEDGE_GAP = "knowledge-gap"
    HIDDEN_LINK = "hidden-link"


# ---------------------------------------------------------------------------
# Context store boundary
# ---------------------------------------------------------------------------

class NoteSnippet(BaseModel):
    """A user note as seen by the engine: its text and tags only."""

    content: str = ""
    tags: List[str] = []


class QueryMetadata(BaseModel):
    execution_time_ms: float = 0.0
    result_count: int = 0


class ContextBundle(BaseModel):
    """Internal notes, book excerpts and related concepts for one concept."""

    target_concept: str
    relevant_notes: List[NoteSnippet] = []
    book_excerpts: List[str] = []
    related_concepts: List[str] = []
    query_metadata: QueryMetadata = Field(default_factory=QueryMetadata)

    @classmethod
    def empty(cls, concept: str) -> "ContextBundle":
        return cls(target_concept=concept)


# ---------------------------------------------------------------------------
# External ontology
# ---------------------------------------------------------------------------

class ExternalOntologyResult(BaseModel):
    """One concept match from an external ontology (immutable once built)."""

    uri: str
    label: str
    description: Optional[str] = None
    categories: List[str] = []
    related_concepts: List[str] = []
    relevance_score: float = Field(0.0, ge=0.0, le=100.0)
    source: OntologySource

    model_config = ConfigDict(frozen=True)


class PropertyGraphNode(BaseModel):
    id: str
    label: str
    properties: Dict[str, Any] = {}


class PropertyGraphEdge(BaseModel):
    source: str
    target: str
    label: str
    properties: Dict[str, Any] = {}


class PropertyGraph(BaseModel):
    """Ontology results projected onto a labelled property graph."""

    nodes: List[PropertyGraphNode] = []
    edges: List[PropertyGraphEdge] = []


# ---------------------------------------------------------------------------
# Knowledge gaps
# ---------------------------------------------------------------------------

class GapDetectionConfig(BaseModel):
    max_gaps_to_return: int = Field(10, ge=1)
    min_gap_score: float = Field(30.0, ge=0.0, le=100.0)
    max_learning_path_length: int = Field(5, ge=1)
    difficulty_preference: Difficulty = Difficulty.INTERMEDIATE


class RewardSignal(BaseModel):
    """Shaped sub-scores that add up to a gap score."""

    concept_relevance: float = 0.0
    user_interest_alignment: float = 0.0
    path_length_score: float = 0.0
    difficulty_score: float = 0.0
    total_reward: float = 0.0


class KnowledgeGap(BaseModel):
    """A concept the user has not covered but is adjacent to what they know."""

    id: str
    missing_concept: str
    description: Optional[str] = None
    related_user_concepts: List[str] = []
    suggested_learning_path: List[str] = []
    gap_score: float = Field(0.0, ge=0.0, le=100.0)
    confidence_score: float = 0.0
    source: OntologySource
    categories: List[str] = []
    priority: GapPriority = GapPriority.MEDIUM
    estimated_learning_time: int = 0  # minutes
    reward: RewardSignal = Field(default_factory=RewardSignal)


# ---------------------------------------------------------------------------
# Hidden links
# ---------------------------------------------------------------------------

class HiddenLinkDetectionOptions(BaseModel):
    max_hops: int = Field(3, ge=1, le=8)
    min_confidence_score: float = Field(60.0, ge=0.0, le=100.0)
    max_links_to_return: int = Field(20, ge=1)
    enable_super_relations: bool = True
    enable_parallel_processing: bool = True


class LinkReasoning(BaseModel):
    method: ReasoningMethod
    hops: int
    intermediate_nodes: List[str] = []
    evidence: List[str] = []


class HiddenLink(BaseModel):
    """A multi-hop connection between two of the user's concepts."""

    id: str
    from_concept: str
    to_concept: str
    link_type: LinkType
    connection_path: List[str]
    confidence_score: float = Field(0.0, ge=0.0, le=100.0)
    reasoning: LinkReasoning
    source: LinkSource = LinkSource.INTERNAL
    strength: float = 0.0
    discovered_at: datetime = Field(default_factory=_utcnow)
    categories: List[str] = []

    @model_validator(mode="after")
    def _hops_match_path(self) -> "HiddenLink":
        if self.reasoning.hops != len(self.connection_path) - 1:
            raise ValueError(
                f"reasoning.hops={self.reasoning.hops} does not match "
                f"connection_path of length {len(self.connection_path)}"
            )
        return self


# ---------------------------------------------------------------------------
# Unified ranking
# ---------------------------------------------------------------------------

class UserLearningProfile(BaseModel):
    interests: List[str] = []
    current_level: Difficulty = Difficulty.INTERMEDIATE
    learning_goals: List[str] = []
    past_learning_history: List[str] = []
    preferred_difficulty: PreferredDifficulty = PreferredDifficulty.MODERATE
    available_time_per_session: int = Field(60, ge=0)  # minutes
    focus_areas: List[str] = []


class ScoringWeights(BaseModel):
    relevance: float = Field(0.25, ge=0.0)
    user_interest: float = Field(0.20, ge=0.0)
    learning_impact: float = Field(0.20, ge=0.0)
    ontology_strength: float = Field(0.15, ge=0.0)
    recency: float = Field(0.10, ge=0.0)
    difficulty: float = Field(0.10, ge=0.0)

    def normalized(self) -> "ScoringWeights":
        """Rescale so the weights sum to 1 (unchanged when they already do)."""
        values = self.model_dump()
        total = sum(values.values())
        if total <= 0 or abs(total - 1.0) < 1e-9:
            return self
        return ScoringWeights(**{k: v / total for k, v in values.items()})


class RankingOptions(BaseModel):
    max_results: int = Field(20, ge=1)
    min_unified_score: float = Field(60.0, ge=0.0, le=100.0)
    priority_filter: Optional[List[ResultPriority]] = None
    type_filter: Optional[List[ResultType]] = None
    difficulty_filter: Optional[List[Difficulty]] = None
    category_filter: Optional[List[str]] = None
    time_constraint: Optional[int] = Field(None, ge=0)  # max minutes
    include_recommendations: bool = True
    gap_detection: GapDetectionConfig = Field(default_factory=GapDetectionConfig)
    link_detection: HiddenLinkDetectionOptions = Field(
        default_factory=HiddenLinkDetectionOptions
    )


class ComponentScores(BaseModel):
    relevance: float = 0.0
    user_interest: float = 0.0
    learning_impact: float = 0.0
    ontology_strength: float = 0.0
    recency: float = 0.0
    difficulty: float = 0.0


class _UnifiedResultBase(BaseModel):
    id: str
    title: str
    description: str
    unified_score: float = Field(0.0, ge=0.0, le=100.0)
    priority: ResultPriority
    scores: ComponentScores
    recommendations: List[str] = []
    estimated_learning_time: int = 0  # minutes
    difficulty: Difficulty
    categories: List[str] = []
    related_concepts: List[str] = []
    learning_path: List[str] = []
    discovered_at: datetime = Field(default_factory=_utcnow)


class GapResult(_UnifiedResultBase):
    type: Literal["knowledge-gap"] = "knowledge-gap"
    original_data: KnowledgeGap


class LinkResult(_UnifiedResultBase):
    type: Literal["hidden-link"] = "hidden-link"
    original_data: HiddenLink


# Discriminated on ``type``; consumers must handle both variants.
UnifiedResult = Annotated[Union[GapResult, LinkResult], Field(discriminator="type")]


class PerformanceStats(BaseModel):
    total_results: int = 0
    average_score: float = 0.0
    max_score: float = 0.0
    min_score: float = 0.0
    type_distribution: Dict[str, int] = {}
    priority_distribution: Dict[str, int] = {}
    difficulty_distribution: Dict[str, int] = {}
    average_learning_time: float = 0.0


# ---------------------------------------------------------------------------
# API request / response schemas
# ---------------------------------------------------------------------------

class GapDetectionRequest(BaseModel):
    concepts: List[str] = []
    config: GapDetectionConfig = Field(default_factory=GapDetectionConfig)


class GapDetectionResponse(BaseModel):
    gaps: List[KnowledgeGap]
    total_gaps: int


class HiddenLinkRequest(BaseModel):
    concepts: List[str] = []
    options: HiddenLinkDetectionOptions = Field(default_factory=HiddenLinkDetectionOptions)


class HiddenLinkResponse(BaseModel):
    links: List[HiddenLink]
    total_links: int


class RankingRequest(BaseModel):
    concepts: List[str] = []
    profile: UserLearningProfile = Field(default_factory=UserLearningProfile)
    options: RankingOptions = Field(default_factory=RankingOptions)
    weights: Optional[ScoringWeights] = None


class RankingResponse(BaseModel):
    results: List[UnifiedResult]
    total_results: int
    stats: PerformanceStats


class RankingUpdateRequest(BaseModel):
    existing: List[UnifiedResult] = []
    new_concepts: List[str] = []
    profile: UserLearningProfile = Field(default_factory=UserLearningProfile)


class RankingStatsRequest(BaseModel):
    results: List[UnifiedResult] = []


class OntologySearchResponse(BaseModel):
    concept: str
    results: List[ExternalOntologyResult]
    total_results: int


class PropertyGraphRequest(BaseModel):
    concepts: List[str] = Field(..., min_length=1)


class HealthCheckResponse(BaseModel):
    """Schema for health check response."""

    status: str
    ontology: Dict[str, str]
    context_store: str
    embedding: Optional[str] = None
    timestamp: datetime
