"""Tests for knowledge gap detection."""
import pytest

from app.models.schemas import (
    Difficulty,
    GapDetectionConfig,
    GapPriority,
    OntologySource,
)
from app.services.context import StaticContextRetriever
from app.services.gap_detector import GapDetector
from app.services.ontology import ExternalOntologyClient
from app.services.similarity import LexicalConceptSimilarity

CONCEPTS = ["neural network", "backpropagation"]


@pytest.fixture
def detector(context_retriever, ontology_client) -> GapDetector:
    return GapDetector(context_retriever, ontology_client, similarity=LexicalConceptSimilarity())


@pytest.mark.asyncio
async def test_detects_category_related_gaps(detector):
    gaps = await detector.detect_knowledge_gaps(CONCEPTS)

    # "Neural network" is already known; "Automatic differentiation" is unrelated
    assert [g.missing_concept for g in gaps] == ["Deep learning", "Perceptron"]

    perceptron = gaps[1]
    assert perceptron.related_user_concepts == CONCEPTS
    assert perceptron.suggested_learning_path == [
        "neural network",
        "linear classifier",
        "Perceptron",
    ]
    assert perceptron.source == OntologySource.WIKIDATA
    assert perceptron.categories == ["machine learning"]
    assert perceptron.estimated_learning_time == 85
    assert perceptron.confidence_score == 0.0

    # 20 relevance + 25 interest + 8 path + 20 difficulty
    assert perceptron.gap_score == 73.0
    assert perceptron.priority == GapPriority.MEDIUM
    assert perceptron.reward.concept_relevance == 20.0
    assert perceptron.reward.user_interest_alignment == 25.0
    assert perceptron.reward.path_length_score == 8.0
    assert perceptron.reward.difficulty_score == 20.0
    assert perceptron.reward.total_reward == 73.0

    deep = gaps[0]
    assert deep.source == OntologySource.DBPEDIA
    assert deep.suggested_learning_path == [
        "neural network",
        "representation learning",
        "Deep learning",
    ]


@pytest.mark.asyncio
async def test_learning_paths_start_at_user_concepts_and_respect_length(detector):
    config = GapDetectionConfig(max_learning_path_length=2)
    gaps = await detector.detect_knowledge_gaps(CONCEPTS, config)
    assert gaps
    for gap in gaps:
        path = gap.suggested_learning_path
        assert len(path) == 2
        assert path[0] in CONCEPTS
        assert path[-1] == gap.missing_concept
        assert 0.0 <= gap.gap_score <= 100.0
    # shorter path scores 12 instead of 8
    assert gaps[0].gap_score == 77.0


@pytest.mark.asyncio
async def test_beginner_preference_rewards_short_paths(detector):
    config = GapDetectionConfig(
        max_learning_path_length=2, difficulty_preference=Difficulty.BEGINNER
    )
    gaps = await detector.detect_knowledge_gaps(CONCEPTS, config)
    assert gaps[0].gap_score == 82.0
    assert gaps[0].priority == GapPriority.HIGH


@pytest.mark.asyncio
async def test_min_score_and_max_gaps(detector):
    assert await detector.detect_knowledge_gaps(CONCEPTS, GapDetectionConfig(min_gap_score=75)) == []

    top = await detector.detect_knowledge_gaps(CONCEPTS, GapDetectionConfig(max_gaps_to_return=1))
    assert [g.missing_concept for g in top] == ["Deep learning"]


@pytest.mark.asyncio
async def test_ids_are_deterministic(detector):
    first = await detector.detect_knowledge_gaps(CONCEPTS)
    second = await detector.detect_knowledge_gaps(CONCEPTS)
    assert [g.id for g in first] == [g.id for g in second]
    assert len({g.id for g in first}) == len(first)


@pytest.mark.asyncio
async def test_lexically_related_candidate(provider_factory, result_factory):
    retriever = StaticContextRetriever({"gradient descent": {}, "momentum": {}})
    provider = provider_factory(
        OntologySource.WIKIDATA,
        {
            "gradient descent": [
                result_factory(
                    "Descent gradient method",
                    "gradient descent",
                    related=["line search"],
                )
            ]
        },
    )
    detector = GapDetector(retriever, ExternalOntologyClient(providers=[provider]))

    gaps = await detector.detect_knowledge_gaps(["gradient descent", "momentum"])
    assert len(gaps) == 1
    gap = gaps[0]
    # token Jaccard 2/3 with "gradient descent", 0 with "momentum"
    assert gap.related_user_concepts == ["gradient descent"]
    assert gap.suggested_learning_path == [
        "gradient descent",
        "line search",
        "Descent gradient method",
    ]
    # 10 relevance + 0 interest + 8 path + 20 difficulty
    assert gap.gap_score == 38.0
    assert gap.priority == GapPriority.LOW
    assert gap.confidence_score == 39.93


@pytest.mark.asyncio
async def test_no_gaps_when_every_provider_fails(context_retriever, failing_ontology_client):
    detector = GapDetector(context_retriever, failing_ontology_client)
    assert await detector.detect_knowledge_gaps(CONCEPTS) == []


@pytest.mark.asyncio
async def test_empty_input(detector, wikidata):
    assert await detector.detect_knowledge_gaps([]) == []
    assert await detector.detect_knowledge_gaps(["  "]) == []
    assert wikidata.calls == []


@pytest.mark.asyncio
async def test_unexpected_error_returns_empty(context_retriever, ontology_client):
    class ExplodingSimilarity:
        async def prime(self, texts):
            return None

        def similarity(self, a, b):
            raise RuntimeError("similarity backend crashed")

    detector = GapDetector(context_retriever, ontology_client, similarity=ExplodingSimilarity())
    assert await detector.detect_knowledge_gaps(CONCEPTS) == []
