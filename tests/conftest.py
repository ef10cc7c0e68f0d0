"""
Shared fixtures for the insight engine tests.

No network access: ontology providers are in-process fakes, the context
store is a ``StaticContextRetriever`` and the HTTP API is driven through
``httpx.ASGITransport`` with ``get_engine`` overridden per test.
"""
from __future__ import annotations

from typing import AsyncGenerator, Dict, Iterable, List, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.dependencies.services import InsightEngine, build_engine, get_engine
from app.main import app
from app.models.schemas import ExternalOntologyResult, OntologySource
from app.services.context import StaticContextRetriever
from app.services.errors import OntologyProviderError
from app.services.ontology import ExternalOntologyClient, relevance_score
from app.services.similarity import LexicalConceptSimilarity


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def make_result(
    label: str,
    concept: Optional[str] = None,
    related: Iterable[str] = (),
    categories: Iterable[str] = (),
    description: Optional[str] = None,
    source: OntologySource = OntologySource.WIKIDATA,
    uri: Optional[str] = None,
) -> ExternalOntologyResult:
    return ExternalOntologyResult(
        uri=uri or f"http://example.org/{source.value}/{label.replace(' ', '_')}",
        label=label,
        description=description,
        categories=list(categories),
        related_concepts=list(related),
        relevance_score=relevance_score(label, concept or label),
        source=source,
    )


class FakeOntologyProvider:
    """Answers from a fixed table; records every search."""

    def __init__(
        self,
        source: OntologySource,
        results: Optional[Dict[str, List[ExternalOntologyResult]]] = None,
        fail: bool = False,
        reachable: bool = True,
    ) -> None:
        self.source = source
        self.results = {k.lower(): v for k, v in (results or {}).items()}
        self.fail = fail
        self.reachable = reachable
        self.calls: List[str] = []

    async def search(self, concept: str) -> List[ExternalOntologyResult]:
        self.calls.append(concept)
        if self.fail:
            raise OntologyProviderError(self.source.value, "simulated outage")
        return list(self.results.get(concept.lower(), []))

    async def ping(self) -> bool:
        return self.reachable


# ---------------------------------------------------------------------------
# Corpus
# ---------------------------------------------------------------------------

CONTEXT_BUNDLES = {
    "neural network": {
        "relevant_notes": [{"content": "Layers of weighted units", "tags": ["machine learning"]}],
        "book_excerpts": ["A network of artificial neurons."],
        "related_concepts": ["deep learning", "backpropagation"],
    },
    "backpropagation": {
        "relevant_notes": [{"content": "Chain rule applied to layers", "tags": ["machine learning"]}],
        "related_concepts": ["gradient descent", "chain rule"],
    },
    "gradient descent": {
        "relevant_notes": [{"content": "Step against the gradient", "tags": ["optimization"]}],
        "related_concepts": ["loss function"],
    },
}

WIKIDATA_RESULTS = {
    "neural network": [
        make_result("Neural network", "neural network", related=["perceptron"]),
        make_result(
            "Perceptron",
            "neural network",
            related=["linear classifier", "neural network"],
            categories=["machine learning"],
        ),
    ],
    "backpropagation": [
        make_result("Automatic differentiation", "backpropagation", related=["chain rule"]),
    ],
    "gradient descent": [
        make_result(
            "Stochastic gradient descent",
            "gradient descent",
            related=["learning rate"],
            categories=["optimization"],
            description="Iterative method for optimizing an objective function.",
        ),
    ],
}

DBPEDIA_RESULTS = {
    "neural network": [
        make_result(
            "Deep learning",
            "neural network",
            related=["representation learning"],
            categories=["machine learning"],
            source=OntologySource.DBPEDIA,
        ),
    ],
}


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def result_factory():
    """``make_result`` for tests that build their own ontology tables."""
    return make_result


@pytest.fixture
def provider_factory():
    """``FakeOntologyProvider`` class for tests that need custom providers."""
    return FakeOntologyProvider


@pytest.fixture
def context_retriever() -> StaticContextRetriever:
    return StaticContextRetriever(CONTEXT_BUNDLES)


@pytest.fixture
def wikidata() -> FakeOntologyProvider:
    return FakeOntologyProvider(OntologySource.WIKIDATA, WIKIDATA_RESULTS)


@pytest.fixture
def dbpedia() -> FakeOntologyProvider:
    return FakeOntologyProvider(OntologySource.DBPEDIA, DBPEDIA_RESULTS)


@pytest.fixture
def ontology_client(wikidata, dbpedia) -> ExternalOntologyClient:
    return ExternalOntologyClient(providers=[wikidata, dbpedia], cache_ttl=60, cache_maxsize=64)


@pytest.fixture
def failing_ontology_client() -> ExternalOntologyClient:
    return ExternalOntologyClient(
        providers=[
            FakeOntologyProvider(OntologySource.WIKIDATA, fail=True, reachable=False),
            FakeOntologyProvider(OntologySource.DBPEDIA, fail=True, reachable=False),
        ],
        cache_ttl=60,
        cache_maxsize=64,
    )


@pytest.fixture
def engine(ontology_client, context_retriever) -> InsightEngine:
    return build_engine(
        ontology_client=ontology_client,
        context_retriever=context_retriever,
        similarity=LexicalConceptSimilarity(),
    )


@pytest_asyncio.fixture
async def client(engine: InsightEngine) -> AsyncGenerator[AsyncClient, None]:
    """
    httpx AsyncClient wired to the FastAPI app with the engine dependency
    overridden to use the per-test fakes.
    """
    app.dependency_overrides[get_engine] = lambda: engine

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
