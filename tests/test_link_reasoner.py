"""Tests for hidden link detection and the path searches behind it."""
import asyncio
import time

import pytest
import pytest_asyncio

from app.models.schemas import (
    HiddenLinkDetectionOptions,
    LinkSource,
    LinkType,
    OntologySource,
    ReasoningMethod,
)
from app.services.context import StaticContextRetriever
from app.services.link_reasoner import (
    FALLBACK_CONFIDENCE,
    LinkReasoner,
    backward_paths,
    bidirectional_paths,
    enumerate_paths,
    forward_paths,
)
from app.services.ontology import ExternalOntologyClient
from app.services.relation_clusters import RelationClusterer
from app.services.schema_graph import SchemaGraphBuilder
from app.utils.concurrency import settle

# a and b share the related concept x
SHARED_NEIGHBOR = {
    "a": {"related_concepts": ["x"]},
    "b": {"related_concepts": ["x"]},
}


def _reasoner(retriever, ontology_client, **kwargs) -> LinkReasoner:
    builder = SchemaGraphBuilder(retriever, ontology_client)
    return LinkReasoner(builder, RelationClusterer(), **kwargs)


@pytest.fixture
def quiet_ontology(provider_factory) -> ExternalOntologyClient:
    """Providers that answer but know nothing."""
    return ExternalOntologyClient(providers=[provider_factory(OntologySource.WIKIDATA)])


@pytest_asyncio.fixture
async def shared_schema(quiet_ontology):
    builder = SchemaGraphBuilder(StaticContextRetriever(SHARED_NEIGHBOR), quiet_ontology)
    return await builder.build_dynamic_schema(["a", "b"])


# ---------------------------------------------------------------------------
# Path search
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_forward_and_backward_find_the_same_paths(shared_schema):
    forward = forward_paths(shared_schema, "a", "b", 3, 50)
    backward = backward_paths(shared_schema, "a", "b", 3, 50)
    expected = {
        ("a", "x", "b"),
        ("a", "x", "b_to_x", "b"),
        ("a", "a_to_x", "x", "b"),
    }
    assert {tuple(p) for p in forward} == expected
    assert {tuple(p) for p in backward} == expected


@pytest.mark.asyncio
async def test_bidirectional_stitches_half_searches(shared_schema):
    paths = bidirectional_paths(shared_schema, "a", "b", 3, 50)
    assert {tuple(p) for p in paths} == {
        ("a", "x", "b"),
        ("a", "x", "b_to_x", "b"),
        ("a", "a_to_x", "x", "b"),
    }
    for path in paths:
        assert len(set(path)) == len(path)


@pytest.mark.asyncio
async def test_path_search_respects_hop_and_count_limits(shared_schema):
    assert forward_paths(shared_schema, "a", "b", 2, 50) == [["a", "x", "b"]]
    assert len(forward_paths(shared_schema, "a", "b", 3, 1)) == 1
    assert forward_paths(shared_schema, "a", "missing", 3, 50) == []

    frontier = enumerate_paths(shared_schema, "a", 1, 50)
    assert frontier[0] == ["a"]
    assert all(len(p) <= 2 for p in frontier)


# ---------------------------------------------------------------------------
# LinkReasoner
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_detects_links_through_shared_neighbor(quiet_ontology):
    reasoner = _reasoner(StaticContextRetriever(SHARED_NEIGHBOR), quiet_ontology)
    links = await reasoner.detect_hidden_links(["a", "b"])

    assert [link.connection_path for link in links] == [
        ["a", "a_to_x", "x", "b"],
        ["a", "x", "b_to_x", "b"],
        ["a", "x", "b"],
    ]

    via_relation = links[1]
    # 50 + 6 + 20 * strength + 15 cluster + 10 bidirectional
    assert via_relation.confidence_score == 88.95
    assert via_relation.reasoning.method == ReasoningMethod.BIDIRECTIONAL
    assert via_relation.reasoning.evidence == ["relation:b_to_x", "cluster:generic"]
    assert via_relation.categories == ["generic"]

    shortest = links[2]
    assert shortest.confidence_score == 85.54
    assert shortest.strength == 0.5771
    assert shortest.categories == []

    for link in links:
        assert link.from_concept == "a"
        assert link.to_concept == "b"
        assert link.reasoning.hops == len(link.connection_path) - 1
        assert link.link_type == LinkType.DIRECT
        assert link.source == LinkSource.INTERNAL
        assert len(set(link.connection_path)) == len(link.connection_path)


@pytest.mark.asyncio
async def test_options_limit_results(quiet_ontology):
    reasoner = _reasoner(StaticContextRetriever(SHARED_NEIGHBOR), quiet_ontology)

    short = await reasoner.detect_hidden_links(
        ["a", "b"], HiddenLinkDetectionOptions(max_hops=2)
    )
    assert [link.connection_path for link in short] == [["a", "x", "b"]]

    strict = await reasoner.detect_hidden_links(
        ["a", "b"], HiddenLinkDetectionOptions(min_confidence_score=86)
    )
    assert len(strict) == 2
    assert all(link.confidence_score >= 86 for link in strict)

    top = await reasoner.detect_hidden_links(
        ["a", "b"], HiddenLinkDetectionOptions(max_links_to_return=1)
    )
    assert len(top) == 1


@pytest.mark.asyncio
async def test_without_super_relations_there_is_no_cluster_bonus(quiet_ontology):
    reasoner = _reasoner(StaticContextRetriever(SHARED_NEIGHBOR), quiet_ontology)
    links = await reasoner.detect_hidden_links(
        ["a", "b"], HiddenLinkDetectionOptions(enable_super_relations=False)
    )
    assert max(link.confidence_score for link in links) == 85.54
    assert all(link.categories == [] for link in links)


@pytest.mark.asyncio
async def test_link_source_follows_intermediate_origins(provider_factory, result_factory):
    provider = provider_factory(
        OntologySource.WIKIDATA,
        {
            "b": [result_factory("B", "b", related=["x"])],
            "c": [result_factory("C", "c", related=["y"])],
            "d": [result_factory("D", "d", related=["y"])],
        },
    )
    client = ExternalOntologyClient(providers=[provider])
    retriever = StaticContextRetriever({"a": {"related_concepts": ["x"]}})
    reasoner = _reasoner(retriever, client)

    hybrid = await reasoner.detect_hidden_links(["a", "b"])
    assert [link.connection_path for link in hybrid] == [
        ["a", "x", "b"],
        ["a", "a_to_x", "x", "b"],
    ]
    # x came from both the context store and the ontology
    assert all(link.source == LinkSource.HYBRID for link in hybrid)

    external = await reasoner.detect_hidden_links(["c", "d"])
    assert [link.connection_path for link in external] == [["c", "y", "d"]]
    assert external[0].source == LinkSource.EXTERNAL


@pytest.mark.asyncio
async def test_parallel_and_sequential_agree(context_retriever, ontology_client):
    concepts = ["neural network", "backpropagation", "gradient descent"]
    options = HiddenLinkDetectionOptions(min_confidence_score=0, max_links_to_return=500)

    parallel = await _reasoner(context_retriever, ontology_client, worker_count=2).detect_hidden_links(
        concepts, options
    )
    sequential = await _reasoner(context_retriever, ontology_client).detect_hidden_links(
        concepts, options.model_copy(update={"enable_parallel_processing": False})
    )

    assert parallel
    assert [(l.id, l.confidence_score) for l in parallel] == [
        (l.id, l.confidence_score) for l in sequential
    ]
    scores = [l.confidence_score for l in parallel]
    assert scores == sorted(scores, reverse=True)
    assert len({l.id for l in parallel}) == len(parallel)


@pytest.mark.asyncio
async def test_degraded_schema_without_candidates_falls_back(failing_ontology_client):
    reasoner = _reasoner(StaticContextRetriever({}), failing_ontology_client)

    pair = await reasoner.detect_hidden_links(["a", "b"])
    assert len(pair) == 1
    assert pair[0].link_type == LinkType.DIRECT
    assert (pair[0].from_concept, pair[0].to_concept) == ("a", "b")

    links = await reasoner.detect_hidden_links(["a", "b", "c"])
    assert len(links) == 3
    for link in links:
        assert link.confidence_score == FALLBACK_CONFIDENCE
        assert link.connection_path == [link.from_concept, link.to_concept]
        assert link.reasoning.hops == 1
        assert link.categories == ["fallback"]


@pytest.mark.asyncio
async def test_unexpected_error_falls_back():
    class ExplodingBuilder:
        async def build_dynamic_schema(self, concepts):
            raise RuntimeError("graph store crashed")

    reasoner = LinkReasoner(ExplodingBuilder(), RelationClusterer())
    links = await reasoner.detect_hidden_links(["a", "b"])
    assert len(links) == 1
    assert links[0].confidence_score == FALLBACK_CONFIDENCE


@pytest.mark.asyncio
async def test_fewer_than_two_concepts(quiet_ontology):
    reasoner = _reasoner(StaticContextRetriever(SHARED_NEIGHBOR), quiet_ontology)
    assert await reasoner.detect_hidden_links([]) == []
    assert await reasoner.detect_hidden_links(["a"]) == []
    assert await reasoner.detect_hidden_links(["a", "A "]) == []


# ---------------------------------------------------------------------------
# Bounded search on dense graphs
# ---------------------------------------------------------------------------

CLIQUE = [f"c{i}" for i in range(14)]


@pytest_asyncio.fixture
async def dense_schema(quiet_ontology):
    # c0..c13 all relate to each other and to a; b is isolated
    store = {c: {"related_concepts": [o for o in CLIQUE if o != c]} for c in CLIQUE}
    store["a"] = {"related_concepts": list(CLIQUE)}
    builder = SchemaGraphBuilder(StaticContextRetriever(store), quiet_ontology)
    return await builder.build_dynamic_schema(["a", "b"] + CLIQUE)


@pytest.mark.asyncio
async def test_enumeration_stops_at_expansion_budget(dense_schema):
    frontier = enumerate_paths(dense_schema, "a", 8, 10**6, max_expansions=100)
    assert len(frontier) == 100
    assert enumerate_paths(dense_schema, "a", 8, 50, target="b", max_expansions=100) == []


@pytest.mark.asyncio
async def test_unreachable_target_finishes_within_deadline(dense_schema, quiet_ontology):
    reasoner = _reasoner(StaticContextRetriever({}), quiet_ontology, max_expansions=2_000)

    t0 = time.perf_counter()
    outcome = await settle(reasoner._search_pair(("a", "b"), dense_schema, [], 8), 5.0)
    elapsed = time.perf_counter() - t0

    assert outcome.ok
    assert outcome.value == []
    assert elapsed < 5.0


@pytest.mark.asyncio
async def test_pair_deadline_fires_while_search_runs(dense_schema, quiet_ontology):
    reasoner = _reasoner(StaticContextRetriever({}), quiet_ontology, max_expansions=20_000)
    ticks = []

    async def ticker():
        while True:
            ticks.append(1)
            await asyncio.sleep(0.001)

    ticking = asyncio.create_task(ticker())
    t0 = time.perf_counter()
    outcome = await settle(reasoner._search_pair(("a", "b"), dense_schema, [], 8), 0.05)
    elapsed = time.perf_counter() - t0
    ticking.cancel()

    assert isinstance(outcome.error, asyncio.TimeoutError)
    assert elapsed < 1.0
    assert ticks
