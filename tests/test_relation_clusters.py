"""Tests for relation clustering."""
import asyncio

import pytest

from app.services.relation_clusters import (
    CAUSAL,
    GENERIC,
    HIERARCHICAL,
    RelationClusterer,
    default_clusters,
    semantic_type,
)
from app.services.schema_graph import ORIGIN_INTERNAL, RELATION, SchemaGraph, SchemaGraphBuilder


def _schema_with_relations(*relations):
    graph = SchemaGraph()
    for relation in relations:
        graph.upsert(relation, ORIGIN_INTERNAL, node_type=RELATION)
    return graph


def test_semantic_type_keywords():
    assert semantic_type("smoking_causes_cancer") == CAUSAL
    assert semantic_type("dog_is_a_mammal") == HIERARCHICAL
    assert semantic_type("neural network_to_deep learning") == GENERIC


def test_default_clusters():
    clusters = default_clusters()
    assert [c.semantic_type for c in clusters] == ["causal", "spatial", "temporal", "hierarchical"]
    hierarchical = clusters[-1]
    assert hierarchical.strength == 0.9
    assert hierarchical.matches("wheel_part_of_car")
    assert not hierarchical.matches("wheel_to_car")


@pytest.mark.asyncio
async def test_groups_with_several_members_replace_defaults():
    clusterer = RelationClusterer()
    snapshot = await clusterer.update_relation_clusters(
        _schema_with_relations("rain_causes_flood", "heat_leads_to_drought", "a_to_b")
    )
    by_type = {c.semantic_type: c for c in snapshot}

    causal = by_type[CAUSAL]
    assert causal.cluster_id == "cluster_causal"
    assert causal.relations == ("rain_causes_flood", "heat_leads_to_drought")
    assert causal.strength == pytest.approx(2 / 3)

    # A single generic relation does not form a cluster
    assert GENERIC not in by_type
    assert len(snapshot) == 4


@pytest.mark.asyncio
async def test_single_member_group_keeps_default():
    clusterer = RelationClusterer()
    before = {c.semantic_type: c for c in clusterer.clusters}
    await clusterer.update_relation_clusters(_schema_with_relations("rain_causes_flood"))
    after = {c.semantic_type: c for c in clusterer.clusters}
    assert after[CAUSAL] == before[CAUSAL]


@pytest.mark.asyncio
async def test_context_relations_form_generic_cluster(context_retriever, ontology_client):
    schema = await SchemaGraphBuilder(context_retriever, ontology_client).build_dynamic_schema(
        ["neural network", "backpropagation"]
    )
    clusterer = RelationClusterer()
    snapshot = await clusterer.update_relation_clusters(schema)

    generic = {c.semantic_type: c for c in snapshot}[GENERIC]
    assert generic.strength == 1.0
    assert len(generic.relations) == 4
    assert generic.matches("backpropagation_to_chain rule")


@pytest.mark.asyncio
async def test_concurrent_updates_and_reset():
    clusterer = RelationClusterer()
    schema_a = _schema_with_relations("a_causes_b", "c_causes_d")
    schema_b = _schema_with_relations("x_is_a_y", "y_part_of_z")
    await asyncio.gather(
        clusterer.update_relation_clusters(schema_a),
        clusterer.update_relation_clusters(schema_b),
    )
    by_type = {c.semantic_type: c for c in clusterer.clusters}
    assert by_type[CAUSAL].cluster_id == "cluster_causal"
    assert by_type[HIERARCHICAL].cluster_id == "cluster_hierarchical"

    await clusterer.reset()
    assert clusterer.clusters == default_clusters()


@pytest.mark.asyncio
async def test_reset_waits_for_in_flight_update():
    clusterer = RelationClusterer()
    await clusterer.update_relation_clusters(_schema_with_relations("a_causes_b", "c_causes_d"))

    async with clusterer._lock:
        resetting = asyncio.create_task(clusterer.reset())
        await asyncio.sleep(0)
        assert not resetting.done()
        assert {c.semantic_type: c for c in clusterer.clusters}[CAUSAL].cluster_id == "cluster_causal"

    await resetting
    assert clusterer.clusters == default_clusters()
