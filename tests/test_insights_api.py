"""Tests for the /api/insights endpoints."""
import pytest
from httpx import AsyncClient

CONCEPTS = ["neural network", "backpropagation"]


@pytest.mark.asyncio
async def test_gaps_endpoint(client: AsyncClient):
    resp = await client.post("/api/insights/gaps", json={"concepts": CONCEPTS})
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_gaps"] == 2
    assert [g["missing_concept"] for g in data["gaps"]] == ["Deep learning", "Perceptron"]
    gap = data["gaps"][1]
    assert gap["gap_score"] == 73.0
    assert gap["priority"] == "medium"
    assert gap["suggested_learning_path"][0] == "neural network"


@pytest.mark.asyncio
async def test_gaps_endpoint_honours_config(client: AsyncClient):
    resp = await client.post(
        "/api/insights/gaps",
        json={"concepts": CONCEPTS, "config": {"max_gaps_to_return": 1, "min_gap_score": 10}},
    )
    assert resp.status_code == 200
    assert resp.json()["total_gaps"] == 1


@pytest.mark.asyncio
async def test_links_endpoint(client: AsyncClient):
    resp = await client.post(
        "/api/insights/links",
        json={"concepts": CONCEPTS + ["gradient descent"], "options": {"min_confidence_score": 0}},
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["total_links"] == len(data["links"]) > 0

    scores = [link["confidence_score"] for link in data["links"]]
    assert scores == sorted(scores, reverse=True)
    for link in data["links"]:
        assert link["reasoning"]["hops"] == len(link["connection_path"]) - 1
        assert link["connection_path"][0] == link["from_concept"]
        assert link["connection_path"][-1] == link["to_concept"]


@pytest.mark.asyncio
async def test_links_endpoint_rejects_invalid_options(client: AsyncClient):
    resp = await client.post(
        "/api/insights/links",
        json={"concepts": CONCEPTS, "options": {"max_hops": 50}},
    )
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_empty_concept_sets_are_not_errors(client: AsyncClient):
    gaps = await client.post("/api/insights/gaps", json={"concepts": []})
    links = await client.post("/api/insights/links", json={"concepts": ["only one"]})
    ranking = await client.post("/api/insights/ranking", json={"concepts": []})

    assert gaps.json() == {"gaps": [], "total_gaps": 0}
    assert links.json() == {"links": [], "total_links": 0}
    assert ranking.status_code == 200
    assert ranking.json()["total_results"] == 0


@pytest.mark.asyncio
async def test_ranking_endpoint(client: AsyncClient):
    resp = await client.post(
        "/api/insights/ranking",
        json={
            "concepts": CONCEPTS,
            "profile": {"interests": ["perceptron"], "current_level": "intermediate"},
            "options": {"min_unified_score": 0, "max_results": 50},
        },
    )
    assert resp.status_code == 200
    data = resp.json()
    results = data["results"]
    assert data["total_results"] == len(results) > 0
    assert {r["type"] for r in results} == {"knowledge-gap", "hidden-link"}

    scores = [r["unified_score"] for r in results]
    assert scores == sorted(scores, reverse=True)
    assert len({r["id"] for r in results}) == len(results)

    stats = data["stats"]
    assert stats["total_results"] == len(results)
    assert stats["max_score"] == scores[0]
    assert sum(stats["type_distribution"].values()) == len(results)


@pytest.mark.asyncio
async def test_ranking_update_and_stats(client: AsyncClient):
    first = await client.post(
        "/api/insights/ranking",
        json={"concepts": CONCEPTS, "options": {"min_unified_score": 0}},
    )
    existing = first.json()["results"]

    resp = await client.post(
        "/api/insights/ranking/update",
        json={"existing": existing, "new_concepts": CONCEPTS + ["gradient descent"]},
    )
    assert resp.status_code == 200
    merged = resp.json()["results"]
    ids = [r["id"] for r in merged]
    assert len(ids) == len(set(ids))
    assert set(r["id"] for r in existing) <= set(ids)

    stats = await client.post("/api/insights/ranking/stats", json={"results": merged})
    assert stats.status_code == 200
    assert stats.json()["total_results"] == len(merged)
