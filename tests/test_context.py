"""Tests for the context store adapters."""
import json

import httpx
import pytest

from app.services.context import HttpContextRetriever, StaticContextRetriever
from app.services.errors import ContextStoreError


# ---------------------------------------------------------------------------
# StaticContextRetriever
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_static_lookup_is_case_insensitive(context_retriever):
    bundle = await context_retriever.get_context_bundle("Neural Network")
    assert bundle.target_concept == "Neural Network"
    assert bundle.related_concepts == ["deep learning", "backpropagation"]
    assert bundle.relevant_notes[0].tags == ["machine learning"]
    assert bundle.query_metadata.result_count == 2


@pytest.mark.asyncio
async def test_static_unknown_concept_is_empty(context_retriever):
    bundle = await context_retriever.get_context_bundle("quantum chromodynamics")
    assert bundle.relevant_notes == []
    assert bundle.book_excerpts == []
    assert bundle.related_concepts == []
    assert bundle.query_metadata.result_count == 0


@pytest.mark.asyncio
async def test_static_returns_independent_copies(context_retriever):
    first = await context_retriever.get_context_bundle("backpropagation")
    first.related_concepts.append("mutated")
    first.relevant_notes[0].tags.append("mutated")

    second = await context_retriever.get_context_bundle("backpropagation")
    assert "mutated" not in second.related_concepts
    assert "mutated" not in second.relevant_notes[0].tags


def test_static_from_file(tmp_path):
    path = tmp_path / "context.json"
    path.write_text(
        json.dumps({"graph": {"related_concepts": ["vertex", "edge"]}}),
        encoding="utf-8",
    )
    retriever = StaticContextRetriever.from_file(path)
    assert len(retriever) == 1


def test_static_from_file_rejects_non_object(tmp_path):
    path = tmp_path / "context.json"
    path.write_text(json.dumps(["graph"]), encoding="utf-8")
    with pytest.raises(ContextStoreError):
        StaticContextRetriever.from_file(path)


# ---------------------------------------------------------------------------
# HttpContextRetriever
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_http_bundle_is_parsed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["concept"] = request.url.params["concept"]
        return httpx.Response(
            200,
            json={
                "relevant_notes": [{"content": "n", "tags": ["t"]}],
                "book_excerpts": ["e1", "e2"],
                "related_concepts": ["vertex"],
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        retriever = HttpContextRetriever(base_url="http://store/", client=http)
        bundle = await retriever.get_context_bundle("graph")

    assert seen == {"path": "/api/context", "concept": "graph"}
    assert bundle.target_concept == "graph"
    assert bundle.related_concepts == ["vertex"]
    assert bundle.query_metadata.result_count == 3


@pytest.mark.asyncio
async def test_http_404_is_an_empty_bundle():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        retriever = HttpContextRetriever(base_url="http://store", client=http)
        bundle = await retriever.get_context_bundle("graph")

    assert bundle.related_concepts == []
    assert bundle.relevant_notes == []


@pytest.mark.asyncio
async def test_http_server_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="boom")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        retriever = HttpContextRetriever(base_url="http://store", client=http)
        with pytest.raises(ContextStoreError):
            await retriever.get_context_bundle("graph")
        assert await retriever.ping() is False


@pytest.mark.asyncio
async def test_http_transport_error_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        retriever = HttpContextRetriever(base_url="http://store", client=http)
        with pytest.raises(ContextStoreError):
            await retriever.get_context_bundle("graph")


@pytest.mark.asyncio
async def test_http_malformed_bundle_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"relevant_notes": "not a list"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        retriever = HttpContextRetriever(base_url="http://store", client=http)
        with pytest.raises(ContextStoreError):
            await retriever.get_context_bundle("graph")
