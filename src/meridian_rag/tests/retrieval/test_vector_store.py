import httpx
import pytest
from qdrant_client import AsyncQdrantClient
from qdrant_client.http.exceptions import UnexpectedResponse

from meridian_rag.common.schemas import VectorItem
from meridian_rag.retrieval.vector_store import (
    InMemoryVectorSearch,
    QdrantVectorSearch,
    create_vector_store,
)


def _items():
    return [
        VectorItem(id="1:0", vector=[1.0, 0.0], text="east", metadata={"chunk_index": 0}),
        VectorItem(id="1:1", vector=[0.0, 1.0], text="north", metadata={"chunk_index": 1}),
        VectorItem(id="1:2", vector=[1.0, 1.0], text="north-east", metadata={"chunk_index": 2}),
    ]


@pytest.mark.asyncio
async def test_in_memory_search_orders_by_cosine_similarity():
    store = InMemoryVectorSearch()
    await store.upsert("doc_1", _items())

    results = await store.search("doc_1", [1.0, 0.1], k=2)

    assert [r.text for r in results] == ["east", "north-east"]
    assert results[0].score > results[1].score
    assert results[0].metadata == {"chunk_index": 0}


@pytest.mark.asyncio
async def test_in_memory_upsert_replaces_by_id():
    store = InMemoryVectorSearch()
    await store.upsert("doc_1", _items())
    await store.upsert("doc_1", [VectorItem(id="1:0", vector=[1.0, 0.0], text="replaced")])

    results = await store.search("doc_1", [1.0, 0.0], k=1)

    assert store.count("doc_1") == 3
    assert results[0].text == "replaced"


@pytest.mark.asyncio
async def test_in_memory_missing_collection_returns_nothing():
    store = InMemoryVectorSearch()

    assert await store.search("nope", [1.0, 0.0], k=5) == []

    await store.upsert("doc_1", _items())
    store.delete_collection("doc_1")
    assert await store.search("doc_1", [1.0, 0.0], k=5) == []


@pytest.mark.asyncio
async def test_in_memory_rejects_dimension_mismatch():
    store = InMemoryVectorSearch()
    await store.upsert("doc_1", _items())

    with pytest.raises(ValueError):
        await store.search("doc_1", [1.0, 0.0, 0.0], k=1)


def test_create_vector_store_selects_backend():
    assert isinstance(create_vector_store(None), InMemoryVectorSearch)
    assert isinstance(create_vector_store({"kind": "in-memory"}), InMemoryVectorSearch)
    assert isinstance(create_vector_store({"kind": "qdrant", "url": "http://localhost:6333"}), QdrantVectorSearch)
    assert isinstance(create_vector_store({"host": "qdrant.internal"}), QdrantVectorSearch)
    with pytest.raises(ValueError):
        create_vector_store({"kind": "faiss"})


@pytest.mark.asyncio
async def test_qdrant_round_trip_keeps_payload_and_text():
    store = QdrantVectorSearch(AsyncQdrantClient(location=":memory:"))
    await store.upsert("doc_1", _items())
    await store.upsert("doc_1", _items())

    results = await store.search("doc_1", [1.0, 0.0], k=3)

    assert len(results) == 3
    assert results[0].text == "east"
    assert results[0].metadata == {"chunk_index": 0}
    assert (await store.client.count("doc_1")).count == 3
    await store.close()


class NotFoundClient:
    async def query_points(self, **kwargs):
        raise UnexpectedResponse(
            status_code=404,
            reason_phrase="Not Found",
            content=b"",
            headers=httpx.Headers(),
        )


class BrokenClient:
    async def query_points(self, **kwargs):
        raise UnexpectedResponse(
            status_code=500,
            reason_phrase="Internal Server Error",
            content=b"",
            headers=httpx.Headers(),
        )


@pytest.mark.asyncio
async def test_qdrant_missing_collection_returns_nothing():
    store = QdrantVectorSearch(NotFoundClient())

    assert await store.search("doc_404", [1.0, 0.0], k=5) == []


@pytest.mark.asyncio
async def test_qdrant_server_errors_propagate():
    store = QdrantVectorSearch(BrokenClient())

    with pytest.raises(UnexpectedResponse):
        await store.search("doc_1", [1.0, 0.0], k=5)
