import pytest

from meridian_rag.common.errors import AggregatorUnavailableError
from meridian_rag.common.schemas import (
    AggregationStats,
    Chunk,
    ChunkMetadata,
    DocumentRecord,
    EnhancedHit,
    Section,
    VectorSearchResult,
)
from meridian_rag.retrieval import retriever_factory
from meridian_rag.retrieval.aggregator import EnhancedRetrievalEngine, EnhancedSearchOptions
from meridian_rag.retrieval.document_store import InMemoryCatalog
from meridian_rag.retrieval.embedder import EmbedderHandle
from meridian_rag.retrieval.retriever import RetrievalEngine

INTRO = Section(id=1, title="Introduction", path="1", level=1)
TERMS = Section(id=2, title="Terms", path="2", level=1)


class DummyEmbedder:
    async def embed(self, text):
        return [1.0, 0.0]


class DummyVectorClient:
    def __init__(self, results):
        self.results = results
        self.calls = []

    async def search(self, collection_id, query_vector, k):
        self.calls.append((collection_id, k))
        return list(self.results.get(collection_id, []))[:k]

    async def upsert(self, collection_id, items):
        raise AssertionError("not used")


class BrokenRepository:
    async def get_chunk_range(self, document_id, start, end):
        raise ConnectionError("chunk store offline")

    async def get_section(self, document_id, chunk_index):
        raise ConnectionError("chunk store offline")


def _result(idx, score):
    return VectorSearchResult(text=f"chunk{idx}", score=score, metadata={"chunk_index": idx})


def _catalog():
    catalog = InMemoryCatalog([DocumentRecord(id=1, name="lease.pdf", collection_name="doc_1")])
    catalog.add_chunks(
        1,
        [Chunk(content=f"c{i}", index=i, metadata=ChunkMetadata(start_char=i, end_char=i + 1)) for i in range(10)],
    )
    catalog.assign_section(1, INTRO, range(0, 5))
    catalog.assign_section(1, TERMS, range(5, 10))
    return catalog


def _engine(results=None, repository=None):
    catalog = _catalog()
    client = DummyVectorClient(results or {"doc_1": [_result(3, 0.9), _result(4, 0.85), _result(8, 0.6)]})
    engine = EnhancedRetrievalEngine(
        catalog=catalog,
        vector_client=client,
        embedder_handle=EmbedderHandle(DummyEmbedder()),
        chunk_repository=repository or catalog,
    )
    return engine, client


@pytest.mark.asyncio
async def test_search_aggregates_widens_and_groups():
    engine, client = _engine()

    result = await engine.search([1], "rent increase")

    assert client.calls == [("doc_1", 15)]
    assert result.aggregation_stats == AggregationStats(original_hits=3, after_aggregation=2, merged_groups=1)
    assert result.total_hits == 3
    assert all(isinstance(h, EnhancedHit) for h in result.hits)

    merged, single = result.hits
    assert merged.source_indices == [3, 4]
    assert merged.section is INTRO
    assert merged.context_before == "c2"
    assert merged.context_after == "c5"
    assert single.section is TERMS

    assert list(result.grouped_by_section) == ["1:1", "1:2"]
    assert result.context.startswith("## Introduction\n**Source: lease.pdf**\n\nc2\n\nchunk3\n\nchunk4\n\nc5")


@pytest.mark.asyncio
async def test_search_without_aggregation_or_context():
    engine, _ = _engine()
    options = EnhancedSearchOptions(aggregate_adjacent=False, include_context=False, group_by_section=False)

    result = await engine.search([1], "rent increase", options)

    assert [h.chunk_index for h in result.hits] == [3, 4, 8]
    assert result.aggregation_stats.merged_groups == 0
    assert result.grouped_by_section is None
    assert all(h.context_before is None and h.section is None for h in result.hits)
    assert result.context.startswith("[Source: lease.pdf]\nchunk3")


@pytest.mark.asyncio
async def test_search_truncates_to_mode_top_k():
    results = {"doc_1": [_result(i * 5, 0.99 - 0.01 * i) for i in range(20)]}
    catalog_engine, _ = _engine(results)

    result = await catalog_engine.search([1], "q", EnhancedSearchOptions(include_context=False))

    assert len(result.hits) == 5
    assert result.aggregation_stats.original_hits == 15


@pytest.mark.asyncio
async def test_search_with_no_documents_returns_empty_stats():
    engine, client = _engine()

    result = await engine.search([42], "q")

    assert result.hits == []
    assert result.aggregation_stats == AggregationStats(0, 0, 0)
    assert client.calls == []


@pytest.mark.asyncio
async def test_section_lookup_failure_is_reported_as_unavailable():
    engine, _ = _engine(repository=BrokenRepository())

    with pytest.raises(AggregatorUnavailableError):
        await engine.search([1], "q")


@pytest.mark.asyncio
async def test_context_lookup_failure_is_reported_as_unavailable():
    engine, _ = _engine(repository=BrokenRepository())

    with pytest.raises(AggregatorUnavailableError):
        await engine.search([1], "q", EnhancedSearchOptions(group_by_section=False))


@pytest.mark.asyncio
async def test_search_sections_ranks_sections_by_average_score():
    results = {"doc_1": [_result(3, 0.9), _result(8, 0.7), _result(9, 0.5), _result(1, 0.35)]}
    engine, client = _engine(results)

    sections = await engine.search_sections([1], "what are the terms?", top_k=5)

    assert client.calls == [("doc_1", 45)]
    assert [s.title for s in sections] == ["Introduction", "Terms"]
    intro, terms = sections
    assert intro.section_id == 1
    assert intro.document_name == "lease.pdf"
    assert intro.average_score == pytest.approx(0.9)
    assert intro.preview_text == "chunk1\n\nchunk3..."
    assert terms.average_score == pytest.approx(0.7)
    assert terms.matched_chunk_count == 1
    assert terms.preview_text == "chunk8\n\nchunk9..."


@pytest.mark.asyncio
async def test_search_sections_skips_hits_without_section():
    catalog = InMemoryCatalog([DocumentRecord(id=1, name="lease.pdf", collection_name="doc_1")])
    engine = EnhancedRetrievalEngine(
        catalog=catalog,
        vector_client=DummyVectorClient({"doc_1": [_result(0, 0.9)]}),
        embedder_handle=EmbedderHandle(DummyEmbedder()),
        chunk_repository=catalog,
    )

    assert await engine.search_sections([1], "q") == []


def test_factory_builds_registered_engines():
    catalog = _catalog()
    common = dict(
        catalog=catalog,
        vector_client=DummyVectorClient({}),
        embedder_handle=EmbedderHandle(DummyEmbedder()),
    )

    plain = retriever_factory.create(kind="plain", **common)
    enhanced = retriever_factory.create(kind="enhanced", chunk_repository=catalog, **common)

    assert type(plain) is RetrievalEngine
    assert isinstance(enhanced, EnhancedRetrievalEngine)
    assert retriever_factory.available() == ["enhanced", "plain"]


def test_factory_rejects_unknown_kind_and_missing_repository():
    common = dict(
        catalog=_catalog(),
        vector_client=DummyVectorClient({}),
        embedder_handle=EmbedderHandle(DummyEmbedder()),
    )

    with pytest.raises(ValueError):
        retriever_factory.create(kind="hybrid", **common)
    with pytest.raises(ValueError):
        retriever_factory.create(kind="enhanced", **common)
