import pytest

from meridian_rag.common.schemas import Chunk, ChunkMetadata, EnhancedHit, Hit, Section
from meridian_rag.retrieval.aggregator import (
    add_context,
    aggregate_adjacent_chunks,
    build_enhanced_context,
    group_hits_by_section,
)
from meridian_rag.retrieval.document_store import InMemoryCatalog


INTRO = Section(id=1, title="Introduction", path="1", level=1)
SCOPE = Section(id=2, title="Scope", path="1.1", level=2)


def _hit(doc, idx, score, section=None):
    hit = EnhancedHit(
        document_id=doc,
        document_name=f"doc{doc}.pdf",
        chunk_index=idx,
        content=f"chunk{idx}",
        score=score,
    )
    hit.section = section
    return hit


def _catalog_with_chunks(doc=1, count=6):
    catalog = InMemoryCatalog()
    catalog.add_chunks(
        doc,
        [Chunk(content=f"c{i}", index=i, metadata=ChunkMetadata(start_char=i, end_char=i + 1)) for i in range(count)],
    )
    return catalog


def test_adjacent_hits_merge_and_distant_hits_stay_apart():
    hits = [_hit(1, 4, 0.9), _hit(1, 3, 0.8), _hit(1, 7, 0.5), _hit(2, 4, 0.7)]

    merged = aggregate_adjacent_chunks(hits)

    assert [(h.document_id, h.chunk_index) for h in merged] == [(1, 3), (2, 4), (1, 7)]
    first = merged[0]
    assert first.content == "chunk3\n\nchunk4"
    assert first.score == 0.9
    assert first.aggregated_from == [3, 4]
    assert merged[1].aggregated_from is None
    assert merged[2].aggregated_from is None


@pytest.mark.parametrize(
    "indices,max_gap,expected_groups",
    [
        ([2, 4], 1, [[2, 4]]),
        ([2, 5], 1, [[2], [5]]),
        ([2, 4], 0, [[2], [4]]),
        ([2, 3], 0, [[2, 3]]),
        ([1, 2, 3, 10, 11], 1, [[1, 2, 3], [10, 11]]),
    ],
)
def test_gap_tolerance(indices, max_gap, expected_groups):
    hits = [_hit(1, idx, 0.5) for idx in indices]

    merged = aggregate_adjacent_chunks(hits, max_gap=max_gap)

    assert sorted(h.source_indices for h in merged) == expected_groups


def test_aggregation_is_idempotent():
    hits = [_hit(1, i, 0.1 * i) for i in (1, 2, 4, 9, 10)] + [_hit(2, 0, 0.3)]

    once = aggregate_adjacent_chunks(hits)
    twice = aggregate_adjacent_chunks(once)

    assert [(h.key, h.source_indices, h.content, h.score) for h in twice] == [
        (h.key, h.source_indices, h.content, h.score) for h in once
    ]


def test_aggregation_does_not_mutate_inputs():
    plain = Hit(document_id=1, document_name="a.pdf", chunk_index=1, content="one", score=0.4, metadata={"k": 1})
    second = _hit(1, 2, 0.8)

    merged = aggregate_adjacent_chunks([plain, second])

    assert merged[0].content == "one\n\nchunk2"
    assert plain.content == "one"
    assert plain.score == 0.4
    assert second.content == "chunk2"
    assert second.aggregated_from is None
    merged[0].metadata["k"] = 2
    assert plain.metadata == {"k": 1}


def test_merge_keeps_shallower_section():
    hits = [_hit(1, 1, 0.5, section=SCOPE), _hit(1, 2, 0.6, section=INTRO), _hit(1, 3, 0.4)]

    merged = aggregate_adjacent_chunks(hits)

    assert len(merged) == 1
    assert merged[0].section is INTRO


def test_merge_adopts_section_when_first_hit_has_none():
    merged = aggregate_adjacent_chunks([_hit(1, 1, 0.5), _hit(1, 2, 0.6, section=SCOPE)])

    assert merged[0].section is SCOPE


def test_duplicate_hits_are_not_repeated():
    merged = aggregate_adjacent_chunks([_hit(1, 5, 0.5), _hit(1, 5, 0.7)])

    assert len(merged) == 1
    assert merged[0].content == "chunk5"
    assert merged[0].score == 0.7
    assert merged[0].aggregated_from is None


@pytest.mark.asyncio
async def test_add_context_attaches_neighbours():
    catalog = _catalog_with_chunks()
    merged = aggregate_adjacent_chunks([_hit(1, 2, 0.9), _hit(1, 3, 0.8)])

    widened = await add_context(merged, catalog, context_size=1)

    hit = widened[0]
    assert hit.context_before == "c1"
    assert hit.context_after == "c4"
    assert hit.content == "chunk2\n\nchunk3"
    assert hit.score == 0.9
    assert merged[0].context_before is None
    assert hit.body_with_context() == "c1\n\nchunk2\n\nchunk3\n\nc4"


@pytest.mark.asyncio
async def test_add_context_at_document_edges():
    catalog = _catalog_with_chunks(count=6)

    first, last = await add_context([_hit(1, 0, 0.5), _hit(1, 5, 0.4)], catalog, context_size=2)

    assert first.context_before is None
    assert first.context_after == "c1\nc2"
    assert last.context_before == "c3\nc4"
    assert last.context_after is None


@pytest.mark.asyncio
async def test_add_context_with_zero_size_is_a_no_op():
    hits = [_hit(1, 2, 0.5)]

    assert await add_context(hits, _catalog_with_chunks(), context_size=0) == hits


def test_group_hits_by_section():
    hits = [_hit(1, 0, 0.9, section=INTRO), _hit(1, 5, 0.8), _hit(2, 1, 0.7, section=INTRO), _hit(1, 2, 0.6, section=INTRO)]

    grouped = group_hits_by_section(hits)

    assert list(grouped) == ["1:1", "1:unknown", "2:1"]
    assert [h.chunk_index for h in grouped["1:1"]] == [0, 2]


def test_enhanced_context_with_section_groups():
    hits = [_hit(1, 0, 0.9, section=INTRO), _hit(1, 5, 0.8)]
    hits[0].context_after = "next"

    context = build_enhanced_context(hits, group_hits_by_section(hits), 4000)

    assert context.startswith("## Introduction\n**Source: doc1.pdf**\n\nchunk0\n\nnext")
    assert "## Unknown section\n**Source: doc1.pdf**\n\nchunk5" in context


def test_enhanced_context_without_groups_labels_each_hit():
    hits = [_hit(1, 0, 0.9, section=INTRO), _hit(2, 3, 0.8)]

    context = build_enhanced_context(hits, None, 4000)

    assert context.startswith("[Source: doc1.pdf (Introduction)]\nchunk0")
    assert "[Source: doc2.pdf]\nchunk3" in context
