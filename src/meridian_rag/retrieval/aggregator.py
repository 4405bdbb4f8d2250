"""meridian_rag.retrieval.aggregator

Result aggregation on top of the retrieval engine.

Raw vector hits are often fragments of the same passage: neighbouring chunks
of one document scoring similarly for a query. This module merges such hits
into coherent passages, widens them with surrounding chunks, buckets them by
document section and assembles a section-organised context.

Classes
-------
EnhancedSearchOptions
    Switches and overrides for one aggregating search.
EnhancedRetrievalEngine
    Retrieval engine that aggregates, widens and groups its hits.

Functions
---------
aggregate_adjacent_chunks
    Merge index-adjacent hits of the same document.
add_context
    Attach neighbouring chunk text to each hit.
group_hits_by_section
    Bucket hits by ``"{document_id}:{section path}"``.
build_enhanced_context
    Assemble a token-budgeted, section-organised context.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence

from meridian_rag.common.errors import AggregatorUnavailableError
from meridian_rag.common.schemas import (
    AggregationStats,
    EnhancedHit,
    Hit,
    RetrievalResult,
    SearchMode,
    SectionSummary,
)
from meridian_rag.common.tokenisation import TokenCounter
from meridian_rag.retrieval.embedder import EmbedderHandle
from meridian_rag.retrieval.retriever import (
    RetrievalConfig,
    RetrievalEngine,
    assemble_budgeted,
    balance_hits_by_document,
    build_overview_hits,
    coerce_mode,
    resolve_mode_parameters,
)
from meridian_rag.retrieval.types import ChunkRepository, DocumentCatalog, VectorSearchClient

logger = logging.getLogger(__name__)

# Hits whose chunk indices differ by up to MAX_GAP + 1 are merged.
MAX_GAP = 1
UNKNOWN_SECTION_TITLE = "Unknown section"
SECTION_PREVIEW_CHARS = 200


def _copy_hit(hit: Hit) -> EnhancedHit:
    if isinstance(hit, EnhancedHit):
        return replace(
            hit,
            metadata=dict(hit.metadata),
            aggregated_from=list(hit.aggregated_from) if hit.aggregated_from else None,
        )
    return EnhancedHit.from_hit(hit)


def aggregate_adjacent_chunks(hits: Sequence[Hit], max_gap: int = MAX_GAP) -> List[EnhancedHit]:
    """Merge index-adjacent hits of the same document into single passages.

    Hits are grouped by document and ordered by their first chunk index. A hit
    joins the current group when its first index is at most ``max_gap + 1``
    past the group's last absorbed index; joined content is separated by a
    blank line, the higher score is kept and the shallower section wins.

    Parameters
    ----------
    hits : Sequence[Hit]
        Hits to merge. They are copied, never modified.
    max_gap : int, optional
        Number of missing chunks tolerated between merged hits.

    Returns
    -------
    list[EnhancedHit]
        Merged hits in descending score order. ``aggregated_from`` lists the
        original chunk indices of multi-chunk passages, so running the merge
        again on its own output groups the same way.
    """
    by_document: Dict[int, List[EnhancedHit]] = {}
    for hit in hits:
        by_document.setdefault(hit.document_id, []).append(_copy_hit(hit))

    merged: List[EnhancedHit] = []
    for doc_hits in by_document.values():
        doc_hits.sort(key=lambda h: min(h.source_indices))

        current: Optional[EnhancedHit] = None
        for hit in doc_hits:
            if current is None:
                current = hit
                continue

            indices = current.source_indices
            if min(hit.source_indices) - max(indices) > max_gap + 1:
                merged.append(current)
                current = hit
                continue

            if not set(hit.source_indices) <= set(indices):
                current.content = f"{current.content}\n\n{hit.content}"
                current.aggregated_from = sorted(set(indices) | set(hit.source_indices))
            current.score = max(current.score, hit.score)
            if hit.section and (current.section is None or hit.section.level < current.section.level):
                current.section = hit.section

        if current is not None:
            merged.append(current)

    merged.sort(key=lambda h: h.score, reverse=True)
    return merged


async def add_context(
        hits: Sequence[EnhancedHit],
        chunk_repository: ChunkRepository,
        context_size: int,
    ) -> List[EnhancedHit]:
    """Attach up to ``context_size`` neighbouring chunks around each hit.

    Content and score are left untouched; the text of the preceding and
    following chunks is stored in ``context_before`` / ``context_after``.
    """
    if context_size <= 0:
        return list(hits)

    async def widen(hit: EnhancedHit) -> EnhancedHit:
        first = min(hit.source_indices)
        last = max(hit.source_indices)
        if first > 0:
            before = await chunk_repository.get_chunk_range(
                hit.document_id, max(0, first - context_size), first - 1
            )
        else:
            before = []
        after = await chunk_repository.get_chunk_range(hit.document_id, last + 1, last + context_size)

        widened = _copy_hit(hit)
        widened.context_before = "\n".join(c.content for c in before) or None
        widened.context_after = "\n".join(c.content for c in after) or None
        return widened

    return list(await asyncio.gather(*(widen(hit) for hit in hits)))


def section_key(hit: EnhancedHit) -> str:
    if hit.section is not None:
        return f"{hit.document_id}:{hit.section.path}"
    return f"{hit.document_id}:unknown"


def group_hits_by_section(hits: Sequence[EnhancedHit]) -> Dict[str, List[EnhancedHit]]:
    groups: Dict[str, List[EnhancedHit]] = {}
    for hit in hits:
        groups.setdefault(section_key(hit), []).append(hit)
    return groups


def build_enhanced_context(
        hits: Sequence[EnhancedHit],
        grouped: Optional[Dict[str, List[EnhancedHit]]],
        max_context_tokens: int,
        token_counter: Optional[TokenCounter] = None,
    ) -> str:
    """Assemble a section-organised context within the token budget.

    With section groups, each group becomes one entry headed by the section
    title and source document; otherwise each hit becomes one entry labelled
    with its document and section. Attached context is included in the body.
    """
    entries: List[str] = []

    if grouped:
        for group in grouped.values():
            first = group[0]
            title = first.section.title if first.section else UNKNOWN_SECTION_TITLE
            body = "\n\n".join(h.body_with_context() for h in group)
            entries.append(f"## {title}\n**Source: {first.document_name}**\n\n{body}")
    else:
        for hit in hits:
            label = f" ({hit.section.title})" if hit.section else ""
            entries.append(f"[Source: {hit.document_name}{label}]\n{hit.body_with_context()}")

    return assemble_budgeted(entries, max_context_tokens, token_counter)


@dataclass(frozen=True)
class EnhancedSearchOptions:
    """Options for :meth:`EnhancedRetrievalEngine.search`.

    Attributes
    ----------
    mode : SearchMode or str
        Query mode.
    aggregate_adjacent : bool
        Merge index-adjacent hits.
    group_by_section : bool
        Look up each hit's section and bucket hits by section.
    include_context : bool
        Attach neighbouring chunks to each hit.
    context_size : int
        Chunks to attach on each side.
    top_k, relevance_threshold : optional
        Override the configured base values before mode adjustment.
    per_document_k : int or None
        Guaranteed hits per document when balancing.
    ensure_document_coverage : bool
        Balance hits across documents.
    max_gap : int
        Gap tolerance for adjacency merging.
    """

    mode: SearchMode | str = SearchMode.PRECISE
    aggregate_adjacent: bool = True
    group_by_section: bool = True
    include_context: bool = True
    context_size: int = 1
    top_k: Optional[int] = None
    relevance_threshold: Optional[float] = None
    per_document_k: Optional[int] = None
    ensure_document_coverage: bool = False
    max_gap: int = MAX_GAP


class EnhancedRetrievalEngine(RetrievalEngine):
    """Retrieval engine that aggregates, widens and groups its hits.

    Parameters
    ----------
    catalog : DocumentCatalog
        Resolves document ids into records.
    vector_client : VectorSearchClient
        Per-document vector collections.
    embedder_handle : EmbedderHandle
        Source of the active embedder.
    chunk_repository : ChunkRepository
        Stored chunks and section assignments.
    config : RetrievalConfig or None, optional
        Base threshold, ``top_k`` and context budget.
    token_counter : TokenCounter or None, optional
        Counter used for the context budget.
    """

    def __init__(
            self,
            catalog: DocumentCatalog,
            vector_client: VectorSearchClient,
            embedder_handle: EmbedderHandle,
            chunk_repository: ChunkRepository,
            config: Optional[RetrievalConfig] = None,
            token_counter: Optional[TokenCounter] = None,
        ):
        super().__init__(catalog, vector_client, embedder_handle, config, token_counter)
        self.chunk_repository = chunk_repository

    async def search(
            self,
            document_ids: Sequence[int],
            query: str,
            options: Optional[EnhancedSearchOptions] = None,
        ) -> RetrievalResult:
        """Search documents and return aggregated, section-grouped hits.

        Parameters
        ----------
        document_ids : Sequence[int]
            Documents to search.
        query : str
            Natural-language query.
        options : EnhancedSearchOptions or None, optional
            Aggregation switches and overrides.

        Returns
        -------
        RetrievalResult
            Hits are :class:`EnhancedHit` instances. ``aggregation_stats`` is
            always set; ``grouped_by_section`` is set when grouping is enabled.

        Raises
        ------
        AggregatorUnavailableError
            If the chunk repository fails while looking up sections or
            neighbouring chunks.
        EmbeddingError
            If the query cannot be embedded.
        """
        options = options or EnhancedSearchOptions()
        mode = coerce_mode(options.mode)

        documents = await self._searchable_documents(document_ids)
        if not documents:
            result = RetrievalResult.empty()
            result.aggregation_stats = AggregationStats(0, 0, 0)
            return result

        started = time.perf_counter()
        params = resolve_mode_parameters(
            mode,
            options.relevance_threshold
            if options.relevance_threshold is not None
            else self.config.relevance_threshold,
            options.top_k if options.top_k is not None else self.config.top_k,
        )

        query_vector = await self._embed_query(query)
        candidates = await self._search_documents(
            documents, query_vector, params.top_k * 3, params.relevance_threshold
        )
        if mode is SearchMode.OVERVIEW:
            candidates = build_overview_hits(candidates)

        hits: List[EnhancedHit] = [EnhancedHit.from_hit(hit) for hit in candidates]
        if options.group_by_section:
            try:
                sections = await asyncio.gather(
                    *(self.chunk_repository.get_section(h.document_id, h.chunk_index) for h in hits)
                )
            except Exception as exc:
                raise AggregatorUnavailableError(f"Section lookup failed: {exc}") from exc
            for hit, section in zip(hits, sections):
                hit.section = section

        original_count = len(hits)
        if options.aggregate_adjacent:
            hits = aggregate_adjacent_chunks(hits, options.max_gap)
        stats = AggregationStats(
            original_hits=original_count,
            after_aggregation=len(hits),
            merged_groups=original_count - len(hits),
        )

        if options.ensure_document_coverage:
            hits = balance_hits_by_document(hits, params.top_k, options.per_document_k)
        else:
            hits = hits[:params.top_k]

        if options.include_context and options.context_size > 0:
            try:
                hits = await add_context(hits, self.chunk_repository, options.context_size)
            except Exception as exc:
                raise AggregatorUnavailableError(f"Context lookup failed: {exc}") from exc

        grouped = group_hits_by_section(hits) if options.group_by_section else None
        context = build_enhanced_context(
            hits, grouped, self.config.max_context_tokens, self.token_counter
        )
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.debug(
            "Enhanced search: %d candidates -> %d passages (%d merged, mode=%s, %.1f ms)",
            original_count,
            len(hits),
            stats.merged_groups,
            mode.value,
            elapsed_ms,
        )
        return RetrievalResult(
            hits=list(hits),
            context=context,
            total_hits=original_count,
            query_time_ms=elapsed_ms,
            aggregation_stats=stats,
            grouped_by_section=grouped,
        )

    async def search_sections(
            self,
            document_ids: Sequence[int],
            query: str,
            top_k: int = 5,
        ) -> List[SectionSummary]:
        """Return the sections that best match ``query``.

        Runs :meth:`search` in ``section`` mode with ``top_k * 3`` hits and
        collapses each section group into one summary scored by the average
        of its hits. Hits without a section are ignored.
        """
        result = await self.search(
            document_ids,
            query,
            EnhancedSearchOptions(
                mode=SearchMode.SECTION,
                aggregate_adjacent=True,
                group_by_section=True,
                top_k=top_k * 3,
            ),
        )
        if not result.grouped_by_section:
            return []

        summaries: List[SectionSummary] = []
        for group in result.grouped_by_section.values():
            first = group[0]
            if first.section is None:
                continue
            summaries.append(
                SectionSummary(
                    section_id=first.section.id,
                    title=first.section.title,
                    path=first.section.path,
                    document_id=first.document_id,
                    document_name=first.document_name,
                    average_score=sum(h.score for h in group) / len(group),
                    matched_chunk_count=len(group),
                    preview_text=first.content[:SECTION_PREVIEW_CHARS] + "...",
                )
            )

        summaries.sort(key=lambda s: s.average_score, reverse=True)
        return summaries[:top_k]


__all__ = [
    "MAX_GAP",
    "EnhancedSearchOptions",
    "EnhancedRetrievalEngine",
    "aggregate_adjacent_chunks",
    "add_context",
    "group_hits_by_section",
    "build_enhanced_context",
    "section_key",
]
