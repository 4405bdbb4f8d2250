"""meridian_rag.retrieval.retriever

Multi-document retrieval engine.

This module turns a natural-language query over a set of documents into a
reduced, scored hit list plus a token-budgeted context string. Each document
owns its own vector collection; collections are searched concurrently and the
merged candidates are reduced by one of three strategies:

- plain score order (``hits[:top_k]``);
- overview sampling, which takes hits from the top, middle and bottom of each
  document so summaries see the whole span of a document;
- document-coverage balancing, which guarantees every searched document a
  share of the result before filling by global score.

Classes
-------
RetrievalConfig
    Base relevance threshold, result count and context budget.
ModeParameters
    Effective threshold and result count for one query mode.
RetrievalEngine
    Embeds a query, searches per-document collections and reduces the hits.

Functions
---------
resolve_mode_parameters
    Map a search mode onto effective threshold and ``top_k``.
classify_page_position
    Classify a page as top/middle/bottom of its document.
build_overview_hits
    Sample up to 2 top, 2 middle and 1 bottom hit per document.
balance_hits_by_document
    Reduce hits so every document is represented.
build_context
    Assemble hits into a token-budgeted context string.
"""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Mapping, Optional, Sequence

from meridian_rag.common.schemas import (
    DocumentRecord,
    Hit,
    RetrievalResult,
    SearchMode,
    VectorSearchResult,
)
from meridian_rag.common.tokenisation import HeuristicTokenCounter, TokenCounter
from meridian_rag.retrieval.embedder import EmbedderHandle
from meridian_rag.retrieval.text_splitter import PAGE_BOTTOM_THRESHOLD, PAGE_TOP_THRESHOLD
from meridian_rag.retrieval.types import DocumentCatalog, VectorSearchClient

logger = logging.getLogger(__name__)

CONTEXT_DELIMITER = "\n\n---\n\n"

OVERVIEW_TOP_PER_DOCUMENT = 2
OVERVIEW_MIDDLE_PER_DOCUMENT = 2
OVERVIEW_BOTTOM_PER_DOCUMENT = 1

PagePosition = Literal["top", "middle", "bottom"]


@dataclass(frozen=True)
class RetrievalConfig:
    """Base retrieval settings.

    Attributes
    ----------
    top_k : int
        Base number of hits to return; adjusted per mode.
    relevance_threshold : float
        Base minimum similarity score; adjusted per mode.
    max_context_tokens : int
        Token budget of the assembled context.
    max_parallel_searches : int or None
        Upper bound on concurrent collection searches per query. ``None``
        searches every document at once.
    """

    top_k: int = 5
    relevance_threshold: float = 0.3
    max_context_tokens: int = 4000
    max_parallel_searches: Optional[int] = None

    @classmethod
    def from_config_dict(cls, config: Mapping[str, Any]) -> "RetrievalConfig":
        return cls(
            top_k=int(config.get("top_k", 5)),
            relevance_threshold=float(config.get("relevance_threshold", 0.3)),
            max_context_tokens=int(config.get("max_context_tokens", 4000)),
            max_parallel_searches=config.get("max_parallel_searches"),
        )


@dataclass(frozen=True)
class ModeParameters:
    relevance_threshold: float
    top_k: int


def coerce_mode(mode: SearchMode | str) -> SearchMode:
    """Return ``mode`` as a :class:`SearchMode`.

    Raises
    ------
    ValueError
        If ``mode`` is not one of the known mode names.
    """
    if isinstance(mode, SearchMode):
        return mode
    try:
        return SearchMode(str(mode).strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown search mode {mode!r}. Supported modes: {[m.value for m in SearchMode]}."
        ) from None


def resolve_mode_parameters(
        mode: SearchMode | str,
        base_threshold: float,
        base_top_k: int,
    ) -> ModeParameters:
    """Map a search mode onto an effective threshold and result count.

    Parameters
    ----------
    mode : SearchMode or str
        Query mode.
    base_threshold : float
        Configured relevance threshold.
    base_top_k : int
        Configured (or explicitly requested) result count.

    Returns
    -------
    ModeParameters
        ``precise`` tightens the threshold to at least 0.5 and caps results at
        5; ``broad`` relaxes the threshold to at most 0.3 and returns at least
        10; ``overview`` uses 0.2 and at least 8; ``section`` uses at most 0.4
        and at least 15.
    """
    mode = coerce_mode(mode)
    if mode is SearchMode.PRECISE:
        return ModeParameters(max(base_threshold, 0.5), min(base_top_k, 5))
    if mode is SearchMode.BROAD:
        return ModeParameters(min(base_threshold, 0.3), max(base_top_k, 10))
    if mode is SearchMode.OVERVIEW:
        return ModeParameters(0.2, max(base_top_k, 8))
    return ModeParameters(min(base_threshold, 0.4), max(base_top_k, 15))


def classify_page_position(page_number: Optional[int], total_pages: Optional[int]) -> PagePosition:
    """Classify a page by ``page_number / total_pages``.

    Hits without page information are treated as ``"top"``.
    """
    if not page_number or not total_pages or total_pages <= 0:
        return "top"
    relative = page_number / total_pages
    if relative <= PAGE_TOP_THRESHOLD:
        return "top"
    if relative > PAGE_BOTTOM_THRESHOLD:
        return "bottom"
    return "middle"


def _page_position(hit: Hit) -> PagePosition:
    position = hit.metadata.get("page_position")
    if position in ("top", "middle", "bottom"):
        return position
    return classify_page_position(hit.page_number, hit.metadata.get("total_pages"))


def _by_score(hits: Sequence[Hit]) -> List[Hit]:
    # sorted() is stable, so equal scores keep their incoming order.
    return sorted(hits, key=lambda h: h.score, reverse=True)


def _group_by_document(hits: Sequence[Hit]) -> Dict[int, List[Hit]]:
    grouped: Dict[int, List[Hit]] = {}
    for hit in hits:
        grouped.setdefault(hit.document_id, []).append(hit)
    return grouped


def build_overview_hits(hits: Sequence[Hit]) -> List[Hit]:
    """Sample hits across the span of each document.

    Per document, take up to 2 ``top``, 2 ``middle`` and 1 ``bottom`` hit (best
    scores first), then re-sort the sampled pool by score.

    Parameters
    ----------
    hits : Sequence[Hit]
        Candidate hits. Page position is read from ``metadata["page_position"]``
        or derived from ``page_number`` / ``total_pages``.

    Returns
    -------
    list[Hit]
        Sampled hits in descending score order.
    """
    quotas = {
        "top": OVERVIEW_TOP_PER_DOCUMENT,
        "middle": OVERVIEW_MIDDLE_PER_DOCUMENT,
        "bottom": OVERVIEW_BOTTOM_PER_DOCUMENT,
    }
    sampled: List[Hit] = []

    for doc_hits in _group_by_document(_by_score(hits)).values():
        taken = {"top": 0, "middle": 0, "bottom": 0}
        for hit in doc_hits:
            position = _page_position(hit)
            if taken[position] < quotas[position]:
                sampled.append(hit)
                taken[position] += 1

    return _by_score(sampled)


def balance_hits_by_document(
        hits: Sequence[Hit],
        top_k: int,
        per_document_k: Optional[int] = None,
    ) -> List[Hit]:
    """Reduce hits so that every document is represented.

    Each document first contributes its best ``per_doc`` hits, where
    ``per_doc = per_document_k`` or, when unset,
    ``max(1, min(2, ceil(top_k / doc_count)))``.
    If that already fills ``top_k`` the selection is truncated by score;
    otherwise the remaining slots are filled from the global score order.
    Hits are deduplicated by ``(document_id, chunk_index)``.

    Parameters
    ----------
    hits : Sequence[Hit]
        Candidate hits from any number of documents.
    top_k : int
        Maximum number of hits to return.
    per_document_k : int or None, optional
        Guaranteed hits per document before global filling.

    Returns
    -------
    list[Hit]
        At most ``top_k`` hits in descending score order.

    Raises
    ------
    ValueError
        If ``per_document_k`` is given and below 1.
    """
    if per_document_k is not None and per_document_k < 1:
        raise ValueError(f"per_document_k must be >= 1, got {per_document_k}")
    if not hits or top_k <= 0:
        return []

    ranked = _by_score(hits)
    grouped = _group_by_document(ranked)
    if per_document_k is None:
        per_doc = max(1, min(2, math.ceil(top_k / len(grouped))))
    else:
        per_doc = per_document_k

    selected: List[Hit] = []
    keys: set[tuple[int, int]] = set()

    for doc_hits in grouped.values():
        taken = 0
        for hit in doc_hits:
            if taken >= per_doc:
                break
            if hit.key in keys:
                continue
            selected.append(hit)
            keys.add(hit.key)
            taken += 1

    if len(selected) >= top_k:
        return _by_score(selected)[:top_k]

    for hit in ranked:
        if len(selected) >= top_k:
            break
        if hit.key in keys:
            continue
        selected.append(hit)
        keys.add(hit.key)

    return _by_score(selected)


def format_source_label(hit: Hit) -> str:
    if hit.page_number is not None:
        return f"[Source: {hit.document_name}, page {hit.page_number}]"
    return f"[Source: {hit.document_name}]"


def assemble_budgeted(
        entries: Sequence[str],
        max_context_tokens: int,
        token_counter: Optional[TokenCounter] = None,
    ) -> str:
    """Join ``entries`` until the next one would exceed the token budget.

    Entries are never truncated; assembly stops at the first entry that does
    not fit.
    """
    counter = token_counter or HeuristicTokenCounter()
    delimiter_cost = counter.count(CONTEXT_DELIMITER)

    parts: List[str] = []
    used = 0
    for entry in entries:
        cost = counter.count(entry) + (delimiter_cost if parts else 0)
        if used + cost > max_context_tokens:
            break
        parts.append(entry)
        used += cost

    return CONTEXT_DELIMITER.join(parts)


def build_context(
        hits: Sequence[Hit],
        max_context_tokens: int,
        token_counter: Optional[TokenCounter] = None,
    ) -> str:
    """Assemble hits into a context string bounded by ``max_context_tokens``.

    Each entry is ``"[Source: {name}, page {n}]\\n{content}"`` (the page part
    only when known). Entries are joined by ``"\\n\\n---\\n\\n"``.
    """
    entries = [f"{format_source_label(hit)}\n{hit.content}" for hit in hits]
    return assemble_budgeted(entries, max_context_tokens, token_counter)


class RetrievalEngine:
    """Search a set of documents and reduce the merged hits.

    Parameters
    ----------
    catalog : DocumentCatalog
        Resolves document ids into records.
    vector_client : VectorSearchClient
        Per-document vector collections.
    embedder_handle : EmbedderHandle
        Source of the active embedder, resolved once per query.
    config : RetrievalConfig
        Base threshold, ``top_k`` and context budget.
    token_counter : TokenCounter or None, optional
        Counter used for the context budget. Defaults to the heuristic.
    """

    def __init__(
            self,
            catalog: DocumentCatalog,
            vector_client: VectorSearchClient,
            embedder_handle: EmbedderHandle,
            config: Optional[RetrievalConfig] = None,
            token_counter: Optional[TokenCounter] = None,
        ):
        self.catalog = catalog
        self.vector_client = vector_client
        self.embedder_handle = embedder_handle
        self.config = config or RetrievalConfig()
        self.token_counter = token_counter or HeuristicTokenCounter()

    async def search_in_documents(
            self,
            document_ids: Sequence[int],
            query: str,
            mode: SearchMode | str = SearchMode.PRECISE,
            *,
            top_k: Optional[int] = None,
            ensure_document_coverage: Optional[bool] = None,
            per_document_k: Optional[int] = None,
        ) -> RetrievalResult:
        """Retrieve hits for ``query`` across ``document_ids``.

        Parameters
        ----------
        document_ids : Sequence[int]
            Documents to search. Documents that are not ready or have no
            collection are ignored.
        query : str
            Natural-language query.
        mode : SearchMode or str, optional
            Query mode. Defaults to ``precise``.
        top_k : int or None, optional
            Overrides the configured base ``top_k`` before mode adjustment.
        ensure_document_coverage : bool or None, optional
            Balance hits across documents. Defaults to ``True`` for overview
            queries over more than one document.
        per_document_k : int or None, optional
            Guaranteed hits per document when balancing.

        Returns
        -------
        RetrievalResult
            Reduced hits, budgeted context and the number of candidates that
            passed the threshold. An empty result is returned, without
            embedding the query, when no document is searchable.

        Raises
        ------
        EmbeddingError
            If the query cannot be embedded.
        """
        mode = coerce_mode(mode)
        documents = await self._searchable_documents(document_ids)
        if not documents:
            return RetrievalResult.empty()

        started = time.perf_counter()
        params = resolve_mode_parameters(
            mode,
            self.config.relevance_threshold,
            top_k if top_k is not None else self.config.top_k,
        )

        ensure_coverage = ensure_document_coverage
        if ensure_coverage is None:
            ensure_coverage = mode is SearchMode.OVERVIEW and len(documents) > 1

        fetch_k = params.top_k * 3 if (mode is SearchMode.OVERVIEW or ensure_coverage) else params.top_k * 2

        query_vector = await self._embed_query(query)
        candidates = await self._search_documents(
            documents, query_vector, fetch_k, params.relevance_threshold
        )

        if mode is SearchMode.OVERVIEW:
            sampled = build_overview_hits(candidates)
            if ensure_coverage:
                hits = balance_hits_by_document(sampled, params.top_k, per_document_k)
            else:
                hits = sampled[:params.top_k]
        elif ensure_coverage:
            hits = balance_hits_by_document(candidates, params.top_k, per_document_k)
        else:
            hits = candidates[:params.top_k]

        context = build_context(hits, self.config.max_context_tokens, self.token_counter)
        elapsed_ms = (time.perf_counter() - started) * 1000

        logger.debug(
            "Retrieved %d/%d hits from %d documents (mode=%s, %.1f ms)",
            len(hits),
            len(candidates),
            len(documents),
            mode.value,
            elapsed_ms,
        )
        return RetrievalResult(
            hits=hits,
            context=context,
            total_hits=len(candidates),
            query_time_ms=elapsed_ms,
        )

    async def _searchable_documents(self, document_ids: Sequence[int]) -> List[DocumentRecord]:
        if not document_ids:
            return []
        records = await self.catalog.get_documents(list(document_ids))
        return [record for record in records if record.is_searchable]

    async def _embed_query(self, query: str) -> List[float]:
        embedder = self.embedder_handle.current
        started = time.perf_counter()
        vector = await embedder.embed(query)
        logger.debug("Query embedded in %.1f ms", (time.perf_counter() - started) * 1000)
        return vector

    async def _search_documents(
            self,
            documents: Sequence[DocumentRecord],
            query_vector: Sequence[float],
            fetch_k: int,
            threshold: float,
        ) -> List[Hit]:
        """Search every document concurrently; return thresholded hits by score."""
        limit = self.config.max_parallel_searches
        semaphore = asyncio.Semaphore(limit) if limit else None
        timings: Dict[str, float] = {}

        async def search_one(record: DocumentRecord) -> List[Hit]:
            started = time.perf_counter()
            if semaphore is not None:
                async with semaphore:
                    results = await self.vector_client.search(record.collection_name, query_vector, fetch_k)
            else:
                results = await self.vector_client.search(record.collection_name, query_vector, fetch_k)
            timings[record.collection_name] = (time.perf_counter() - started) * 1000
            return _hits_from_results(record, results, threshold)

        started = time.perf_counter()
        per_document = await asyncio.gather(*(search_one(record) for record in documents))

        if logger.isEnabledFor(logging.DEBUG):
            slowest = sorted(timings.items(), key=lambda item: item[1], reverse=True)[:3]
            logger.debug(
                "Searched %d collections in %.1f ms; slowest: %s",
                len(documents),
                (time.perf_counter() - started) * 1000,
                ", ".join(f"{name}={ms:.1f}ms" for name, ms in slowest),
            )

        return _by_score([hit for hits in per_document for hit in hits])


def _hits_from_results(
        record: DocumentRecord,
        results: Sequence[VectorSearchResult],
        threshold: float,
    ) -> List[Hit]:
    hits: List[Hit] = []
    for result in results:
        if result.score < threshold:
            continue
        chunk_index = result.metadata.get("chunk_index")
        if not isinstance(chunk_index, int):
            logger.debug("Skipping result without chunk_index in %s", record.collection_name)
            continue

        metadata = dict(result.metadata)
        total_pages = metadata.get("total_pages") or record.page_count
        page_number = metadata.get("page_number")
        metadata["page_position"] = classify_page_position(
            page_number if isinstance(page_number, int) else None,
            total_pages if isinstance(total_pages, int) else None,
        )

        hits.append(
            Hit(
                document_id=record.id,
                document_name=record.name,
                chunk_index=chunk_index,
                content=result.text,
                score=float(result.score),
                metadata=metadata,
            )
        )
    return hits


__all__ = [
    "CONTEXT_DELIMITER",
    "RetrievalConfig",
    "ModeParameters",
    "RetrievalEngine",
    "coerce_mode",
    "resolve_mode_parameters",
    "classify_page_position",
    "build_overview_hits",
    "balance_hits_by_document",
    "build_context",
    "assemble_budgeted",
    "format_source_label",
]
