"""meridian_rag.pipelines.search_pipeline

Query-time document search orchestration.

This module defines :class:`SearchPipeline`, the facade an application (for
example a chat tool handler) calls to search a user's documents. It validates
the request, picks mode defaults, routes to the aggregating engine when one
is configured and falls back to the plain engine otherwise, and packages the
outcome as a serialisable payload.

Classes
-------
SearchOutcome
    Success flag, result, error message and suggestion of one search.
SearchPipeline
    Validates, routes and packages document searches.

Functions
---------
build_rag_system_prompt
    Wrap retrieved context into a system prompt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from meridian_rag.common.errors import AggregatorUnavailableError, MeridianError
from meridian_rag.common.schemas import EnhancedHit, Hit, RetrievalResult, SearchMode, SectionSummary
from meridian_rag.retrieval.aggregator import EnhancedRetrievalEngine, EnhancedSearchOptions
from meridian_rag.retrieval.retriever import RetrievalEngine, coerce_mode
from meridian_rag.retrieval.text_splitter import extract_anchor

logger = logging.getLogger(__name__)

DEFAULT_TOP_K_BY_MODE = {
    SearchMode.PRECISE: 5,
    SearchMode.BROAD: 10,
    SearchMode.OVERVIEW: 8,
    SearchMode.SECTION: 6,
}

NO_HITS_SUGGESTION = "No relevant passages found; try the 'broad' or 'overview' search mode."
NO_SECTIONS_SUGGESTION = "No matching sections found; try the 'broad' or 'overview' search mode."

RAG_INSTRUCTION = (
    "You are a helpful assistant. When answering, refer to the following document content:\n"
    "\n"
    "<documents>\n"
    "{context}\n"
    "</documents>\n"
    "\n"
    "Answer the user's question based on the documents above. If the documents do not "
    "contain the relevant information, say so."
)


def build_rag_system_prompt(context: str, base_prompt: Optional[str] = None) -> str:
    """Wrap retrieved context into a system prompt.

    Parameters
    ----------
    context : str
        Assembled retrieval context.
    base_prompt : str or None, optional
        Existing system prompt placed before the document instructions.

    Returns
    -------
    str
        The system prompt.
    """
    instruction = RAG_INSTRUCTION.format(context=context)
    if base_prompt:
        return f"{base_prompt}\n\n{instruction}"
    return instruction


@dataclass
class SearchOutcome:
    """Outcome of one :meth:`SearchPipeline.search` call.

    Attributes
    ----------
    success : bool
        ``False`` when the request was invalid or the search failed.
    query : str
        The query as received.
    mode : str
        The requested search mode.
    result : RetrievalResult or None
        Hits and context of a passage search.
    sections : list[SectionSummary] or None
        Results of a section search.
    error : str or None
        Failure description; set only when ``success`` is ``False``.
    suggestion : str or None
        Hint for refining the query; set only for successful searches that
        found nothing.
    """

    success: bool
    query: str = ""
    mode: str = SearchMode.PRECISE.value
    result: Optional[RetrievalResult] = None
    sections: Optional[List[SectionSummary]] = None
    error: Optional[str] = None
    suggestion: Optional[str] = None

    @classmethod
    def failure(cls, query: str, mode: str, error: str) -> "SearchOutcome":
        return cls(success=False, query=query, mode=mode, error=error)

    def to_payload(self) -> Dict[str, Any]:
        """Return a JSON-serialisable view with scores rounded to 2 decimals."""
        if not self.success:
            return {"success": False, "result": None, "error": self.error}

        body: Dict[str, Any] = {"query": self.query, "search_mode": self.mode}

        if self.sections is not None:
            body["total_hits"] = len(self.sections)
            body["sections"] = [_section_payload(s) for s in self.sections]
        elif self.result is not None:
            body["total_hits"] = self.result.total_hits
            body["query_time_ms"] = round(self.result.query_time_ms, 2)
            body["hits"] = [_hit_payload(hit) for hit in self.result.hits]

        if self.suggestion:
            body["suggestion"] = self.suggestion
        return {"success": True, "result": body}


def _hit_payload(hit: Hit) -> Dict[str, Any]:
    enhanced = hit if isinstance(hit, EnhancedHit) else None
    section = enhanced.section if enhanced else None
    return {
        "document_id": hit.document_id,
        "document_name": hit.document_name,
        "chunk_index": hit.chunk_index,
        "page_number": hit.page_number,
        "section": (
            {"title": section.title, "path": section.path, "level": section.level}
            if section
            else None
        ),
        "aggregated_from": enhanced.aggregated_from if enhanced else None,
        "context_before": enhanced.context_before if enhanced else None,
        "context_after": enhanced.context_after if enhanced else None,
        "anchor": extract_anchor(hit.content),
        "content": hit.content,
        "score": round(hit.score, 2),
    }


def _section_payload(summary: SectionSummary) -> Dict[str, Any]:
    return {
        "section_id": summary.section_id,
        "title": summary.title,
        "path": summary.path,
        "document_id": summary.document_id,
        "document_name": summary.document_name,
        "score": round(summary.average_score, 2),
        "matched_chunks": summary.matched_chunk_count,
        "preview": summary.preview_text,
    }


class SearchPipeline:
    """Validate, route and package document searches.

    The pipeline is stateless beyond its configured engines and is safe to
    reuse across requests.

    Parameters
    ----------
    retrieval_engine : RetrievalEngine
        Plain multi-document engine, always available.
    enhanced_engine : EnhancedRetrievalEngine or None, optional
        Aggregating engine. When absent, or when it reports that aggregation
        is unavailable, searches fall back to ``retrieval_engine``.
    """

    def __init__(
            self,
            retrieval_engine: RetrievalEngine,
            enhanced_engine: Optional[EnhancedRetrievalEngine] = None,
        ):
        self.retrieval_engine = retrieval_engine
        self.enhanced_engine = enhanced_engine

    async def search(
            self,
            query: str,
            available_document_ids: Sequence[int],
            *,
            document_ids: Optional[Sequence[int]] = None,
            mode: SearchMode | str = SearchMode.PRECISE,
            top_k: Optional[int] = None,
            per_document_k: Optional[int] = None,
            aggregate_adjacent: bool = True,
            include_context: bool = True,
        ) -> SearchOutcome:
        """Search the caller's documents.

        Parameters
        ----------
        query : str
            Natural-language query; must not be blank.
        available_document_ids : Sequence[int]
            Ready documents the caller may search.
        document_ids : Sequence[int] or None, optional
            Requested subset; ids outside ``available_document_ids`` are
            dropped. Defaults to all available documents.
        mode : SearchMode or str, optional
            ``precise`` (default), ``broad``, ``overview`` or ``section``.
        top_k : int or None, optional
            Result count; defaults per mode (5/10/8/6).
        per_document_k : int or None, optional
            Guaranteed hits per document for multi-document searches.
        aggregate_adjacent, include_context : bool, optional
            Aggregation switches for the enhanced engine.

        Returns
        -------
        SearchOutcome
            Failures (blank query, no searchable documents, unknown mode,
            embedding or provider errors) are reported in ``error``; other
            exceptions propagate.
        """
        mode_name = str(mode.value if isinstance(mode, SearchMode) else mode)

        if not query or not query.strip():
            return SearchOutcome.failure(query, mode_name, "Search query must not be empty.")

        try:
            search_mode = coerce_mode(mode)
        except ValueError as exc:
            return SearchOutcome.failure(query, mode_name, str(exc))

        if per_document_k is not None and per_document_k < 1:
            return SearchOutcome.failure(query, search_mode.value, "per_document_k must be at least 1.")

        allowed = list(dict.fromkeys(available_document_ids))
        if document_ids:
            allowed_set = set(allowed)
            target_ids = [doc_id for doc_id in dict.fromkeys(document_ids) if doc_id in allowed_set]
        else:
            target_ids = allowed

        if not target_ids:
            return SearchOutcome.failure(
                query, search_mode.value, "No searchable documents; list the available documents first."
            )

        top_k = top_k or DEFAULT_TOP_K_BY_MODE[search_mode]
        multi_document = len(target_ids) > 1

        try:
            if search_mode is SearchMode.SECTION and self.enhanced_engine is not None:
                sections = await self.enhanced_engine.search_sections(target_ids, query, top_k)
                return SearchOutcome(
                    success=True,
                    query=query,
                    mode=search_mode.value,
                    sections=sections,
                    suggestion=None if sections else NO_SECTIONS_SUGGESTION,
                )

            effective_mode = SearchMode.BROAD if search_mode is SearchMode.SECTION else search_mode
            result = await self._search_passages(
                target_ids,
                query,
                effective_mode,
                top_k=top_k,
                per_document_k=per_document_k,
                ensure_coverage=multi_document,
                aggregate_adjacent=aggregate_adjacent,
                include_context=include_context,
            )
        except MeridianError as exc:
            logger.warning("Document search failed: %s", exc, exc_info=True)
            return SearchOutcome.failure(query, search_mode.value, str(exc))

        result.hits = result.hits[:top_k]
        return SearchOutcome(
            success=True,
            query=query,
            mode=search_mode.value,
            result=result,
            suggestion=None if result.hits else NO_HITS_SUGGESTION,
        )

    async def _search_passages(
            self,
            document_ids: List[int],
            query: str,
            mode: SearchMode,
            *,
            top_k: int,
            per_document_k: Optional[int],
            ensure_coverage: bool,
            aggregate_adjacent: bool,
            include_context: bool,
        ) -> RetrievalResult:
        if self.enhanced_engine is not None:
            options = EnhancedSearchOptions(
                mode=mode,
                aggregate_adjacent=aggregate_adjacent,
                group_by_section=True,
                include_context=include_context,
                context_size=1,
                top_k=top_k,
                ensure_document_coverage=ensure_coverage,
                per_document_k=per_document_k,
            )
            try:
                return await self.enhanced_engine.search(document_ids, query, options)
            except AggregatorUnavailableError as exc:
                logger.warning("Aggregation unavailable, falling back to plain retrieval: %s", exc)

        return await self.retrieval_engine.search_in_documents(
            document_ids,
            query,
            mode,
            top_k=top_k,
            ensure_document_coverage=ensure_coverage,
            per_document_k=per_document_k,
        )


__all__ = [
    "DEFAULT_TOP_K_BY_MODE",
    "SearchOutcome",
    "SearchPipeline",
    "build_rag_system_prompt",
]
