"""meridian_rag.common.schemas

Core data schemas shared across the retrieval pipeline.

These dataclasses describe the canonical shapes passed between the chunker,
the embedding orchestrator, the retrieval engine and the aggregator. They
replace loosely structured metadata bags with explicit records; the only open
extension point is :attr:`ChunkMetadata.extra`.

Classes
-------
ChunkMetadata
    Positional metadata of a chunk within its source text.
Chunk
    A bounded, indexed substring of a document.
PageContent
    Text of a single source page, input to page-aware chunking.
Section
    Hierarchical document section, owned by an external structure extractor.
DocumentRecord
    Catalog entry describing a searchable document.
Hit
    One scored search result for one query.
EnhancedHit
    A hit enriched with section, aggregation and context information.
SearchMode
    Query modes controlling thresholds and result counts.
AggregationStats
    Counters describing adjacent-chunk merging.
RetrievalResult
    Result envelope returned by the retrieval engines.
SectionSummary
    Section-level view of a search.
VectorSearchResult
    Raw hit returned by a vector collection.
VectorItem
    A vector plus payload written to a collection during ingestion.

Notes
-----
Scores are comparable only within a single query execution.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class ChunkMetadata:
    """Positional metadata attached to a :class:`Chunk`.

    Attributes
    ----------
    start_char : int
        Offset of the first character of the chunk in its source text (the
        page text for page-aware chunks).
    end_char : int
        Exclusive end offset of the chunk in its source text.
    page_number : int or None
        Page the chunk was taken from, for page-aware chunking.
    page_start : int or None
        First page covered by the chunk.
    page_end : int or None
        Last page covered by the chunk.
    extra : dict[str, Any]
        Provider- or source-specific fields (e.g. page metadata).
    """

    start_char: int
    end_char: int
    page_number: Optional[int] = None
    page_start: Optional[int] = None
    page_end: Optional[int] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Flatten into a payload dict suitable for a vector store."""
        payload: Dict[str, Any] = dict(self.extra)
        payload["start_char"] = self.start_char
        payload["end_char"] = self.end_char
        if self.page_number is not None:
            payload["page_number"] = self.page_number
            payload["page_start"] = self.page_start
            payload["page_end"] = self.page_end
        return payload


@dataclass(frozen=True)
class Chunk:
    """A contiguous, indexed piece of a document.

    Attributes
    ----------
    content : str
        Chunk text.
    index : int
        Zero-based, per-document sequence number.
    metadata : ChunkMetadata
        Offsets and page information.
    """

    content: str
    index: int
    metadata: ChunkMetadata


@dataclass
class PageContent:
    """Text of one source page."""

    text: str
    page_number: int
    metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class Section:
    """A hierarchical document section.

    Attributes
    ----------
    id : int
        Identifier assigned by the structure extractor.
    title : str
        Section heading.
    path : str
        Dotted position in the outline, e.g. ``"1.2.3"``.
    level : int
        Depth in the outline; ``1`` is top level.
    start_page : int or None
        First page of the section.
    end_page : int or None
        Last page of the section.
    """

    id: int
    title: str
    path: str
    level: int
    start_page: Optional[int] = None
    end_page: Optional[int] = None


@dataclass(frozen=True)
class DocumentRecord:
    """Catalog entry for a document that may be searched."""

    id: int
    name: str
    collection_name: Optional[str]
    status: str = "ready"
    page_count: Optional[int] = None
    mime_type: Optional[str] = None

    @property
    def is_searchable(self) -> bool:
        return self.status == "ready" and bool(self.collection_name)


@dataclass
class Hit:
    """One scored result of one query against one document collection."""

    document_id: int
    document_name: str
    chunk_index: int
    content: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple[int, int]:
        return (self.document_id, self.chunk_index)

    @property
    def page_number(self) -> Optional[int]:
        value = self.metadata.get("page_number")
        return value if isinstance(value, int) and value > 0 else None


@dataclass
class EnhancedHit(Hit):
    """A :class:`Hit` enriched by the aggregator.

    Attributes
    ----------
    section : Section or None
        Section the hit belongs to, when structure data is available.
    aggregated_from : list[int] or None
        Sorted original chunk indices merged into this hit.
    context_before : str or None
        Text of the neighbouring chunks preceding the hit.
    context_after : str or None
        Text of the neighbouring chunks following the hit.
    """

    section: Optional[Section] = None
    aggregated_from: Optional[List[int]] = None
    context_before: Optional[str] = None
    context_after: Optional[str] = None

    @classmethod
    def from_hit(cls, hit: Hit, section: Optional[Section] = None) -> "EnhancedHit":
        return cls(
            document_id=hit.document_id,
            document_name=hit.document_name,
            chunk_index=hit.chunk_index,
            content=hit.content,
            score=hit.score,
            metadata=dict(hit.metadata),
            section=section,
        )

    @property
    def source_indices(self) -> List[int]:
        """Original chunk indices covered by this hit."""
        return list(self.aggregated_from) if self.aggregated_from else [self.chunk_index]

    def body_with_context(self) -> str:
        """Return the content wrapped by any attached neighbouring context."""
        body = self.content
        if self.context_before:
            body = f"{self.context_before}\n\n{body}"
        if self.context_after:
            body = f"{body}\n\n{self.context_after}"
        return body


class SearchMode(str, Enum):
    """Query modes: tighten for precision, loosen for recall."""

    PRECISE = "precise"
    BROAD = "broad"
    OVERVIEW = "overview"
    SECTION = "section"


@dataclass(frozen=True)
class AggregationStats:
    original_hits: int
    after_aggregation: int
    merged_groups: int


@dataclass
class RetrievalResult:
    """Result of a retrieval call.

    Attributes
    ----------
    hits : list[Hit]
        Final, reduced hit list.
    context : str
        Token-budgeted context string for prompt injection.
    total_hits : int
        Number of candidates that passed the relevance threshold.
    query_time_ms : float
        Wall-clock duration of the query.
    aggregation_stats : AggregationStats or None
        Present for aggregating searches.
    grouped_by_section : dict[str, list[EnhancedHit]] or None
        Hits bucketed by ``"{document_id}:{section path}"``.
    """

    hits: List[Hit]
    context: str
    total_hits: int
    query_time_ms: float
    aggregation_stats: Optional[AggregationStats] = None
    grouped_by_section: Optional[Dict[str, List[EnhancedHit]]] = None

    @classmethod
    def empty(cls, query_time_ms: float = 0.0) -> "RetrievalResult":
        return cls(hits=[], context="", total_hits=0, query_time_ms=query_time_ms)


@dataclass(frozen=True)
class SectionSummary:
    section_id: int
    title: str
    path: str
    document_id: int
    document_name: str
    average_score: float
    matched_chunk_count: int
    preview_text: str


@dataclass
class VectorSearchResult:
    """Raw result returned by a vector collection."""

    text: str
    score: float
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class VectorItem:
    """A vector and its payload, written to a collection during ingestion."""

    id: str
    vector: List[float]
    text: str
    metadata: Dict[str, Any] = field(default_factory=dict)


__all__ = [
    "ChunkMetadata",
    "Chunk",
    "PageContent",
    "Section",
    "DocumentRecord",
    "Hit",
    "EnhancedHit",
    "SearchMode",
    "AggregationStats",
    "RetrievalResult",
    "SectionSummary",
    "VectorSearchResult",
    "VectorItem",
]
