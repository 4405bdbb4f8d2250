"""
Common building blocks shared across the retrieval stack.

This package provides the record types, error hierarchy and token estimation
helpers imported by every other layer.

Classes
-------
Chunk
    Indexed piece of a document produced by the chunker.
Hit
    One scored search result.
EnhancedHit
    Hit enriched with section, aggregation and context data.
RetrievalResult
    Result envelope of the retrieval engines.

Attributes
----------
DocId : TypeAlias
    Type alias for document identifiers.
CollectionId : TypeAlias
    Type alias for per-document vector collection identifiers.

See Also
--------
meridian_rag.common.schemas
    Defines every record type.
meridian_rag.common.errors
    Defines the exception hierarchy.
"""
from __future__ import annotations
from typing import TypeAlias

from .schemas import (
    AggregationStats,
    Chunk,
    ChunkMetadata,
    DocumentRecord,
    EnhancedHit,
    Hit,
    PageContent,
    RetrievalResult,
    SearchMode,
    Section,
    SectionSummary,
    VectorItem,
    VectorSearchResult,
)

DocId: TypeAlias = int
CollectionId: TypeAlias = str

__all__ = [
    "AggregationStats",
    "Chunk",
    "ChunkMetadata",
    "DocumentRecord",
    "EnhancedHit",
    "Hit",
    "PageContent",
    "RetrievalResult",
    "SearchMode",
    "Section",
    "SectionSummary",
    "VectorItem",
    "VectorSearchResult",
    "DocId",
    "CollectionId",
]
