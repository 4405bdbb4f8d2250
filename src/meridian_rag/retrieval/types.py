"""meridian_rag.retrieval.types

Shared type definitions for the retrieval layer.

This module defines the protocols through which the retrieval engines talk to
their external collaborators. Concrete vector indexes, document catalogs and
chunk stores live outside this package; the in-memory and Qdrant
implementations shipped here are adapters satisfying these protocols.

Classes
-------
VectorSearchClient
    Per-document nearest-neighbour collections keyed by an opaque string.
DocumentCatalog
    Lookup of document records by identifier.
ChunkRepository
    Lookup of stored chunks and their section assignment.
Retriever
    Protocol satisfied by both retrieval engines.
"""

from __future__ import annotations

from typing import Protocol, Sequence, List, Optional, runtime_checkable

from meridian_rag.common.schemas import (
    Chunk,
    DocumentRecord,
    RetrievalResult,
    SearchMode,
    Section,
    VectorItem,
    VectorSearchResult,
)


@runtime_checkable
class VectorSearchClient(Protocol):
    """Protocol defining the vector collection interface.

    One collection exists per document. Results are ranked by descending
    similarity score.
    """

    async def search(
        self,
        collection_id: str,
        query_vector: Sequence[float],
        k: int,
    ) -> List[VectorSearchResult]:
        """Return up to ``k`` nearest results from ``collection_id``."""
        ...

    async def upsert(self, collection_id: str, items: Sequence[VectorItem]) -> None:
        """Insert or replace vectors in ``collection_id``."""
        ...


class DocumentCatalog(Protocol):
    """Protocol for resolving document identifiers into records."""

    async def get_documents(self, document_ids: Sequence[int]) -> List[DocumentRecord]:
        """Return the records for ``document_ids``; unknown ids are omitted."""
        ...


class ChunkRepository(Protocol):
    """Protocol for reading stored chunks and their section assignment."""

    async def get_chunk_range(self, document_id: int, start: int, end: int) -> List[Chunk]:
        """Return chunks with ``start <= index <= end`` in ascending order."""
        ...

    async def get_section(self, document_id: int, chunk_index: int) -> Optional[Section]:
        """Return the section containing the chunk, or ``None``."""
        ...


class Retriever(Protocol):
    """Protocol defining the retriever interface.

    A retriever takes a set of document identifiers and a natural-language
    query and returns a reduced, scored hit list plus an assembled context.
    """

    async def search_in_documents(
        self,
        document_ids: Sequence[int],
        query: str,
        mode: SearchMode | str = SearchMode.PRECISE,
        **options,
    ) -> RetrievalResult:
        """Retrieve hits for a query across the given documents."""
        ...


__all__ = [
    "VectorSearchClient",
    "DocumentCatalog",
    "ChunkRepository",
    "Retriever",
]
