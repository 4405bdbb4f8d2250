"""meridian_rag.retrieval.document_store

In-memory document catalog and chunk repository.

The retrieval engines only depend on the
:class:`~meridian_rag.retrieval.types.DocumentCatalog` and
:class:`~meridian_rag.retrieval.types.ChunkRepository` protocols. This module
provides a process-local implementation of both, used by the ingestion
pipeline and by tests. Durable storage is expected to live behind the same
protocols elsewhere.

Classes
-------
InMemoryCatalog
    Document records, stored chunks and section assignments held in dicts.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Sequence

from meridian_rag.common.schemas import Chunk, DocumentRecord, Section


class InMemoryCatalog:
    """Process-local document catalog and chunk repository."""

    def __init__(self, documents: Optional[Iterable[DocumentRecord]] = None):
        self._documents: Dict[int, DocumentRecord] = {}
        self._chunks: Dict[int, Dict[int, Chunk]] = {}
        self._sections: Dict[int, Dict[int, Section]] = {}
        for record in documents or ():
            self.add_document(record)

    def add_document(self, record: DocumentRecord) -> None:
        self._documents[record.id] = record

    def update_document(self, record: DocumentRecord) -> None:
        if record.id not in self._documents:
            raise KeyError(f"Unknown document id {record.id}")
        self._documents[record.id] = record

    def add_chunks(self, document_id: int, chunks: Iterable[Chunk]) -> None:
        stored = self._chunks.setdefault(document_id, {})
        for chunk in chunks:
            stored[chunk.index] = chunk

    def assign_section(self, document_id: int, section: Section, chunk_indices: Iterable[int]) -> None:
        """Record that the given chunks belong to ``section``."""
        assignments = self._sections.setdefault(document_id, {})
        for index in chunk_indices:
            assignments[index] = section

    async def get_documents(self, document_ids: Sequence[int]) -> List[DocumentRecord]:
        """Return records in request order; unknown and repeated ids are skipped."""
        seen: set[int] = set()
        records: List[DocumentRecord] = []
        for doc_id in document_ids:
            if doc_id in seen:
                continue
            seen.add(doc_id)
            record = self._documents.get(doc_id)
            if record is not None:
                records.append(record)
        return records

    async def get_chunk_range(self, document_id: int, start: int, end: int) -> List[Chunk]:
        stored = self._chunks.get(document_id, {})
        return [stored[i] for i in sorted(stored) if start <= i <= end]

    async def get_section(self, document_id: int, chunk_index: int) -> Optional[Section]:
        return self._sections.get(document_id, {}).get(chunk_index)


__all__ = ["InMemoryCatalog"]
