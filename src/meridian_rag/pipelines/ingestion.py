"""meridian_rag.pipelines.ingestion

Document ingestion: chunk, embed and index one document.

:class:`DocumentIndexer` streams chunks out of the chunker, embeds them in
batches through the active embedder and writes them into the document's
vector collection. Chunks are pulled lazily, so only one batch is held in
memory at a time. A cancellation callback is checked between batches and an
optional progress callback is told how many chunks have been indexed.

Classes
-------
IngestionStats
    Counters describing one completed ingestion run.
DocumentIndexer
    Chunk, embed and index documents.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Iterator, List, Optional, Sequence

from meridian_rag.common.errors import EmbeddingResponseError, IngestionCancelledError
from meridian_rag.common.schemas import Chunk, DocumentRecord, PageContent, VectorItem
from meridian_rag.retrieval.document_store import InMemoryCatalog
from meridian_rag.retrieval.embedder import EmbedderHandle
from meridian_rag.retrieval.text_splitter import (
    ChunkingOptions,
    get_chunking_config,
    iter_page_aware_chunks,
    iter_text_chunks,
)
from meridian_rag.retrieval.types import VectorSearchClient

logger = logging.getLogger(__name__)

DEFAULT_INGEST_BATCH_SIZE = 50

ProgressCallback = Callable[[int], None]
CancelCallback = Callable[[], bool]


@dataclass(frozen=True)
class IngestionStats:
    document_id: int
    chunk_count: int
    batch_count: int
    duration_ms: float


def _batched(chunks: Iterable[Chunk], size: int) -> Iterator[List[Chunk]]:
    batch: List[Chunk] = []
    for chunk in chunks:
        batch.append(chunk)
        if len(batch) >= size:
            yield batch
            batch = []
    if batch:
        yield batch


class DocumentIndexer:
    """Chunk, embed and index documents.

    Parameters
    ----------
    embedder_handle : EmbedderHandle
        Source of the active embedder; resolved once per document.
    vector_client : VectorSearchClient
        Destination vector collections.
    chunk_store : InMemoryCatalog or None, optional
        When given, indexed chunks are also stored here so the aggregating
        engine can read neighbouring chunks.
    batch_size : int, optional
        Number of chunks embedded and written per batch.
    """

    def __init__(
            self,
            embedder_handle: EmbedderHandle,
            vector_client: VectorSearchClient,
            *,
            chunk_store: Optional[InMemoryCatalog] = None,
            batch_size: int = DEFAULT_INGEST_BATCH_SIZE,
        ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.embedder_handle = embedder_handle
        self.vector_client = vector_client
        self.chunk_store = chunk_store
        self.batch_size = batch_size

    async def index_document(
            self,
            document: DocumentRecord,
            *,
            text: Optional[str] = None,
            pages: Optional[Sequence[PageContent]] = None,
            chunking: Optional[ChunkingOptions] = None,
            is_cancelled: Optional[CancelCallback] = None,
            on_progress: Optional[ProgressCallback] = None,
        ) -> IngestionStats:
        """Chunk, embed and index one document.

        Parameters
        ----------
        document : DocumentRecord
            Target document; its ``collection_name`` receives the vectors.
        text : str or None, optional
            Full document text. Ignored when ``pages`` is given.
        pages : Sequence[PageContent] or None, optional
            Page texts; enables page-aware chunking.
        chunking : ChunkingOptions or None, optional
            Chunk sizing. Defaults to :func:`get_chunking_config` for the
            document's MIME type and name.
        is_cancelled : Callable[[], bool] or None, optional
            Checked before every batch.
        on_progress : Callable[[int], None] or None, optional
            Called with the running number of indexed chunks after every batch.

        Returns
        -------
        IngestionStats
            Chunk and batch counts of the run.

        Raises
        ------
        ValueError
            If the document has no collection name or neither ``text`` nor
            ``pages`` is supplied.
        IngestionCancelledError
            If ``is_cancelled`` returns ``True`` between batches. Batches
            already written stay in the collection.
        EmbeddingError
            If embedding a batch fails.
        """
        if not document.collection_name:
            raise ValueError(f"Document {document.id} has no collection name.")
        if pages is None and text is None:
            raise ValueError("index_document requires either text or pages.")

        options = chunking or get_chunking_config(document.mime_type or "", document.name)
        if pages is not None:
            chunks = iter_page_aware_chunks(pages, options)
            total_pages = len(pages) or document.page_count
        else:
            chunks = iter_text_chunks(text or "", options)
            total_pages = document.page_count

        embedder = self.embedder_handle.current
        started = time.perf_counter()
        indexed = 0
        batches = 0

        for batch in _batched(chunks, self.batch_size):
            if is_cancelled is not None and is_cancelled():
                logger.info(
                    "Ingestion of document %s cancelled after %d chunks", document.id, indexed
                )
                raise IngestionCancelledError(
                    f"Ingestion of document {document.id} cancelled after {indexed} chunks."
                )

            vectors = await embedder.embed_batch([chunk.content for chunk in batch])
            if len(vectors) != len(batch):
                raise EmbeddingResponseError(
                    f"Embedding count mismatch: expected {len(batch)}, got {len(vectors)}"
                )
            for chunk, vector in zip(batch, vectors):
                if not vector:
                    raise EmbeddingResponseError(f"Empty embedding for chunk {chunk.index}")

            items = [
                VectorItem(
                    id=f"{document.id}:{chunk.index}",
                    vector=list(vector),
                    text=chunk.content,
                    metadata={
                        **chunk.metadata.to_dict(),
                        "document_id": document.id,
                        "chunk_index": chunk.index,
                        "total_pages": total_pages,
                    },
                )
                for chunk, vector in zip(batch, vectors)
            ]
            await self.vector_client.upsert(document.collection_name, items)
            if self.chunk_store is not None:
                self.chunk_store.add_chunks(document.id, batch)

            indexed += len(batch)
            batches += 1
            if on_progress is not None:
                on_progress(indexed)

        duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Indexed document %s: %d chunks in %d batches (%.1f ms)",
            document.id,
            indexed,
            batches,
            duration_ms,
        )
        return IngestionStats(
            document_id=document.id,
            chunk_count=indexed,
            batch_count=batches,
            duration_ms=duration_ms,
        )


__all__ = ["DocumentIndexer", "IngestionStats", "DEFAULT_INGEST_BATCH_SIZE"]
