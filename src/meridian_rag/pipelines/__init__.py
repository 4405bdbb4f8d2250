"""meridian_rag.pipelines

Pipeline orchestration components for the document retrieval stack.

This package contains high-level pipelines that coordinate the retrieval
layer: ingesting documents into per-document vector collections and serving
searches over them. Pipelines are stateless beyond their configured
components, making them safe to reuse across requests.

Modules
-------
search_pipeline
    Query validation, engine routing and result packaging.
ingestion
    Chunking, embedding and indexing of single documents.
"""

from .ingestion import DocumentIndexer, IngestionStats
from .search_pipeline import SearchOutcome, SearchPipeline, build_rag_system_prompt

__all__ = [
    "DocumentIndexer",
    "IngestionStats",
    "SearchOutcome",
    "SearchPipeline",
    "build_rag_system_prompt",
]
