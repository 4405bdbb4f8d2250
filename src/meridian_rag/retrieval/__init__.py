"""
Retrieval layer of the document search pipeline.

This package covers everything needed to turn document text into searchable
vectors and to fetch the most relevant passages for a query across many
documents. It includes text chunking utilities, embedding provider clients,
vector collection backends, the multi-document retrieval engine and the
result aggregator.

Submodules
----------
text_splitter
    Windowed, page-aware and recursive chunking plus type-aware settings.
embedder
    Embedding provider clients with batching, bounded concurrency and retries.
vector_store
    In-memory and Qdrant-backed per-document vector collections.
document_store
    In-memory document catalog and chunk repository.
retriever
    Multi-document retrieval engine, mode mapping and hit reduction.
aggregator
    Adjacent-chunk merging, context widening and section grouping.
retriever_factory
    Registry of engine builders.
llama_index_retriever
    LlamaIndex retriever adapter.
types
    Protocols for external collaborators.
"""
