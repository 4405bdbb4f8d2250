"""meridian_rag

Multi-document retrieval package.

This package contains the building blocks of a document retrieval pipeline
for retrieval-augmented generation: page- and type-aware chunking, batched
and rate-limit-aware embedding, concurrent per-document vector search with
mode-dependent reduction, and result aggregation into section-organised,
token-budgeted context.

Attributes
----------
__version__ : str
    Package version string. Defaults to ``"0.0.0-dev"`` when package metadata is
    unavailable.

Modules
-------
config
    Global configuration loader and cached accessors.
app
    Application container and composition root for wiring components.
pipelines
    Search and ingestion pipelines.
retrieval
    Chunking, embedding, vector collections, retrieval and aggregation.
common
    Shared schemas, errors and token estimation.

Exports
-------
GlobalConfig
    Global configuration loader and accessor.
MeridianContainer
    Cached runtime component container for applications.
build_container
    Factory function to construct a configured :class:`~meridian_rag.app.container.MeridianContainer`.
SearchPipeline
    Validating, routing search facade.
DocumentIndexer
    Chunk, embed and index documents.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("meridian-rag")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from .config import GlobalConfig
from .app.container import MeridianContainer, build_container
from .pipelines import DocumentIndexer, SearchPipeline
from .common import Chunk, Hit, RetrievalResult, SearchMode

__all__ = [
    "__version__",
    "GlobalConfig",
    "MeridianContainer",
    "build_container",
    "SearchPipeline",
    "DocumentIndexer",
    "Chunk",
    "Hit",
    "RetrievalResult",
    "SearchMode",
]
