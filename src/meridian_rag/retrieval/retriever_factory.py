"""meridian_rag.retrieval.retriever_factory

Factory and registry for retrieval engine implementations.

Engine constructors are registered under a string key and instantiated via a
single factory function, so applications select the engine from
configuration without importing concrete classes.

Functions
---------
register
    Decorator used to register an engine builder under a name.
create
    Construct an engine instance by kind.
available
    List the registered kinds.
"""
from __future__ import annotations
from typing import Callable, Dict, List, Optional

from meridian_rag.common.tokenisation import TokenCounter
from meridian_rag.retrieval.aggregator import EnhancedRetrievalEngine
from meridian_rag.retrieval.embedder import EmbedderHandle
from meridian_rag.retrieval.retriever import RetrievalConfig, RetrievalEngine
from meridian_rag.retrieval.types import (
    ChunkRepository,
    DocumentCatalog,
    Retriever,
    VectorSearchClient,
)

_BUILDERS: Dict[str, Callable[..., Retriever]] = {}


def register(name: str):
    """Register an engine builder under a name.

    Parameters
    ----------
    name : str
        Name under which the builder should be registered.

    Returns
    -------
    Callable
        Decorator that registers the wrapped builder function unchanged.
    """
    def _wrap(fn: Callable[..., Retriever]):
        _BUILDERS[name] = fn
        return fn
    return _wrap


def available() -> List[str]:
    return sorted(_BUILDERS)


def create(
    *,
    kind: str,
    catalog: DocumentCatalog,
    vector_client: VectorSearchClient,
    embedder_handle: EmbedderHandle,
    config: Optional[RetrievalConfig] = None,
    token_counter: Optional[TokenCounter] = None,
    **kwargs,
) -> Retriever:
    """Create a retrieval engine by kind.

    Parameters
    ----------
    kind : str
        Registered engine kind (``"plain"`` or ``"enhanced"``).
    catalog : DocumentCatalog
        Document catalog shared by all engines.
    vector_client : VectorSearchClient
        Per-document vector collections.
    embedder_handle : EmbedderHandle
        Reloadable embedder handle.
    config : RetrievalConfig or None, optional
        Base retrieval settings.
    token_counter : TokenCounter or None, optional
        Counter used for context budgeting.
    **kwargs : Any
        Additional keyword arguments forwarded to the builder (e.g.
        ``chunk_repository`` for the enhanced engine).

    Returns
    -------
    Retriever
        Instantiated engine.

    Raises
    ------
    ValueError
        If ``kind`` does not correspond to a registered engine.
    """
    if kind not in _BUILDERS:
        raise ValueError(f"Unknown retriever kind: {kind}. Available: {list(_BUILDERS)}")

    return _BUILDERS[kind](
        catalog=catalog,
        vector_client=vector_client,
        embedder_handle=embedder_handle,
        config=config,
        token_counter=token_counter,
        **kwargs,
    )


@register("plain")
def _build_plain(**kw) -> Retriever:
    """Build the plain multi-document engine."""
    return RetrievalEngine(**kw)


@register("enhanced")
def _build_enhanced(*, chunk_repository: Optional[ChunkRepository] = None, **kw) -> Retriever:
    """Build the aggregating engine.

    Raises
    ------
    ValueError
        If no ``chunk_repository`` is supplied.
    """
    if chunk_repository is None:
        raise ValueError("The 'enhanced' retriever requires a chunk_repository.")
    return EnhancedRetrievalEngine(chunk_repository=chunk_repository, **kw)
