"""meridian_rag.app.container

Composition root for the document retrieval stack.

This module is the single place where concrete implementations are wired
together from configuration (token counter, embedder handle, vector
collections, document catalog, retrieval engines, and the search and
ingestion pipelines). Components are constructed lazily and cached on first
access to avoid repeated expensive initialisation.

Notes
-----
- Keep this module importable with minimal side effects:
  - do not perform network calls at import time
  - do not read files at import time
  - construct expensive objects lazily (cached on first access)

- Components are created via the existing factories (embedder, vector store,
  retriever, token counter). This module centralises those calls so every
  request shares one embedder handle and one set of clients.

Examples
--------
>>> from meridian_rag.config import GlobalConfig
>>> from meridian_rag.app.container import build_container
>>> cfg = GlobalConfig.load("config.yaml")
>>> c = build_container(cfg)
>>> outcome = await c.search_pipeline.search("termination clause", [1, 2])
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import cached_property
from typing import Any, Mapping

import httpx

from meridian_rag.common.logging_utils import configure_logging
from meridian_rag.common.tokenisation import TokenCounter, create_token_counter


@dataclass(frozen=True)
class MeridianContainer:
    """Holds the configured, cached runtime components for the application.

    Parameters
    ----------
    config : Any
        Loaded global configuration object (typically :class:`meridian_rag.config.GlobalConfig`).
    """

    config: Any

    @cached_property
    def token_counter(self) -> TokenCounter:
        """Return the token counter used for context budgeting.

        Configuration is read from ``config.tokenization``; the CJK-aware
        heuristic is used when the section is missing.
        """
        return create_token_counter(_as_mapping(getattr(self.config, "tokenization", {})))

    @cached_property
    def http_client(self) -> httpx.AsyncClient:
        """Return the HTTP client shared by every embedder this container builds.

        Timeouts are set per request from the embedder config, so the client
        itself carries none.
        """
        return httpx.AsyncClient()

    @cached_property
    def embedder_handle(self) -> Any:
        """Return the reloadable handle of the active embedder."""
        from meridian_rag.retrieval.embedder import EmbedderHandle

        return EmbedderHandle.from_config(
            dict(_as_mapping(self.config.embedder)), client=self.http_client
        )

    def reload_embedder(self, embedder_config: Any) -> Any:
        """Replace the active embedder, keeping the shared HTTP client."""
        return self.embedder_handle.reload(dict(_as_mapping(embedder_config)), client=self.http_client)

    @cached_property
    def vector_client(self) -> Any:
        """Return the vector collection client.

        Returns
        -------
        Any
            Qdrant-backed client when ``vector_store`` names a server,
            otherwise the in-memory client.
        """
        from meridian_rag.retrieval.vector_store import create_vector_store

        return create_vector_store(_as_mapping(getattr(self.config, "vector_store", {})))

    @cached_property
    def catalog(self) -> Any:
        """Return the document catalog, which also serves as chunk repository."""
        from meridian_rag.retrieval.document_store import InMemoryCatalog

        return InMemoryCatalog()

    @cached_property
    def retrieval_config(self) -> Any:
        from meridian_rag.retrieval.retriever import RetrievalConfig

        return RetrievalConfig.from_config_dict(_as_mapping(getattr(self.config, "retrieval", {})))

    @cached_property
    def retrieval_engine(self) -> Any:
        """Return the plain multi-document retrieval engine."""
        from meridian_rag.retrieval.retriever_factory import create

        return create(
            kind="plain",
            catalog=self.catalog,
            vector_client=self.vector_client,
            embedder_handle=self.embedder_handle,
            config=self.retrieval_config,
            token_counter=self.token_counter,
        )

    @cached_property
    def enhanced_engine(self) -> Any:
        """Return the aggregating retrieval engine."""
        from meridian_rag.retrieval.retriever_factory import create

        return create(
            kind="enhanced",
            catalog=self.catalog,
            vector_client=self.vector_client,
            embedder_handle=self.embedder_handle,
            config=self.retrieval_config,
            token_counter=self.token_counter,
            chunk_repository=self.catalog,
        )

    @cached_property
    def search_pipeline(self) -> Any:
        """Return the search pipeline routing between both engines."""
        from meridian_rag.pipelines.search_pipeline import SearchPipeline

        return SearchPipeline(self.retrieval_engine, self.enhanced_engine)

    @cached_property
    def indexer(self) -> Any:
        """Return the document indexer writing into this container's stores."""
        from meridian_rag.pipelines.ingestion import DocumentIndexer

        return DocumentIndexer(
            self.embedder_handle,
            self.vector_client,
            chunk_store=self.catalog,
        )

    async def aclose(self) -> None:
        """Close the network clients this container has opened."""
        if "http_client" in self.__dict__:
            await self.http_client.aclose()
        close = getattr(self.__dict__.get("vector_client"), "close", None)
        if close is not None:
            await close()


def build_container(config: Any) -> MeridianContainer:
    """Create a :class:`~meridian_rag.app.container.MeridianContainer`.

    Logging is configured from ``config.logging`` when that section is set.

    Parameters
    ----------
    config : Any
        Loaded global configuration object (typically :class:`meridian_rag.config.GlobalConfig`).

    Returns
    -------
    MeridianContainer
        Container instance with cached component accessors.
    """
    logging_cfg = _as_mapping(getattr(config, "logging", {}) or {})
    if logging_cfg:
        configure_logging(logging_cfg)

    return MeridianContainer(config=config)


def _as_mapping(obj: Any) -> Mapping[str, Any]:
    """Coerce an object into a mapping.

    Raises
    ------
    TypeError
        If ``obj`` cannot be interpreted as a mapping.
    """
    if isinstance(obj, Mapping):
        return obj

    if hasattr(obj, "__dict__"):
        return dict(vars(obj))

    raise TypeError(f"Expected mapping type but got {type(obj)}")


__all__ = ["MeridianContainer", "build_container"]
