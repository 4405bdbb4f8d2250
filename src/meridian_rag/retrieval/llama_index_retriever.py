"""meridian_rag.retrieval.llama_index_retriever

LlamaIndex adapter for the retrieval engines.

Wraps any object exposing ``search_in_documents`` (see
:class:`~meridian_rag.retrieval.types.Retriever`) as a LlamaIndex
:class:`~llama_index.core.retrievers.BaseRetriever`, so multi-document
retrieval can be plugged into LlamaIndex query engines and response
synthesisers.

Classes
-------
LlamaIndexDocumentRetriever
    LlamaIndex retriever returning :class:`NodeWithScore` objects.
"""

from __future__ import annotations

import asyncio
from typing import Any, List, Optional, Sequence

from llama_index.core.callbacks import CallbackManager
from llama_index.core.retrievers import BaseRetriever
from llama_index.core.schema import NodeWithScore, QueryBundle, TextNode

from meridian_rag.common.schemas import Hit, SearchMode
from meridian_rag.retrieval.types import Retriever


def hit_to_node(hit: Hit) -> NodeWithScore:
    """Convert a hit into a scored LlamaIndex text node."""
    metadata = dict(hit.metadata)
    metadata.update(
        {
            "document_id": hit.document_id,
            "document_name": hit.document_name,
            "chunk_index": hit.chunk_index,
        }
    )
    node = TextNode(
        text=hit.content,
        id_=f"{hit.document_id}:{hit.chunk_index}",
        metadata=metadata,
    )
    return NodeWithScore(node=node, score=hit.score)


class LlamaIndexDocumentRetriever(BaseRetriever):
    """LlamaIndex retriever over a fixed set of documents.

    Parameters
    ----------
    engine : Retriever
        Retrieval engine exposing ``search_in_documents``.
    document_ids : Sequence[int]
        Documents searched for every query.
    mode : SearchMode or str, optional
        Query mode. Defaults to ``precise``.
    top_k : int or None, optional
        Overrides the engine's base ``top_k``.
    callback_manager : CallbackManager or None, optional
        LlamaIndex callback manager.
    """

    def __init__(
            self,
            engine: Retriever,
            document_ids: Sequence[int],
            *,
            mode: SearchMode | str = SearchMode.PRECISE,
            top_k: Optional[int] = None,
            callback_manager: Optional[CallbackManager] = None,
        ):
        self._engine = engine
        self._document_ids = list(document_ids)
        self._mode = mode
        self._top_k = top_k
        super().__init__(callback_manager=callback_manager)

    async def _aretrieve(self, query_bundle: QueryBundle) -> List[NodeWithScore]:
        options: dict[str, Any] = {}
        if self._top_k is not None:
            options["top_k"] = self._top_k
        result = await self._engine.search_in_documents(
            self._document_ids,
            query_bundle.query_str,
            self._mode,
            **options,
        )
        return [hit_to_node(hit) for hit in result.hits]

    def _retrieve(self, query_bundle: QueryBundle) -> List[NodeWithScore]:
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self._aretrieve(query_bundle))
        raise RuntimeError(
            "retrieve() cannot run inside an active event loop; "
            "use `await aretrieve(...)` instead."
        )


__all__ = ["LlamaIndexDocumentRetriever", "hit_to_node"]
