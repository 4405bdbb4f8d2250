"""meridian_rag.retrieval.vector_store

Vector collection clients for the retrieval layer.

Every document owns one vector collection, addressed by the opaque
``collection_name`` recorded in the document catalog. This module provides
two implementations of :class:`~meridian_rag.retrieval.types.VectorSearchClient`:

- an in-memory client using exact cosine similarity, for tests and small
  deployments;
- a Qdrant-backed client using :class:`qdrant_client.AsyncQdrantClient`.

Classes
-------
InMemoryVectorSearch
    Exact cosine-similarity search over in-process collections.
QdrantVectorSearch
    Qdrant-backed collection client.

Functions
---------
create_vector_store
    Create a vector collection client from a configuration mapping.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, List, Mapping, Optional, Sequence

from qdrant_client import AsyncQdrantClient, models
from qdrant_client.http.exceptions import UnexpectedResponse

from meridian_rag.common.schemas import VectorItem, VectorSearchResult

logger = logging.getLogger(__name__)

TEXT_PAYLOAD_KEY = "text"
ITEM_ID_PAYLOAD_KEY = "item_id"


def _cosine(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Vector dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class InMemoryVectorSearch:
    """Exact cosine-similarity search over in-process collections.

    Searching a collection that was never written returns no results.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, VectorItem]] = {}

    async def upsert(self, collection_id: str, items: Sequence[VectorItem]) -> None:
        collection = self._collections.setdefault(collection_id, {})
        for item in items:
            collection[item.id] = item

    async def search(
            self,
            collection_id: str,
            query_vector: Sequence[float],
            k: int,
        ) -> List[VectorSearchResult]:
        collection = self._collections.get(collection_id)
        if not collection or k <= 0:
            return []

        scored = [
            VectorSearchResult(
                text=item.text,
                score=_cosine(query_vector, item.vector),
                metadata=dict(item.metadata),
            )
            for item in collection.values()
        ]
        scored.sort(key=lambda r: r.score, reverse=True)
        return scored[:k]

    def count(self, collection_id: str) -> int:
        return len(self._collections.get(collection_id, {}))

    def delete_collection(self, collection_id: str) -> None:
        self._collections.pop(collection_id, None)


class QdrantVectorSearch:
    """Qdrant-backed vector collection client.

    Parameters
    ----------
    client : AsyncQdrantClient
        Connected async Qdrant client.
    vector_name : str or None, optional
        Name of the dense vector in each collection. ``None`` uses Qdrant's
        unnamed default vector.

    Notes
    -----
    Qdrant point ids must be integers or UUIDs, so item ids such as
    ``"12:3"`` are mapped to deterministic UUIDs; the original id is kept in
    the ``item_id`` payload field and chunk text in ``text``.
    """

    def __init__(self, client: AsyncQdrantClient, *, vector_name: Optional[str] = None):
        self.client = client
        self.vector_name = vector_name or None
        self._known_collections: set[str] = set()

    @classmethod
    def from_config_dict(cls, config: Mapping[str, Any]) -> "QdrantVectorSearch":
        """Create a client from a configuration mapping.

        Parameters
        ----------
        config : Mapping[str, Any]
            Expected keys include ``url`` or ``host``/``port`` (default
            ``localhost:6333``), optional ``api_key`` and ``vector_name``.

        Returns
        -------
        QdrantVectorSearch
            Initialised client.
        """
        url = config.get("url")
        if url:
            client = AsyncQdrantClient(url=url, api_key=config.get("api_key"))
        else:
            client = AsyncQdrantClient(
                host=config.get("host", "localhost"),
                port=int(config.get("port", 6333)),
                api_key=config.get("api_key"),
            )
        return cls(client, vector_name=config.get("vector_name"))

    async def search(
            self,
            collection_id: str,
            query_vector: Sequence[float],
            k: int,
        ) -> List[VectorSearchResult]:
        try:
            response = await self.client.query_points(
                collection_name=collection_id,
                query=list(query_vector),
                using=self.vector_name,
                limit=k,
                with_payload=True,
            )
        except UnexpectedResponse as exc:
            if exc.status_code == 404:
                logger.debug("Collection %s does not exist; returning no results", collection_id)
                return []
            raise

        results: List[VectorSearchResult] = []
        for point in response.points:
            payload = dict(point.payload or {})
            text = payload.pop(TEXT_PAYLOAD_KEY, "")
            payload.pop(ITEM_ID_PAYLOAD_KEY, None)
            results.append(VectorSearchResult(text=text, score=float(point.score), metadata=payload))
        return results

    async def upsert(self, collection_id: str, items: Sequence[VectorItem]) -> None:
        if not items:
            return
        await self._ensure_collection(collection_id, len(items[0].vector))

        points = []
        for item in items:
            payload = dict(item.metadata)
            payload[TEXT_PAYLOAD_KEY] = item.text
            payload[ITEM_ID_PAYLOAD_KEY] = item.id
            vector: Any = {self.vector_name: item.vector} if self.vector_name else item.vector
            points.append(
                models.PointStruct(
                    id=str(uuid.uuid5(uuid.NAMESPACE_URL, f"{collection_id}/{item.id}")),
                    vector=vector,
                    payload=payload,
                )
            )

        await self.client.upsert(collection_name=collection_id, points=points)

    async def _ensure_collection(self, collection_id: str, dimension: int) -> None:
        if collection_id in self._known_collections:
            return
        if not await self.client.collection_exists(collection_id):
            params = models.VectorParams(size=dimension, distance=models.Distance.COSINE)
            await self.client.create_collection(
                collection_name=collection_id,
                vectors_config={self.vector_name: params} if self.vector_name else params,
            )
            logger.info("Created Qdrant collection %s (dim=%d)", collection_id, dimension)
        self._known_collections.add(collection_id)

    async def close(self) -> None:
        await self.client.close()


def _normalize_vector_store_kind(config: Mapping[str, Any]) -> str:
    for key in ("kind", "type", "provider"):
        val = config.get(key)
        if isinstance(val, str) and val.strip():
            k = val.strip().lower().replace("-", "_")
            if k in {"memory", "in_memory", "inmemory"}:
                return "memory"
            return k
    # A configured server location implies Qdrant.
    if config.get("url") or config.get("host"):
        return "qdrant"
    return "memory"


def create_vector_store(config: Optional[Mapping[str, Any]] = None):
    """Create a vector collection client from a configuration mapping.

    Parameters
    ----------
    config : Mapping[str, Any] or None
        The ``vector_store`` section. Empty or missing selects the in-memory
        client; ``kind: qdrant`` (or a ``url``/``host`` key) selects Qdrant.

    Returns
    -------
    InMemoryVectorSearch or QdrantVectorSearch
        Initialised client.

    Raises
    ------
    ValueError
        If the requested backend kind is not supported.
    """
    config = config or {}
    kind = _normalize_vector_store_kind(config)
    if kind == "memory":
        return InMemoryVectorSearch()
    if kind == "qdrant":
        return QdrantVectorSearch.from_config_dict(config)
    raise ValueError(f"Unknown vector store kind: {kind!r}")


__all__ = [
    "InMemoryVectorSearch",
    "QdrantVectorSearch",
    "create_vector_store",
]
