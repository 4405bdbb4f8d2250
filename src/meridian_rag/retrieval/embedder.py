"""meridian_rag.retrieval.embedder

Embedding interfaces and factories for the retrieval layer.

This module defines a small provider-agnostic interface for producing vector
embeddings from text, along with two HTTP-backed implementations: one for
OpenAI-compatible ``/embeddings`` endpoints and one for a locally hosted
(Ollama-style) embedding server. Both share the same batching and bounded
concurrency machinery and the same retry policy for rate limits and server
errors.

Provider configuration is a closed set of frozen dataclasses. A factory
function is the single place that maps the ``kind`` discriminator onto an
implementation, and :class:`EmbedderHandle` lets the application swap the
active provider at runtime without a module-level singleton.

Classes
-------
RetryPolicy
    Retry budget and backoff for HTTP 429 and 5xx responses.
OpenAICompatibleConfig
    Settings for an OpenAI-compatible embedding endpoint.
LocalHostConfig
    Settings for a locally hosted embedding server.
BaseEmbedder
    Abstract interface specifying the API used by the retrieval pipeline.
OpenAICompatibleEmbedder
    Embedder backed by an OpenAI-compatible HTTP API.
LocalHostEmbedder
    Embedder backed by a local ``/api/embeddings`` endpoint.
EmbedderHandle
    Reloadable holder of the active embedder.

Functions
---------
parse_embedder_config
    Build a provider config from a configuration mapping.
create_embedder
    Create an embedder implementation from a config or mapping.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Union

import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from meridian_rag.common.errors import (
    EmbeddingConfigError,
    EmbeddingProviderError,
    EmbeddingResponseError,
)

logger = logging.getLogger(__name__)

OPENAI_DIMENSIONS = {
    "text-embedding-3-large": 3072,
    "text-embedding-3-small": 1536,
    "text-embedding-ada-002": 1536,
}
OPENAI_DEFAULT_DIMENSION = 1536

LOCAL_HOST_DIMENSIONS = {
    "nomic-embed-text": 768,
    "mxbai-embed-large": 1024,
    "all-minilm": 384,
    "snowflake-arctic-embed": 1024,
}
LOCAL_HOST_DEFAULT_DIMENSION = 768

Vector = List[float]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget for embedding requests.

    Attributes
    ----------
    max_retries : int
        Retries after the first attempt; ``0`` disables retrying.
    rate_limit_backoff : float
        Seconds to wait after an HTTP 429.
    server_error_backoff : float
        Seconds to wait after an HTTP 5xx.
    """

    max_retries: int = 2
    rate_limit_backoff: float = 15.0
    server_error_backoff: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise EmbeddingConfigError("retry.max_retries must not be negative")
        if self.rate_limit_backoff < 0 or self.server_error_backoff < 0:
            raise EmbeddingConfigError("retry backoff values must not be negative")


@dataclass(frozen=True)
class OpenAICompatibleConfig:
    """Settings for an OpenAI-compatible embedding endpoint."""

    model: str
    api_key: Optional[str] = None
    api_base: str = "https://api.openai.com/v1"
    batch_size: int = 100
    concurrency: int = 1
    timeout: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    kind: str = field(default="openai_compatible", init=False)

    def __post_init__(self) -> None:
        _validate_common(self.model, self.batch_size, self.concurrency, self.timeout)


@dataclass(frozen=True)
class LocalHostConfig:
    """Settings for a locally hosted embedding server.

    The local endpoint embeds one prompt per request, so the batch size is
    fixed at ``1``; ``concurrency`` still bounds requests in flight.
    """

    model: str = "nomic-embed-text"
    api_base: str = "http://localhost:11434"
    concurrency: int = 1
    timeout: float = 60.0
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    kind: str = field(default="local_host", init=False)

    @property
    def batch_size(self) -> int:
        return 1

    def __post_init__(self) -> None:
        _validate_common(self.model, 1, self.concurrency, self.timeout)


EmbedderConfig = Union[OpenAICompatibleConfig, LocalHostConfig]


def _validate_common(model: str, batch_size: int, concurrency: int, timeout: float) -> None:
    if not isinstance(model, str) or not model.strip():
        raise EmbeddingConfigError("embedder model must be a non-empty string")
    if batch_size < 1:
        raise EmbeddingConfigError("embedder batch_size must be >= 1")
    if concurrency < 1:
        raise EmbeddingConfigError("embedder concurrency must be >= 1")
    if timeout <= 0:
        raise EmbeddingConfigError("embedder timeout must be positive")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingProviderError) and exc.retryable


class BaseEmbedder(ABC):
    """Abstract interface for text embedding.

    Subclasses implement a single HTTP request for one batch of texts. The
    base class splits input into batches, dispatches them through a bounded
    pool of asyncio workers and applies the retry policy.

    Parameters
    ----------
    config : EmbedderConfig
        Provider settings.
    client : httpx.AsyncClient or None, optional
        Client to reuse for all requests. When omitted, a client is opened for
        the duration of each :meth:`embed_batch` call.
    sleep : Callable[[float], Awaitable[None]] or None, optional
        Sleep function used between retries. Defaults to :func:`asyncio.sleep`.
    """

    def __init__(
            self,
            config: EmbedderConfig,
            *,
            client: Optional[httpx.AsyncClient] = None,
            sleep: Optional[Callable[[float], Awaitable[None]]] = None,
        ):
        self.config = config
        self._client = client
        self._sleep = sleep or asyncio.sleep
        self._dimension: Optional[int] = None

    @property
    def batch_size(self) -> int:
        return self.config.batch_size

    @abstractmethod
    async def _request_batch(self, client: httpx.AsyncClient, texts: Sequence[str]) -> List[Vector]:
        """Embed one batch with a single HTTP request.

        Raises
        ------
        EmbeddingProviderError
            For non-success HTTP statuses and transport failures.
        EmbeddingResponseError
            If the response cannot be turned into one vector per text.
        """

    @abstractmethod
    def _default_dimension(self) -> int:
        """Return the tabulated dimension for the configured model."""

    def get_dimension(self) -> int:
        """Return the embedding dimension.

        Returns
        -------
        int
            The dimension observed in the most recent response, or the
            tabulated value for the configured model before any request.
        """
        return self._dimension or self._default_dimension()

    async def embed(self, text: str) -> Vector:
        """Embed a single string."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[Vector]:
        """Embed many strings, preserving input order.

        Texts are split into batches of :attr:`batch_size`. Up to
        ``concurrency`` workers claim batch indices from a shared cursor and
        write each result into its own slot, so at most
        ``min(concurrency, number_of_batches)`` requests are in flight.

        Parameters
        ----------
        texts : Sequence[str]
            Texts to embed.

        Returns
        -------
        list[list[float]]
            One vector per input text, in input order. Empty input returns an
            empty list without any request.

        Raises
        ------
        EmbeddingProviderError
            If a batch fails with a non-retryable status, a transport error,
            or keeps failing after the retry budget.
        EmbeddingResponseError
            If a provider response is malformed.
        """
        texts = list(texts)
        if not texts:
            return []

        size = self.batch_size
        batches = [texts[i:i + size] for i in range(0, len(texts), size)]

        started = time.perf_counter()
        if self._client is not None:
            results = await self._run_batches(self._client, batches)
        else:
            async with httpx.AsyncClient(timeout=self.config.timeout) as client:
                results = await self._run_batches(client, batches)

        logger.debug(
            "Embedded %d texts in %d batches (%.1f ms)",
            len(texts),
            len(batches),
            (time.perf_counter() - started) * 1000,
        )
        return [vector for batch in results for vector in batch]

    async def _run_batches(
            self,
            client: httpx.AsyncClient,
            batches: List[List[str]],
        ) -> List[List[Vector]]:
        results: List[Optional[List[Vector]]] = [None] * len(batches)
        cursor = itertools.count()

        async def worker() -> None:
            while True:
                index = next(cursor)
                if index >= len(batches):
                    return
                results[index] = await self._request_with_retry(client, batches[index])

        n_workers = min(self.config.concurrency, len(batches))
        tasks = [asyncio.ensure_future(worker()) for _ in range(n_workers)]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

        return [batch for batch in results if batch is not None]

    async def _request_with_retry(
            self,
            client: httpx.AsyncClient,
            texts: Sequence[str],
        ) -> List[Vector]:
        policy = self.config.retry

        def backoff(retry_state: RetryCallState) -> float:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            if isinstance(exc, EmbeddingProviderError) and exc.status_code == 429:
                return policy.rate_limit_backoff
            return policy.server_error_backoff

        def log_retry(retry_state: RetryCallState) -> None:
            exc = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "Embedding request to %s failed (status %s); retrying in %.1fs (attempt %d/%d)",
                self.config.api_base,
                getattr(exc, "status_code", None),
                retry_state.next_action.sleep if retry_state.next_action else 0.0,
                retry_state.attempt_number,
                policy.max_retries + 1,
            )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=backoff,
            retry=retry_if_exception(_is_retryable),
            before_sleep=log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        return await retrying(self._request_batch, client, texts)

    async def _post_json(
            self,
            client: httpx.AsyncClient,
            url: str,
            payload: Dict[str, Any],
            headers: Optional[Dict[str, str]] = None,
        ) -> Any:
        try:
            response = await client.post(
                url,
                json=payload,
                headers=headers,
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as exc:
            raise EmbeddingProviderError(f"Embedding request to {url} failed: {exc}") from exc

        if response.status_code >= 400:
            raise EmbeddingProviderError(
                f"Embedding API error {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as exc:
            raise EmbeddingResponseError("Embedding API returned invalid JSON") from exc

    def _record_dimension(self, vector: Vector) -> None:
        self._dimension = len(vector)


def _check_vector(value: Any, position: int) -> Vector:
    if not isinstance(value, list) or not value:
        raise EmbeddingResponseError(f"Missing or empty embedding at position {position}")
    return value


class OpenAICompatibleEmbedder(BaseEmbedder):
    """Embedder backed by an OpenAI-compatible ``/embeddings`` endpoint.

    Parameters
    ----------
    config : OpenAICompatibleConfig
        Endpoint settings. ``api_key`` is required.

    Raises
    ------
    EmbeddingConfigError
        If no API key is configured.
    """

    config: OpenAICompatibleConfig

    def __init__(self, config: OpenAICompatibleConfig, **kwargs: Any):
        if not config.api_key:
            raise EmbeddingConfigError("OpenAI-compatible embedder requires an api_key")
        super().__init__(config, **kwargs)

    def _default_dimension(self) -> int:
        return OPENAI_DIMENSIONS.get(self.config.model, OPENAI_DEFAULT_DIMENSION)

    async def _request_batch(self, client: httpx.AsyncClient, texts: Sequence[str]) -> List[Vector]:
        url = f"{self.config.api_base.rstrip('/')}/embeddings"
        payload = await self._post_json(
            client,
            url,
            {"input": list(texts), "model": self.config.model},
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingResponseError("Embedding API response has no 'data' list")
        if len(data) != len(texts):
            raise EmbeddingResponseError(
                f"Embedding count mismatch: expected {len(texts)}, got {len(data)}"
            )

        # Providers may return items out of order; 'index' is authoritative.
        indices = [
            item.get("index", position) if isinstance(item, dict) else position
            for position, item in enumerate(data)
        ]
        if (
            not all(isinstance(i, int) for i in indices)
            or sorted(indices) != list(range(len(texts)))
        ):
            raise EmbeddingResponseError(
                f"Embedding indices must cover 0..{len(texts) - 1} exactly once, got {indices}"
            )
        ordered = [item for _, item in sorted(zip(indices, data), key=lambda pair: pair[0])]
        vectors = [
            _check_vector(item.get("embedding") if isinstance(item, dict) else None, position)
            for position, item in enumerate(ordered)
        ]

        self._record_dimension(vectors[0])
        return vectors


class LocalHostEmbedder(BaseEmbedder):
    """Embedder backed by a locally hosted ``/api/embeddings`` endpoint.

    Each request embeds exactly one prompt.
    """

    config: LocalHostConfig

    def _default_dimension(self) -> int:
        return LOCAL_HOST_DIMENSIONS.get(self.config.model, LOCAL_HOST_DEFAULT_DIMENSION)

    async def _request_batch(self, client: httpx.AsyncClient, texts: Sequence[str]) -> List[Vector]:
        url = f"{self.config.api_base.rstrip('/')}/api/embeddings"
        vectors: List[Vector] = []
        for position, text in enumerate(texts):
            payload = await self._post_json(
                client,
                url,
                {"model": self.config.model, "prompt": text},
            )
            embedding = payload.get("embedding") if isinstance(payload, dict) else None
            vectors.append(_check_vector(embedding, position))

        if vectors:
            self._record_dimension(vectors[0])
        return vectors


# ----------------- Factory helpers -----------------

def _get_embedder_kind(cfg: Mapping[str, Any]) -> str:
    """Extract the embedder kind/type/provider discriminator from a config mapping.

    Parameters
    ----------
    cfg : Mapping[str, Any]
        Configuration mapping.

    Returns
    -------
    str
        The first non-empty discriminator value found, or an empty string if none
        is present.
    """
    for key in ("kind", "type", "provider"):
        val = cfg.get(key)
        if isinstance(val, str) and val.strip():
            return val.strip()
    return ""


def _normalize_embedder_kind(kind: str) -> str:
    """Normalise an embedder kind string to a stable registry key.

    CamelCase becomes snake_case, hyphens and spaces become underscores and a
    few provider aliases are folded, e.g. ``"OpenAICompatible"`` ->
    ``"openai_compatible"`` and ``"Ollama"`` -> ``"local_host"``.
    """
    k = kind.strip()
    if not k:
        return ""

    out: list[str] = []
    prev = ""
    for ch in k:
        if prev and prev.islower() and ch.isupper():
            out.append("_")
        out.append(ch)
        prev = ch

    k2 = "".join(out).replace("-", "_").replace(" ", "_")
    while "__" in k2:
        k2 = k2.replace("__", "_")
    k2 = k2.lower()

    aliases = {
        "open_aicompatible": "openai_compatible",
        "open_ai_compatible": "openai_compatible",
        "openai": "openai_compatible",
        "openai_like": "openai_compatible",
        "ollama": "local_host",
        "local": "local_host",
        "localhost": "local_host",
    }
    return aliases.get(k2, k2)


def _parse_retry(raw: Any) -> RetryPolicy:
    if raw is None:
        return RetryPolicy()
    if isinstance(raw, RetryPolicy):
        return raw
    if not isinstance(raw, Mapping):
        raise EmbeddingConfigError(f"'retry' must be a mapping, got {type(raw)}")
    return RetryPolicy(
        max_retries=int(raw.get("max_retries", 2)),
        rate_limit_backoff=float(raw.get("rate_limit_backoff", 15.0)),
        server_error_backoff=float(raw.get("server_error_backoff", 2.0)),
    )


def parse_embedder_config(config: Mapping[str, Any]) -> EmbedderConfig:
    """Build a provider config from a configuration mapping.

    Parameters
    ----------
    config : Mapping[str, Any]
        The ``embedder`` section of the global configuration. The provider is
        selected by ``kind`` (or ``type`` / ``provider``); it defaults to
        ``openai_compatible``.

    Returns
    -------
    EmbedderConfig
        A frozen provider config.

    Raises
    ------
    TypeError
        If ``config`` is not a mapping.
    EmbeddingConfigError
        If the kind is unknown or a value is invalid.
    """
    if not isinstance(config, Mapping):
        raise TypeError(f"parse_embedder_config expected a mapping/dict, got {type(config)}")

    kind_raw = _get_embedder_kind(config)
    kind = _normalize_embedder_kind(kind_raw) or "openai_compatible"
    model = config.get("model", config.get("model_name"))
    retry = _parse_retry(config.get("retry"))

    try:
        if kind == "openai_compatible":
            return OpenAICompatibleConfig(
                model=model or "text-embedding-3-small",
                api_key=config.get("api_key") or None,
                api_base=config.get("api_base") or "https://api.openai.com/v1",
                batch_size=int(config.get("batch_size", 100)),
                concurrency=int(config.get("concurrency", 1)),
                timeout=float(config.get("timeout", 60.0)),
                retry=retry,
            )
        if kind == "local_host":
            return LocalHostConfig(
                model=model or "nomic-embed-text",
                api_base=config.get("api_base") or "http://localhost:11434",
                concurrency=int(config.get("concurrency", 1)),
                timeout=float(config.get("timeout", 60.0)),
                retry=retry,
            )
    except (TypeError, ValueError) as exc:
        if isinstance(exc, EmbeddingConfigError):
            raise
        raise EmbeddingConfigError(f"Invalid embedder configuration: {exc}") from exc

    raise EmbeddingConfigError(
        f"Unknown embedder kind '{kind_raw}' (normalized to '{kind}'). "
        f"Supported kinds: {sorted(_REGISTRY)}."
    )


_REGISTRY: Dict[str, type[BaseEmbedder]] = {
    "openai_compatible": OpenAICompatibleEmbedder,
    "local_host": LocalHostEmbedder,
}


def create_embedder(
    config: Union[EmbedderConfig, Mapping[str, Any]],
    **kwargs: Any,
) -> BaseEmbedder:
    """Create an embedder implementation from a provider config.

    This is the preferred entry point for wiring embedders (used by the
    application container and :class:`EmbedderHandle`).

    Parameters
    ----------
    config : EmbedderConfig or Mapping[str, Any]
        A provider config, or a raw mapping passed through
        :func:`parse_embedder_config`.
    **kwargs
        Forwarded to the embedder constructor (``client``, ``sleep``).

    Returns
    -------
    BaseEmbedder
        An initialised embedder implementation.
    """
    if isinstance(config, Mapping):
        config = parse_embedder_config(config)

    cls = _REGISTRY.get(config.kind)
    if cls is None:
        raise EmbeddingConfigError(f"No embedder registered for kind '{config.kind}'")
    return cls(config, **kwargs)


class EmbedderHandle:
    """Reloadable holder of the active embedder.

    Consumers resolve :attr:`current` once per operation; a :meth:`reload`
    replaces the embedder in a single assignment, so calls already running
    keep the instance they started with.

    Parameters
    ----------
    embedder : BaseEmbedder
        Initially active embedder.
    """

    def __init__(self, embedder: BaseEmbedder):
        self._current = embedder

    @classmethod
    def from_config(cls, config: Union[EmbedderConfig, Mapping[str, Any]], **kwargs: Any) -> "EmbedderHandle":
        return cls(create_embedder(config, **kwargs))

    @property
    def current(self) -> BaseEmbedder:
        return self._current

    def reload(self, config: Union[EmbedderConfig, Mapping[str, Any]], **kwargs: Any) -> BaseEmbedder:
        """Build a new embedder from ``config`` and make it the active one.

        Construction errors propagate and leave the current embedder in place.
        """
        embedder = create_embedder(config, **kwargs)
        self._current = embedder
        logger.info(
            "Embedder reloaded: kind=%s model=%s",
            embedder.config.kind,
            embedder.config.model,
        )
        return embedder


__all__ = [
    "RetryPolicy",
    "OpenAICompatibleConfig",
    "LocalHostConfig",
    "EmbedderConfig",
    "BaseEmbedder",
    "OpenAICompatibleEmbedder",
    "LocalHostEmbedder",
    "EmbedderHandle",
    "parse_embedder_config",
    "create_embedder",
]
