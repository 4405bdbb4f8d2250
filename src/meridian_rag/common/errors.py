"""meridian_rag.common.errors

Exception hierarchy shared across the retrieval stack.

Three families are distinguished so callers can react differently:

- configuration problems, raised eagerly at construction time;
- embedding provider failures, raised once the retry budget is spent;
- degraded capabilities, which the search pipeline absorbs by falling back
  to plain retrieval.

Empty search results are never represented as exceptions.

Classes
-------
MeridianError
    Base class for all package errors.
ConfigurationError
    Invalid configuration values.
ChunkingConfigError
    Invalid chunk size/overlap combination.
EmbeddingConfigError
    Invalid or incomplete embedding provider configuration.
EmbeddingError
    Base class for embedding failures.
EmbeddingProviderError
    HTTP-level failure from an embedding provider.
EmbeddingResponseError
    Provider responded, but the payload is unusable.
AggregatorUnavailableError
    The enhanced (aggregating) search path cannot serve the query.
IngestionCancelledError
    Document ingestion was cancelled between batches.
"""

from __future__ import annotations


class MeridianError(Exception):
    """Base class for all errors raised by :mod:`meridian_rag`."""


class ConfigurationError(MeridianError, ValueError):
    """Raised when a component is constructed with invalid settings."""


class ChunkingConfigError(ConfigurationError):
    """Raised for invalid chunking options (e.g. overlap >= chunk size)."""


class EmbeddingConfigError(ConfigurationError):
    """Raised when an embedding provider configuration is invalid."""


class EmbeddingError(MeridianError):
    """Base class for failures while producing embeddings."""


class EmbeddingProviderError(EmbeddingError):
    """HTTP or transport failure reported by an embedding provider.

    Attributes
    ----------
    status_code : int or None
        HTTP status of the last attempt, or ``None`` for transport errors.
    retryable : bool
        Whether the failure class is retried by the embedder (429 and 5xx).
    """

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class EmbeddingResponseError(EmbeddingError):
    """Raised when a provider response has the wrong shape or missing vectors."""


class AggregatorUnavailableError(MeridianError):
    """Raised when the aggregating search path cannot be used for a query."""


class IngestionCancelledError(MeridianError):
    """Raised when an ingestion run observes its cancellation flag."""


__all__ = [
    "MeridianError",
    "ConfigurationError",
    "ChunkingConfigError",
    "EmbeddingConfigError",
    "EmbeddingError",
    "EmbeddingProviderError",
    "EmbeddingResponseError",
    "AggregatorUnavailableError",
    "IngestionCancelledError",
]
