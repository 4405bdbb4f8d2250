"""meridian_rag.config

YAML configuration for the retrieval stack.

The :class:`GlobalConfig` wrapper validates each section (embedder, chunking,
retrieval, vector store, tokenization, logging) on first access, so a bad
value surfaces as a ``KeyError``/``TypeError``/``ValueError`` naming the
offending key instead of failing deep inside a component.

Modules
-------
global_config
    YAML loader with environment expansion and per-section accessors.
"""
from .global_config import GlobalConfig

__all__ = ["GlobalConfig"]
