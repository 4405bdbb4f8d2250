"""meridian_rag.config.global_config

Global configuration loader and accessors.

This module defines a lightweight wrapper around a raw YAML configuration
dictionary, providing validated, cached access to the sections used by the
retrieval stack (embedder, chunking, retrieval, vector store, tokenization
and logging).

Environment variables of the form ``${VAR}`` are expanded recursively in all
string values at load time.

Classes
-------
GlobalConfig
    Loader and accessor for global project configuration.
"""

import os
import yaml
from pathlib import Path
from functools import cached_property

DEFAULT_CHUNK_SIZE = 1500
DEFAULT_CHUNK_OVERLAP = 100
DEFAULT_TOP_K = 5
DEFAULT_RELEVANCE_THRESHOLD = 0.3
DEFAULT_MAX_CONTEXT_TOKENS = 4000


def _expand_env(obj):
    """Recursively expand environment variables in a nested structure.

    This function walks nested dictionaries and lists and applies
    :func:`os.path.expandvars` to any string values, expanding patterns of the
    form ``${VAR}`` using the current process environment.

    Parameters
    ----------
    obj : Any
        Object to expand. Supported types are dictionaries, lists, and strings.
        Other types are returned unchanged.

    Returns
    -------
    Any
        A structure of the same shape as ``obj`` with environment variables
        expanded in all string values.
    """
    if isinstance(obj, dict):
        return {k: _expand_env(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [_expand_env(v) for v in obj]
    if isinstance(obj, str):
        return os.path.expandvars(obj)
    return obj


def _section(raw: dict, name: str) -> dict:
    section = raw.get(name)
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise TypeError(f"'{name}' must be a mapping, got {type(section)}.")
    return section


def _positive_int(section: dict, name: str, key: str, default: int) -> int:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"'{name}.{key}' must be an integer, got {type(value)}.")
    if value <= 0:
        raise ValueError(f"'{name}.{key}' must be a positive integer.")
    return value


class GlobalConfig:
    """Loader and accessor for global project configuration.

    This class wraps a raw configuration dictionary (typically loaded from YAML)
    and exposes validated, cached accessors for commonly used configuration
    sections.

    Parameters
    ----------
    raw : dict
        Raw configuration data as loaded from a YAML file.
    config_path : Path or None, optional
        Absolute path of the loaded file, when known.
    """

    def __init__(
            self,
            raw: dict,
            config_path: Path | None = None,
        ):
        self.raw = raw or {}
        self.config_path = config_path

    @classmethod
    def load(
            cls,
            path: str | Path,
        ) -> "GlobalConfig":
        """Load configuration from a YAML file.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.

        Returns
        -------
        GlobalConfig
            An instance initialised with the loaded and environment-expanded data.

        Notes
        -----
        All string values in the loaded YAML are processed with recursive
        environment-variable expansion (``${VAR}``) via :func:`os.path.expandvars`.
        """
        cfg_path = Path(path).expanduser().resolve()
        with cfg_path.open("r") as f:
            data = yaml.safe_load(f) or {}
        data = _expand_env(data)
        return cls(data, config_path=cfg_path)

    @cached_property
    def embedder(self) -> dict:
        """Return the embedder configuration section.

        Returns
        -------
        dict
            The ``embedder`` section of the configuration.

        Raises
        ------
        KeyError
            If the ``embedder`` section is missing.
        TypeError
            If the section is not a mapping.
        """
        section = self.raw.get("embedder")
        if section is None:
            raise KeyError("Missing 'embedder' in configuration.")
        if not isinstance(section, dict):
            raise TypeError(f"'embedder' must be a mapping, got {type(section)}.")
        return section

    @cached_property
    def chunking(self) -> dict:
        """Return validated chunking settings.

        Returns
        -------
        dict
            Mapping with ``chunk_size`` and ``chunk_overlap`` (defaults
            ``1500`` and ``100``), plus ``separators`` when configured.

        Raises
        ------
        TypeError
            If a value is not an integer.
        ValueError
            If ``chunk_overlap`` is negative or not smaller than ``chunk_size``.
        """
        section = _section(self.raw, "chunking")
        chunk_size = _positive_int(section, "chunking", "chunk_size", DEFAULT_CHUNK_SIZE)

        overlap = section.get("chunk_overlap", DEFAULT_CHUNK_OVERLAP)
        if isinstance(overlap, bool) or not isinstance(overlap, int):
            raise TypeError("'chunking.chunk_overlap' must be an integer.")
        if overlap < 0 or overlap >= chunk_size:
            raise ValueError(
                "'chunking.chunk_overlap' must be >= 0 and smaller than 'chunking.chunk_size'."
            )

        settings = {"chunk_size": chunk_size, "chunk_overlap": overlap}
        separators = section.get("separators")
        if separators is not None:
            if not isinstance(separators, list) or not all(isinstance(s, str) for s in separators):
                raise TypeError("'chunking.separators' must be a list of strings.")
            settings["separators"] = list(separators)
        return settings

    @cached_property
    def retrieval(self) -> dict:
        """Return validated retrieval settings.

        Returns
        -------
        dict
            Mapping with ``top_k``, ``relevance_threshold``,
            ``max_context_tokens`` and ``max_parallel_searches``.

        Raises
        ------
        TypeError
            If a value has the wrong type.
        ValueError
            If ``relevance_threshold`` is outside ``[0, 1]`` or a count is
            not positive.
        """
        section = _section(self.raw, "retrieval")
        top_k = _positive_int(section, "retrieval", "top_k", DEFAULT_TOP_K)
        max_tokens = _positive_int(
            section, "retrieval", "max_context_tokens", DEFAULT_MAX_CONTEXT_TOKENS
        )

        threshold = section.get("relevance_threshold", DEFAULT_RELEVANCE_THRESHOLD)
        if isinstance(threshold, bool) or not isinstance(threshold, (int, float)):
            raise TypeError("'retrieval.relevance_threshold' must be a number.")
        if not 0.0 <= float(threshold) <= 1.0:
            raise ValueError("'retrieval.relevance_threshold' must be within [0, 1].")

        max_parallel = section.get("max_parallel_searches")
        if max_parallel is not None:
            max_parallel = _positive_int(section, "retrieval", "max_parallel_searches", 1)

        return {
            "top_k": top_k,
            "relevance_threshold": float(threshold),
            "max_context_tokens": max_tokens,
            "max_parallel_searches": max_parallel,
        }

    @cached_property
    def vector_store(self) -> dict:
        """Return the vector store configuration section.

        Returns
        -------
        dict
            The ``vector_store`` section, or an empty dict if not present
            (in which case the in-memory store is used).
        """
        return _section(self.raw, "vector_store")

    @cached_property
    def tokenization(self) -> dict:
        """Return the tokenization configuration section, or an empty dict."""
        return _section(self.raw, "tokenization")

    @cached_property
    def logging(self) -> dict:
        """Return the logging configuration section, or an empty dict."""
        return _section(self.raw, "logging")
