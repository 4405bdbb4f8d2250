"""meridian_rag.common.logging_utils

Logging setup for applications embedding the retrieval stack.

Library modules only create loggers via ``logging.getLogger(__name__)``;
configuring handlers is left to the application, which may call
:func:`configure_logging` with the ``logging`` section of the global config.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(cfg: Mapping[str, Any] | None = None) -> logging.Logger:
    """Attach a stream handler to the ``meridian_rag`` logger.

    Parameters
    ----------
    cfg : Mapping[str, Any] or None
        Optional mapping with ``level`` (name or number, default ``"INFO"``)
        and ``format`` keys.

    Returns
    -------
    logging.Logger
        The configured package logger.

    Raises
    ------
    ValueError
        If ``level`` is not a known logging level name.
    """
    cfg = cfg or {}
    level = cfg.get("level", "INFO")
    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown logging level: {level!r}")
        level = resolved

    logger = logging.getLogger("meridian_rag")
    logger.setLevel(level)

    # Re-configuring replaces the handler installed by a previous call.
    for handler in list(logger.handlers):
        if getattr(handler, "_meridian_handler", False):
            logger.removeHandler(handler)

    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(cfg.get("format") or DEFAULT_FORMAT))
    handler._meridian_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return logger


__all__ = ["configure_logging", "DEFAULT_FORMAT"]
