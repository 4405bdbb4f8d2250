"""meridian_rag.common.tokenisation

Token estimation utilities.

Context budgeting needs a token count for every candidate entry without
coupling the retrieval layer to a particular tokenizer. Components depend on
the minimal :class:`TokenCounter` protocol; the concrete counter is chosen
from configuration.

Classes
-------
TokenCounter
    Minimal protocol defining the token-counting interface.
HeuristicTokenCounter
    Dependency-free, CJK-aware approximate token counter (default).
TiktokenTokenCounter
    Exact token counter backed by the ``tiktoken`` library.

Functions
---------
estimate_token_count
    Per-character token estimate used by :class:`HeuristicTokenCounter`.
create_token_counter
    Build a token counter from a ``tokenization`` config mapping.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

CJK_TOKEN_WEIGHT = 1.5
DEFAULT_TOKEN_WEIGHT = 0.25

_CJK_RANGES = (
    (0x4E00, 0x9FFF),
    (0x3400, 0x4DBF),
    (0x3000, 0x303F),
)


def _is_cjk(char: str) -> bool:
    code = ord(char)
    for low, high in _CJK_RANGES:
        if low <= code <= high:
            return True
    return False


def estimate_token_count(text: str) -> int:
    """Estimate the number of tokens in ``text``.

    CJK ideographs and punctuation weigh 1.5 tokens; every other character
    weighs 0.25 tokens. The sum is rounded up.

    Parameters
    ----------
    text : str
        Text to measure.

    Returns
    -------
    int
        Approximate token count. This is not a real tokenizer.
    """
    if not text:
        return 0
    total = 0.0
    for char in text:
        total += CJK_TOKEN_WEIGHT if _is_cjk(char) else DEFAULT_TOKEN_WEIGHT
    return math.ceil(total)


class TokenCounter(Protocol):
    """A minimal interface for token-based sizing."""

    def count(self, text: str) -> int:
        """Return the number of tokens in ``text``."""


@dataclass(frozen=True)
class HeuristicTokenCounter:
    """Dependency-free, approximate token counter.

    Uses :func:`estimate_token_count`, which weighs CJK characters more
    heavily than Latin text.
    """

    def count(self, text: str) -> int:
        return estimate_token_count(text)


@dataclass(frozen=True)
class TiktokenTokenCounter:
    """Token counter backed by the ``tiktoken`` library.

    Attributes
    ----------
    encoding_name : str
        Name of the ``tiktoken`` encoding.
    _enc : Any
        Internal ``tiktoken`` encoding object.
    """

    encoding_name: str
    _enc: Any

    @classmethod
    def from_encoding_name(cls, encoding_name: str) -> "TiktokenTokenCounter":
        """Construct a token counter from an encoding name.

        Parameters
        ----------
        encoding_name : str
            Name of the ``tiktoken`` encoding to load.

        Returns
        -------
        TiktokenTokenCounter
            A token counter initialised with the requested encoding.
        """
        import tiktoken  # type: ignore

        enc = tiktoken.get_encoding(encoding_name)
        return cls(encoding_name=encoding_name, _enc=enc)

    def count(self, text: str) -> int:
        if not text:
            return 0
        return len(self._enc.encode(text))


def create_token_counter(cfg: Mapping[str, Any] | None = None) -> TokenCounter:
    """Create a token counter from a ``tokenization`` configuration section.

    Parameters
    ----------
    cfg : Mapping[str, Any] or None
        Mapping with a ``type`` key (``"heuristic"`` or ``"tiktoken"``) and,
        for tiktoken, an optional ``encoding`` (default ``"cl100k_base"``).

    Returns
    -------
    TokenCounter
        Configured counter; the heuristic counter when ``cfg`` is empty.

    Raises
    ------
    ValueError
        If an unknown tokenization type is configured.
    """
    cfg = cfg or {}
    kind = str(cfg.get("type") or "heuristic").lower().replace("-", "_")

    if kind in {"heuristic", "char", "chars"}:
        return HeuristicTokenCounter()

    if kind in {"tiktoken", "openai", "openai_compatible"}:
        enc = cfg.get("encoding") or "cl100k_base"
        return TiktokenTokenCounter.from_encoding_name(str(enc))

    raise ValueError(f"Unknown tokenization type: {kind!r}")


__all__ = [
    "CJK_TOKEN_WEIGHT",
    "DEFAULT_TOKEN_WEIGHT",
    "estimate_token_count",
    "TokenCounter",
    "HeuristicTokenCounter",
    "TiktokenTokenCounter",
    "create_token_counter",
]
