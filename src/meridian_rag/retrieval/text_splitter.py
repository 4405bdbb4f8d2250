"""meridian_rag.retrieval.text_splitter

Text splitting and chunking utilities for the retrieval layer.

This module converts raw document text into :class:`~meridian_rag.common.schemas.Chunk`
objects suitable for embedding and retrieval. It includes:

- a windowed splitter that cuts at the last high-priority separator inside a
  bounded window and steps back by the configured overlap;
- a page-aware variant that never lets a chunk span two pages;
- a recursive separator splitter for callers that want whole-text splitting;
- a type-aware lookup table selecting chunking options per document type.

The windowed splitters are generators: they are lazy, finite, and every call
starts a fresh, independent pass over its input.

Classes
-------
ChunkingOptions
    Validated chunk size / overlap / separator settings.
TextSplitter
    Restartable facade over the windowed and page-aware generators.
RecursiveTextSplitter
    Recursive separator splitter with overlap-preserving merge.

Functions
---------
iter_text_chunks
    Lazily split plain text into overlapping chunks.
iter_page_aware_chunks
    Lazily split a sequence of pages, one page at a time.
get_chunking_config
    Choose chunking options from MIME type and filename.
extract_anchor
    Short preview of a chunk, cut on a word boundary.
calculate_page_position
    Classify a character span as top/middle/bottom of its page.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Literal, Optional, Sequence

from meridian_rag.common.errors import ChunkingConfigError
from meridian_rag.common.schemas import Chunk, ChunkMetadata, PageContent

logger = logging.getLogger(__name__)

DEFAULT_SEPARATORS = ["\n\n", "\n", "。", "！", "？", ".", "!", "?", " ", ""]
DEFAULT_CHUNK_SIZE = 1500
DEFAULT_CHUNK_OVERLAP = 100

CODE_EXTENSIONS = {"js", "ts", "jsx", "tsx", "py", "java", "css", "html", "json", "md"}
CODE_SEPARATORS = ["\n\n", "\nfunction ", "\nclass ", "\ndef ", "\n// ", "\n# ", "\n"]
CONTRACT_KEYWORDS = ("合同", "contract", "协议", "agreement")
CONTRACT_SEPARATORS = ["\n\n", "\n第", "\n（", "\n一、", "\n二、", "\n三、", "\n"]

PAGE_TOP_THRESHOLD = 0.33
PAGE_BOTTOM_THRESHOLD = 0.67

PagePosition = Literal["top", "middle", "bottom"]


@dataclass(frozen=True)
class ChunkingOptions:
    """Chunk sizing settings.

    Attributes
    ----------
    chunk_size : int
        Maximum number of characters per chunk.
    chunk_overlap : int
        Number of characters the next window steps back by. Must be smaller
        than ``chunk_size``.
    separators : list[str]
        Separators in priority order. ``""`` means "hard cut".

    Raises
    ------
    ChunkingConfigError
        If the sizes are not positive or the overlap is not smaller than the
        chunk size. Values are never clamped.
    """

    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_overlap: int = DEFAULT_CHUNK_OVERLAP
    separators: List[str] = field(default_factory=lambda: list(DEFAULT_SEPARATORS))

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ChunkingConfigError("chunk_size must be a positive integer")
        if self.chunk_overlap < 0:
            raise ChunkingConfigError("chunk_overlap must not be negative")
        if self.chunk_overlap >= self.chunk_size:
            raise ChunkingConfigError("chunk_overlap must be less than chunk_size")
        if not self.separators:
            object.__setattr__(self, "separators", list(DEFAULT_SEPARATORS))


def _find_cut(text: str, pos: int, window_end: int, separators: Sequence[str]) -> int:
    """Return the end offset of the chunk starting at ``pos``.

    The first separator (by priority) with an occurrence that starts after
    ``pos`` and ends inside the window decides the cut; its last such
    occurrence is used.
    """
    for sep in separators:
        if not sep:
            continue
        last = text.rfind(sep, pos + 1, window_end)
        if last > pos:
            return last + len(sep)
    return window_end


def _iter_window_spans(
        text: str,
        options: ChunkingOptions,
    ) -> Iterator[tuple[int, int]]:
    """Yield ``(start, end)`` spans of the windowed algorithm, blanks included."""
    total = len(text)
    pos = 0

    while pos < total:
        window_end = min(total, pos + options.chunk_size)
        cut = _find_cut(text, pos, window_end, options.separators)
        if cut <= pos:
            cut = window_end

        yield pos, cut

        if cut >= total:
            break

        # Step back by the overlap, but always advance at least one character.
        pos = max(cut - options.chunk_overlap, pos + 1)


def iter_text_chunks(
        text: str,
        options: Optional[ChunkingOptions] = None,
    ) -> Iterator[Chunk]:
    """Lazily split ``text`` into overlapping chunks.

    Each step considers the window ``[pos, pos + chunk_size]`` and cuts after
    the last occurrence of the highest-priority separator found in it, or at
    the window end when no separator matches. Whitespace-only windows are
    dropped.

    Parameters
    ----------
    text : str
        Text to split.
    options : ChunkingOptions or None, optional
        Chunk sizing. Defaults to :class:`ChunkingOptions` defaults.

    Yields
    ------
    Chunk
        Chunks with contiguous, zero-based indices and ``start_char`` /
        ``end_char`` offsets into ``text``.
    """
    options = options or ChunkingOptions()
    index = 0
    for start, end in _iter_window_spans(text, options):
        content = text[start:end]
        if not content.strip():
            continue
        yield Chunk(
            content=content,
            index=index,
            metadata=ChunkMetadata(start_char=start, end_char=end),
        )
        index += 1


def iter_page_aware_chunks(
        pages: Iterable[PageContent],
        options: Optional[ChunkingOptions] = None,
    ) -> Iterator[Chunk]:
    """Lazily split pages into chunks that never cross a page boundary.

    Pages are processed in order and independently. A page no longer than
    ``chunk_size`` becomes a single chunk; longer pages are split with the
    windowed algorithm. Blank pages are skipped.

    Parameters
    ----------
    pages : Iterable[PageContent]
        Pages in reading order.
    options : ChunkingOptions or None, optional
        Chunk sizing.

    Yields
    ------
    Chunk
        Chunks whose ``page_number``, ``page_start`` and ``page_end`` all
        equal the source page number. Offsets are relative to the page text.
        The chunk index increases monotonically across all pages.
    """
    options = options or ChunkingOptions()
    global_index = 0

    for page in pages:
        page_text = page.text
        if not page_text.strip():
            continue

        if len(page_text) <= options.chunk_size:
            spans: Iterable[tuple[int, int]] = [(0, len(page_text))]
        else:
            spans = _iter_window_spans(page_text, options)

        for start, end in spans:
            content = page_text[start:end]
            if not content.strip():
                continue
            yield Chunk(
                content=content,
                index=global_index,
                metadata=ChunkMetadata(
                    start_char=start,
                    end_char=end,
                    page_number=page.page_number,
                    page_start=page.page_number,
                    page_end=page.page_number,
                    extra=dict(page.metadata or {}),
                ),
            )
            global_index += 1


class TextSplitter:
    """Restartable splitter bound to one set of :class:`ChunkingOptions`.

    Every call to :meth:`split` or :meth:`split_pages` returns a new
    generator; no state is carried between calls.
    """

    def __init__(self, options: Optional[ChunkingOptions] = None):
        self.options = options or ChunkingOptions()

    @classmethod
    def from_config_dict(cls, config: dict) -> "TextSplitter":
        """Build a splitter from a ``chunking`` config mapping."""
        return cls(
            ChunkingOptions(
                chunk_size=int(config.get("chunk_size", DEFAULT_CHUNK_SIZE)),
                chunk_overlap=int(config.get("chunk_overlap", DEFAULT_CHUNK_OVERLAP)),
                separators=list(config.get("separators") or DEFAULT_SEPARATORS),
            )
        )

    def split(self, text: str) -> Iterator[Chunk]:
        return iter_text_chunks(text, self.options)

    def split_pages(self, pages: Iterable[PageContent]) -> Iterator[Chunk]:
        return iter_page_aware_chunks(pages, self.options)


class RecursiveTextSplitter:
    """Recursive separator splitter.

    The text is split on the highest-priority separator it contains. Pieces
    that are still too long are split again with the remaining separators;
    short pieces are merged back together up to ``chunk_size`` characters,
    keeping up to ``chunk_overlap`` characters of trailing pieces as the
    start of the next chunk.

    Unlike :func:`iter_text_chunks` this materialises all chunks at once.
    """

    def __init__(self, options: Optional[ChunkingOptions] = None):
        self.options = options or ChunkingOptions()

    def split(self, text: str) -> List[Chunk]:
        pieces = self._split_text(text, list(self.options.separators))
        return self._locate(pieces, text)

    def _split_text(self, text: str, separators: List[str]) -> List[str]:
        final: List[str] = []

        separator = separators[-1] if separators else ""
        remaining: List[str] = []
        for i, sep in enumerate(separators):
            if sep == "":
                separator = sep
                break
            if sep in text:
                separator = sep
                remaining = separators[i + 1:]
                break

        splits = text.split(separator) if separator else list(text)

        good: List[str] = []
        for piece in splits:
            if len(piece) < self.options.chunk_size:
                good.append(piece)
                continue

            if good:
                final.extend(self._merge_splits(good, separator))
                good = []

            if not remaining:
                final.append(piece)
            else:
                final.extend(self._split_text(piece, remaining))

        if good:
            final.extend(self._merge_splits(good, separator))

        return final

    def _merge_splits(self, splits: List[str], separator: str) -> List[str]:
        chunk_size = self.options.chunk_size
        overlap = self.options.chunk_overlap
        sep_len = len(separator)

        docs: List[str] = []
        current: List[str] = []
        total = 0

        for piece in splits:
            length = len(piece)
            joiner = sep_len if current else 0

            if total + length + joiner > chunk_size:
                if total > chunk_size:
                    logger.warning(
                        "Created a chunk of size %d, which is longer than the specified %d",
                        total,
                        chunk_size,
                    )

                if current:
                    doc = separator.join(current)
                    if doc.strip():
                        docs.append(doc)

                    # Keep a tail of pieces as overlap for the next chunk.
                    while total > overlap or (total > 0 and total + length + joiner > chunk_size):
                        removed = current.pop(0)
                        total -= len(removed) + (sep_len if current else 0)

            current.append(piece)
            total += length + (sep_len if len(current) > 1 else 0)

        if current:
            doc = separator.join(current)
            if doc.strip():
                docs.append(doc)

        return docs

    def _locate(self, pieces: List[str], original: str) -> List[Chunk]:
        chunks: List[Chunk] = []
        cursor = 0

        for index, piece in enumerate(pieces):
            found = original.find(piece, cursor)
            start = found if found >= 0 else cursor
            end = start + len(piece)
            chunks.append(
                Chunk(
                    content=piece,
                    index=index,
                    metadata=ChunkMetadata(start_char=start, end_char=end),
                )
            )
            cursor = max(start + 1, end - self.options.chunk_overlap)

        return chunks


def get_chunking_config(mime_type: str, filename: str) -> ChunkingOptions:
    """Choose chunking options from a document's MIME type and filename.

    Parameters
    ----------
    mime_type : str
        MIME type reported for the document (may be empty).
    filename : str
        Original filename, used for extension and keyword checks.

    Returns
    -------
    ChunkingOptions
        - code files: 2000/200 with code-structural separators;
        - CSV: 500/50, one line per split;
        - contract-like filenames: 1000/100 with clause separators;
        - PDF: 1500/150 with default separators;
        - anything else: 1500/100 with default separators.
    """
    mime = (mime_type or "").lower()
    name = (filename or "").lower()
    ext = name.rsplit(".", 1)[-1] if "." in name else ""

    if (
        ext in CODE_EXTENSIONS
        or "javascript" in mime
        or "typescript" in mime
        or "python" in mime
    ):
        return ChunkingOptions(2000, 200, list(CODE_SEPARATORS))

    if ext == "csv" or "csv" in mime:
        return ChunkingOptions(500, 50, ["\n"])

    if any(keyword in name for keyword in CONTRACT_KEYWORDS):
        return ChunkingOptions(1000, 100, list(CONTRACT_SEPARATORS))

    if mime == "application/pdf":
        return ChunkingOptions(1500, 150, list(DEFAULT_SEPARATORS))

    return ChunkingOptions(DEFAULT_CHUNK_SIZE, DEFAULT_CHUNK_OVERLAP, list(DEFAULT_SEPARATORS))


def extract_anchor(content: str, max_length: int = 40) -> str:
    """Return a short preview of ``content`` cut on a word or punctuation boundary."""
    trimmed = content.strip()
    if len(trimmed) <= max_length:
        return trimmed

    truncated = trimmed[:max_length]
    last_space = truncated.rfind(" ")
    last_punctuation = max(
        truncated.rfind("。"),
        truncated.rfind("，"),
        truncated.rfind("."),
        truncated.rfind(","),
    )
    cut = max(last_space, last_punctuation, max_length - 10)
    return truncated[:cut] + "..."


def calculate_page_position(start_char: int, end_char: int, total_chars: int) -> PagePosition:
    """Classify a character span by the relative position of its midpoint."""
    if total_chars <= 0:
        return "top"
    relative = ((start_char + end_char) / 2) / total_chars
    if relative <= PAGE_TOP_THRESHOLD:
        return "top"
    if relative > PAGE_BOTTOM_THRESHOLD:
        return "bottom"
    return "middle"


__all__ = [
    "DEFAULT_SEPARATORS",
    "DEFAULT_CHUNK_SIZE",
    "DEFAULT_CHUNK_OVERLAP",
    "PAGE_TOP_THRESHOLD",
    "PAGE_BOTTOM_THRESHOLD",
    "ChunkingOptions",
    "iter_text_chunks",
    "iter_page_aware_chunks",
    "TextSplitter",
    "RecursiveTextSplitter",
    "get_chunking_config",
    "extract_anchor",
    "calculate_page_position",
]
