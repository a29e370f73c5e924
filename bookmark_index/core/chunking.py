"""Text extraction and overlapping semantic chunking for embedding."""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass

logger = logging.getLogger(__name__)

# Chunking parameters
MAX_CHUNK_SIZE = 1000  # characters
CHUNK_OVERLAP = 100  # characters shared with the previous chunk
LOOKBACK_WINDOW = 200  # how far before a cut we look for a sentence boundary
MIN_TEXT_LENGTH = 50  # shorter text is not worth chunking

# Extra iterations allowed on top of the computed bound
ITERATION_SLACK = 10

# ". Next" style boundary: punctuation, whitespace, uppercase letter
SENTENCE_BREAK = re.compile(r"[.!?]\s+[A-Z]")
SENTENCE_END = re.compile(r"[.!?]\s+")

_BLOCK_TAGS = re.compile(r"<(script|style|noscript)[^>]*>[\s\S]*?</\1>", re.IGNORECASE)
_ANY_TAG = re.compile(r"<[^>]+>")
_WHITESPACE = re.compile(r"\s+")

# Decoded in this order
HTML_ENTITIES = (
    ("&nbsp;", " "),
    ("&amp;", "&"),
    ("&lt;", "<"),
    ("&gt;", ">"),
    ("&quot;", '"'),
    ("&#39;", "'"),
    ("&#x27;", "'"),
    ("&#x2F;", "/"),
)


class SegmentationError(RuntimeError):
    """Chunking exceeded its iteration bound (a bug in the advance arithmetic)."""


@dataclass
class Chunk:
    """A document chunk with its position in the document."""

    text: str
    position: int
    embedding: list[float] | None = None

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "position": self.position,
            "embedding": self.embedding,
        }


def extract_text_from_html(html: str) -> str:
    """Strip markup from an HTML document and return normalized plain text.

    Script, style and noscript blocks are removed together with their
    contents, every other tag is replaced by a space, a small set of common
    entities is decoded and whitespace runs are collapsed.
    """
    text = _BLOCK_TAGS.sub("", html)
    text = _ANY_TAG.sub(" ", text)
    for entity, replacement in HTML_ENTITIES:
        text = text.replace(entity, replacement)
    return _WHITESPACE.sub(" ", text).strip()


def max_iterations(
    text_length: int,
    max_chunk_size: int,
    overlap: int,
    lookback: int = LOOKBACK_WINDOW,
) -> int:
    """Upper bound on loop iterations for split_text_semantic().

    Every cut lands inside the lookback window, so each iteration advances
    the start by at least max_chunk_size - lookback - overlap characters,
    and never by less than one.
    """
    step = max(1, max_chunk_size - min(lookback, max_chunk_size) - overlap)
    return math.ceil(text_length / step) + ITERATION_SLACK


def split_text_semantic(
    text: str,
    max_chunk_size: int = MAX_CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
    lookback: int = LOOKBACK_WINDOW,
) -> list[Chunk]:
    """Split text into overlapping chunks, preferring sentence boundaries.

    Cuts are placed after the first sentence boundary found in the lookback
    window before the raw cut point, falling back to the last space in that
    window and finally to the raw cut. Each following chunk starts overlap
    characters before the previous cut, moved forward to the next sentence
    start when one is close.

    Args:
        text: Plain text to split.
        max_chunk_size: Maximum chunk length in characters.
        overlap: Characters shared between neighbouring chunks.
        lookback: Window before the raw cut searched for a boundary.

    Returns:
        Chunks with contiguous positions starting at 0.

    Raises:
        ValueError: If the size parameters are inconsistent.
        SegmentationError: If the iteration bound is exceeded.
    """
    if max_chunk_size <= 0:
        raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
    if overlap < 0 or overlap >= max_chunk_size:
        raise ValueError(f"overlap must be in [0, {max_chunk_size}), got {overlap}")

    if len(text) <= max_chunk_size:
        return [Chunk(text=text, position=0)]

    chunks: list[Chunk] = []
    limit = max_iterations(len(text), max_chunk_size, overlap, lookback)
    iterations = 0
    start = 0

    while start < len(text):
        iterations += 1
        if iterations > limit:
            logger.error(
                f"Chunking exceeded {limit} iterations "
                f"(text_length={len(text)}, start={start}, chunks={len(chunks)})"
            )
            raise SegmentationError(f"Chunking did not terminate within {limit} iterations")

        end = start + max_chunk_size
        if end >= len(text):
            _append(chunks, text[start:])
            break

        window_start = max(start, end - lookback)
        window = text[window_start:end]

        sentence_break = SENTENCE_BREAK.search(window)
        if sentence_break:
            # Keep the punctuation and one whitespace character
            end = window_start + sentence_break.start() + 2
        else:
            space_break = window.rfind(" ")
            if space_break != -1 and window_start + space_break > start:
                end = window_start + space_break

        _append(chunks, text[start:end])

        # Never past the cut. A cut closer to the start than the overlap
        # resumes at the cut itself.
        next_start = end - overlap if end - overlap > start else end
        sentence_end = SENTENCE_END.search(text, next_start, min(end, next_start + overlap))
        if sentence_end:
            next_start = sentence_end.start() + 2

        start = next_start

    return chunks


def _append(chunks: list[Chunk], raw: str) -> None:
    piece = raw.strip()
    if piece:
        chunks.append(Chunk(text=piece, position=len(chunks)))
