"""Deterministic, non-overlapping chunker for long CV text.

Chunks cover the input exactly once (concatenating them gives back the text)
so a background task can re-chunk its stored source text on every retry and
resume from a chunk index.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from config.cv_sections import SECTION_HEADINGS

from ..config import settings

logger = logging.getLogger(__name__)

# A cut is only searched for in the last half of the window, so chunks never
# degrade into tiny slivers.
MIN_FILL_RATIO = 0.5

_HEADING_ALTERNATION = "|".join(
    re.escape(heading) for heading in sorted(SECTION_HEADINGS, key=len, reverse=True)
)
_NAMED_HEADING = re.compile(
    rf"\n(?=[ \t]*(?:{_HEADING_ALTERNATION})[ \t]*:?[ \t]*(?:\n|$))",
    re.IGNORECASE,
)
_CAPS_HEADING = re.compile(r"\n(?=[ \t]*[A-Z][A-Z &/,\-]{2,}:?[ \t]*\n)")
_PARAGRAPH = re.compile(r"\n[ \t]*\n+")
_LINE = re.compile(r"\n")
_SPACE = re.compile(r"[ \t]+")

# Cut preference, best first
_BOUNDARIES = (
    ("heading", _NAMED_HEADING),
    ("heading", _CAPS_HEADING),
    ("paragraph", _PARAGRAPH),
    ("line", _LINE),
    ("space", _SPACE),
)


@dataclass(frozen=True, slots=True)
class TextChunk:
    """Contiguous slice of a document's text."""

    index: int
    total_chunks: int
    text: str
    start: int

    @property
    def is_first(self) -> bool:
        return self.index == 0

    @property
    def is_last(self) -> bool:
        return self.index == self.total_chunks - 1

    @property
    def end(self) -> int:
        return self.start + len(self.text)


def _last_cut(pattern: re.Pattern[str], text: str, floor: int, limit: int) -> int | None:
    best = None
    for match in pattern.finditer(text, max(floor - 1, 0)):
        if match.end() > limit:
            break
        if match.end() >= floor:
            best = match.end()
    return best


def _find_cut(text: str, start: int, max_chars: int) -> int:
    limit = start + max_chars
    floor = start + max(1, int(max_chars * MIN_FILL_RATIO))

    for kind, pattern in _BOUNDARIES:
        cut = _last_cut(pattern, text, floor, limit)
        if cut is not None:
            logger.debug(f"Cut at {cut} on {kind} boundary")
            return cut

    logger.debug(f"No boundary in window, hard cut at {limit}")
    return limit


def chunk_text(text: str, max_chars: int | None = None) -> list[TextChunk]:
    """Split text into ordered chunks of at most max_chars characters.

    Cuts prefer, in order: right before a section heading, after a blank
    line, after a line break, after a run of spaces; a hard cut is the last
    resort. Text within the limit comes back as a single chunk, and empty
    text yields no chunks.

    Args:
        text: Full document text
        max_chars: Chunk size limit (defaults to CHUNKING_MAX_CHARS)

    Returns:
        Chunks whose texts concatenate to exactly `text`

    Raises:
        ValueError: If max_chars is not positive
    """
    if max_chars is None:
        max_chars = settings.chunking.max_chars
    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if not text:
        return []

    bounds: list[tuple[int, int]] = []
    start = 0
    while len(text) - start > max_chars:
        cut = _find_cut(text, start, max_chars)
        bounds.append((start, cut))
        start = cut
    bounds.append((start, len(text)))

    total = len(bounds)
    if total > 1:
        logger.info(f"Split {len(text)} chars into {total} chunks (limit {max_chars})")

    return [
        TextChunk(index=i, total_chunks=total, text=text[s:e], start=s)
        for i, (s, e) in enumerate(bounds)
    ]
