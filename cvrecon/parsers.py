"""Document-to-text extraction for uploaded CVs.

Default implementation of the text-extractor collaborator: PDF (pdfplumber
with a pypdf fallback) and plain text. Other binary formats are rejected.
"""
from __future__ import annotations

import io
import logging
from enum import Enum
from typing import Callable

import pdfplumber
from pypdf import PdfReader

logger = logging.getLogger(__name__)

# Anything shorter is treated as a failed extraction
MIN_TEXT_LENGTH = 10


class MediaType(str, Enum):
    """Supported upload media types."""
    PDF = "application/pdf"
    TEXT = "text/plain"


class ParseError(Exception):
    """Raised when document parsing fails."""
    pass


TextExtractor = Callable[[bytes, str], str]


def detect_media_type(filename: str | None, declared: str | None, content: bytes | None = None) -> MediaType:
    """Resolve the media type from the declared type, filename or magic bytes.

    Raises:
        ParseError: If the type is not supported
    """
    declared = (declared or "").split(";")[0].strip().lower()
    for media_type in MediaType:
        if declared == media_type.value:
            return media_type

    filename_lower = (filename or "").lower()
    if filename_lower.endswith(".pdf"):
        return MediaType.PDF
    if filename_lower.endswith((".txt", ".text", ".md")):
        return MediaType.TEXT

    if content and content.startswith(b"%PDF"):
        return MediaType.PDF

    raise ParseError(f"Unsupported file type: {declared or filename or 'unknown'}")


def extract_text_from_pdf(content: bytes) -> str:
    """Extract text from PDF bytes.

    Tries pdfplumber first, then pypdf.

    Raises:
        ParseError: If neither backend can read the file
    """
    try:
        with pdfplumber.open(io.BytesIO(content)) as pdf:
            text_parts = [page.extract_text() or "" for page in pdf.pages]
        text = "\n\n".join(part for part in text_parts if part)
        if text.strip():
            return text
        logger.info("pdfplumber returned no text, trying pypdf")
    except Exception as e:
        logger.warning(f"pdfplumber extraction failed: {e}, trying pypdf")

    try:
        reader = PdfReader(io.BytesIO(content))
        text_parts = [page.extract_text() or "" for page in reader.pages]
        return "\n\n".join(part for part in text_parts if part)
    except Exception as e:
        logger.error(f"pypdf extraction also failed: {e}")
        raise ParseError(f"Failed to parse PDF: {e}") from e


def extract_text_from_plain(content: bytes) -> str:
    """Decode a plain-text upload, tolerating a BOM and stray bytes."""
    return content.decode("utf-8-sig", errors="replace")


def extract_text(content: bytes, media_type: str) -> str:
    """Convert an uploaded document to plain text.

    Args:
        content: Raw file bytes
        media_type: Declared media type (already validated by detect_media_type)

    Returns:
        Extracted text

    Raises:
        ParseError: If the type is unsupported or no usable text was found
    """
    if not content:
        raise ParseError("Empty file")

    if media_type == MediaType.PDF.value:
        text = extract_text_from_pdf(content)
    elif media_type == MediaType.TEXT.value:
        text = extract_text_from_plain(content)
    else:
        raise ParseError(f"Unsupported file type: {media_type}")

    if len(text.strip()) < MIN_TEXT_LENGTH:
        raise ParseError("Failed to extract text from file")

    logger.debug(f"Extracted {len(text)} characters from {media_type}")
    return text
