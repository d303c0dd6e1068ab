"""Text normalization utilities for CV titles and free-form snippets.

`title_key` is the deduplication identity for the whole pipeline: ingestion,
bibliographic import and the duplicate scan all compare keys produced here.
"""
from __future__ import annotations

import logging
import re

from ..config import settings

logger = logging.getLogger(__name__)

_LEADING_ARTICLES = re.compile(r"^(?:(?:the|a|an)\s+)+")
_NON_ALNUM = re.compile(r"[^\w\s]|_")
_WHITESPACE = re.compile(r"\s+")
_DOI = re.compile(r"10\.\d{4,}/[^\s\"'<>]+", re.IGNORECASE)


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    return _WHITESPACE.sub(" ", text).strip()


def normalize_dashes(text: str) -> str:
    """Map en-dash and em-dash to a plain hyphen."""
    return text.replace("–", "-").replace("—", "-")


def title_key(title: str, max_length: int | None = None) -> str:
    """Comparison key for a title.

    Lowercase, drop punctuation, collapse whitespace, strip leading articles,
    truncate. Idempotent: title_key(title_key(x)) == title_key(x).

    >>> title_key("The Study, Part 2!") == title_key("study part 2")
    True
    """
    if max_length is None:
        max_length = settings.reconciliation.title_key_length

    key = _NON_ALNUM.sub("", title.lower())
    key = normalize_whitespace(key)
    key = _LEADING_ARTICLES.sub("", key)
    return key[:max_length].rstrip()


def strip_html(html: str) -> str:
    """Remove style/script blocks and tags from an HTML email body."""
    text = re.sub(r"<style[^>]*>[\s\S]*?</style>", "", html, flags=re.IGNORECASE)
    text = re.sub(r"<script[^>]*>[\s\S]*?</script>", "", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    return normalize_whitespace(text)


def extract_doi(text: str | None) -> str | None:
    """Find a DOI in free text, lowercased."""
    if not text:
        return None
    match = _DOI.search(text)
    return match.group(0).lower() if match else None


def truncate(text: str | None, limit: int) -> str | None:
    """Trim a field to the column limit; empty strings become None."""
    if text is None:
        return None
    text = text.strip()
    if not text:
        return None
    return text[:limit]
