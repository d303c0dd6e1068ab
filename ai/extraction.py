"""Structured extraction of CV entries from chunk text and emails.

The completion service is asked for a JSON object; the response is validated
immediately against the pydantic models below. Anything that goes wrong
(upstream failure, timeout, malformed JSON, schema mismatch) is logged and
turned into an empty result with `failed=True`. Nothing here writes to the
database, so re-running a chunk is always safe.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ai.completion import CompletionError, CompletionFn, get_completion_client
from config.prompts import (
    CV_CHUNK_SYSTEM_PROMPT,
    CV_CHUNK_USER_TEMPLATE,
    EMAIL_SYSTEM_PROMPT,
    EMAIL_USER_TEMPLATE,
    PROFILE_HINT,
)
from cvrecon.config import settings
from cvrecon.pipelines.chunking import TextChunk

logger = logging.getLogger(__name__)

DEFAULT_EMAIL_CATEGORY = "Other"
DEFAULT_EMAIL_CONFIDENCE = 0.5


def _blank_to_none(value):
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str) and not value.strip():
        return None
    return value


class ExtractedProfile(BaseModel):
    """Identity fields found in the document header."""
    model_config = ConfigDict(extra="ignore")

    name: str | None = None
    phone: str | None = None
    address: str | None = None
    institution: str | None = None
    website: str | None = None

    @field_validator("*", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        return _blank_to_none(v)

    def filled(self) -> dict[str, str]:
        """Non-empty fields only."""
        return {key: value.strip() for key, value in self.model_dump().items() if value}


class ExtractedEntry(BaseModel):
    """One entry as returned by the model. `title` is the natural key."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    title: str = Field(min_length=1)
    description: str | None = None
    raw_date_text: str | None = Field(default=None, alias="date")
    location: str | None = None
    url: str | None = None

    @field_validator("title", mode="before")
    @classmethod
    def strip_title(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("description", "raw_date_text", "location", "url", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        return _blank_to_none(v)


class ExtractedCategory(BaseModel):
    """Named CV section with its entries."""
    model_config = ConfigDict(extra="ignore")

    name: str = Field(min_length=1)
    entries: list[ExtractedEntry] = Field(default_factory=list)

    @field_validator("name", mode="before")
    @classmethod
    def strip_name(cls, v):
        return v.strip() if isinstance(v, str) else v


class CVChunkResponse(BaseModel):
    """Top-level JSON object for a CV chunk."""
    model_config = ConfigDict(extra="ignore")

    profile: ExtractedProfile | None = None
    categories: list[ExtractedCategory] = Field(default_factory=list)


class EmailEntry(ExtractedEntry):
    """Entry found in an email, with the model's triage hints."""

    start_date: str | None = None
    end_date: str | None = None
    suggested_category: str = DEFAULT_EMAIL_CATEGORY
    confidence: float = DEFAULT_EMAIL_CONFIDENCE
    reasoning: str | None = None

    @field_validator("start_date", "end_date", "reasoning", mode="before")
    @classmethod
    def blank_extra_to_none(cls, v):
        return _blank_to_none(v)

    @field_validator("suggested_category", mode="before")
    @classmethod
    def default_category(cls, v):
        if not isinstance(v, str) or not v.strip():
            return DEFAULT_EMAIL_CATEGORY
        return v.strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def clamp_confidence(cls, v):
        if v is None:
            return DEFAULT_EMAIL_CONFIDENCE
        try:
            return min(max(float(v), 0.0), 1.0)
        except (TypeError, ValueError):
            return DEFAULT_EMAIL_CONFIDENCE


class EmailResponse(BaseModel):
    """Top-level JSON object for an email."""
    model_config = ConfigDict(extra="ignore")

    entries: list[EmailEntry] = Field(default_factory=list)


@dataclass
class ChunkExtraction:
    """Result of extracting one chunk. Empty with failed=True on any error."""
    categories: list[ExtractedCategory] = field(default_factory=list)
    profile: ExtractedProfile | None = None
    failed: bool = False
    error: str | None = None

    @property
    def entry_count(self) -> int:
        return sum(len(category.entries) for category in self.categories)


@dataclass
class EmailExtraction:
    """Result of extracting one email."""
    entries: list[EmailEntry] = field(default_factory=list)
    failed: bool = False
    error: str | None = None


class ExtractionClient:
    """Prompts the completion service and validates what comes back."""

    def __init__(self, complete: CompletionFn | None = None, max_input_chars: int | None = None) -> None:
        """Initialize the client.

        Args:
            complete: Async (system_prompt, user_prompt) -> str. Defaults to
                the shared CompletionClient.
            max_input_chars: Cap on text sent per call (COMPLETION_MAX_INPUT_CHARS)
        """
        self._complete = complete or get_completion_client().complete
        self.max_input_chars = max_input_chars or settings.completion.max_input_chars

    def _cap(self, text: str, label: str) -> str:
        if len(text) > self.max_input_chars:
            logger.warning(f"{label}: input of {len(text)} chars capped to {self.max_input_chars}")
            return text[: self.max_input_chars]
        return text

    async def _call(self, system_prompt: str, user_prompt: str, label: str) -> tuple[str | None, str | None]:
        """Returns (content, error). Exactly one of them is set."""
        started = time.perf_counter()
        try:
            content = await self._complete(system_prompt, user_prompt)
        except CompletionError as e:
            logger.warning(f"{label}: completion failed [{e.code}]: {e}")
            return None, f"{e.code}: {e}"
        except Exception as e:
            logger.exception(f"{label}: unexpected completion error")
            return None, f"UNEXPECTED: {e}"

        logger.info(f"{label}: completion returned {len(content or '')} chars in {time.perf_counter() - started:.2f}s")
        return content, None

    async def extract_chunk(self, chunk: TextChunk) -> ChunkExtraction:
        """Extract categories (and, for the first chunk, the profile) from a chunk.

        Args:
            chunk: Chunk to analyze

        Returns:
            ChunkExtraction; `failed` is set when nothing usable came back
        """
        label = f"Chunk {chunk.index + 1}/{chunk.total_chunks}"
        user_prompt = CV_CHUNK_USER_TEMPLATE.format(
            part=chunk.index + 1,
            total_parts=chunk.total_chunks,
            profile_hint=PROFILE_HINT if chunk.is_first else "",
            text=self._cap(chunk.text, label),
        )

        content, error = await self._call(CV_CHUNK_SYSTEM_PROMPT, user_prompt, label)
        if error:
            return ChunkExtraction(failed=True, error=error)

        try:
            parsed = CVChunkResponse.model_validate_json(content)
        except ValidationError as e:
            logger.warning(f"{label}: response failed schema validation ({e.error_count()} errors)")
            return ChunkExtraction(failed=True, error=f"BAD_SCHEMA: {e.error_count()} validation errors")

        result = ChunkExtraction(categories=parsed.categories, profile=parsed.profile if chunk.is_first else None)
        logger.info(f"{label}: extracted {result.entry_count} entries in {len(result.categories)} categories")
        return result

    async def extract_email(
        self,
        sender: str,
        subject: str,
        body: str,
        received_at: datetime | None = None,
    ) -> EmailExtraction:
        """Find CV-worthy entries in an email body (already stripped of HTML)."""
        label = f"Email '{subject[:60]}'"
        user_prompt = EMAIL_USER_TEMPLATE.format(
            sender=sender,
            subject=subject,
            received_at=received_at.isoformat() if received_at else "unknown",
            body=self._cap(body, label),
        )

        content, error = await self._call(EMAIL_SYSTEM_PROMPT, user_prompt, label)
        if error:
            return EmailExtraction(failed=True, error=error)

        try:
            parsed = EmailResponse.model_validate_json(content)
        except ValidationError as e:
            logger.warning(f"{label}: response failed schema validation ({e.error_count()} errors)")
            return EmailExtraction(failed=True, error=f"BAD_SCHEMA: {e.error_count()} validation errors")

        logger.info(f"{label}: found {len(parsed.entries)} entries")
        return EmailExtraction(entries=parsed.entries)
