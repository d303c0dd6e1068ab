"""Reconciliation of extracted entries against the stored CV.

One ReconciliationEngine is created per ingestion run. It loads a snapshot of
the user's canonical titles and pending titles, then decides per entry, in
document order, whether to create, augment or skip it. Keys are added to the
run's seen set before the next entry is looked at, so repeated titles within
a run (across chunks too) collapse into one record.

Targets:
    canonical - entries go straight into the CV (document imports)
    pending   - entries are staged for review (email, bibliographic imports)
"""
from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from ai.extraction import ExtractedCategory, ExtractedEntry
from cvrecon import models, store
from cvrecon.config import settings
from cvrecon.pipelines.dates import resolve_entry_date
from cvrecon.pipelines.normalization import title_key, truncate

logger = logging.getLogger(__name__)


class Target(str, Enum):
    """Where new entries are written."""
    CANONICAL = "canonical"
    PENDING = "pending"


class Outcome(str, Enum):
    """Decision taken for one entry."""
    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"
    INVALID = "invalid"


@dataclass
class EntryCandidate:
    """Source-independent entry ready for reconciliation."""
    title: str
    description: str | None = None
    date: dt.date | None = None
    location: str | None = None
    url: str | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    ai_confidence: float | None = None
    ai_reasoning: str | None = None
    source_data: dict = field(default_factory=dict)

    @classmethod
    def from_extracted(cls, entry: ExtractedEntry) -> EntryCandidate:
        return cls(
            title=entry.title,
            description=entry.description,
            date=resolve_entry_date(entry.raw_date_text, entry.title, entry.description),
            location=entry.location,
            url=entry.url,
        )


@dataclass
class ReconciliationSummary:
    """Counters for one run (or one chunk of a run)."""
    entries_created: int = 0
    entries_updated: int = 0
    duplicates_skipped: int = 0
    categories_processed: int = 0
    created_ids: list[int] = field(default_factory=list)

    def add(self, other: ReconciliationSummary) -> None:
        self.entries_created += other.entries_created
        self.entries_updated += other.entries_updated
        self.duplicates_skipped += other.duplicates_skipped
        self.categories_processed += other.categories_processed
        self.created_ids.extend(other.created_ids)

    def as_dict(self) -> dict:
        return {
            "entries_created": self.entries_created,
            "entries_updated": self.entries_updated,
            "duplicates_skipped": self.duplicates_skipped,
            "categories_processed": self.categories_processed,
        }


@dataclass
class _CategorySlot:
    id: int
    name: str
    next_order: int


class ReconciliationEngine:
    """Create/update/skip decisions for one ingestion run."""

    def __init__(
        self,
        session: AsyncSession,
        user_id: int,
        *,
        target: Target = Target.CANONICAL,
        source_type: models.SourceType = models.SourceType.CV_IMPORT,
        augment_dates: bool = False,
    ) -> None:
        """Initialize the engine.

        Args:
            session: Session the run writes through; the caller commits
            user_id: Owner of every record read or written
            target: Canonical CV or pending review queue
            source_type: Provenance recorded on new entries
            augment_dates: Fill in the date of an existing undated canonical
                entry instead of skipping the duplicate
        """
        self.session = session
        self.user_id = user_id
        self.target = target
        self.source_type = source_type
        self.augment_dates = augment_dates

        self._loaded = False
        self._cv_id: int | None = None
        self._canonical: dict[str, models.Entry] = {}
        self._pending: set[str] = set()
        self._seen: set[str] = set()
        self._categories: dict[str, _CategorySlot] = {}

    async def load(self) -> None:
        """Snapshot existing canonical and pending titles. Called lazily."""
        cfg = settings.reconciliation
        if self.target is Target.CANONICAL:
            cv = await store.get_or_create_cv(self.session, self.user_id)
        else:
            cv = await store.get_cv(self.session, self.user_id)

        if cv is not None:
            self._cv_id = cv.id
            self._canonical = await store.canonical_snapshot(self.session, cv.id)
        self._pending = await store.pending_keys(self.session, self.user_id)
        self._loaded = True
        logger.info(
            f"Reconciliation snapshot for user {self.user_id}: "
            f"{len(self._canonical)} canonical, {len(self._pending)} pending titles "
            f"(key length {cfg.title_key_length})"
        )

    @property
    def cv_id(self) -> int | None:
        return self._cv_id

    def is_known(self, title: str) -> bool:
        """Whether a title already exists in the store, staging or this run."""
        key = title_key(title)
        return key in self._seen or key in self._canonical or key in self._pending

    def after_commit(self) -> None:
        """Forget cached display orders; they are re-read under a fresh lock."""
        self._categories.clear()

    def reset(self) -> None:
        """Drop the snapshot after a rollback; the next entry reloads it from the store."""
        self._loaded = False
        self._cv_id = None
        self._canonical = {}
        self._pending = set()
        self._seen.clear()
        self._categories.clear()

    async def reconcile_categories(
        self,
        categories: Iterable[ExtractedCategory],
        *,
        source_data: dict | None = None,
    ) -> ReconciliationSummary:
        """Reconcile extracted categories in document order."""
        summary = ReconciliationSummary()
        for category in categories:
            summary.categories_processed += 1
            for entry in category.entries:
                outcome, record_id = await self.reconcile_entry(
                    category.name,
                    EntryCandidate.from_extracted(entry),
                    source_data=source_data,
                )
                self._count(summary, outcome, record_id)
        return summary

    async def reconcile_candidates(
        self,
        items: Iterable[tuple[str, EntryCandidate]],
        *,
        source_data: dict | None = None,
    ) -> ReconciliationSummary:
        """Reconcile (category name, candidate) pairs, e.g. email or PubMed entries."""
        summary = ReconciliationSummary()
        names = set()
        for category_name, candidate in items:
            names.add(category_name.strip().lower())
            outcome, record_id = await self.reconcile_entry(category_name, candidate, source_data=source_data)
            self._count(summary, outcome, record_id)
        summary.categories_processed = len(names)
        return summary

    @staticmethod
    def _count(summary: ReconciliationSummary, outcome: Outcome, record_id: int | None) -> None:
        if outcome is Outcome.CREATED:
            summary.entries_created += 1
            summary.created_ids.append(record_id)
        elif outcome is Outcome.UPDATED:
            summary.entries_updated += 1
        elif outcome is Outcome.SKIPPED:
            summary.duplicates_skipped += 1

    async def reconcile_entry(
        self,
        category_name: str,
        candidate: EntryCandidate,
        *,
        source_data: dict | None = None,
    ) -> tuple[Outcome, int | None]:
        """Decide and apply the outcome for a single entry.

        Returns:
            (outcome, id of the created or updated record)
        """
        if not self._loaded:
            await self.load()

        cfg = settings.reconciliation
        title = truncate(candidate.title, cfg.max_title_chars)
        key = title_key(title) if title else ""
        if not key:
            logger.debug(f"Skipping entry without a usable title: {candidate.title!r}")
            return Outcome.INVALID, None

        # Entries created earlier in this run are in _canonical too
        existing = self._canonical.get(key)
        if (
            existing is not None
            and self.augment_dates
            and existing.date is None
            and candidate.date is not None
        ):
            existing.date = candidate.date
            if candidate.location:
                existing.location = truncate(candidate.location, 255)
            await self.session.flush()
            self._seen.add(key)
            logger.info(f"Added date {candidate.date} to existing entry {existing.id}: {title[:80]}")
            return Outcome.UPDATED, existing.id

        if key in self._seen:
            logger.debug(f"Duplicate within run: {title[:80]}")
            return Outcome.SKIPPED, None

        self._seen.add(key)

        if existing is not None:
            return Outcome.SKIPPED, None

        if key in self._pending:
            return Outcome.SKIPPED, None

        provenance = {
            **(source_data or {}),
            **candidate.source_data,
            "imported_at": models.utcnow().isoformat(),
        }
        description = truncate(candidate.description, cfg.max_description_chars)

        if self.target is Target.PENDING:
            pending = await store.create_pending(
                self.session,
                self.user_id,
                title=title,
                description=description,
                date=candidate.date,
                start_date=candidate.start_date,
                end_date=candidate.end_date,
                location=truncate(candidate.location, 255),
                url=truncate(candidate.url, 1000),
                source_type=self.source_type.value,
                source_data=provenance,
                suggested_category=truncate(category_name, 255) or cfg.default_pending_category,
                ai_confidence=candidate.ai_confidence,
                ai_reasoning=candidate.ai_reasoning,
            )
            self._pending.add(key)
            return Outcome.CREATED, pending.id

        slot = await self._category_slot(category_name)
        entry = await store.create_entry(
            self.session,
            category_id=slot.id,
            title=title,
            description=description,
            date=candidate.date,
            location=truncate(candidate.location, 255),
            url=truncate(candidate.url, 1000),
            source_type=self.source_type.value,
            source_data=provenance,
            display_order=slot.next_order,
        )
        slot.next_order += 1
        self._canonical[key] = entry
        return Outcome.CREATED, entry.id

    async def _category_slot(self, name: str) -> _CategorySlot:
        """Resolve or create a category and lock it for ordered appends."""
        name = name.strip() or settings.reconciliation.default_pending_category
        cache_key = name.lower()
        slot = self._categories.get(cache_key)
        if slot is not None:
            return slot

        category = await store.find_category_by_name(self.session, self._cv_id, name)
        if category is None:
            # Re-check under the CV lock so concurrent runs create it once
            await store.get_or_create_cv(self.session, self.user_id, lock=True)
            category = await store.find_category_by_name(self.session, self._cv_id, name)
            if category is None:
                category = await store.create_category(self.session, self._cv_id, name)

        await store.lock_category(self.session, category.id)
        slot = _CategorySlot(
            id=category.id,
            name=category.name,
            next_order=await store.next_entry_order(self.session, category.id),
        )
        self._categories[cache_key] = slot
        return slot
