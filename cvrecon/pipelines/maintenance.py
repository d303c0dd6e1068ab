"""On-demand maintenance over a user's whole CV.

Duplicate scan: canonical entries are grouped by title key. In every group
with more than one member each entry is scored

    100 * has PMID + 50 * has DOI + len(description) / 100

and the best one is proposed to keep. Nothing is deleted by the scan itself;
deletion takes an explicit id list and only touches the requester's entries.

Missing dates: list undated entries, re-run the date normalizer over title
and description, or set a date by hand.

PMID enrichment: publications without a PMID are looked up on PubMed by
title; the PMID feeds the duplicate score above.
"""
from __future__ import annotations

import datetime as dt
import logging
from collections import defaultdict
from dataclasses import dataclass, field

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.cv_sections import PUBLICATION_CATEGORIES
from cvrecon import models, store
from cvrecon.errors import InputError, NotFoundError
from cvrecon.pipelines.dates import resolve_entry_date
from cvrecon.pipelines.normalization import extract_doi, title_key
from cvrecon.pubmed import PubMedArticle, PubMedClient, PubMedError

logger = logging.getLogger(__name__)

PMID_WEIGHT = 100
DOI_WEIGHT = 50
DESCRIPTION_DIVISOR = 100


@dataclass
class ScoredEntry:
    """Duplicate group member with its keep score."""
    entry: models.Entry
    category_name: str
    has_pmid: bool
    has_doi: bool
    score: float


@dataclass
class DuplicateGroup:
    key: str
    keep_id: int
    members: list[ScoredEntry]

    @property
    def delete_ids(self) -> list[int]:
        return [member.entry.id for member in self.members if member.entry.id != self.keep_id]


@dataclass
class DuplicateScan:
    groups: list[DuplicateGroup] = field(default_factory=list)
    total_entries: int = 0

    @property
    def duplicate_count(self) -> int:
        return sum(len(group.members) - 1 for group in self.groups)

    @property
    def after_cleanup(self) -> int:
        return self.total_entries - self.duplicate_count


def score_entry(entry: models.Entry) -> tuple[bool, bool, float]:
    """Return (has_pmid, has_doi, score) for one entry."""
    source_data = entry.source_data if isinstance(entry.source_data, dict) else {}
    pmid = has_pmid(entry)
    has_doi = bool(source_data.get("doi")) or extract_doi(entry.description) is not None
    score = (
        PMID_WEIGHT * pmid
        + DOI_WEIGHT * has_doi
        + len(entry.description or "") / DESCRIPTION_DIVISOR
    )
    return pmid, has_doi, score


async def scan_duplicates(session: AsyncSession, user_id: int) -> DuplicateScan:
    """Group the user's canonical entries by title key and pick a keeper per group."""
    result = await session.execute(
        select(models.Entry, models.Category.name)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.CV.user_id == user_id)
        .order_by(models.Category.display_order, models.Entry.display_order, models.Entry.id)
    )
    rows = result.all()

    grouped: dict[str, list[tuple[models.Entry, str]]] = defaultdict(list)
    for entry, category_name in rows:
        grouped[title_key(entry.title)].append((entry, category_name))

    scan = DuplicateScan(total_entries=len(rows))
    for key, members in grouped.items():
        if len(members) < 2:
            continue
        scored = []
        for entry, category_name in members:
            pmid, doi, score = score_entry(entry)
            scored.append(ScoredEntry(entry, category_name, pmid, doi, score))
        # Stable: ties keep display order
        scored.sort(key=lambda member: member.score, reverse=True)
        scan.groups.append(DuplicateGroup(key=key, keep_id=scored[0].entry.id, members=scored))

    scan.groups.sort(key=lambda group: len(group.members), reverse=True)
    logger.info(
        f"Duplicate scan for user {user_id}: {len(scan.groups)} groups, "
        f"{scan.duplicate_count} removable of {scan.total_entries} entries"
    )
    return scan


async def delete_entries(session: AsyncSession, user_id: int, entry_ids: list[int]) -> int:
    """Delete the listed entries that belong to the user; others are ignored.

    Raises:
        InputError: If no ids are given
    """
    if not entry_ids:
        raise InputError("No entries specified for deletion")

    owned = await session.execute(
        select(models.Entry.id)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.CV.user_id == user_id, models.Entry.id.in_(set(entry_ids)))
    )
    owned_ids = list(owned.scalars().all())
    if owned_ids:
        await session.execute(delete(models.Entry).where(models.Entry.id.in_(owned_ids)))
    await session.commit()

    ignored = len(set(entry_ids)) - len(owned_ids)
    if ignored:
        logger.warning(f"Ignored {ignored} entry ids not owned by user {user_id}")
    logger.info(f"Deleted {len(owned_ids)} duplicate entries for user {user_id}")
    return len(owned_ids)


async def list_missing_dates(session: AsyncSession, user_id: int) -> list[tuple[models.Entry, str]]:
    return await store.list_entries_missing_date(session, user_id)


@dataclass
class DateFixResult:
    total: int = 0
    fixed: int = 0
    updates: list[dict] = field(default_factory=list)

    @property
    def still_missing(self) -> int:
        return self.total - self.fixed


async def fix_missing_dates(session: AsyncSession, user_id: int) -> DateFixResult:
    """Re-run date normalization over title and description of undated entries."""
    rows = await store.list_entries_missing_date(session, user_id)
    result = DateFixResult(total=len(rows))
    for entry, _ in rows:
        date = resolve_entry_date(None, entry.title, entry.description)
        if date is None:
            continue
        entry.date = date
        result.fixed += 1
        result.updates.append({"id": entry.id, "title": entry.title, "date": date.isoformat()})

    await session.commit()
    logger.info(f"Fixed {result.fixed}/{result.total} missing dates for user {user_id}")
    return result


async def set_entry_date(session: AsyncSession, user_id: int, entry_id: int, date: dt.date) -> models.Entry:
    """Set a date by hand.

    Raises:
        NotFoundError: If the entry is missing or not owned by the user
    """
    entry = await store.get_owned_entry(session, entry_id, user_id)
    if entry is None:
        raise NotFoundError("Entry not found")
    entry.date = date
    await session.commit()
    logger.info(f"Set date {date} on entry {entry_id}")
    return entry


def has_pmid(entry: models.Entry) -> bool:
    source_data = entry.source_data if isinstance(entry.source_data, dict) else {}
    return bool(source_data.get("pmid"))


@dataclass
class PmidCandidates:
    """Publication entries, split by whether they carry a PMID."""
    entries: list[tuple[models.Entry, str]] = field(default_factory=list)
    total: int = 0
    with_pmid: int = 0

    @property
    def without_pmid(self) -> int:
        return len(self.entries)


async def list_pmid_candidates(session: AsyncSession, user_id: int) -> PmidCandidates:
    """Entries in publication categories that have no PMID yet."""
    names = [name.lower() for name in PUBLICATION_CATEGORIES]
    result = await session.execute(
        select(models.Entry, models.Category.name)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.CV.user_id == user_id, func.lower(models.Category.name).in_(names))
        .order_by(models.Category.display_order, models.Entry.display_order, models.Entry.id)
    )
    candidates = PmidCandidates()
    for entry, category_name in result.all():
        candidates.total += 1
        if has_pmid(entry):
            candidates.with_pmid += 1
        else:
            candidates.entries.append((entry, category_name))
    return candidates


async def search_pmid(client: PubMedClient, title: str) -> list[PubMedArticle]:
    """PubMed articles matching a title, for the user to pick from.

    Raises:
        InputError: If the title is empty
    """
    if not title or not title.strip():
        raise InputError("Title is required")
    return await client.articles_by_title(title)


def _apply_pmid(entry: models.Entry, pmid: str, doi: str | None) -> None:
    source_data = dict(entry.source_data) if isinstance(entry.source_data, dict) else {}
    source_data["pmid"] = pmid
    if doi:
        source_data["doi"] = doi
    # Reassign so the JSON column is flagged as changed
    entry.source_data = source_data
    entry.source_type = models.SourceType.PUBMED.value


async def set_entry_pmid(
    session: AsyncSession,
    user_id: int,
    entry_id: int,
    pmid: str,
    doi: str | None = None,
) -> models.Entry:
    """Record a PMID (and optionally a DOI) on an entry.

    Raises:
        InputError: If the PMID is not numeric
        NotFoundError: If the entry is missing or not owned by the user
    """
    pmid = (pmid or "").strip()
    if not pmid.isdigit():
        raise InputError("PMID must be numeric")
    entry = await store.get_owned_entry(session, entry_id, user_id)
    if entry is None:
        raise NotFoundError("Entry not found")

    _apply_pmid(entry, pmid, doi.strip() if doi else None)
    await session.commit()
    logger.info(f"Set PMID {pmid} on entry {entry_id}")
    return entry


@dataclass
class PmidEnrichResult:
    checked: int = 0
    enriched: int = 0
    lookup_failed: int = 0
    updates: list[dict] = field(default_factory=list)


async def enrich_pmids(session: AsyncSession, user_id: int, client: PubMedClient) -> PmidEnrichResult:
    """Look up every publication without a PMID by title and fill in exact matches.

    A PubMed article matches when its title key equals the entry's. Lookup
    failures are counted and the remaining entries are still checked.
    """
    candidates = await list_pmid_candidates(session, user_id)
    await session.commit()

    result = PmidEnrichResult(checked=candidates.without_pmid)
    for entry, _ in candidates.entries:
        try:
            articles = await client.articles_by_title(entry.title)
        except PubMedError as e:
            logger.warning(f"PMID lookup failed for entry {entry.id}: {e}")
            result.lookup_failed += 1
            continue

        key = title_key(entry.title)
        match = next((article for article in articles if title_key(article.title) == key), None)
        if match is None:
            continue
        _apply_pmid(entry, match.pmid, match.doi)
        result.enriched += 1
        result.updates.append({"id": entry.id, "title": entry.title, "pmid": match.pmid, "doi": match.doi})

    await session.commit()
    logger.info(
        f"PMID enrichment for user {user_id}: {result.enriched}/{result.checked} matched, "
        f"{result.lookup_failed} lookups failed"
    )
    return result
