"""Ingestion entry points built on the shared reconciliation engine.

- import_document: whole document in one request, chunk by chunk
- import_chunk: one client-driven chunk of a larger document
- import_email: forwarded email -> pending entries
- preview_pubmed / import_pubmed: author search -> pending entries
- run_scheduled_pubmed_imports: per-user author search on a daily,
  weekly or monthly schedule, new articles staged for review

The background runner (pipelines.jobs) drives `process_chunk` as well, so
every path extracts, reconciles and charges a chunk the same way.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.extraction import ExtractionClient
from cvrecon import billing, models, store
from cvrecon.config import settings
from cvrecon.db import AsyncSessionMaker
from cvrecon.errors import CVReconError, IngestionError, InputError, InsufficientCreditsError, NotFoundError
from cvrecon.pipelines.chunking import TextChunk, chunk_text
from cvrecon.pipelines.dates import normalize_date, resolve_entry_date
from cvrecon.pipelines.normalization import strip_html
from cvrecon.pipelines.reconciliation import (
    EntryCandidate,
    ReconciliationEngine,
    ReconciliationSummary,
    Target,
)
from cvrecon.pubmed import PubMedArticle, PubMedClient, PubMedError, article_to_entry

logger = logging.getLogger(__name__)

STOPPED_INSUFFICIENT_CREDITS = "insufficient_credits"
SCHEDULED_SUCCESS = "success"
SCHEDULED_ERROR = "error"

PUBLICATIONS_CATEGORY = "Publications"
SCHEDULED_CONFIDENCE = 0.95
SCHEDULED_REASONING = "Found by the scheduled PubMed author search"

CHECK_INTERVALS = {
    models.CheckFrequency.DAILY.value: timedelta(days=1),
    models.CheckFrequency.WEEKLY.value: timedelta(days=7),
    models.CheckFrequency.MONTHLY.value: timedelta(days=30),
}


@dataclass
class ChunkOutcome:
    """Result of processing one chunk."""
    summary: ReconciliationSummary = field(default_factory=ReconciliationSummary)
    categories_found: int = 0
    failed: bool = False
    error: str | None = None
    balance_remaining: float | None = None


@dataclass
class DocumentImportResult:
    categories_found: int = 0
    entries_created: int = 0
    entries_updated: int = 0
    duplicates_skipped: int = 0
    chunks_processed: int = 0
    chunks_failed: int = 0
    total_chunks: int = 0
    stopped_reason: str | None = None
    balance_remaining: float | None = None

    def add(self, outcome: ChunkOutcome) -> None:
        self.categories_found += outcome.categories_found
        self.entries_created += outcome.summary.entries_created
        self.entries_updated += outcome.summary.entries_updated
        self.duplicates_skipped += outcome.summary.duplicates_skipped
        if outcome.balance_remaining is not None:
            self.balance_remaining = outcome.balance_remaining


async def _require_user(session: AsyncSession, user_id: int) -> models.User:
    user = await store.get_user(session, user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


async def process_chunk(
    session: AsyncSession,
    engine: ReconciliationEngine,
    extractor: ExtractionClient,
    user: models.User,
    chunk: TextChunk,
    *,
    file_name: str | None = None,
    cost: float | None = None,
    commit: bool = True,
) -> ChunkOutcome:
    """Check balance, extract, then reconcile and charge one chunk in one transaction.

    A failed extraction writes nothing and is not charged. If the balance was
    spent while the chunk was being extracted, the chunk's writes are rolled
    back together with the refused debit.

    Args:
        session: Database session
        engine: Reconciliation engine of the current run
        extractor: Extraction client
        user: Owner of the CV
        chunk: Chunk to process
        file_name: Original file name, kept in provenance
        cost: Chunk price (BILLING_COST_PER_CHUNK)
        commit: Commit the chunk here. Callers that pass False must commit
            and then call `engine.after_commit()` themselves

    Raises:
        InsufficientCreditsError: If the balance cannot cover the chunk
    """
    if cost is None:
        cost = settings.billing.cost_per_chunk
    user_id = user.id
    label = f"Chunk {chunk.index + 1}/{chunk.total_chunks}"

    await billing.ensure_balance(session, user_id, cost)
    # No transaction stays open across the upstream call
    await session.commit()

    started = time.perf_counter()
    extraction = await extractor.extract_chunk(chunk)
    if extraction.failed:
        logger.warning(f"{label}: extraction failed for user {user_id}: {extraction.error}")
        return ChunkOutcome(failed=True, error=extraction.error)

    if chunk.is_first and extraction.profile is not None:
        store.fill_profile(user, extraction.profile.filled())

    source_data = {"chunk_index": chunk.index}
    if file_name:
        source_data["file_name"] = file_name
    summary = await engine.reconcile_categories(extraction.categories, source_data=source_data)

    try:
        balance = await billing.debit(
            session,
            user_id,
            cost,
            billing.ACTION_CV_PARSE_CHUNK,
            details=f"{label}: {summary.entries_created} entries created",
        )
    except InsufficientCreditsError:
        await session.rollback()
        engine.reset()
        logger.info(f"{label}: balance spent during extraction, chunk for user {user_id} rolled back")
        raise

    if commit:
        await session.commit()
        engine.after_commit()

    logger.info(
        f"{label}: created={summary.entries_created} updated={summary.entries_updated} "
        f"skipped={summary.duplicates_skipped} in {time.perf_counter() - started:.2f}s"
    )
    return ChunkOutcome(
        summary=summary,
        categories_found=len(extraction.categories),
        balance_remaining=balance,
    )


async def import_document(
    session: AsyncSession,
    user_id: int,
    text: str,
    *,
    extractor: ExtractionClient,
    file_name: str | None = None,
    review: bool = False,
    max_chars: int | None = None,
) -> DocumentImportResult:
    """Import a whole document within the request.

    Chunks are processed in order. A chunk whose extraction fails is
    skipped; running out of credits stops the import and keeps what was
    written so far.

    Args:
        session: Database session
        user_id: Owner of the CV
        text: Extracted document text
        extractor: Extraction client
        file_name: Original file name, kept in provenance
        review: Stage entries for review instead of writing them to the CV
        max_chars: Chunk size override

    Returns:
        DocumentImportResult with counters

    Raises:
        InputError: If the text is empty
        InsufficientCreditsError: If the balance cannot cover the first chunk
        IngestionError: If the store fails mid-run
    """
    if not text or not text.strip():
        raise InputError("No text to import")

    user = await _require_user(session, user_id)
    cost = settings.billing.cost_per_chunk
    await billing.ensure_balance(session, user_id, cost)

    chunks = chunk_text(text, max_chars)
    engine = ReconciliationEngine(
        session,
        user_id,
        target=Target.PENDING if review else Target.CANONICAL,
        source_type=models.SourceType.CV_IMPORT,
    )
    result = DocumentImportResult(total_chunks=len(chunks))
    logger.info(f"Importing document for user {user_id}: {len(text)} chars, {len(chunks)} chunks")

    try:
        for chunk in chunks:
            try:
                outcome = await process_chunk(session, engine, extractor, user, chunk, file_name=file_name, cost=cost)
            except InsufficientCreditsError:
                result.stopped_reason = STOPPED_INSUFFICIENT_CREDITS
                logger.info(f"Stopping import for user {user_id} at chunk {chunk.index + 1}: out of credits")
                break
            if outcome.failed:
                result.chunks_failed += 1
                continue
            result.chunks_processed += 1
            result.add(outcome)
    except SQLAlchemyError as e:
        await session.rollback()
        logger.error(f"Store failure while importing for user {user_id}: {e}")
        raise IngestionError("Import failed while writing to the store") from e

    logger.info(
        f"Document import for user {user_id} done: {result.entries_created} created, "
        f"{result.entries_updated} updated, {result.duplicates_skipped} duplicates, "
        f"{result.chunks_failed} failed chunks"
    )
    return result


async def import_chunk(
    session: AsyncSession,
    user_id: int,
    chunk: TextChunk,
    *,
    extractor: ExtractionClient,
) -> ChunkOutcome:
    """Process one chunk sent by a client that splits the document itself.

    Existing undated entries get the date from a matching new extraction.

    Raises:
        InputError: If the chunk text is empty
        InsufficientCreditsError: If the balance cannot cover the chunk
        IngestionError: If the store fails
    """
    if not chunk.text.strip():
        raise InputError("Chunk text is required")

    user = await _require_user(session, user_id)
    engine = ReconciliationEngine(
        session,
        user_id,
        target=Target.CANONICAL,
        source_type=models.SourceType.CV_IMPORT,
        augment_dates=True,
    )
    try:
        outcome = await process_chunk(session, engine, extractor, user, chunk)
    except SQLAlchemyError as e:
        await session.rollback()
        raise IngestionError("Chunk import failed while writing to the store") from e

    if outcome.balance_remaining is None:
        outcome.balance_remaining = await billing.get_balance(session, user_id)
    return outcome


@dataclass
class EmailImportResult:
    entries_found: int = 0
    entries_created: int = 0
    duplicates_skipped: int = 0
    extraction_failed: bool = False


async def import_email(
    session: AsyncSession,
    user_id: int,
    *,
    sender: str,
    subject: str,
    text_body: str | None,
    html_body: str | None = None,
    received_at: datetime | None = None,
    extractor: ExtractionClient,
) -> EmailImportResult:
    """Stage CV-worthy items from an email for review.

    Raises:
        InputError: If the email has no body
    """
    body = (text_body or "").strip() or strip_html(html_body or "")
    if not body:
        raise InputError("Email body is empty")

    await _require_user(session, user_id)
    extraction = await extractor.extract_email(sender, subject, body, received_at)
    if extraction.failed:
        return EmailImportResult(extraction_failed=True)

    items = []
    for entry in extraction.entries:
        candidate = EntryCandidate(
            title=entry.title,
            description=entry.description,
            date=resolve_entry_date(entry.raw_date_text, entry.title, entry.description),
            location=entry.location,
            url=entry.url,
            start_date=normalize_date(entry.start_date),
            end_date=normalize_date(entry.end_date),
            ai_confidence=entry.confidence,
            ai_reasoning=entry.reasoning,
        )
        items.append((entry.suggested_category, candidate))

    engine = ReconciliationEngine(session, user_id, target=Target.PENDING, source_type=models.SourceType.EMAIL)
    source_data = {
        "from": sender,
        "subject": subject,
        "date": received_at.isoformat() if received_at else None,
    }
    try:
        summary = await engine.reconcile_candidates(items, source_data=source_data)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise IngestionError("Email import failed while writing to the store") from e

    logger.info(f"Email '{subject[:60]}' for user {user_id}: {summary.entries_created} staged of {len(items)}")
    return EmailImportResult(
        entries_found=len(items),
        entries_created=summary.entries_created,
        duplicates_skipped=summary.duplicates_skipped,
    )


async def _known_pmids(session: AsyncSession, user_id: int) -> set[str]:
    """PMIDs already staged or in the CV."""
    pending = await session.execute(
        select(models.PendingEntry.source_data).where(models.PendingEntry.user_id == user_id)
    )
    canonical = await session.execute(
        select(models.Entry.source_data)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.CV.user_id == user_id)
    )
    pmids = set()
    for source_data in [*pending.scalars().all(), *canonical.scalars().all()]:
        if isinstance(source_data, dict) and source_data.get("pmid"):
            pmids.add(str(source_data["pmid"]))
    return pmids


async def _search_pubmed(session: AsyncSession, user_id: int, author: str, client: PubMedClient) -> list[PubMedArticle]:
    if not author or not author.strip():
        raise InputError("Author name is required")
    await _require_user(session, user_id)

    cost = settings.billing.pubmed_search_cost
    await billing.ensure_balance(session, user_id, cost)
    articles = await client.articles_by_author(author)
    await billing.debit(session, user_id, cost, billing.ACTION_PUBMED_SEARCH, details=f"PubMed search: {author}")
    await session.commit()
    return articles


@dataclass
class PubMedPreviewItem:
    article: PubMedArticle
    is_new: bool


async def preview_pubmed(
    session: AsyncSession,
    user_id: int,
    author: str,
    *,
    client: PubMedClient,
) -> list[PubMedPreviewItem]:
    """Search by author and flag articles not yet in the CV or review queue."""
    articles = await _search_pubmed(session, user_id, author, client)
    known_pmids = await _known_pmids(session, user_id)
    engine = ReconciliationEngine(session, user_id, target=Target.PENDING, source_type=models.SourceType.PUBMED)
    await engine.load()

    items = [
        PubMedPreviewItem(
            article=article,
            is_new=article.pmid not in known_pmids and not engine.is_known(article.title),
        )
        for article in articles
    ]
    logger.info(f"PubMed preview for '{author}': {sum(item.is_new for item in items)} new of {len(items)}")
    return items


@dataclass
class PubMedImportResult:
    imported: int = 0
    skipped: int = 0


async def _stage_articles(
    session: AsyncSession,
    user_id: int,
    articles: list[PubMedArticle],
    *,
    scheduled: bool = False,
) -> PubMedImportResult:
    """Stage articles as pending publications, skipping known PMIDs and titles."""
    known_pmids = await _known_pmids(session, user_id)
    result = PubMedImportResult()
    items = []
    for article in articles:
        if article.pmid in known_pmids:
            result.skipped += 1
            continue
        known_pmids.add(article.pmid)
        candidate = article_to_entry(article)
        if scheduled:
            candidate.ai_confidence = SCHEDULED_CONFIDENCE
            candidate.ai_reasoning = SCHEDULED_REASONING
            candidate.source_data["auto_import"] = True
        items.append((PUBLICATIONS_CATEGORY, candidate))

    engine = ReconciliationEngine(session, user_id, target=Target.PENDING, source_type=models.SourceType.PUBMED)
    try:
        summary = await engine.reconcile_candidates(items)
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        raise IngestionError("PubMed import failed while writing to the store") from e

    result.imported = summary.entries_created
    result.skipped += summary.duplicates_skipped
    return result


async def import_pubmed(
    session: AsyncSession,
    user_id: int,
    author: str,
    *,
    pmids: list[str] | None = None,
    client: PubMedClient,
) -> PubMedImportResult:
    """Stage an author's articles (optionally only the selected PMIDs) for review."""
    articles = await _search_pubmed(session, user_id, author, client)
    if pmids:
        wanted = {str(pmid) for pmid in pmids}
        articles = [article for article in articles if article.pmid in wanted]

    result = await _stage_articles(session, user_id, articles)
    logger.info(f"PubMed import for '{author}': {result.imported} imported, {result.skipped} skipped")
    return result


async def get_pubmed_subscription(session: AsyncSession, user_id: int) -> models.PubMedSubscription:
    """The user's scheduled-check settings, created disabled on first access."""
    await _require_user(session, user_id)
    subscription = await session.scalar(
        select(models.PubMedSubscription)
        .where(models.PubMedSubscription.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    if subscription is None:
        subscription = models.PubMedSubscription(
            user_id=user_id,
            enabled=False,
            frequency=models.CheckFrequency.WEEKLY.value,
        )
        session.add(subscription)
        await session.commit()
    return subscription


async def update_pubmed_subscription(
    session: AsyncSession,
    user_id: int,
    *,
    enabled: bool,
    author_name: str | None,
    frequency: models.CheckFrequency = models.CheckFrequency.WEEKLY,
) -> models.PubMedSubscription:
    """Turn the scheduled author search on or off.

    Raises:
        InputError: If enabling without an author name
    """
    author_name = (author_name or "").strip() or None
    if enabled and author_name is None:
        raise InputError("An author name is required to enable scheduled PubMed checks")

    subscription = await get_pubmed_subscription(session, user_id)
    if author_name != subscription.author_name:
        # A new author starts a fresh schedule
        subscription.last_checked_at = None
    subscription.enabled = enabled
    subscription.author_name = author_name
    subscription.frequency = models.CheckFrequency(frequency).value
    await session.commit()
    logger.info(f"PubMed schedule for user {user_id}: enabled={enabled} author={author_name!r} {subscription.frequency}")
    return subscription


def is_check_due(subscription: models.PubMedSubscription, now: datetime) -> bool:
    if subscription.last_checked_at is None:
        return True
    interval = CHECK_INTERVALS.get(subscription.frequency, CHECK_INTERVALS[models.CheckFrequency.WEEKLY.value])
    return now - subscription.last_checked_at >= interval


@dataclass
class ScheduledCheckResult:
    """Outcome of one user's scheduled PubMed check."""
    user_id: int
    author_name: str
    status: str
    found: int = 0
    imported: int = 0
    error: str | None = None


async def run_scheduled_pubmed_imports(
    session: AsyncSession,
    *,
    client: PubMedClient,
    now: datetime | None = None,
) -> list[ScheduledCheckResult]:
    """Run every due subscription once. New articles are staged for review.

    Each user is isolated: a failed check is reported and retried on the next
    sweep, the other users are still checked. A user who cannot pay for the
    search is skipped until the next period.
    """
    now = now or models.utcnow()
    subscriptions = (
        await session.scalars(
            select(models.PubMedSubscription)
            .where(
                models.PubMedSubscription.enabled.is_(True),
                models.PubMedSubscription.author_name.is_not(None),
            )
            .order_by(models.PubMedSubscription.id)
            .execution_options(populate_existing=True)
        )
    ).all()
    due = [(s.id, s.user_id, s.author_name) for s in subscriptions if is_check_due(s, now)]
    await session.commit()
    logger.info(f"Scheduled PubMed sweep: {len(due)} of {len(subscriptions)} subscriptions due")

    results = []
    for subscription_id, user_id, author in due:
        try:
            articles = await _search_pubmed(session, user_id, author, client)
            staged = await _stage_articles(session, user_id, articles, scheduled=True)
            result = ScheduledCheckResult(
                user_id,
                author,
                SCHEDULED_SUCCESS,
                found=len(articles),
                imported=staged.imported,
            )
        except InsufficientCreditsError:
            await session.rollback()
            result = ScheduledCheckResult(user_id, author, STOPPED_INSUFFICIENT_CREDITS)
        except (PubMedError, CVReconError, SQLAlchemyError) as e:
            await session.rollback()
            logger.warning(f"Scheduled PubMed check for user {user_id} ('{author}') failed: {e}")
            results.append(ScheduledCheckResult(user_id, author, SCHEDULED_ERROR, error=str(e)))
            continue

        await session.execute(
            update(models.PubMedSubscription)
            .where(models.PubMedSubscription.id == subscription_id)
            .values(last_checked_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        logger.info(f"Scheduled PubMed check for user {user_id}: {result.status}, {result.imported} staged")
        results.append(result)
    return results


async def pubmed_schedule_loop(
    stop_event: asyncio.Event,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    client: PubMedClient | None = None,
    interval: float | None = None,
) -> None:
    """Worker loop: sweep PubMed subscriptions every PUBMED_SCHEDULE_INTERVAL_SECONDS."""
    factory = session_factory or AsyncSessionMaker
    client = client or PubMedClient()
    interval = interval or settings.pubmed.schedule_interval_seconds
    logger.info(f"PubMed scheduler started (every {interval}s)")

    while not stop_event.is_set():
        try:
            async with factory() as session:
                await run_scheduled_pubmed_imports(session, client=client)
        except SQLAlchemyError as e:
            logger.error(f"PubMed scheduler database error: {e}")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("PubMed scheduler stopped")
