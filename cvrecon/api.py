"""FastAPI app: document, chunk, email and PubMed imports, review queue, CV maintenance.

Every endpoint except /health and /cron/pubmed acts on behalf of the user
named in the `X-User-Id` header; /cron/pubmed requires `X-Cron-Secret`.
Domain errors are mapped to JSON error bodies by the exception handlers
below.
"""
from __future__ import annotations

import datetime as dt
import logging
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Response, UploadFile, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from ai.extraction import ExtractionClient

from . import billing, models, store
from .config import settings
from .db import get_session
from .errors import IngestionError, InputError, InsufficientCreditsError, NotFoundError
from .logging_config import setup_logging
from .parsers import ParseError, TextExtractor, detect_media_type, extract_text
from .pipelines import ingest, jobs, maintenance, review
from .pipelines.chunking import TextChunk
from .pubmed import PUBMED_ARTICLE_URL, PubMedClient, PubMedError

logger = logging.getLogger(__name__)


# Pydantic request/response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class InsufficientCreditsResponse(ErrorResponse):
    """402 body; the caller should prompt for a top-up, not retry."""
    needs_credits: bool = True
    current_balance: float
    required: float


class DocumentImportResponse(BaseModel):
    """Synchronous document import summary."""
    categories_found: int
    entries_created: int
    entries_updated: int
    duplicates_skipped: int
    chunks_processed: int
    chunks_failed: int
    total_chunks: int
    stopped_reason: str | None = None
    balance_remaining: float | None = None


class TaskQueuedResponse(BaseModel):
    """Async document import handle."""
    task_id: str
    status: str = "queued"


class TaskStatusResponse(BaseModel):
    """Background import task state."""
    task_id: str
    state: str
    progress: int
    result: dict | None = None
    failure_reason: str | None = None
    is_finished: bool


class ChunkImportRequest(BaseModel):
    """One chunk of a document split by the client."""
    text: str = Field(min_length=1)
    chunk_index: int = Field(ge=0)
    total_chunks: int = Field(ge=1)
    is_first_chunk: bool = False
    is_last_chunk: bool = False

    @model_validator(mode="after")
    def check_index(self) -> ChunkImportRequest:
        if self.chunk_index >= self.total_chunks:
            raise ValueError("chunk_index must be lower than total_chunks")
        return self


class ChunkImportResponse(BaseModel):
    """Per-chunk import result."""
    entries_created: int
    entries_updated: int
    duplicates_skipped: int
    categories_processed: int
    is_complete: bool
    extraction_failed: bool = False
    balance_remaining: float | None = None


class EmailImportRequest(BaseModel):
    """Forwarded email."""
    sender: str = Field(min_length=1)
    subject: str = ""
    text_body: str | None = None
    html_body: str | None = None
    received_at: dt.datetime | None = None


class EmailImportResponse(BaseModel):
    """Email import result."""
    entries_found: int
    entries_created: int
    duplicates_skipped: int
    extraction_failed: bool = False


class PubMedArticleDTO(BaseModel):
    """PubMed article in a preview."""
    pmid: str
    title: str
    authors: list[str]
    journal: str
    pub_date: str
    doi: str | None = None
    url: str
    is_new: bool


class PubMedPreviewResponse(BaseModel):
    """Author search preview."""
    author: str
    total_found: int
    new_count: int
    articles: list[PubMedArticleDTO] = Field(default_factory=list)


class PubMedImportRequest(BaseModel):
    """Stage an author's articles for review."""
    author: str = Field(min_length=1)
    pmids: list[str] | None = None


class PubMedImportResponse(BaseModel):
    """PubMed import result."""
    imported: int
    skipped: int


class PendingEntryDTO(BaseModel):
    """Staged entry awaiting review."""
    id: int
    title: str
    description: str | None = None
    date: dt.date | None = None
    start_date: dt.date | None = None
    end_date: dt.date | None = None
    location: str | None = None
    url: str | None = None
    source_type: str | None = None
    source_data: dict | None = None
    suggested_category: str | None = None
    ai_confidence: float | None = None
    ai_reasoning: str | None = None
    created_at: dt.datetime

    model_config = {"from_attributes": True}


class PendingListResponse(BaseModel):
    """Pending entries, newest first."""
    entries: list[PendingEntryDTO]
    count: int


class ApproveRequest(BaseModel):
    """Target category chosen by the reviewer."""
    category_id: int


class EntryDTO(BaseModel):
    """Canonical CV entry."""
    id: int
    category_id: int
    title: str
    description: str | None = None
    date: dt.date | None = None
    location: str | None = None
    url: str | None = None
    source_type: str | None = None
    display_order: int

    model_config = {"from_attributes": True}


class BulkApproveResponse(BaseModel):
    """Bulk approval result."""
    approved: int
    failed: int
    total: int
    errors: list[dict] = Field(default_factory=list)


class DuplicateMemberDTO(BaseModel):
    """Entry inside a duplicate group."""
    id: int
    title: str
    description: str | None = None
    date: dt.date | None = None
    category_name: str
    source_type: str | None = None
    has_pmid: bool
    has_doi: bool
    score: float


class DuplicateGroupDTO(BaseModel):
    """Entries sharing a title key; keep_id is the proposed keeper."""
    key: str
    keep_id: int
    delete_ids: list[int]
    entries: list[DuplicateMemberDTO]


class DuplicateScanResponse(BaseModel):
    """Duplicate scan over the whole CV."""
    groups: list[DuplicateGroupDTO]
    total_entries: int
    duplicate_count: int
    after_cleanup: int


class DeleteEntriesRequest(BaseModel):
    """Entries to delete after a duplicate scan."""
    entry_ids: list[int] = Field(default_factory=list)


class DeleteEntriesResponse(BaseModel):
    deleted_count: int


class MissingDateDTO(BaseModel):
    """Entry without a date."""
    id: int
    title: str
    description: str | None = None
    category_name: str


class MissingDatesResponse(BaseModel):
    entries: list[MissingDateDTO]
    count: int


class FixDatesResponse(BaseModel):
    """Result of re-running date extraction."""
    total: int
    fixed: int
    still_missing: int
    updates: list[dict] = Field(default_factory=list)


class SetDateRequest(BaseModel):
    date: dt.date


class BalanceResponse(BaseModel):
    balance_usd: float
    needs_reload: bool


class PmidCandidateDTO(BaseModel):
    """Publication entry without a PMID."""
    id: int
    title: str
    description: str | None = None
    date: dt.date | None = None
    category_name: str


class PmidCandidatesResponse(BaseModel):
    entries: list[PmidCandidateDTO]
    total_publications: int
    with_pmid: int
    without_pmid: int


class PmidSearchResponse(BaseModel):
    """PubMed articles matching a title."""
    title: str
    articles: list[PubMedArticleDTO] = Field(default_factory=list)


class SetPmidRequest(BaseModel):
    entry_id: int
    pmid: str = Field(min_length=1)
    doi: str | None = None


class PmidEnrichResponse(BaseModel):
    """Automatic title lookup result."""
    checked: int
    enriched: int
    lookup_failed: int
    updates: list[dict] = Field(default_factory=list)


class PubMedSettingsDTO(BaseModel):
    """Scheduled PubMed author search."""
    enabled: bool
    author_name: str | None = None
    frequency: models.CheckFrequency = models.CheckFrequency.WEEKLY
    last_checked_at: dt.datetime | None = None


class PubMedSettingsRequest(BaseModel):
    enabled: bool
    author_name: str | None = None
    frequency: models.CheckFrequency = models.CheckFrequency.WEEKLY


class ScheduledCheckDTO(BaseModel):
    user_id: int
    author_name: str
    status: str
    found: int = 0
    imported: int = 0
    error: str | None = None


class CronPubMedResponse(BaseModel):
    """One sweep over the due PubMed subscriptions."""
    processed: int
    results: list[ScheduledCheckDTO] = Field(default_factory=list)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    setup_logging()
    logger.info("Application starting up")

    yield

    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="CV ingestion, reconciliation and review",
    lifespan=lifespan,
)


# CORS middleware
from fastapi.middleware.cors import CORSMiddleware

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://localhost:3001"],  # Frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ErrorResponse(error=error, detail=detail).model_dump())


@app.exception_handler(ParseError)
async def parse_error_handler(request, exc: ParseError):
    """Handle document parsing errors."""
    logger.warning(f"Parse error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, "parse_error", str(exc))


@app.exception_handler(InputError)
async def input_error_handler(request, exc: InputError):
    """Handle invalid caller input."""
    logger.warning(f"Input error: {exc}")
    return _error(status.HTTP_400_BAD_REQUEST, exc.code, str(exc))


@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    """Handle missing or foreign records."""
    return _error(status.HTTP_404_NOT_FOUND, exc.code, str(exc))


@app.exception_handler(InsufficientCreditsError)
async def insufficient_credits_handler(request, exc: InsufficientCreditsError):
    """Handle an exhausted credit balance."""
    logger.info(f"Insufficient credits: balance {exc.current_balance}, required {exc.required}")
    return JSONResponse(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        content=InsufficientCreditsResponse(
            error=exc.code,
            detail=str(exc),
            current_balance=exc.current_balance,
            required=exc.required,
        ).model_dump(),
    )


@app.exception_handler(IngestionError)
async def ingestion_error_handler(request, exc: IngestionError):
    """Handle a failed import run."""
    logger.error(f"Ingestion error: {exc}")
    return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, exc.code, str(exc))


@app.exception_handler(PubMedError)
async def pubmed_error_handler(request, exc: PubMedError):
    """Handle PubMed upstream failures."""
    logger.error(f"PubMed error: {exc}")
    return _error(status.HTTP_502_BAD_GATEWAY, "pubmed_error", str(exc))


# Dependencies
async def get_current_user_id(
    x_user_id: int | None = Header(default=None),
    session: AsyncSession = Depends(get_session),
) -> int:
    """Resolve the caller from the X-User-Id header."""
    if x_user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="X-User-Id header is required")
    if await store.get_user(session, x_user_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return x_user_id


def get_extraction_client() -> ExtractionClient:
    return ExtractionClient()


def get_pubmed_client() -> PubMedClient:
    return PubMedClient()


def get_text_extractor() -> TextExtractor:
    return extract_text


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.post("/import/document", response_model=DocumentImportResponse | TaskQueuedResponse)
async def import_document(
    response: Response,
    file: UploadFile = File(..., description="CV file (PDF or plain text)"),
    mode: Literal["sync", "async"] = Query(default="sync"),
    review_first: bool = Query(default=False, alias="review"),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    extractor: ExtractionClient = Depends(get_extraction_client),
    text_extractor: TextExtractor = Depends(get_text_extractor),
) -> DocumentImportResponse | TaskQueuedResponse:
    """Import a CV document.

    sync: the document is chunked, extracted and reconciled within the
    request. async: the text is queued as a background task (202) after the
    credit admission check.

    Args:
        response: Used to set 202 for queued imports
        file: Uploaded document
        mode: "sync" or "async"
        review_first: Stage entries for review instead of writing them to the CV
        user_id: Caller (injected)
        session: Database session (injected)
        extractor: Extraction client (injected)
        text_extractor: Bytes-to-text collaborator (injected)

    Returns:
        DocumentImportResponse (sync) or TaskQueuedResponse (async)
    """
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Filename is required")

    logger.info(f"Received document upload: {file.filename} (mode={mode})")
    try:
        content = await file.read()
        media_type = detect_media_type(file.filename, file.content_type, content)
        text = text_extractor(content, media_type.value)

        if mode == "async":
            task = await jobs.submit(session, user_id, text, original_file_name=file.filename)
            response.status_code = status.HTTP_202_ACCEPTED
            return TaskQueuedResponse(task_id=task.id)

        result = await ingest.import_document(
            session,
            user_id,
            text,
            extractor=extractor,
            file_name=file.filename,
            review=review_first,
        )
        return DocumentImportResponse(
            categories_found=result.categories_found,
            entries_created=result.entries_created,
            entries_updated=result.entries_updated,
            duplicates_skipped=result.duplicates_skipped,
            chunks_processed=result.chunks_processed,
            chunks_failed=result.chunks_failed,
            total_chunks=result.total_chunks,
            stopped_reason=result.stopped_reason,
            balance_remaining=result.balance_remaining,
        )
    except (ParseError, InputError, InsufficientCreditsError, IngestionError, NotFoundError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error importing document: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal server error: {str(e)}",
        )
    finally:
        await file.close()


@app.post("/import/chunk", response_model=ChunkImportResponse)
async def import_chunk(
    request: ChunkImportRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    extractor: ExtractionClient = Depends(get_extraction_client),
) -> ChunkImportResponse:
    """Import one chunk of a document the client has split itself."""
    chunk = TextChunk(
        index=request.chunk_index,
        total_chunks=request.total_chunks,
        text=request.text,
        start=0,
    )
    outcome = await ingest.import_chunk(session, user_id, chunk, extractor=extractor)
    return ChunkImportResponse(
        entries_created=outcome.summary.entries_created,
        entries_updated=outcome.summary.entries_updated,
        duplicates_skipped=outcome.summary.duplicates_skipped,
        categories_processed=outcome.summary.categories_processed,
        is_complete=request.is_last_chunk,
        extraction_failed=outcome.failed,
        balance_remaining=outcome.balance_remaining,
    )


def _task_response(task_status: jobs.TaskStatus) -> TaskStatusResponse:
    return TaskStatusResponse(
        task_id=task_status.task_id,
        state=task_status.state,
        progress=task_status.progress,
        result=task_status.result,
        failure_reason=task_status.failure_reason,
        is_finished=task_status.is_finished,
    )


@app.get("/import/tasks/{task_id}", response_model=TaskStatusResponse)
async def get_task(
    task_id: str,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> TaskStatusResponse:
    """Poll a background import."""
    return _task_response(await jobs.get_status(session, user_id, task_id))


@app.delete("/import/tasks/{task_id}", response_model=TaskStatusResponse)
async def cancel_task(
    task_id: str,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> TaskStatusResponse:
    """Cancel a background import that has not started yet."""
    return _task_response(await jobs.cancel(session, user_id, task_id))


@app.post("/import/email", response_model=EmailImportResponse)
async def import_email(
    request: EmailImportRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    extractor: ExtractionClient = Depends(get_extraction_client),
) -> EmailImportResponse:
    """Stage CV-worthy items from a forwarded email."""
    result = await ingest.import_email(
        session,
        user_id,
        sender=request.sender,
        subject=request.subject,
        text_body=request.text_body,
        html_body=request.html_body,
        received_at=request.received_at,
        extractor=extractor,
    )
    return EmailImportResponse(
        entries_found=result.entries_found,
        entries_created=result.entries_created,
        duplicates_skipped=result.duplicates_skipped,
        extraction_failed=result.extraction_failed,
    )


@app.get("/import/pubmed", response_model=PubMedPreviewResponse)
async def preview_pubmed(
    author: str = Query(..., min_length=1),
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    client: PubMedClient = Depends(get_pubmed_client),
) -> PubMedPreviewResponse:
    """Search PubMed by author and flag articles not yet imported."""
    items = await ingest.preview_pubmed(session, user_id, author, client=client)
    articles = [_article_dto(item.article, item.is_new) for item in items]
    return PubMedPreviewResponse(
        author=author,
        total_found=len(articles),
        new_count=sum(article.is_new for article in articles),
        articles=articles,
    )


@app.post("/import/pubmed", response_model=PubMedImportResponse)
async def import_pubmed(
    request: PubMedImportRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    client: PubMedClient = Depends(get_pubmed_client),
) -> PubMedImportResponse:
    """Stage an author's PubMed articles for review."""
    result = await ingest.import_pubmed(session, user_id, request.author, pmids=request.pmids, client=client)
    return PubMedImportResponse(imported=result.imported, skipped=result.skipped)


@app.get("/pending", response_model=PendingListResponse)
async def list_pending(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> PendingListResponse:
    """List entries awaiting review, newest first."""
    entries = await review.list_pending(session, user_id)
    return PendingListResponse(
        entries=[PendingEntryDTO.model_validate(entry) for entry in entries],
        count=len(entries),
    )


@app.post("/pending/approve-all", response_model=BulkApproveResponse)
async def approve_all_pending(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> BulkApproveResponse:
    """Approve every pending entry into its suggested category."""
    result = await review.approve_all(session, user_id)
    return BulkApproveResponse(
        approved=result.approved,
        failed=result.failed,
        total=result.total,
        errors=result.errors,
    )


@app.post("/pending/{pending_id}/approve", response_model=EntryDTO, status_code=status.HTTP_201_CREATED)
async def approve_pending(
    pending_id: int,
    request: ApproveRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EntryDTO:
    """Approve one pending entry into a category the caller owns."""
    entry = await review.approve(session, user_id, pending_id, request.category_id)
    return EntryDTO.model_validate(entry)


@app.delete("/pending/{pending_id}", status_code=status.HTTP_204_NO_CONTENT)
async def reject_pending(
    pending_id: int,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> Response:
    """Reject (delete) a pending entry."""
    await review.reject(session, user_id, pending_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@app.get("/cv/duplicates", response_model=DuplicateScanResponse)
async def scan_duplicates(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> DuplicateScanResponse:
    """Group entries with the same title key and propose one keeper per group."""
    scan = await maintenance.scan_duplicates(session, user_id)
    groups = [
        DuplicateGroupDTO(
            key=group.key,
            keep_id=group.keep_id,
            delete_ids=group.delete_ids,
            entries=[
                DuplicateMemberDTO(
                    id=member.entry.id,
                    title=member.entry.title,
                    description=member.entry.description,
                    date=member.entry.date,
                    category_name=member.category_name,
                    source_type=member.entry.source_type,
                    has_pmid=member.has_pmid,
                    has_doi=member.has_doi,
                    score=member.score,
                )
                for member in group.members
            ],
        )
        for group in scan.groups
    ]
    return DuplicateScanResponse(
        groups=groups,
        total_entries=scan.total_entries,
        duplicate_count=scan.duplicate_count,
        after_cleanup=scan.after_cleanup,
    )


@app.post("/cv/duplicates/delete", response_model=DeleteEntriesResponse)
async def delete_duplicates(
    request: DeleteEntriesRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> DeleteEntriesResponse:
    """Delete the listed entries that belong to the caller."""
    deleted = await maintenance.delete_entries(session, user_id, request.entry_ids)
    return DeleteEntriesResponse(deleted_count=deleted)


@app.get("/cv/missing-dates", response_model=MissingDatesResponse)
async def missing_dates(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> MissingDatesResponse:
    """List entries without a date."""
    rows = await maintenance.list_missing_dates(session, user_id)
    entries = [
        MissingDateDTO(id=entry.id, title=entry.title, description=entry.description, category_name=category_name)
        for entry, category_name in rows
    ]
    return MissingDatesResponse(entries=entries, count=len(entries))


@app.post("/cv/missing-dates/fix", response_model=FixDatesResponse)
async def fix_missing_dates(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> FixDatesResponse:
    """Re-run date extraction over title and description of undated entries."""
    result = await maintenance.fix_missing_dates(session, user_id)
    return FixDatesResponse(
        total=result.total,
        fixed=result.fixed,
        still_missing=result.still_missing,
        updates=result.updates,
    )


@app.post("/cv/missing-dates/{entry_id}", response_model=EntryDTO)
async def set_entry_date(
    entry_id: int,
    request: SetDateRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EntryDTO:
    """Set an entry's date by hand."""
    entry = await maintenance.set_entry_date(session, user_id, entry_id, request.date)
    return EntryDTO.model_validate(entry)


@app.get("/user/balance", response_model=BalanceResponse)
async def get_balance(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> BalanceResponse:
    """Current credit balance."""
    balance = await billing.get_balance(session, user_id)
    return BalanceResponse(balance_usd=balance, needs_reload=billing.needs_reload(balance))


def _article_dto(article, is_new: bool = True) -> PubMedArticleDTO:
    return PubMedArticleDTO(
        pmid=article.pmid,
        title=article.title,
        authors=article.authors,
        journal=article.journal,
        pub_date=article.pub_date,
        doi=article.doi,
        url=PUBMED_ARTICLE_URL.format(pmid=article.pmid),
        is_new=is_new,
    )


@app.get("/cv/enrich-pmid", response_model=PmidCandidatesResponse)
async def pmid_candidates(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> PmidCandidatesResponse:
    """List publications that have no PMID yet."""
    candidates = await maintenance.list_pmid_candidates(session, user_id)
    entries = [
        PmidCandidateDTO(
            id=entry.id,
            title=entry.title,
            description=entry.description,
            date=entry.date,
            category_name=category_name,
        )
        for entry, category_name in candidates.entries
    ]
    return PmidCandidatesResponse(
        entries=entries,
        total_publications=candidates.total,
        with_pmid=candidates.with_pmid,
        without_pmid=candidates.without_pmid,
    )


@app.get("/cv/enrich-pmid/search", response_model=PmidSearchResponse)
async def search_pmid(
    title: str = Query(..., min_length=1),
    user_id: int = Depends(get_current_user_id),
    client: PubMedClient = Depends(get_pubmed_client),
) -> PmidSearchResponse:
    """Search PubMed by title so the caller can pick the matching article."""
    articles = await maintenance.search_pmid(client, title)
    return PmidSearchResponse(title=title, articles=[_article_dto(article) for article in articles])


@app.post("/cv/enrich-pmid", response_model=EntryDTO)
async def set_entry_pmid(
    request: SetPmidRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> EntryDTO:
    """Record the chosen PMID on an entry."""
    entry = await maintenance.set_entry_pmid(session, user_id, request.entry_id, request.pmid, request.doi)
    return EntryDTO.model_validate(entry)


@app.post("/cv/enrich-pmid/auto", response_model=PmidEnrichResponse)
async def enrich_pmids(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
    client: PubMedClient = Depends(get_pubmed_client),
) -> PmidEnrichResponse:
    """Look up every publication without a PMID and fill in exact title matches."""
    result = await maintenance.enrich_pmids(session, user_id, client)
    return PmidEnrichResponse(
        checked=result.checked,
        enriched=result.enriched,
        lookup_failed=result.lookup_failed,
        updates=result.updates,
    )


def _settings_dto(subscription: models.PubMedSubscription) -> PubMedSettingsDTO:
    return PubMedSettingsDTO(
        enabled=subscription.enabled,
        author_name=subscription.author_name,
        frequency=subscription.frequency,
        last_checked_at=subscription.last_checked_at,
    )


@app.get("/settings/pubmed", response_model=PubMedSettingsDTO)
async def get_pubmed_settings(
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> PubMedSettingsDTO:
    """Scheduled PubMed author search settings."""
    return _settings_dto(await ingest.get_pubmed_subscription(session, user_id))


@app.put("/settings/pubmed", response_model=PubMedSettingsDTO)
async def update_pubmed_settings(
    request: PubMedSettingsRequest,
    user_id: int = Depends(get_current_user_id),
    session: AsyncSession = Depends(get_session),
) -> PubMedSettingsDTO:
    """Enable, disable or change the scheduled PubMed author search."""
    subscription = await ingest.update_pubmed_subscription(
        session,
        user_id,
        enabled=request.enabled,
        author_name=request.author_name,
        frequency=request.frequency,
    )
    return _settings_dto(subscription)


async def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    """Guard for scheduler-triggered endpoints."""
    expected = settings.pubmed.cron_secret
    if not expected or x_cron_secret != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid cron secret")


@app.post("/cron/pubmed", response_model=CronPubMedResponse, dependencies=[Depends(require_cron_secret)])
async def cron_pubmed(
    session: AsyncSession = Depends(get_session),
    client: PubMedClient = Depends(get_pubmed_client),
) -> CronPubMedResponse:
    """Run the due scheduled PubMed checks once.

    For deployments that trigger sweeps from an external scheduler instead
    of the worker loop.
    """
    results = await ingest.run_scheduled_pubmed_imports(session, client=client)
    return CronPubMedResponse(
        processed=len(results),
        results=[
            ScheduledCheckDTO(
                user_id=result.user_id,
                author_name=result.author_name,
                status=result.status,
                found=result.found,
                imported=result.imported,
                error=result.error,
            )
            for result in results
        ],
    )
