"""Background import runner backed by the `import_tasks` table.

A task stores the document text, never chunks. Workers claim due tasks with a
conditional UPDATE (waiting -> active), re-chunk the text and continue from
`next_chunk`, so a retried task picks up after the last committed chunk.
Active tasks refresh `heartbeat_at` with every chunk commit; a task whose
heartbeat is older than QUEUE_STALLED_AFTER_SECONDS is handed back to the
queue.

State machine:
    waiting -> active -> completed
                      -> waiting (retry, after backoff * 2^(attempt-1))
                      -> failed  (attempts exhausted)
    waiting -> failed (cancelled)
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ai.extraction import ExtractionClient
from cvrecon import billing, models, store
from cvrecon.config import settings
from cvrecon.db import AsyncSessionMaker, session_scope
from cvrecon.errors import CVReconError, InputError, InsufficientCreditsError, NotFoundError
from cvrecon.parsers import MIN_TEXT_LENGTH
from cvrecon.pipelines.chunking import chunk_text
from cvrecon.pipelines.ingest import STOPPED_INSUFFICIENT_CREDITS, process_chunk
from cvrecon.pipelines.reconciliation import ReconciliationEngine, Target

logger = logging.getLogger(__name__)

CANCELLED_REASON = "cancelled"
STALLED_REASON = "stalled"
FINISHED_STATES = (models.TaskState.COMPLETED.value, models.TaskState.FAILED.value)


class TransientChunkError(Exception):
    """A chunk could not be extracted; the task is retried later."""
    pass


class ClaimLost(Exception):
    """The task was reclaimed (stalled heartbeat) while this worker ran it."""
    pass


@dataclass
class TaskStatus:
    """What a caller polling a task sees."""
    task_id: str
    state: str
    progress: int
    result: dict | None
    failure_reason: str | None

    @property
    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    @classmethod
    def from_task(cls, task: models.ImportTask) -> TaskStatus:
        return cls(
            task_id=task.id,
            state=task.state,
            progress=task.progress,
            result=task.result,
            failure_reason=task.failure_reason,
        )


def retry_delay(attempt: int, backoff_seconds: float | None = None) -> float:
    """Exponential backoff: base, 2*base, 4*base..."""
    if backoff_seconds is None:
        backoff_seconds = settings.queue.backoff_seconds
    return backoff_seconds * 2 ** max(attempt - 1, 0)


async def submit(
    session: AsyncSession,
    user_id: int,
    full_text: str,
    original_file_name: str | None = None,
) -> models.ImportTask:
    """Queue a document import after the admission check.

    The balance must cover at least one chunk; otherwise nothing is written.

    Args:
        session: Database session
        user_id: Owner of the import
        full_text: Extracted document text
        original_file_name: Upload name, kept for provenance

    Returns:
        The persisted task in `waiting` state

    Raises:
        InputError: If the text is too short to import
        NotFoundError: If the user does not exist
        InsufficientCreditsError: If the balance cannot cover one chunk
    """
    if not full_text or len(full_text.strip()) < MIN_TEXT_LENGTH:
        raise InputError("Text is too short to import")
    if await store.get_user(session, user_id) is None:
        raise NotFoundError("User not found")

    await billing.ensure_balance(session, user_id, settings.billing.cost_per_chunk)

    task = models.ImportTask(
        id=str(uuid.uuid4()),
        user_id=user_id,
        original_file_name=original_file_name,
        full_text=full_text,
        state=models.TaskState.WAITING.value,
        max_attempts=settings.queue.max_attempts,
        available_at=models.utcnow(),
    )
    session.add(task)
    await session.commit()
    logger.info(f"Queued import task {task.id} for user {user_id} ({len(full_text)} chars)")
    return task


async def get_status(session: AsyncSession, user_id: int, task_id: str) -> TaskStatus:
    """Raises NotFoundError when the task is missing or belongs to someone else."""
    task = await session.get(models.ImportTask, task_id)
    if task is None or task.user_id != user_id:
        raise NotFoundError("Task not found")
    return TaskStatus.from_task(task)


async def cancel(session: AsyncSession, user_id: int, task_id: str) -> TaskStatus:
    """Cancel a task that has not started yet.

    Raises:
        NotFoundError: If the task is missing or not owned by the user
        InputError: If the task is already running or finished
    """
    now = models.utcnow()
    result = await session.execute(
        update(models.ImportTask)
        .where(
            models.ImportTask.id == task_id,
            models.ImportTask.user_id == user_id,
            models.ImportTask.state == models.TaskState.WAITING.value,
        )
        .values(
            state=models.TaskState.FAILED.value,
            failure_reason=CANCELLED_REASON,
            finished_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    await session.commit()

    task = await session.get(models.ImportTask, task_id, populate_existing=True)
    if task is None or task.user_id != user_id:
        raise NotFoundError("Task not found")
    if result.rowcount == 0:
        raise InputError(f"Task is {task.state} and can no longer be cancelled")

    logger.info(f"Cancelled import task {task_id}")
    return TaskStatus.from_task(task)


class JobRunner:
    """Claims and processes import tasks with a fixed concurrency ceiling.

    A claim is identified by (task id, attempt). Every write a worker makes
    to its task is conditional on the task still being active under that
    attempt, so a worker whose task was reclaimed as stalled stops at its
    next chunk boundary and its uncommitted chunk is rolled back.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        extractor_factory: Callable[[], ExtractionClient] | None = None,
        *,
        concurrency: int | None = None,
        poll_interval: float | None = None,
        clock: Callable[[], datetime] = models.utcnow,
    ) -> None:
        cfg = settings.queue
        self.session_factory = session_factory or AsyncSessionMaker
        self.extractor_factory = extractor_factory or ExtractionClient
        self.concurrency = concurrency or cfg.concurrency
        self.poll_interval = poll_interval or cfg.poll_interval_seconds
        self.clock = clock
        self._claims: dict[str, int] = {}

    @staticmethod
    def _owned(task_id: str, attempt: int):
        return and_(
            models.ImportTask.id == task_id,
            models.ImportTask.state == models.TaskState.ACTIVE.value,
            models.ImportTask.attempts == attempt,
        )

    async def _update_owned(self, session: AsyncSession, task_id: str, attempt: int, **values) -> bool:
        """Write to the task if this worker still holds the claim. Does not commit."""
        result = await session.execute(
            update(models.ImportTask)
            .where(self._owned(task_id, attempt))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def claim(self) -> str | None:
        """Move the oldest due waiting task to active; None when nothing is due."""
        now = self.clock()
        async with session_scope(self.session_factory) as session:
            task_id = await session.scalar(
                select(models.ImportTask.id)
                .where(
                    models.ImportTask.state == models.TaskState.WAITING.value,
                    models.ImportTask.available_at <= now,
                )
                .order_by(models.ImportTask.available_at, models.ImportTask.created_at)
                .limit(1)
            )
            if task_id is None:
                return None

            result = await session.execute(
                update(models.ImportTask)
                .where(
                    models.ImportTask.id == task_id,
                    models.ImportTask.state == models.TaskState.WAITING.value,
                )
                .values(
                    state=models.TaskState.ACTIVE.value,
                    started_at=now,
                    heartbeat_at=now,
                    attempts=models.ImportTask.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                logger.debug(f"Task {task_id} was claimed by another worker")
                return None
            attempt = await session.scalar(
                select(models.ImportTask.attempts).where(models.ImportTask.id == task_id)
            )

        self._claims[task_id] = attempt
        logger.info(f"Claimed import task {task_id} (attempt {attempt})")
        return task_id

    async def run_task(self, task_id: str) -> None:
        """Process a claimed task from its next chunk to the end."""
        async with self.session_factory() as session:
            task = await session.get(models.ImportTask, task_id)
            if task is None or task.state != models.TaskState.ACTIVE.value:
                logger.warning(f"Task {task_id} is not active, skipping")
                return

            attempt = self._claims.pop(task_id, task.attempts)
            max_attempts = task.max_attempts
            if task.attempts != attempt:
                logger.warning(f"Task {task_id} attempt {attempt} was reclaimed before it started")
                return

            user = await store.get_user(session, task.user_id)
            if user is None:
                await self._finish(session, task_id, attempt, models.TaskState.FAILED, failure_reason="User not found")
                return

            try:
                await self._process(session, task, attempt, user)
            except ClaimLost:
                await session.rollback()
                logger.warning(f"Task {task_id} attempt {attempt} lost its claim, stopping")
            except (TransientChunkError, CVReconError, SQLAlchemyError) as e:
                await session.rollback()
                logger.warning(f"Task {task_id} attempt {attempt} failed: {e}")
                await self._retry_or_fail(session, task_id, attempt, max_attempts, str(e))

    async def _process(
        self,
        session: AsyncSession,
        task: models.ImportTask,
        attempt: int,
        user: models.User,
    ) -> None:
        task_id = task.id
        file_name = task.original_file_name
        chunks = chunk_text(task.full_text)
        total = len(chunks)
        extractor = self.extractor_factory()
        engine = ReconciliationEngine(
            session,
            task.user_id,
            target=Target.CANONICAL,
            source_type=models.SourceType.CV_IMPORT,
            augment_dates=True,
        )
        totals = dict(task.result or {})
        totals["total_chunks"] = total

        for chunk in chunks[task.next_chunk:]:
            try:
                outcome = await process_chunk(
                    session,
                    engine,
                    extractor,
                    user,
                    chunk,
                    file_name=file_name,
                    commit=False,
                )
            except InsufficientCreditsError:
                logger.info(f"Task {task_id} stopped at chunk {chunk.index + 1}/{total}: out of credits")
                totals["stopped_reason"] = STOPPED_INSUFFICIENT_CREDITS
                await self._finish(session, task_id, attempt, models.TaskState.COMPLETED, result=totals)
                return

            if outcome.failed:
                raise TransientChunkError(f"Chunk {chunk.index + 1}/{total} failed: {outcome.error}")

            for key in ("entries_created", "entries_updated", "duplicates_skipped"):
                totals[key] = totals.get(key, 0) + getattr(outcome.summary, key)
            totals["categories_found"] = totals.get("categories_found", 0) + outcome.categories_found
            totals["chunks_processed"] = totals.get("chunks_processed", 0) + 1
            totals["balance_remaining"] = outcome.balance_remaining

            # Chunk writes, debit and progress commit together, or not at all
            owned = await self._update_owned(
                session,
                task_id,
                attempt,
                next_chunk=chunk.index + 1,
                progress=int(100 * (chunk.index + 1) / total),
                result=dict(totals),
                heartbeat_at=self.clock(),
            )
            if not owned:
                raise ClaimLost(task_id)
            await session.commit()
            engine.after_commit()

        totals.setdefault("stopped_reason", None)
        await self._finish(session, task_id, attempt, models.TaskState.COMPLETED, result=totals)

    async def _finish(
        self,
        session: AsyncSession,
        task_id: str,
        attempt: int,
        state: models.TaskState,
        *,
        result: dict | None = None,
        failure_reason: str | None = None,
    ) -> None:
        values = {"state": state.value, "finished_at": self.clock(), "failure_reason": failure_reason}
        if result is not None:
            values["result"] = dict(result)
        if state is models.TaskState.COMPLETED:
            values["progress"] = 100
        owned = await self._update_owned(session, task_id, attempt, **values)
        await session.commit()
        if not owned:
            logger.warning(f"Task {task_id} attempt {attempt} lost its claim before finishing")
            return
        logger.info(f"Task {task_id} {state.value}" + (f": {failure_reason}" if failure_reason else ""))

    async def _retry_or_fail(
        self,
        session: AsyncSession,
        task_id: str,
        attempt: int,
        max_attempts: int,
        reason: str,
    ) -> None:
        if attempt >= max_attempts:
            await self._finish(session, task_id, attempt, models.TaskState.FAILED, failure_reason=reason)
            return

        delay = retry_delay(attempt)
        owned = await self._update_owned(
            session,
            task_id,
            attempt,
            state=models.TaskState.WAITING.value,
            available_at=self.clock() + timedelta(seconds=delay),
            failure_reason=reason,
        )
        await session.commit()
        if owned:
            logger.info(f"Task {task_id} retry {attempt + 1}/{max_attempts} in {delay:.1f}s")

    async def reclaim_stalled(self) -> int:
        """Requeue active tasks whose worker stopped reporting (or fail them if out of attempts)."""
        cutoff = self.clock() - timedelta(seconds=settings.queue.stalled_after_seconds)
        stalled = and_(
            models.ImportTask.state == models.TaskState.ACTIVE.value,
            models.ImportTask.heartbeat_at < cutoff,
        )
        async with session_scope(self.session_factory) as session:
            failed = await session.execute(
                update(models.ImportTask)
                .where(stalled, models.ImportTask.attempts >= models.ImportTask.max_attempts)
                .values(
                    state=models.TaskState.FAILED.value,
                    failure_reason=STALLED_REASON,
                    finished_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            requeued = await session.execute(
                update(models.ImportTask)
                .where(stalled)
                .values(state=models.TaskState.WAITING.value, available_at=self.clock())
                .execution_options(synchronize_session=False)
            )

        count = failed.rowcount + requeued.rowcount
        if count:
            logger.warning(f"Reclaimed {requeued.rowcount} stalled tasks, failed {failed.rowcount}")
        return count

    async def prune(self) -> int:
        """Delete finished tasks past their retention window."""
        now = self.clock()
        completed_cutoff = now - timedelta(seconds=settings.queue.keep_completed_seconds)
        failed_cutoff = now - timedelta(seconds=settings.queue.keep_failed_seconds)
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                delete(models.ImportTask)
                .where(
                    or_(
                        and_(
                            models.ImportTask.state == models.TaskState.COMPLETED.value,
                            models.ImportTask.finished_at < completed_cutoff,
                        ),
                        and_(
                            models.ImportTask.state == models.TaskState.FAILED.value,
                            models.ImportTask.finished_at < failed_cutoff,
                        ),
                    )
                )
                .execution_options(synchronize_session=False)
            )

        if result.rowcount:
            logger.info(f"Pruned {result.rowcount} finished import tasks")
        return result.rowcount

    async def _run_guarded(self, task_id: str, semaphore: asyncio.Semaphore) -> None:
        async with semaphore:
            try:
                await self.run_task(task_id)
            except Exception:
                # Left active; reclaim_stalled requeues it
                logger.exception(f"Unexpected error in import task {task_id}")

    async def run_once(self) -> int:
        """Claim and process up to `concurrency` due tasks. Returns how many ran."""
        semaphore = asyncio.Semaphore(self.concurrency)
        claimed = []
        for _ in range(self.concurrency):
            task_id = await self.claim()
            if task_id is None:
                break
            claimed.append(task_id)
        await asyncio.gather(*(self._run_guarded(task_id, semaphore) for task_id in claimed))
        return len(claimed)

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        """Worker loop: housekeeping, then keep up to `concurrency` tasks in flight."""
        stop_event = stop_event or asyncio.Event()
        semaphore = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task] = set()
        logger.info(f"Import worker started (concurrency={self.concurrency})")

        while not stop_event.is_set():
            try:
                await self.reclaim_stalled()
                await self.prune()
                while len(in_flight) < self.concurrency:
                    task_id = await self.claim()
                    if task_id is None:
                        break
                    job = asyncio.create_task(self._run_guarded(task_id, semaphore))
                    in_flight.add(job)
                    job.add_done_callback(in_flight.discard)
            except SQLAlchemyError as e:
                logger.error(f"Worker loop database error: {e}")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        if in_flight:
            logger.info(f"Waiting for {len(in_flight)} running tasks")
            await asyncio.gather(*in_flight)
        logger.info("Import worker stopped")
