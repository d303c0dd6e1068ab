"""Review queue: approve or reject staged entries.

A pending entry only ever leaves the queue. Approval copies it into a
category the reviewer owns, flags it approved and deletes it; rejection
deletes it. Ownership failures raise NotFoundError before anything is
written, so the pending entry is left exactly as it was.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from cvrecon import models, store
from cvrecon.config import settings
from cvrecon.errors import CVReconError, NotFoundError

logger = logging.getLogger(__name__)


@dataclass
class BulkApproveResult:
    """Outcome of approving every pending entry of a user."""
    approved: int = 0
    failed: int = 0
    total: int = 0
    errors: list[dict] = field(default_factory=list)


async def list_pending(session: AsyncSession, user_id: int) -> list[models.PendingEntry]:
    return await store.list_pending(session, user_id)


async def _promote(session: AsyncSession, pending: models.PendingEntry, category_id: int) -> models.Entry:
    await store.lock_category(session, category_id)
    entry = await store.create_entry(
        session,
        category_id=category_id,
        title=pending.title,
        description=pending.description,
        date=pending.date or pending.start_date,
        location=pending.location,
        url=pending.url,
        source_type=pending.source_type,
        source_data=pending.source_data,
        display_order=await store.next_entry_order(session, category_id),
    )
    pending.status = models.PendingStatus.APPROVED.value
    await session.flush()
    await session.delete(pending)
    await session.flush()
    return entry


async def approve(session: AsyncSession, user_id: int, pending_id: int, category_id: int) -> models.Entry:
    """Promote one pending entry into the given category.

    Args:
        session: Database session
        user_id: Reviewer; must own both the pending entry and the category
        pending_id: Pending entry to approve
        category_id: Target category chosen by the reviewer

    Returns:
        The new canonical entry

    Raises:
        NotFoundError: If either record is missing or not owned by the user
    """
    pending = await store.get_owned_pending(session, pending_id, user_id)
    if pending is None:
        raise NotFoundError("Pending entry not found")

    category = await store.get_owned_category(session, category_id, user_id, lock=True)
    if category is None:
        raise NotFoundError("Category not found")

    entry = await _promote(session, pending, category.id)
    await session.commit()
    logger.info(f"Approved pending entry {pending_id} into category {category.id} as entry {entry.id}")
    return entry


async def reject(session: AsyncSession, user_id: int, pending_id: int) -> None:
    """Delete a pending entry.

    Raises:
        NotFoundError: If the entry is missing or not owned by the user
    """
    pending = await store.get_owned_pending(session, pending_id, user_id)
    if pending is None:
        raise NotFoundError("Pending entry not found")

    await session.delete(pending)
    await session.commit()
    logger.info(f"Rejected pending entry {pending_id}")


async def _resolve_category(session: AsyncSession, user_id: int, cv_id: int, name: str) -> int:
    category = await store.find_category_by_name(session, cv_id, name)
    if category is None:
        await store.get_or_create_cv(session, user_id, lock=True)
        category = await store.find_category_by_name(session, cv_id, name)
        if category is None:
            category = await store.create_category(session, cv_id, name)
    return category.id


async def approve_all(session: AsyncSession, user_id: int) -> BulkApproveResult:
    """Approve every pending entry into its suggested category.

    Categories are matched case-insensitively by name and created when
    missing. Each item runs in its own savepoint; a failing item is reported
    and the rest of the batch continues.
    """
    pending_entries = await store.list_pending(session, user_id)
    result = BulkApproveResult(total=len(pending_entries))
    if not pending_entries:
        return result

    cv = await store.get_or_create_cv(session, user_id)
    default_name = settings.reconciliation.default_pending_category
    category_ids: dict[str, int] = {}

    for pending in pending_entries:
        name = (pending.suggested_category or "").strip() or default_name
        pending_id = pending.id
        try:
            async with session.begin_nested():
                category_id = category_ids.get(name.lower())
                if category_id is None:
                    category_id = await _resolve_category(session, user_id, cv.id, name)
                await _promote(session, pending, category_id)
            category_ids[name.lower()] = category_id
            result.approved += 1
        except (SQLAlchemyError, CVReconError) as e:
            result.failed += 1
            result.errors.append({"pending_id": pending_id, "error": str(e)})
            logger.warning(f"Failed to approve pending entry {pending_id}: {e}")

    await session.commit()
    logger.info(f"Bulk approve for user {user_id}: {result.approved}/{result.total} approved, {result.failed} failed")
    return result
