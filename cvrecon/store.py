"""Query helpers for the CV store.

Every lookup that takes an id coming from a caller also takes the caller's
user id and walks the ownership chain (Entry -> Category -> CV -> User), so a
record that exists but belongs to someone else is indistinguishable from a
missing one.

Display order is assigned as max+1. Callers that create categories or entries
lock the parent row first (`lock=True`); the lock is held until the caller
commits.
"""
from __future__ import annotations

import datetime as dt
import logging

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cvrecon import models
from cvrecon.pipelines.normalization import title_key

logger = logging.getLogger(__name__)

PROFILE_FIELDS = ("name", "phone", "address", "institution", "website")


async def get_user(session: AsyncSession, user_id: int) -> models.User | None:
    return await session.get(models.User, user_id)


async def get_cv(session: AsyncSession, user_id: int) -> models.CV | None:
    result = await session.execute(select(models.CV).where(models.CV.user_id == user_id))
    return result.scalar_one_or_none()


async def get_or_create_cv(session: AsyncSession, user_id: int, *, lock: bool = False) -> models.CV:
    """Return the user's CV, creating it on first use.

    With lock=True the CV row is locked for the rest of the transaction, which
    serializes category creation across concurrent imports.
    """
    query = select(models.CV).where(models.CV.user_id == user_id)
    if lock:
        query = query.with_for_update()
    cv = (await session.execute(query)).scalar_one_or_none()
    if cv is not None:
        return cv

    try:
        async with session.begin_nested():
            cv = models.CV(user_id=user_id, title="My CV")
            session.add(cv)
        logger.info(f"Created CV {cv.id} for user {user_id}")
        return cv
    except IntegrityError:
        # Lost the race against a concurrent import
        logger.info(f"CV for user {user_id} created concurrently, reloading")
        return (await session.execute(query)).scalar_one()


async def find_category_by_name(session: AsyncSession, cv_id: int, name: str) -> models.Category | None:
    """Case-insensitive category lookup; the oldest match wins."""
    result = await session.execute(
        select(models.Category)
        .where(models.Category.cv_id == cv_id, func.lower(models.Category.name) == name.strip().lower())
        .order_by(models.Category.display_order, models.Category.id)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_category(session: AsyncSession, cv_id: int, name: str) -> models.Category:
    """Append a category at max(display_order)+1. Caller holds the CV lock."""
    max_order = await session.scalar(
        select(func.max(models.Category.display_order)).where(models.Category.cv_id == cv_id)
    )
    category = models.Category(
        cv_id=cv_id,
        name=name.strip(),
        display_order=(max_order if max_order is not None else -1) + 1,
    )
    session.add(category)
    await session.flush()
    logger.info(f"Created category '{category.name}' (id={category.id}, order={category.display_order})")
    return category


async def get_owned_category(
    session: AsyncSession,
    category_id: int,
    user_id: int,
    *,
    lock: bool = False,
) -> models.Category | None:
    query = (
        select(models.Category)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.Category.id == category_id, models.CV.user_id == user_id)
    )
    if lock:
        query = query.with_for_update(of=models.Category)
    return (await session.execute(query)).scalar_one_or_none()


async def lock_category(session: AsyncSession, category_id: int) -> None:
    """Hold the category row until commit so max+1 ordering cannot collide."""
    await session.execute(
        select(models.Category.id).where(models.Category.id == category_id).with_for_update()
    )


async def next_entry_order(session: AsyncSession, category_id: int) -> int:
    max_order = await session.scalar(
        select(func.max(models.Entry.display_order)).where(models.Entry.category_id == category_id)
    )
    return (max_order if max_order is not None else -1) + 1


async def create_entry(
    session: AsyncSession,
    *,
    category_id: int,
    title: str,
    display_order: int,
    description: str | None = None,
    date: dt.date | None = None,
    location: str | None = None,
    url: str | None = None,
    source_type: str | None = None,
    source_data: dict | None = None,
) -> models.Entry:
    entry = models.Entry(
        category_id=category_id,
        title=title,
        description=description,
        date=date,
        location=location,
        url=url,
        source_type=source_type,
        source_data=source_data,
        display_order=display_order,
    )
    session.add(entry)
    await session.flush()
    return entry


async def list_entries(session: AsyncSession, cv_id: int) -> list[models.Entry]:
    """All canonical entries of a CV in category/display order."""
    result = await session.execute(
        select(models.Entry)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .where(models.Category.cv_id == cv_id)
        .order_by(models.Category.display_order, models.Entry.display_order, models.Entry.id)
    )
    return list(result.scalars().all())


async def canonical_snapshot(session: AsyncSession, cv_id: int) -> dict[str, models.Entry]:
    """Title key -> existing canonical entry (first in display order wins)."""
    snapshot: dict[str, models.Entry] = {}
    for entry in await list_entries(session, cv_id):
        snapshot.setdefault(title_key(entry.title), entry)
    return snapshot


async def pending_keys(session: AsyncSession, user_id: int) -> set[str]:
    result = await session.execute(
        select(models.PendingEntry.title).where(models.PendingEntry.user_id == user_id)
    )
    return {title_key(title) for title in result.scalars().all()}


async def create_pending(session: AsyncSession, user_id: int, **fields) -> models.PendingEntry:
    pending = models.PendingEntry(user_id=user_id, status=models.PendingStatus.PENDING.value, **fields)
    session.add(pending)
    await session.flush()
    return pending


async def list_pending(session: AsyncSession, user_id: int) -> list[models.PendingEntry]:
    """Pending entries, newest first."""
    result = await session.execute(
        select(models.PendingEntry)
        .where(
            models.PendingEntry.user_id == user_id,
            models.PendingEntry.status == models.PendingStatus.PENDING.value,
        )
        .order_by(models.PendingEntry.created_at.desc(), models.PendingEntry.id.desc())
    )
    return list(result.scalars().all())


async def get_owned_pending(session: AsyncSession, pending_id: int, user_id: int) -> models.PendingEntry | None:
    result = await session.execute(
        select(models.PendingEntry).where(
            models.PendingEntry.id == pending_id,
            models.PendingEntry.user_id == user_id,
            models.PendingEntry.status == models.PendingStatus.PENDING.value,
        )
    )
    return result.scalar_one_or_none()


async def get_owned_entry(session: AsyncSession, entry_id: int, user_id: int) -> models.Entry | None:
    result = await session.execute(
        select(models.Entry)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.Entry.id == entry_id, models.CV.user_id == user_id)
    )
    return result.scalar_one_or_none()


async def list_entries_missing_date(session: AsyncSession, user_id: int) -> list[tuple[models.Entry, str]]:
    """(entry, category name) pairs for the user's entries without a date."""
    result = await session.execute(
        select(models.Entry, models.Category.name)
        .join(models.Category, models.Entry.category_id == models.Category.id)
        .join(models.CV, models.Category.cv_id == models.CV.id)
        .where(models.CV.user_id == user_id, models.Entry.date.is_(None))
        .order_by(models.Category.display_order, models.Entry.display_order, models.Entry.id)
    )
    return [(entry, category_name) for entry, category_name in result.all()]


def fill_profile(user: models.User, fields: dict[str, str]) -> list[str]:
    """Copy extracted profile fields onto the user where the user field is empty.

    Returns:
        Names of the fields that were set
    """
    updated = []
    for name in PROFILE_FIELDS:
        value = fields.get(name)
        if value and not getattr(user, name):
            setattr(user, name, value)
            updated.append(name)
    if updated:
        logger.info(f"Filled profile fields {updated} for user {user.id}")
    return updated
