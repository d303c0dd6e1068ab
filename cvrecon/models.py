"""Core SQLAlchemy models (2.x style) for the CV store.

Ownership chain: User → CV → Category → Entry. Pending entries hang directly
off the user until a reviewer picks a category for them.
"""

from __future__ import annotations

import datetime as dt
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import JSON, Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    """Naive UTC timestamp, consistent across PostgreSQL and SQLite."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SourceType(str, Enum):
    """Where an entry came from."""
    CV_IMPORT = "cv-import"
    EMAIL = "email"
    PUBMED = "pubmed"
    MANUAL = "manual"


class PendingStatus(str, Enum):
    """Review states a staged entry can be observed in."""
    PENDING = "pending"
    APPROVED = "approved"


class TaskState(str, Enum):
    """Background import task states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class CheckFrequency(str, Enum):
    """How often the scheduled PubMed check runs for a user."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class User(Base):
    """Account owner with profile fields and a prepaid credit balance."""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    name: Mapped[str | None] = mapped_column(String(255))
    phone: Mapped[str | None] = mapped_column(String(100))
    address: Mapped[str | None] = mapped_column(String(500))
    institution: Mapped[str | None] = mapped_column(String(255))
    website: Mapped[str | None] = mapped_column(String(500))
    balance_usd: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    cv: Mapped[CV | None] = relationship("CV", back_populates="user", uselist=False)


class CV(Base):
    """One CV per user."""
    __tablename__ = "cvs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="My CV")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    user: Mapped[User] = relationship("User", back_populates="cv")
    categories: Mapped[list[Category]] = relationship(
        "Category",
        back_populates="cv",
        order_by="Category.display_order",
    )


class Category(Base):
    """CV section such as Publications or Education."""
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cv_id: Mapped[int] = mapped_column(ForeignKey("cvs.id", ondelete="CASCADE"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    cv: Mapped[CV] = relationship("CV", back_populates="categories")
    entries: Mapped[list[Entry]] = relationship(
        "Entry",
        back_populates="category",
        order_by="Entry.display_order",
    )

    __table_args__ = (
        Index("ix_categories_cv_order", "cv_id", "display_order"),
    )


class Entry(Base):
    """Canonical CV entry."""
    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    date: Mapped[dt.date | None] = mapped_column(Date, index=True)
    location: Mapped[str | None] = mapped_column(String(255))
    url: Mapped[str | None] = mapped_column(String(1000))
    source_type: Mapped[str | None] = mapped_column(String(50))
    source_data: Mapped[dict | None] = mapped_column(JSON)  # pmid, doi, chunk_index, imported_at...
    display_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utcnow,
        onupdate=utcnow,
        nullable=False,
    )

    category: Mapped[Category] = relationship("Category", back_populates="entries")

    __table_args__ = (
        Index("ix_entries_category_order", "category_id", "display_order"),
    )


class PendingEntry(Base):
    """Staged entry awaiting human review. Write-once apart from status."""
    __tablename__ = "pending_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    date: Mapped[dt.date | None] = mapped_column(Date)
    start_date: Mapped[dt.date | None] = mapped_column(Date)
    end_date: Mapped[dt.date | None] = mapped_column(Date)
    location: Mapped[str | None] = mapped_column(String(255))
    url: Mapped[str | None] = mapped_column(String(1000))
    source_type: Mapped[str | None] = mapped_column(String(50))
    source_data: Mapped[dict | None] = mapped_column(JSON)
    suggested_category: Mapped[str | None] = mapped_column(String(255))
    ai_confidence: Mapped[float | None] = mapped_column(Float)
    ai_reasoning: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PendingStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_pending_entries_user_status", "user_id", "status"),
    )


class UsageRecord(Base):
    """Credit ledger: one row per debit or deposit."""
    __tablename__ = "usage_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    cost_usd: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    details: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)


class ImportTask(Base):
    """Durable background import. Stores the source text, never chunks."""
    __tablename__ = "import_tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    original_file_name: Mapped[str | None] = mapped_column(String(500))
    full_text: Mapped[str] = mapped_column(Text, nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=TaskState.WAITING.value)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_chunk: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result: Mapped[dict | None] = mapped_column(JSON)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    available_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(DateTime)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_import_tasks_state_available", "state", "available_at"),
    )


class PubMedSubscription(Base):
    """Per-user scheduled PubMed author search; new articles are staged for review."""
    __tablename__ = "pubmed_subscriptions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    author_name: Mapped[str | None] = mapped_column(String(255))
    frequency: Mapped[str] = mapped_column(String(20), nullable=False, default=CheckFrequency.WEEKLY.value)
    last_checked_at: Mapped[datetime | None] = mapped_column(DateTime)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
