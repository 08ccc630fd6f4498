"""
Learning Infrastructure Models
===============================

SQLAlchemy ORM models for the learning module.

The 'tickets' table belongs to the external ticketing system; this service
only reads it.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text, Uuid, text
from sqlalchemy.orm import Mapped, mapped_column

from kb_learning.config import QueueStatus, TicketStatus
from kb_learning.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


_ACTIVE_CLAUSE = text(f"status IN ('{QueueStatus.PENDING}', '{QueueStatus.PROCESSING}')")


class ResolvedTicketModel(Base):
    """
    Read-only mapping of the external ticket table.

    Maps to the 'tickets' table.
    """
    __tablename__ = "tickets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_id: Mapped[str] = mapped_column(String(255), index=True, nullable=False)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False, default="general")
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    status: Mapped[str] = mapped_column(String(50), nullable=False, default=TicketStatus.OPEN)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    closed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class LearningQueueModel(Base):
    """
    Learning queue item.

    Maps to the 'learning_queue' table. At most one pending/processing row
    exists per ticket; terminal rows are kept as history.
    """
    __tablename__ = "learning_queue"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=QueueStatus.PENDING)

    enqueued_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    available_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Compare-and-swap counter for claims and transitions
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("ix_learning_queue_claim", "status", "available_at"),
        Index(
            "uq_learning_queue_active_ticket",
            "ticket_id",
            unique=True,
            postgresql_where=_ACTIVE_CLAUSE,
            sqlite_where=_ACTIVE_CLAUSE,
        ),
    )


class LearningRunModel(Base):
    """
    Batch learning run counters.

    Maps to the 'learning_runs' table.
    """
    __tablename__ = "learning_runs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    range_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    range_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    ticket_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    patterns_found: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    articles_created: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    articles_published: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates_skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)


class SynthesisFailureModel(Base):
    """
    Generation attempts that produced no article, kept for review.

    Maps to the 'synthesis_failures' table.
    """
    __tablename__ = "synthesis_failures"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    provenance_key: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    ticket_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    error_kind: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
