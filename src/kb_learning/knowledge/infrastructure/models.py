"""
Knowledge Infrastructure Models
================================

SQLAlchemy ORM models for the knowledge module.
"""

from datetime import datetime, timezone
from typing import List, Optional
from uuid import UUID, uuid4

from sqlalchemy import JSON, Boolean, DateTime, Float, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from kb_learning.config import ArticleSource, ArticleStatus
from kb_learning.infrastructure.database import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class KnowledgeArticleModel(Base):
    """
    Knowledge base article.

    Maps to the 'knowledge_articles' table. provenance_key is unique so two
    overlapping runs cannot both insert an article for the same tickets;
    version is checked by the ORM on every flush.
    """
    __tablename__ = "knowledge_articles"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)

    title: Mapped[str] = mapped_column(String(500), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    content: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    status: Mapped[str] = mapped_column(String(20), nullable=False, default=ArticleStatus.DRAFT, index=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default=ArticleSource.MANUAL)
    source_ticket_ids: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)
    provenance_key: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)

    effectiveness_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    usage_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    helpful_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    unhelpful_votes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Derived from title/summary/content; the vector index is rebuilt from it
    embedding: Mapped[Optional[List[float]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    archived_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}


class AutoResponseModel(Base):
    """
    Article surfaced or applied for a ticket by the auto-response gate.

    Maps to the 'ticket_auto_responses' table.
    """
    __tablename__ = "ticket_auto_responses"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    ticket_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    article_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    band: Mapped[str] = mapped_column(String(20), nullable=False)
    similarity: Mapped[float] = mapped_column(Float, nullable=False)
    applied: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow, index=True)
