"""
Knowledge Domain Entities
==========================

Pure Python domain entities for the knowledge base.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from kb_learning.config import ArticleStatus, ArticleSource
from kb_learning.core import DomainException


@dataclass
class KnowledgeArticle:
    """
    Knowledge base article.

    Lifecycle: draft -> published -> archived. Articles are never
    hard-deleted by the pipeline, and source_ticket_ids never change once set.
    """

    id: Optional[str]
    title: str
    summary: str
    content: str
    category: str
    tags: List[str] = field(default_factory=list)
    status: str = ArticleStatus.DRAFT
    source: str = ArticleSource.MANUAL
    source_ticket_ids: List[str] = field(default_factory=list)
    provenance_key: Optional[str] = None
    effectiveness_score: float = 0.0
    usage_count: int = 0
    view_count: int = 0
    helpful_votes: int = 0
    unhelpful_votes: int = 0
    embedding: Optional[List[float]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    version: int = 1

    def __post_init__(self):
        if not 0.0 <= self.effectiveness_score <= 1.0:
            raise ValueError("effectiveness_score must be between 0 and 1")

    @property
    def is_published(self) -> bool:
        return self.status == ArticleStatus.PUBLISHED

    @property
    def embedding_text(self) -> str:
        """Text the article is embedded from."""
        return f"{self.title}\n\n{self.summary}\n\n{self.content}"

    def publish(self) -> None:
        if self.status == ArticleStatus.ARCHIVED:
            raise DomainException(f"Archived article {self.id} cannot be published")
        self.status = ArticleStatus.PUBLISHED
        self.updated_at = datetime.now(timezone.utc)

    def archive(self) -> None:
        if self.status == ArticleStatus.ARCHIVED:
            return
        self.status = ArticleStatus.ARCHIVED
        self.archived_at = datetime.now(timezone.utc)
        self.updated_at = self.archived_at


@dataclass
class RetrievalResult:
    """One ranked search hit. Built per query, never cached."""
    article_id: str
    similarity_score: float
    rank: int
    article: KnowledgeArticle


@dataclass
class AutoResponseRecord:
    """An article surfaced (suggest) or applied (auto) for a ticket."""
    id: Optional[str]
    ticket_id: str
    article_id: str
    band: str
    similarity: float
    applied: bool
    created_at: datetime
