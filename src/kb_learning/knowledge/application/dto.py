"""
Knowledge Application DTOs
===========================

Pydantic models for the knowledge and triage API.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from kb_learning.knowledge.domain import KnowledgeArticle, RetrievalResult


ConfidenceBandStr = Literal["auto", "suggest", "none"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ========== Request DTOs ==========

class SearchRequest(CamelModel):
    """Request model for knowledge search."""
    query: str = Field(..., min_length=1, description="Free-text query")
    limit: int = Field(default=5, ge=1, le=50, description="Maximum results")
    category: Optional[str] = Field(default=None, min_length=1, max_length=100, description="Only this category")

    @field_validator("query")
    @classmethod
    def validate_query_length(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Query cannot be blank")
        if len(v) > 2000:
            raise ValueError("Query too long (max 2000 characters)")
        return v


class FeedbackRequest(CamelModel):
    """Helpful / not helpful vote on an article."""
    helpful: bool


class AutoResponseRequest(CamelModel):
    """Incoming ticket to match against the knowledge base."""
    ticket_id: str = Field(..., min_length=1, max_length=64)
    title: str = Field(..., min_length=1, max_length=500)
    description: str = Field(..., min_length=1)

    @field_validator("description")
    @classmethod
    def validate_description_length(cls, v: str) -> str:
        if len(v) > 10000:
            raise ValueError("Description too long (max 10000 characters)")
        return v


# ========== Response DTOs ==========

class ArticleResponse(CamelModel):
    """Knowledge article as returned by the API (no embedding)."""
    id: str
    title: str
    summary: str
    content: str
    category: str
    tags: List[str]
    status: str
    source: str
    source_ticket_ids: List[str]
    effectiveness_score: float
    usage_count: int
    view_count: int
    helpful_votes: int
    unhelpful_votes: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, article: KnowledgeArticle) -> "ArticleResponse":
        return cls(
            id=article.id,
            title=article.title,
            summary=article.summary,
            content=article.content,
            category=article.category,
            tags=list(article.tags),
            status=article.status,
            source=article.source,
            source_ticket_ids=list(article.source_ticket_ids),
            effectiveness_score=article.effectiveness_score,
            usage_count=article.usage_count,
            view_count=article.view_count,
            helpful_votes=article.helpful_votes,
            unhelpful_votes=article.unhelpful_votes,
            created_at=article.created_at,
            updated_at=article.updated_at,
        )


class SearchResultResponse(CamelModel):
    """One ranked search hit."""
    article: ArticleResponse
    similarity_score: float = Field(..., ge=0.0, le=1.0)
    rank: int

    @classmethod
    def from_result(cls, result: RetrievalResult) -> "SearchResultResponse":
        return cls(
            article=ArticleResponse.from_entity(result.article),
            similarity_score=round(result.similarity_score, 4),
            rank=result.rank,
        )


class AutoResponseResponse(CamelModel):
    """Gate decision for a ticket."""
    ticket_id: str
    band: ConfidenceBandStr
    article: Optional[ArticleResponse] = None
    similarity_score: Optional[float] = None
    applied: bool = False
