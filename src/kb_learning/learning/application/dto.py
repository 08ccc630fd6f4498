"""
Learning Application DTOs
==========================

Data Transfer Objects for the learning API layer.

Pydantic models for request/response validation. Field names are camelCase
on the wire and snake_case in Python.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

from kb_learning.learning.domain import LearningRun, SynthesisFailure


class CamelModel(BaseModel):
    """Base DTO serializing to camelCase."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ========== Request DTOs ==========

class BatchProcessRequest(CamelModel):
    """Request model for an on-demand learning run."""
    start: datetime = Field(..., description="Range start (inclusive), resolution time")
    end: datetime = Field(..., description="Range end (exclusive), resolution time")
    ticket_ids: Optional[List[str]] = Field(
        None,
        description="Restrict the run to these resolved tickets"
    )

    @field_validator("start", "end")
    @classmethod
    def assume_utc(cls, v: datetime) -> datetime:
        return v if v.tzinfo else v.replace(tzinfo=timezone.utc)

    @field_validator("ticket_ids")
    @classmethod
    def validate_ticket_ids(cls, v: Optional[List[str]]) -> Optional[List[str]]:
        if v is None:
            return v
        if len(v) > 1000:
            raise ValueError("Too many ticket ids (max 1000)")
        return list(dict.fromkeys(t.strip() for t in v if t.strip()))

    @model_validator(mode="after")
    def validate_range(self) -> "BatchProcessRequest":
        if self.start >= self.end:
            raise ValueError("start must be before end")
        return self


# ========== Response DTOs ==========

class QueueStatusResponse(CamelModel):
    """Learning queue counters."""
    pending: int
    processing: int
    completed_today: int
    failed: int


class EnqueueResponse(CamelModel):
    """Acknowledgement of a fire-and-forget enqueue."""
    ticket_id: str
    accepted: bool = True


class LearningRunResponse(CamelModel):
    """Counters of a learning run."""
    run_id: str
    ticket_count: int
    patterns_found: int
    articles_created: int
    articles_published: int
    duplicates_skipped: int
    failures: int
    range_start: datetime
    range_end: datetime
    started_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_entity(cls, run: LearningRun) -> "LearningRunResponse":
        return cls(
            run_id=run.id,
            ticket_count=run.ticket_count,
            patterns_found=run.patterns_found,
            articles_created=run.articles_created,
            articles_published=run.articles_published,
            duplicates_skipped=run.duplicates_skipped,
            failures=run.failures,
            range_start=run.range_start,
            range_end=run.range_end,
            started_at=run.started_at,
            completed_at=run.completed_at,
        )


class CategoryCount(CamelModel):
    category: str
    count: int


class LearningAnalyticsResponse(CamelModel):
    """Learning dashboard counters."""
    articles_created: int
    avg_effectiveness: float = Field(..., ge=0.0, le=1.0)
    auto_responses_sent: int
    tickets_resolved_by_ai: int = Field(..., serialization_alias="ticketsResolvedByAI")
    top_categories: List[CategoryCount]
    malformed_outputs: int


class SynthesisFailureResponse(CamelModel):
    """A generation attempt kept for manual review."""
    id: str
    provenance_key: str
    ticket_ids: List[str]
    error_kind: str
    message: str
    created_at: datetime

    @classmethod
    def from_entity(cls, failure: SynthesisFailure) -> "SynthesisFailureResponse":
        return cls(
            id=failure.id,
            provenance_key=failure.provenance_key,
            ticket_ids=failure.ticket_ids,
            error_kind=failure.error_kind,
            message=failure.message,
            created_at=failure.created_at,
        )
