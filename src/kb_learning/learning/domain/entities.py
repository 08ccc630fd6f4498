"""
Learning Domain Entities
=========================

Pure Python domain entities for the learning pipeline.

The queue item owns its state machine: every transition goes through a
method here, and an illegal transition raises InvalidQueueTransitionError.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from kb_learning.config import QueueStatus, TicketStatus, RESOLVED_TICKET_STATUSES
from kb_learning.core import InvalidQueueTransitionError


@dataclass
class LearningQueueItem:
    """
    A unit of learning work for one resolved ticket.

    Lifecycle: pending -> processing -> completed | failed, with
    processing -> pending allowed for a retryable failure under the retry
    limit. Terminal items are never changed again.
    """

    id: Optional[str]
    ticket_id: str
    status: str
    enqueued_at: datetime
    available_at: datetime
    processed_at: Optional[datetime] = None
    attempt_count: int = 0
    last_error: Optional[str] = None
    version: int = 1

    @property
    def is_terminal(self) -> bool:
        return self.status in (QueueStatus.COMPLETED, QueueStatus.FAILED)

    def _require(self, expected: str, target: str) -> None:
        if self.status != expected:
            raise InvalidQueueTransitionError(self.ticket_id, self.status, target)

    def start_processing(self) -> None:
        """pending -> processing."""
        self._require(QueueStatus.PENDING, QueueStatus.PROCESSING)
        self.status = QueueStatus.PROCESSING

    def complete(self, now: Optional[datetime] = None) -> None:
        """processing -> completed."""
        self._require(QueueStatus.PROCESSING, QueueStatus.COMPLETED)
        self.status = QueueStatus.COMPLETED
        self.processed_at = now or datetime.now(timezone.utc)
        self.last_error = None

    def fail(
        self,
        error: str,
        retryable: bool,
        retry_limit: int,
        retry_delay: timedelta = timedelta(0),
        now: Optional[datetime] = None
    ) -> str:
        """
        Record a failed attempt.

        A retryable failure returns the item to pending, available again
        after retry_delay, while attempts remain under retry_limit. Anything
        else is terminal.

        Returns:
            The status the item moved to
        """
        self._require(QueueStatus.PROCESSING, QueueStatus.FAILED)
        now = now or datetime.now(timezone.utc)

        self.attempt_count += 1
        self.last_error = error

        if retryable and self.attempt_count < retry_limit:
            self.status = QueueStatus.PENDING
            self.available_at = now + retry_delay
        else:
            self.status = QueueStatus.FAILED
            self.processed_at = now
        return self.status


@dataclass
class ResolvedTicket:
    """
    Read-only view of a ticket from the external ticket store.

    Only resolved or closed tickets are learned from.
    """

    id: str
    external_id: str
    title: str
    description: str
    resolution: str
    category: str
    tags: List[str]
    status: str
    created_at: datetime
    resolved_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None

    @property
    def is_resolved(self) -> bool:
        return self.status in RESOLVED_TICKET_STATUSES

    @property
    def learning_text(self) -> str:
        """Description plus resolution, the text clustering compares."""
        return f"{self.description}\n\n{self.resolution}".strip()

    @property
    def tag_set(self) -> frozenset:
        return frozenset(tag.strip().lower() for tag in self.tags if tag.strip())


@dataclass
class Pattern:
    """
    A cluster of resolved tickets judged similar enough for one article.

    Transient: built by the extractor and dropped after its synthesis attempt.
    """

    cluster_id: str
    member_ticket_ids: List[str]
    representative_text: str
    category: str
    tags: List[str]
    tickets: List[ResolvedTicket] = field(default_factory=list)

    @property
    def size(self) -> int:
        return len(self.member_ticket_ids)


@dataclass
class LearningRun:
    """Counters of one batch run over a date range."""

    id: Optional[str]
    range_start: datetime
    range_end: datetime
    started_at: datetime
    ticket_count: int = 0
    patterns_found: int = 0
    articles_created: int = 0
    articles_published: int = 0
    duplicates_skipped: int = 0
    failures: int = 0
    completed_at: Optional[datetime] = None

    @property
    def is_complete(self) -> bool:
        return self.completed_at is not None


@dataclass
class SynthesisFailure:
    """A generation attempt that could not produce an article."""

    id: Optional[str]
    provenance_key: str
    ticket_ids: List[str]
    error_kind: str
    message: str
    created_at: datetime
