"""
Learning Application Services
==============================

Application services for the learning pipeline.

- LearningQueueManager: enqueue, atomic claim, complete/fail with retry
- ArticleSynthesizer: pattern -> validated, persisted knowledge article
- LearningAnalyticsService: dashboard counters
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence

from kb_learning.config import (
    ArticleSource,
    ArticleStatus,
    FailureKind,
    QueueStatus,
    RESOLVED_TICKET_STATUSES,
    settings,
)
from kb_learning.core import (
    DuplicateClusterError,
    InvalidQueueTransitionError,
    LLMException,
    MalformedOutputError,
    TransientProviderError,
    VectorStoreException,
)
from kb_learning.infrastructure.llm import ChatCompletionResult, ILLMClient
from kb_learning.knowledge.application.services import (
    ArticleIndexer,
    IAutoResponseRepository,
    IKnowledgeArticleRepository,
    ITicketStatusReader,
)
from kb_learning.knowledge.domain import KnowledgeArticle
from kb_learning.learning.domain import (
    ArticlePromptBuilder,
    GeneratedArticle,
    LearningPolicy,
    LearningQueueItem,
    LearningRun,
    Pattern,
    ResolvedTicket,
    SynthesisFailure,
    compute_provenance_key,
)
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

PolicyProvider = Callable[[], LearningPolicy]


# ========== Repository Interfaces ==========

class IResolvedTicketRepository(ITicketStatusReader):
    """Read-only access to the external ticket store."""

    @abstractmethod
    async def get_by_ids(self, ticket_ids: Sequence[str]) -> Dict[str, ResolvedTicket]:
        """Tickets keyed by ID, any status; unknown IDs are omitted."""

    @abstractmethod
    async def list_resolved_between(self, start: datetime, end: datetime) -> List[ResolvedTicket]:
        """Resolved/closed tickets whose resolution time falls in [start, end)."""


class ILearningQueueRepository(ABC):
    """Interface for the persisted learning queue."""

    @abstractmethod
    async def get_active(self, ticket_id: str) -> Optional[LearningQueueItem]:
        """The pending or processing item for a ticket, if any."""

    @abstractmethod
    async def add_if_absent(self, item: LearningQueueItem) -> Optional[LearningQueueItem]:
        """Insert a pending item unless the ticket already has an active one."""

    @abstractmethod
    async def claim_pending(self, max_batch: int, now: datetime) -> List[LearningQueueItem]:
        """Atomically move up to max_batch available pending items to processing."""

    @abstractmethod
    async def save(self, item: LearningQueueItem, expected_version: int) -> bool:
        """Write item state if the row is still at expected_version."""

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        """Item count per status."""

    @abstractmethod
    async def count_completed_since(self, since: datetime) -> int:
        """Items completed at or after the given time."""


class ILearningRunRepository(ABC):
    """Interface for batch run persistence."""

    @abstractmethod
    async def create(self, run: LearningRun) -> LearningRun:
        """Persist a new run."""

    @abstractmethod
    async def update(self, run: LearningRun) -> LearningRun:
        """Write run counters."""

    @abstractmethod
    async def get_by_id(self, run_id: str) -> Optional[LearningRun]:
        """Get run by ID."""

    @abstractmethod
    async def get_latest(self) -> Optional[LearningRun]:
        """Most recently started run."""


class ISynthesisFailureRepository(ABC):
    """Interface for the synthesis failure review log."""

    @abstractmethod
    async def add(self, failure: SynthesisFailure) -> SynthesisFailure:
        """Record a failure."""

    @abstractmethod
    async def list_recent(self, limit: int = 50) -> List[SynthesisFailure]:
        """Newest failures first."""

    @abstractmethod
    async def count_by_kind(self, error_kind: str) -> int:
        """Number of failures of a kind."""


class ILearningAlertNotifier(ABC):
    """Operator alerts for terminal learning failures."""

    @abstractmethod
    async def send_failure_alert(self, ticket_ids: Sequence[str], error_kind: str, message: str) -> bool:
        """Send an alert. Returns False when not delivered."""


# ========== Queue ==========

@dataclass
class QueueStatusSummary:
    pending: int
    processing: int
    completed_today: int
    failed: int


class LearningQueueManager:
    """
    Owns the learning queue state machine.

    Enqueue is idempotent per ticket; claims are atomic; retryable failures
    return the item to pending after a backoff delay until the retry limit.
    """

    def __init__(self, queue_repository: ILearningQueueRepository, policy_provider: PolicyProvider):
        self._queue = queue_repository
        self._policy = policy_provider

    async def enqueue(self, ticket_id: str) -> LearningQueueItem:
        existing = await self._queue.get_active(ticket_id)
        if existing is not None:
            logger.debug("Ticket already queued", extra={"ticket_id": ticket_id, "status": existing.status})
            return existing

        now = datetime.now(timezone.utc)
        item = await self._queue.add_if_absent(LearningQueueItem(
            id=None,
            ticket_id=ticket_id,
            status=QueueStatus.PENDING,
            enqueued_at=now,
            available_at=now,
        ))
        if item is None:
            # Lost a race with a concurrent enqueue
            return await self._queue.get_active(ticket_id)

        logger.info("Ticket enqueued for learning", extra={"ticket_id": ticket_id, "queue_item_id": item.id})
        return item

    async def claim_next(self, max_batch: int) -> List[LearningQueueItem]:
        if max_batch <= 0:
            return []
        claimed = await self._queue.claim_pending(max_batch, datetime.now(timezone.utc))
        if claimed:
            logger.info("Claimed learning queue items", extra={"count": len(claimed)})
        return claimed

    async def _processing_item(self, ticket_id: str, target: str) -> LearningQueueItem:
        item = await self._queue.get_active(ticket_id)
        if item is None or item.status != QueueStatus.PROCESSING:
            raise InvalidQueueTransitionError(ticket_id, item.status if item else None, target)
        return item

    async def _save(self, item: LearningQueueItem, expected_version: int, target: str) -> None:
        if not await self._queue.save(item, expected_version):
            raise InvalidQueueTransitionError(item.ticket_id, QueueStatus.PROCESSING, target)

    async def complete(self, ticket_id: str) -> LearningQueueItem:
        item = await self._processing_item(ticket_id, QueueStatus.COMPLETED)
        expected_version = item.version
        item.complete()
        await self._save(item, expected_version, QueueStatus.COMPLETED)
        return item

    async def fail(self, ticket_id: str, error: str, retryable: bool = True) -> LearningQueueItem:
        """
        Record a failed attempt for a processing item.

        Returns:
            The item, either back in pending (retry scheduled) or failed
        """
        item = await self._processing_item(ticket_id, QueueStatus.FAILED)
        expected_version = item.version
        policy = self._policy()

        delay = policy.retry_policy.delay_for(item.attempt_count + 1)
        new_status = item.fail(
            error=error,
            retryable=retryable,
            retry_limit=policy.retry.queue_retry_limit,
            retry_delay=timedelta(seconds=delay),
        )
        await self._save(item, expected_version, new_status)

        log = logger.warning if new_status == QueueStatus.FAILED else logger.info
        log(
            "Learning queue item failed" if new_status == QueueStatus.FAILED else "Learning queue item scheduled for retry",
            extra={
                "ticket_id": ticket_id,
                "attempt_count": item.attempt_count,
                "retryable": retryable,
                "error": error,
            }
        )
        return item

    async def status(self) -> QueueStatusSummary:
        counts = await self._queue.count_by_status()
        midnight = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        return QueueStatusSummary(
            pending=counts.get(QueueStatus.PENDING, 0),
            processing=counts.get(QueueStatus.PROCESSING, 0),
            completed_today=await self._queue.count_completed_since(midnight),
            failed=counts.get(QueueStatus.FAILED, 0),
        )


# ========== Synthesis ==========

class SynthesisOutcome(str):
    CREATED = "created"
    DUPLICATE = "duplicate"


@dataclass
class SynthesisResult:
    outcome: str
    article: KnowledgeArticle

    @property
    def created(self) -> bool:
        return self.outcome == SynthesisOutcome.CREATED


class ArticleSynthesizer:
    """
    Turns a pattern into a knowledge article.

    The provenance key and the source tickets of existing articles are
    checked before any generation call, so neither a re-run over the same
    tickets nor a cluster that has since grown creates a second article.
    Generation output that does not match the article schema is recorded
    for review and nothing is persisted.
    """

    def __init__(
        self,
        llm_client: ILLMClient,
        article_repository: IKnowledgeArticleRepository,
        indexer: ArticleIndexer,
        failure_repository: ISynthesisFailureRepository,
        policy_provider: PolicyProvider,
        timeout_seconds: float = 30.0
    ):
        self._llm = llm_client
        self._articles = article_repository
        self._indexer = indexer
        self._failures = failure_repository
        self._policy = policy_provider
        self._timeout = timeout_seconds

    async def _record_failure(self, pattern: Pattern, provenance_key: str, kind: str, message: str) -> None:
        await self._failures.add(SynthesisFailure(
            id=None,
            provenance_key=provenance_key,
            ticket_ids=list(pattern.member_ticket_ids),
            error_kind=kind,
            message=message[:2000],
            created_at=datetime.now(timezone.utc),
        ))

    async def _generate(self, pattern: Pattern) -> ChatCompletionResult:
        messages = ArticlePromptBuilder.build_messages(pattern)

        async def attempt() -> ChatCompletionResult:
            try:
                return await asyncio.wait_for(
                    self._llm.chat_completion(
                        messages=messages,
                        temperature=settings.llm_temperature,
                        max_tokens=settings.llm_max_tokens,
                        operation="article_synthesis"
                    ),
                    timeout=self._timeout
                )
            except asyncio.TimeoutError:
                raise TransientProviderError(f"Article generation timed out after {self._timeout}s")

        def on_retry(attempt_number: int, error: BaseException, delay: float) -> None:
            logger.warning(
                "Article generation failed, retrying",
                extra={
                    "cluster_id": pattern.cluster_id,
                    "attempt": attempt_number,
                    "delay_seconds": round(delay, 2),
                    "error": str(error),
                }
            )

        return await self._policy().retry_policy.execute(attempt, on_retry=on_retry)

    async def synthesize(self, pattern: Pattern) -> SynthesisResult:
        """
        Synthesize one article from a pattern.

        Raises:
            MalformedOutputError: Generation output failed schema validation
            TransientProviderError: Provider kept failing after all retries
        """
        provenance_key = compute_provenance_key(pattern.member_ticket_ids)

        existing = await self._articles.get_by_provenance_key(provenance_key)
        if existing is not None:
            logger.info(
                "Pattern already has an article",
                extra={"cluster_id": pattern.cluster_id, "article_id": existing.id}
            )
            return SynthesisResult(outcome=SynthesisOutcome.DUPLICATE, article=existing)

        # An article citing any member already covers the pattern
        covering = await self._articles.list_by_source_tickets(pattern.member_ticket_ids)
        if covering:
            logger.info(
                "Pattern already covered by an article",
                extra={
                    "cluster_id": pattern.cluster_id,
                    "article_id": covering[0].id,
                    "new_tickets": sorted(set(pattern.member_ticket_ids) - set(covering[0].source_ticket_ids)),
                }
            )
            return SynthesisResult(outcome=SynthesisOutcome.DUPLICATE, article=covering[0])

        try:
            completion = await self._generate(pattern)
            generated = GeneratedArticle.from_llm_output(completion.content)
        except MalformedOutputError as e:
            await self._record_failure(pattern, provenance_key, FailureKind.MALFORMED_OUTPUT, e.message)
            logger.error(
                "Malformed generation output",
                extra={"cluster_id": pattern.cluster_id, "provenance_key": provenance_key, "error": e.message}
            )
            raise
        except LLMException as e:
            await self._record_failure(pattern, provenance_key, FailureKind.TRANSIENT_PROVIDER, e.message)
            raise

        policy = self._policy().publishing
        publish = policy.auto_publish_enabled and generated.effectiveness_score >= policy.publish_threshold

        article = KnowledgeArticle(
            id=None,
            title=generated.title,
            summary=generated.summary,
            content=generated.content,
            category=generated.category,
            tags=generated.tags,
            status=ArticleStatus.PUBLISHED if publish else ArticleStatus.DRAFT,
            source=ArticleSource.AI_GENERATED,
            source_ticket_ids=list(pattern.member_ticket_ids),
            provenance_key=provenance_key,
            effectiveness_score=generated.effectiveness_score,
        )

        try:
            article.embedding = await self._indexer.embed_article(article)
        except LLMException as e:
            logger.warning(
                "Article embedding failed; index will be filled on reindex",
                extra={"provenance_key": provenance_key, "error": str(e)}
            )

        try:
            created = await self._articles.create(article)
        except DuplicateClusterError:
            existing = await self._articles.get_by_provenance_key(provenance_key)
            logger.info("Concurrent run created the article first", extra={"provenance_key": provenance_key})
            return SynthesisResult(outcome=SynthesisOutcome.DUPLICATE, article=existing)

        if created.is_published:
            try:
                await self._indexer.index(created)
            except VectorStoreException as e:
                logger.error("Failed to index article", extra={"article_id": created.id, "error": str(e)})

        logger.info(
            "Knowledge article created",
            extra={
                "article_id": created.id,
                "cluster_id": pattern.cluster_id,
                "status": created.status,
                "effectiveness_score": created.effectiveness_score,
                "source_tickets": len(created.source_ticket_ids),
            }
        )
        return SynthesisResult(outcome=SynthesisOutcome.CREATED, article=created)


# ========== Analytics ==========

@dataclass
class LearningAnalytics:
    articles_created: int
    avg_effectiveness: float
    auto_responses_sent: int
    tickets_resolved_by_ai: int
    top_categories: List[Dict[str, object]] = field(default_factory=list)
    malformed_outputs: int = 0


class LearningAnalyticsService:
    """Aggregate counters for the learning dashboard."""

    def __init__(
        self,
        article_repository: IKnowledgeArticleRepository,
        auto_response_repository: IAutoResponseRepository,
        ticket_repository: IResolvedTicketRepository,
        failure_repository: ISynthesisFailureRepository
    ):
        self._articles = article_repository
        self._auto_responses = auto_response_repository
        self._tickets = ticket_repository
        self._failures = failure_repository

    async def get_analytics(self) -> LearningAnalytics:
        applied_ticket_ids = await self._auto_responses.applied_ticket_ids()
        resolved_by_ai = 0
        if applied_ticket_ids:
            statuses = await self._tickets.get_statuses(applied_ticket_ids)
            resolved_by_ai = sum(1 for s in statuses.values() if s in RESOLVED_TICKET_STATUSES)

        return LearningAnalytics(
            articles_created=await self._articles.count_by_source(ArticleSource.AI_GENERATED),
            avg_effectiveness=await self._articles.average_effectiveness(ArticleStatus.PUBLISHED),
            auto_responses_sent=await self._auto_responses.count_applied(),
            tickets_resolved_by_ai=resolved_by_ai,
            top_categories=[
                {"category": category, "count": count}
                for category, count in await self._articles.top_categories(limit=5)
            ],
            malformed_outputs=await self._failures.count_by_kind(FailureKind.MALFORMED_OUTPUT),
        )
