"""
Learning Pipeline
==================

Drivers that feed resolved tickets through extraction and synthesis:

- BatchLearningService: on-demand run over a date range
- LearningRunTracker: which run the dashboard reports on
- LearningWorker: background consumer of the learning queue
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence, Set

from kb_learning.config import FailureKind
from kb_learning.core import (
    InvalidQueueTransitionError,
    LLMException,
    MalformedOutputError,
    ValidationException,
)
from kb_learning.learning.application.services import (
    ArticleSynthesizer,
    ILearningAlertNotifier,
    ILearningRunRepository,
    IResolvedTicketRepository,
    LearningQueueManager,
    PolicyProvider,
    SynthesisResult,
)
from kb_learning.learning.domain import LearningRun, Pattern, PatternExtractor, ResolvedTicket
from kb_learning.shared.infrastructure.grafana import get_grafana_exporter
from kb_learning.shared.infrastructure.logging import get_logger, log_latency

logger = get_logger(__name__)


def _as_aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class LearningRunTracker:
    """
    Remembers the most recently requested batch run.

    An older run keeps going and writes its own row, but reporting follows
    the latest request.
    """

    def __init__(self):
        self._latest_run_id: Optional[str] = None

    def begin(self, run_id: str) -> None:
        self._latest_run_id = run_id

    def is_latest(self, run_id: str) -> bool:
        return self._latest_run_id == run_id

    @property
    def latest_run_id(self) -> Optional[str]:
        return self._latest_run_id


class BatchLearningService:
    """
    On-demand learning over tickets resolved in a date range.

    Runs synchronously from the caller's point of view and returns the
    finished run's counters. Creates no queue items.
    """

    def __init__(
        self,
        ticket_repository: IResolvedTicketRepository,
        extractor: PatternExtractor,
        synthesizer: ArticleSynthesizer,
        run_repository: ILearningRunRepository,
        tracker: LearningRunTracker,
        policy_provider: PolicyProvider
    ):
        self._tickets = ticket_repository
        self._extractor = extractor
        self._synthesizer = synthesizer
        self._runs = run_repository
        self._tracker = tracker
        self._policy = policy_provider

    async def _load_tickets(
        self,
        start: datetime,
        end: datetime,
        ticket_ids: Optional[Sequence[str]]
    ) -> List[ResolvedTicket]:
        if not ticket_ids:
            return await self._tickets.list_resolved_between(start, end)

        found = await self._tickets.get_by_ids(ticket_ids)
        unknown = sorted(set(ticket_ids) - set(found))
        if unknown:
            raise ValidationException(
                f"Unknown ticket ids: {', '.join(unknown)}",
                details={"unknown_ticket_ids": unknown}
            )
        unresolved = sorted(t.id for t in found.values() if not t.is_resolved)
        if unresolved:
            raise ValidationException(
                f"Tickets are not resolved: {', '.join(unresolved)}",
                details={"unresolved_ticket_ids": unresolved}
            )
        return list(found.values())

    async def process(
        self,
        start: datetime,
        end: datetime,
        ticket_ids: Optional[Sequence[str]] = None
    ) -> LearningRun:
        """
        Extract patterns and synthesize articles for a date range.

        Raises:
            ValidationException: Empty or inverted range, unknown or
                unresolved ticket ids
        """
        start, end = _as_aware(start), _as_aware(end)
        if start >= end:
            raise ValidationException(
                "start must be before end",
                details={"start": start.isoformat(), "end": end.isoformat()}
            )

        tickets = await self._load_tickets(start, end, ticket_ids)

        run = await self._runs.create(LearningRun(
            id=None,
            range_start=start,
            range_end=end,
            started_at=datetime.now(timezone.utc),
            ticket_count=len(tickets),
        ))
        self._tracker.begin(run.id)
        logger.info("Learning run started", extra={"run_id": run.id, "tickets": len(tickets)})

        clustering = self._policy().clustering
        try:
            with log_latency(logger, "pattern_extraction", run_id=run.id, tickets=len(tickets)):
                patterns = await self._extractor.extract_patterns(
                    tickets,
                    min_cluster_size=clustering.min_cluster_size,
                    similarity_threshold=clustering.similarity_threshold,
                )
        except LLMException as e:
            run.failures += 1
            run.completed_at = datetime.now(timezone.utc)
            await self._runs.update(run)
            logger.error("Learning run aborted during pattern extraction", extra={"run_id": run.id, "error": e.message})
            raise
        run.patterns_found = len(patterns)

        for pattern in patterns:
            try:
                result = await self._synthesizer.synthesize(pattern)
            except LLMException as e:
                run.failures += 1
                logger.warning(
                    "Pattern skipped in learning run",
                    extra={"run_id": run.id, "cluster_id": pattern.cluster_id, "error": e.message}
                )
                continue

            if result.created:
                run.articles_created += 1
                if result.article.is_published:
                    run.articles_published += 1
            else:
                run.duplicates_skipped += 1

        run.completed_at = datetime.now(timezone.utc)
        await self._runs.update(run)

        logger.info(
            "Learning run completed",
            extra={
                "run_id": run.id,
                "is_latest": self._tracker.is_latest(run.id),
                "patterns_found": run.patterns_found,
                "articles_created": run.articles_created,
                "articles_published": run.articles_published,
                "duplicates_skipped": run.duplicates_skipped,
                "failures": run.failures,
            }
        )
        await get_grafana_exporter().export_learning_run(
            trigger="batch",
            patterns_found=run.patterns_found,
            articles_created=run.articles_created,
            articles_published=run.articles_published,
            failures=run.failures,
        )
        return run

    async def latest_run(self) -> Optional[LearningRun]:
        """The run the dashboard should show: the latest requested one."""
        if self._tracker.latest_run_id:
            run = await self._runs.get_by_id(self._tracker.latest_run_id)
            if run is not None:
                return run
        return await self._runs.get_latest()


@dataclass
class WorkerSummary:
    claimed: int = 0
    patterns: int = 0
    completed: int = 0
    retried: int = 0
    failed: int = 0
    articles_created: int = 0
    articles_published: int = 0
    duplicates: int = 0


class LearningWorker:
    """
    Background consumer of the learning queue.

    Each drain claims a batch, clusters the claimed tickets together with
    recently resolved peers, synthesizes the patterns that contain a claimed
    ticket and settles every claimed item.
    """

    def __init__(
        self,
        queue_manager: LearningQueueManager,
        ticket_repository: IResolvedTicketRepository,
        extractor: PatternExtractor,
        synthesizer: ArticleSynthesizer,
        policy_provider: PolicyProvider,
        notifier: Optional[ILearningAlertNotifier] = None,
        batch_size: int = 20,
        concurrency: int = 1
    ):
        self._queue = queue_manager
        self._tickets = ticket_repository
        self._extractor = extractor
        self._synthesizer = synthesizer
        self._policy = policy_provider
        self._notifier = notifier
        self._batch_size = batch_size
        self._semaphore = asyncio.Semaphore(concurrency)

    async def _settle(
        self,
        ticket_id: str,
        summary: WorkerSummary,
        error: Optional[str] = None,
        retryable: bool = True
    ) -> None:
        try:
            if error is None:
                await self._queue.complete(ticket_id)
                summary.completed += 1
                return

            item = await self._queue.fail(ticket_id, error, retryable=retryable)
            if item.is_terminal:
                summary.failed += 1
            else:
                summary.retried += 1
        except InvalidQueueTransitionError as e:
            logger.error("Queue item changed under the worker", extra={"ticket_id": ticket_id, "error": e.message})

    async def _alert(self, ticket_ids: Sequence[str], error_kind: str, message: str) -> None:
        if self._notifier is None:
            return
        await self._notifier.send_failure_alert(ticket_ids, error_kind, message)

    async def _synthesize(self, pattern: Pattern) -> SynthesisResult:
        async with self._semaphore:
            return await self._synthesizer.synthesize(pattern)

    async def run_once(self) -> WorkerSummary:
        """Drain one batch from the queue."""
        summary = WorkerSummary()
        items = await self._queue.claim_next(self._batch_size)
        if not items:
            return summary
        summary.claimed = len(items)

        claimed_ids = [item.ticket_id for item in items]
        tickets = await self._tickets.get_by_ids(claimed_ids)

        learnable: Set[str] = set()
        for ticket_id in claimed_ids:
            ticket = tickets.get(ticket_id)
            if ticket is None:
                await self._settle(ticket_id, summary, "Ticket not found", retryable=False)
            elif not ticket.is_resolved:
                await self._settle(ticket_id, summary, f"Ticket is {ticket.status}, not resolved", retryable=False)
            else:
                learnable.add(ticket_id)
        if not learnable:
            return summary

        policy = self._policy().clustering
        now = datetime.now(timezone.utc)
        peers = await self._tickets.list_resolved_between(now - timedelta(days=policy.lookback_days), now)
        candidates = [tickets[t] for t in sorted(learnable)] + peers

        try:
            patterns = await self._extractor.extract_patterns(
                candidates,
                min_cluster_size=policy.min_cluster_size,
                similarity_threshold=policy.similarity_threshold,
            )
        except LLMException as e:
            for ticket_id in sorted(learnable):
                await self._settle(ticket_id, summary, e.message, retryable=True)
            return summary

        relevant = [p for p in patterns if learnable.intersection(p.member_ticket_ids)]
        summary.patterns = len(relevant)

        outcomes = await asyncio.gather(
            *(self._synthesize(p) for p in relevant),
            return_exceptions=True
        )

        settled: Set[str] = set()
        for pattern, outcome in zip(relevant, outcomes):
            members = sorted(learnable.intersection(pattern.member_ticket_ids) - settled)
            settled.update(members)

            if isinstance(outcome, MalformedOutputError):
                for ticket_id in members:
                    await self._settle(ticket_id, summary, outcome.message, retryable=False)
                await self._alert(members, FailureKind.MALFORMED_OUTPUT, outcome.message)
            elif isinstance(outcome, LLMException):
                failed_before = summary.failed
                for ticket_id in members:
                    await self._settle(ticket_id, summary, outcome.message, retryable=True)
                if summary.failed > failed_before:
                    await self._alert(members, FailureKind.TRANSIENT_PROVIDER, outcome.message)
            elif isinstance(outcome, Exception):
                logger.error(
                    "Unexpected synthesis error",
                    extra={"cluster_id": pattern.cluster_id, "error_type": type(outcome).__name__, "error": str(outcome)}
                )
                for ticket_id in members:
                    await self._settle(ticket_id, summary, str(outcome), retryable=True)
            else:
                if outcome.created:
                    summary.articles_created += 1
                    if outcome.article.is_published:
                        summary.articles_published += 1
                else:
                    summary.duplicates += 1
                for ticket_id in members:
                    await self._settle(ticket_id, summary)

        # Claimed tickets with no similar peers yet: nothing to learn from them alone
        for ticket_id in sorted(learnable - settled):
            await self._settle(ticket_id, summary)

        logger.info("Learning queue drained", extra=summary.__dict__)
        await get_grafana_exporter().export_learning_run(
            trigger="worker",
            patterns_found=summary.patterns,
            articles_created=summary.articles_created,
            articles_published=summary.articles_published,
            failures=summary.failed,
        )
        return summary
