"""
Learning Infrastructure Repositories
=====================================

SQLAlchemy implementations of the learning repository interfaces.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from kb_learning.config import QueueStatus, RESOLVED_TICKET_STATUSES
from kb_learning.core import RepositoryException
from kb_learning.infrastructure.database import SessionFactory, as_utc, get_session_context
from kb_learning.learning.application.services import (
    ILearningQueueRepository,
    ILearningRunRepository,
    IResolvedTicketRepository,
    ISynthesisFailureRepository,
)
from kb_learning.learning.domain import (
    LearningQueueItem,
    LearningRun,
    ResolvedTicket,
    SynthesisFailure,
)
from kb_learning.learning.infrastructure.models import (
    LearningQueueModel,
    LearningRunModel,
    ResolvedTicketModel,
    SynthesisFailureModel,
)
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)


def _parse_uuid(value: Optional[str]) -> Optional[UUID]:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


# ========== Tickets ==========

def _ticket_to_entity(model: ResolvedTicketModel) -> ResolvedTicket:
    return ResolvedTicket(
        id=model.id,
        external_id=model.external_id,
        title=model.title,
        description=model.description or "",
        resolution=model.resolution or "",
        category=model.category,
        tags=list(model.tags or []),
        status=model.status,
        created_at=as_utc(model.created_at),
        resolved_at=as_utc(model.resolved_at),
        closed_at=as_utc(model.closed_at),
    )


class SQLAlchemyResolvedTicketRepository(IResolvedTicketRepository):
    """Read-only view over the ticketing system's 'tickets' table."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get_by_ids(self, ticket_ids: Sequence[str]) -> Dict[str, ResolvedTicket]:
        if not ticket_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(ResolvedTicketModel).where(ResolvedTicketModel.id.in_(list(ticket_ids)))
            )
            return {m.id: _ticket_to_entity(m) for m in result.scalars().all()}

    async def list_resolved_between(self, start: datetime, end: datetime) -> List[ResolvedTicket]:
        resolved_time = func.coalesce(ResolvedTicketModel.resolved_at, ResolvedTicketModel.closed_at)
        async with self._session_factory() as session:
            result = await session.execute(
                select(ResolvedTicketModel)
                .where(
                    ResolvedTicketModel.status.in_(RESOLVED_TICKET_STATUSES),
                    resolved_time >= start,
                    resolved_time < end,
                )
                .order_by(ResolvedTicketModel.created_at, ResolvedTicketModel.id)
            )
            return [_ticket_to_entity(m) for m in result.scalars().all()]

    async def get_statuses(self, ticket_ids: Sequence[str]) -> Dict[str, str]:
        if not ticket_ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(ResolvedTicketModel.id, ResolvedTicketModel.status)
                .where(ResolvedTicketModel.id.in_(list(ticket_ids)))
            )
            return {row.id: row.status for row in result.all()}


# ========== Queue ==========

def _queue_to_entity(model: LearningQueueModel) -> LearningQueueItem:
    return LearningQueueItem(
        id=str(model.id),
        ticket_id=model.ticket_id,
        status=model.status,
        enqueued_at=as_utc(model.enqueued_at),
        available_at=as_utc(model.available_at),
        processed_at=as_utc(model.processed_at),
        attempt_count=model.attempt_count,
        last_error=model.last_error,
        version=model.version,
    )


class SQLAlchemyLearningQueueRepository(ILearningQueueRepository):
    """
    Learning queue backed by the 'learning_queue' table.

    Every state change is a compare-and-swap on (status, version); two
    workers can never both move the same row.
    """

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get_active(self, ticket_id: str) -> Optional[LearningQueueItem]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LearningQueueModel).where(
                    LearningQueueModel.ticket_id == ticket_id,
                    LearningQueueModel.status.in_([QueueStatus.PENDING, QueueStatus.PROCESSING]),
                )
            )
            model = result.scalar_one_or_none()
            return _queue_to_entity(model) if model else None

    async def add_if_absent(self, item: LearningQueueItem) -> Optional[LearningQueueItem]:
        model = LearningQueueModel(
            ticket_id=item.ticket_id,
            status=item.status,
            enqueued_at=item.enqueued_at,
            available_at=item.available_at,
            attempt_count=item.attempt_count,
        )
        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.flush()
                return _queue_to_entity(model)
        except IntegrityError:
            logger.debug("Active queue item already exists", extra={"ticket_id": item.ticket_id})
            return None

    async def claim_pending(self, max_batch: int, now: datetime) -> List[LearningQueueItem]:
        claimed: List[LearningQueueItem] = []
        async with self._session_factory() as session:
            result = await session.execute(
                select(LearningQueueModel)
                .where(
                    LearningQueueModel.status == QueueStatus.PENDING,
                    LearningQueueModel.available_at <= now,
                )
                .order_by(LearningQueueModel.available_at, LearningQueueModel.enqueued_at)
                .limit(max_batch)
                .with_for_update(skip_locked=True)
            )
            candidates = [_queue_to_entity(m) for m in result.scalars().all()]

            for item in candidates:
                swapped = await session.execute(
                    update(LearningQueueModel)
                    .where(
                        LearningQueueModel.id == UUID(item.id),
                        LearningQueueModel.status == QueueStatus.PENDING,
                        LearningQueueModel.version == item.version,
                    )
                    .values(status=QueueStatus.PROCESSING, version=item.version + 1)
                    .execution_options(synchronize_session=False)
                )
                if swapped.rowcount != 1:
                    continue
                item.start_processing()
                item.version += 1
                claimed.append(item)
        return claimed

    async def save(self, item: LearningQueueItem, expected_version: int) -> bool:
        item_uuid = _parse_uuid(item.id)
        if item_uuid is None:
            raise RepositoryException(f"Queue item has no valid id: {item.id}")

        async with self._session_factory() as session:
            result = await session.execute(
                update(LearningQueueModel)
                .where(
                    LearningQueueModel.id == item_uuid,
                    LearningQueueModel.version == expected_version,
                )
                .values(
                    status=item.status,
                    available_at=item.available_at,
                    processed_at=item.processed_at,
                    attempt_count=item.attempt_count,
                    last_error=item.last_error,
                    version=expected_version + 1,
                )
                .execution_options(synchronize_session=False)
            )
        if result.rowcount != 1:
            return False
        item.version = expected_version + 1
        return True

    async def count_by_status(self) -> Dict[str, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LearningQueueModel.status, func.count(LearningQueueModel.id))
                .group_by(LearningQueueModel.status)
            )
            return {status: count for status, count in result.all()}

    async def count_completed_since(self, since: datetime) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(LearningQueueModel.id)).where(
                    LearningQueueModel.status == QueueStatus.COMPLETED,
                    LearningQueueModel.processed_at >= since,
                )
            )
            return result.scalar_one()


# ========== Runs ==========

def _run_to_entity(model: LearningRunModel) -> LearningRun:
    return LearningRun(
        id=str(model.id),
        range_start=as_utc(model.range_start),
        range_end=as_utc(model.range_end),
        started_at=as_utc(model.started_at),
        ticket_count=model.ticket_count,
        patterns_found=model.patterns_found,
        articles_created=model.articles_created,
        articles_published=model.articles_published,
        duplicates_skipped=model.duplicates_skipped,
        failures=model.failures,
        completed_at=as_utc(model.completed_at),
    )


class SQLAlchemyLearningRunRepository(ILearningRunRepository):
    """Run counters in the 'learning_runs' table."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def create(self, run: LearningRun) -> LearningRun:
        model = LearningRunModel(
            range_start=run.range_start,
            range_end=run.range_end,
            started_at=run.started_at,
            ticket_count=run.ticket_count,
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.flush()
            run.id = str(model.id)
        return run

    async def update(self, run: LearningRun) -> LearningRun:
        run_uuid = _parse_uuid(run.id)
        if run_uuid is None:
            raise RepositoryException(f"Learning run has no valid id: {run.id}")

        async with self._session_factory() as session:
            model = await session.get(LearningRunModel, run_uuid)
            if model is None:
                raise RepositoryException(f"Learning run {run.id} not found")
            model.ticket_count = run.ticket_count
            model.patterns_found = run.patterns_found
            model.articles_created = run.articles_created
            model.articles_published = run.articles_published
            model.duplicates_skipped = run.duplicates_skipped
            model.failures = run.failures
            model.completed_at = run.completed_at
        return run

    async def get_by_id(self, run_id: str) -> Optional[LearningRun]:
        run_uuid = _parse_uuid(run_id)
        if run_uuid is None:
            return None
        async with self._session_factory() as session:
            model = await session.get(LearningRunModel, run_uuid)
            return _run_to_entity(model) if model else None

    async def get_latest(self) -> Optional[LearningRun]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(LearningRunModel).order_by(LearningRunModel.started_at.desc()).limit(1)
            )
            model = result.scalar_one_or_none()
            return _run_to_entity(model) if model else None


# ========== Synthesis failures ==========

def _failure_to_entity(model: SynthesisFailureModel) -> SynthesisFailure:
    return SynthesisFailure(
        id=str(model.id),
        provenance_key=model.provenance_key,
        ticket_ids=list(model.ticket_ids or []),
        error_kind=model.error_kind,
        message=model.message,
        created_at=as_utc(model.created_at),
    )


class SQLAlchemySynthesisFailureRepository(ISynthesisFailureRepository):
    """Review log in the 'synthesis_failures' table."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def add(self, failure: SynthesisFailure) -> SynthesisFailure:
        model = SynthesisFailureModel(
            provenance_key=failure.provenance_key,
            ticket_ids=list(failure.ticket_ids),
            error_kind=failure.error_kind,
            message=failure.message,
            created_at=failure.created_at or datetime.now(timezone.utc),
        )
        async with self._session_factory() as session:
            session.add(model)
            await session.flush()
            failure.id = str(model.id)
        return failure

    async def list_recent(self, limit: int = 50) -> List[SynthesisFailure]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SynthesisFailureModel)
                .order_by(SynthesisFailureModel.created_at.desc())
                .limit(limit)
            )
            return [_failure_to_entity(m) for m in result.scalars().all()]

    async def count_by_kind(self, error_kind: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(SynthesisFailureModel.id))
                .where(SynthesisFailureModel.error_kind == error_kind)
            )
            return result.scalar_one()
