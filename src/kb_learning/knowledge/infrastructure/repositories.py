"""
Knowledge Infrastructure Repositories
======================================

SQLAlchemy implementations of the knowledge repository interfaces.

Each method opens its own short session scope from the session factory, so
no transaction stays open across provider calls.
"""

from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy import String, cast, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from kb_learning.config import ArticleSource, ArticleStatus
from kb_learning.core import DuplicateClusterError, RepositoryException, ResourceNotFoundException
from kb_learning.infrastructure.database import SessionFactory, as_utc, get_session_context
from kb_learning.knowledge.application.services import (
    IAutoResponseRepository,
    IKnowledgeArticleRepository,
)
from kb_learning.knowledge.domain import AutoResponseRecord, KnowledgeArticle
from kb_learning.knowledge.infrastructure.models import AutoResponseModel, KnowledgeArticleModel


def _parse_uuid(value: str) -> Optional[UUID]:
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _to_entity(model: KnowledgeArticleModel) -> KnowledgeArticle:
    return KnowledgeArticle(
        id=str(model.id),
        title=model.title,
        summary=model.summary,
        content=model.content,
        category=model.category,
        tags=list(model.tags or []),
        status=model.status,
        source=model.source,
        source_ticket_ids=list(model.source_ticket_ids or []),
        provenance_key=model.provenance_key,
        effectiveness_score=max(0.0, min(1.0, model.effectiveness_score)),
        usage_count=model.usage_count,
        view_count=model.view_count,
        helpful_votes=model.helpful_votes,
        unhelpful_votes=model.unhelpful_votes,
        embedding=list(model.embedding) if model.embedding else None,
        created_at=as_utc(model.created_at),
        updated_at=as_utc(model.updated_at),
        archived_at=as_utc(model.archived_at),
        version=model.version,
    )


class SQLAlchemyKnowledgeArticleRepository(IKnowledgeArticleRepository):
    """Article store backed by the 'knowledge_articles' table."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def get_by_id(self, article_id: str) -> Optional[KnowledgeArticle]:
        article_uuid = _parse_uuid(article_id)
        if article_uuid is None:
            return None

        async with self._session_factory() as session:
            model = await session.get(KnowledgeArticleModel, article_uuid)
            return _to_entity(model) if model else None

    async def get_by_ids(self, article_ids: Sequence[str]) -> Dict[str, KnowledgeArticle]:
        uuids = [u for u in (_parse_uuid(i) for i in article_ids) if u is not None]
        if not uuids:
            return {}

        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeArticleModel).where(KnowledgeArticleModel.id.in_(uuids))
            )
            return {str(m.id): _to_entity(m) for m in result.scalars().all()}

    async def get_by_provenance_key(self, provenance_key: str) -> Optional[KnowledgeArticle]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeArticleModel).where(KnowledgeArticleModel.provenance_key == provenance_key)
            )
            model = result.scalar_one_or_none()
            return _to_entity(model) if model else None

    async def create(self, article: KnowledgeArticle) -> KnowledgeArticle:
        now = datetime.now(timezone.utc)
        model = KnowledgeArticleModel(
            title=article.title,
            summary=article.summary,
            content=article.content,
            category=article.category,
            tags=list(article.tags),
            status=article.status,
            source=article.source,
            source_ticket_ids=list(article.source_ticket_ids),
            provenance_key=article.provenance_key,
            effectiveness_score=article.effectiveness_score,
            embedding=article.embedding,
            created_at=article.created_at or now,
            updated_at=article.updated_at or now,
        )

        try:
            async with self._session_factory() as session:
                session.add(model)
                await session.flush()
                created = _to_entity(model)
        except IntegrityError as e:
            if article.provenance_key:
                raise DuplicateClusterError(article.provenance_key, article.source_ticket_ids)
            raise RepositoryException(f"Failed to create article: {e.orig}")
        return created

    async def update_embedding(self, article_id: str, embedding: List[float]) -> KnowledgeArticle:
        article_uuid = _parse_uuid(article_id)
        try:
            async with self._session_factory() as session:
                model = await session.get(KnowledgeArticleModel, article_uuid) if article_uuid else None
                if model is None:
                    raise ResourceNotFoundException("KnowledgeArticle", article_id)
                model.embedding = list(embedding)
                model.updated_at = datetime.now(timezone.utc)
                await session.flush()
                return _to_entity(model)
        except StaleDataError:
            raise RepositoryException(f"Article {article_id} was modified concurrently")

    async def update_score(self, article_id: str, score: float, expected_version: int) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(
                update(KnowledgeArticleModel)
                .where(
                    KnowledgeArticleModel.id == UUID(article_id),
                    KnowledgeArticleModel.version == expected_version,
                )
                .values(
                    effectiveness_score=max(0.0, min(1.0, score)),
                    version=KnowledgeArticleModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    async def increment_counters(
        self,
        article_id: str,
        usage: int = 0,
        views: int = 0,
        helpful: int = 0,
        unhelpful: int = 0
    ) -> KnowledgeArticle:
        article_uuid = _parse_uuid(article_id)
        if article_uuid is None:
            raise ResourceNotFoundException("KnowledgeArticle", article_id)

        async with self._session_factory() as session:
            result = await session.execute(
                update(KnowledgeArticleModel)
                .where(KnowledgeArticleModel.id == article_uuid)
                .values(
                    usage_count=KnowledgeArticleModel.usage_count + usage,
                    view_count=KnowledgeArticleModel.view_count + views,
                    helpful_votes=KnowledgeArticleModel.helpful_votes + helpful,
                    unhelpful_votes=KnowledgeArticleModel.unhelpful_votes + unhelpful,
                    version=KnowledgeArticleModel.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ResourceNotFoundException("KnowledgeArticle", article_id)

            model = await session.get(KnowledgeArticleModel, article_uuid, populate_existing=True)
            return _to_entity(model)

    async def list_published(self) -> List[KnowledgeArticle]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeArticleModel)
                .where(KnowledgeArticleModel.status == ArticleStatus.PUBLISHED)
                .order_by(KnowledgeArticleModel.created_at)
            )
            return [_to_entity(m) for m in result.scalars().all()]

    async def list_by_source_tickets(self, ticket_ids: Sequence[str]) -> List[KnowledgeArticle]:
        wanted = set(ticket_ids)
        if not wanted:
            return []

        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeArticleModel)
                .where(
                    KnowledgeArticleModel.source == ArticleSource.AI_GENERATED,
                    KnowledgeArticleModel.status != ArticleStatus.ARCHIVED,
                )
                .order_by(KnowledgeArticleModel.created_at)
            )
            # source_ticket_ids is a JSON list, so overlap is checked here
            return [
                _to_entity(m) for m in result.scalars().all()
                if wanted.intersection(m.source_ticket_ids or [])
            ]

    async def search_published_text(
        self,
        terms: Sequence[str],
        category: Optional[str] = None,
        limit: int = 50
    ) -> List[KnowledgeArticle]:
        if not terms:
            return []

        matches = [
            or_(
                KnowledgeArticleModel.title.ilike(f"%{term}%"),
                KnowledgeArticleModel.summary.ilike(f"%{term}%"),
                KnowledgeArticleModel.content.ilike(f"%{term}%"),
                cast(KnowledgeArticleModel.tags, String).ilike(f"%{term}%"),
            )
            for term in terms
        ]
        query = select(KnowledgeArticleModel).where(
            KnowledgeArticleModel.status == ArticleStatus.PUBLISHED,
            or_(*matches),
        )
        if category:
            query = query.where(KnowledgeArticleModel.category == category)

        async with self._session_factory() as session:
            result = await session.execute(
                query.order_by(
                    KnowledgeArticleModel.usage_count.desc(),
                    KnowledgeArticleModel.updated_at.desc(),
                ).limit(limit)
            )
            return [_to_entity(m) for m in result.scalars().all()]

    async def count_by_source(self, source: str) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(KnowledgeArticleModel.id)).where(KnowledgeArticleModel.source == source)
            )
            return result.scalar_one()

    async def average_effectiveness(self, status: str) -> float:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.avg(KnowledgeArticleModel.effectiveness_score))
                .where(KnowledgeArticleModel.status == status)
            )
            average = result.scalar_one_or_none()
            return round(float(average), 4) if average is not None else 0.0

    async def top_categories(self, limit: int = 5) -> List[Tuple[str, int]]:
        count = func.count(KnowledgeArticleModel.id).label("count")
        async with self._session_factory() as session:
            result = await session.execute(
                select(KnowledgeArticleModel.category, count)
                .where(KnowledgeArticleModel.source == ArticleSource.AI_GENERATED)
                .group_by(KnowledgeArticleModel.category)
                .order_by(count.desc(), KnowledgeArticleModel.category)
                .limit(limit)
            )
            return [(row.category, row.count) for row in result.all()]


class SQLAlchemyAutoResponseRepository(IAutoResponseRepository):
    """Auto-response decisions backed by the 'ticket_auto_responses' table."""

    def __init__(self, session_factory: SessionFactory = get_session_context):
        self._session_factory = session_factory

    async def add(self, record: AutoResponseRecord) -> AutoResponseRecord:
        async with self._session_factory() as session:
            model = AutoResponseModel(
                ticket_id=record.ticket_id,
                article_id=UUID(record.article_id),
                band=record.band,
                similarity=record.similarity,
                applied=record.applied,
                created_at=record.created_at,
            )
            session.add(model)
            await session.flush()
            record.id = str(model.id)
        return record

    async def count_applied(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                select(func.count(AutoResponseModel.id)).where(AutoResponseModel.applied.is_(True))
            )
            return result.scalar_one()

    async def applied_ticket_ids(self) -> List[str]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(AutoResponseModel.ticket_id)
                .where(AutoResponseModel.applied.is_(True))
                .distinct()
            )
            return list(result.scalars().all())

    async def citation_stats(self, article_id: str, since: datetime) -> Tuple[int, List[str]]:
        article_uuid = UUID(article_id)
        async with self._session_factory() as session:
            recent = await session.execute(
                select(func.count(AutoResponseModel.id)).where(
                    AutoResponseModel.article_id == article_uuid,
                    AutoResponseModel.created_at >= since,
                )
            )
            tickets = await session.execute(
                select(AutoResponseModel.ticket_id)
                .where(AutoResponseModel.article_id == article_uuid)
                .distinct()
            )
            return recent.scalar_one(), list(tickets.scalars().all())
