"""
Knowledge Application Services
===============================

Application services for the knowledge base:

- TextEmbedder: the single embedding function (timeout-bounded)
- ArticleIndexer: keeps the vector index in step with the article store
- SemanticRetrievalService: ranked, published-only article search
- EffectivenessService: periodic score recomputation and vote feedback
- AutoResponseService: search + confidence gate for incoming tickets
"""

import asyncio
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from kb_learning.config import ConfidenceBand, TicketStatus
from kb_learning.core import (
    LLMException,
    ResourceNotFoundException,
    TransientProviderError,
    VectorStoreException,
)
from kb_learning.infrastructure.llm import ILLMClient
from kb_learning.infrastructure.vectorstore import IndexedArticle, IVectorStore
from kb_learning.knowledge.domain import (
    AutoResponseGate,
    AutoResponseRecord,
    ConfidenceThresholds,
    EffectivenessScorer,
    GateDecision,
    KnowledgeArticle,
    RetrievalResult,
    UsageSignals,
)
from kb_learning.learning.domain import LearningPolicy
from kb_learning.shared.infrastructure.logging import get_logger

logger = get_logger(__name__)

PolicyProvider = Callable[[], LearningPolicy]


# ========== Repository Interfaces ==========

class IKnowledgeArticleRepository(ABC):
    """Interface for the article store."""

    @abstractmethod
    async def get_by_id(self, article_id: str) -> Optional[KnowledgeArticle]:
        """Get article by ID."""

    @abstractmethod
    async def get_by_ids(self, article_ids: Sequence[str]) -> Dict[str, KnowledgeArticle]:
        """Get several articles keyed by ID; unknown IDs are omitted."""

    @abstractmethod
    async def get_by_provenance_key(self, provenance_key: str) -> Optional[KnowledgeArticle]:
        """Get the article generated from a given ticket set."""

    @abstractmethod
    async def create(self, article: KnowledgeArticle) -> KnowledgeArticle:
        """
        Persist a new article.

        Raises:
            DuplicateClusterError: If the provenance key is already taken
        """

    @abstractmethod
    async def update_embedding(self, article_id: str, embedding: List[float]) -> KnowledgeArticle:
        """Store a recomputed embedding."""

    @abstractmethod
    async def update_score(self, article_id: str, score: float, expected_version: int) -> bool:
        """Write a new score if the row is still at expected_version."""

    @abstractmethod
    async def increment_counters(
        self,
        article_id: str,
        usage: int = 0,
        views: int = 0,
        helpful: int = 0,
        unhelpful: int = 0
    ) -> KnowledgeArticle:
        """Atomically add to usage/view/vote counters."""

    @abstractmethod
    async def list_published(self) -> List[KnowledgeArticle]:
        """All published articles."""

    @abstractmethod
    async def list_by_source_tickets(self, ticket_ids: Sequence[str]) -> List[KnowledgeArticle]:
        """Non-archived articles generated from any of the given tickets, oldest first."""

    @abstractmethod
    async def search_published_text(
        self,
        terms: Sequence[str],
        category: Optional[str] = None,
        limit: int = 50
    ) -> List[KnowledgeArticle]:
        """Published articles whose title, summary, content or tags contain any term."""

    @abstractmethod
    async def count_by_source(self, source: str) -> int:
        """Number of articles from a source (any status)."""

    @abstractmethod
    async def average_effectiveness(self, status: str) -> float:
        """Average effectiveness score over articles in a status."""

    @abstractmethod
    async def top_categories(self, limit: int = 5) -> List[Tuple[str, int]]:
        """Most common categories among AI-generated articles."""


class IAutoResponseRepository(ABC):
    """Interface for auto-response decisions."""

    @abstractmethod
    async def add(self, record: AutoResponseRecord) -> AutoResponseRecord:
        """Persist a decision."""

    @abstractmethod
    async def count_applied(self) -> int:
        """Number of responses sent automatically."""

    @abstractmethod
    async def applied_ticket_ids(self) -> List[str]:
        """Distinct tickets that received an automatic response."""

    @abstractmethod
    async def citation_stats(self, article_id: str, since: datetime) -> Tuple[int, List[str]]:
        """(citations since the given time, distinct citing ticket IDs overall)."""


class ITicketStatusReader(ABC):
    """Read access to ticket statuses in the external ticket store."""

    @abstractmethod
    async def get_statuses(self, ticket_ids: Sequence[str]) -> Dict[str, str]:
        """Status per ticket ID; unknown IDs are omitted."""


# ========== Embeddings & Index ==========

class TextEmbedder:
    """
    The embedding function shared by clustering, indexing and search.

    Enforces a timeout; a timeout surfaces as TransientProviderError.
    """

    def __init__(self, llm_client: ILLMClient, timeout_seconds: float = 5.0):
        self._llm = llm_client
        self._timeout = timeout_seconds

    async def __call__(self, text: str) -> List[float]:
        try:
            result = await asyncio.wait_for(
                self._llm.generate_embedding(text),
                timeout=self._timeout
            )
        except asyncio.TimeoutError:
            raise TransientProviderError(f"Embedding timed out after {self._timeout}s")
        return result.embedding


class ArticleIndexer:
    """
    Projects published articles into the vector index.

    The article row's embedding is the source of truth; the index can
    always be rebuilt from it.
    """

    def __init__(
        self,
        article_repository: IKnowledgeArticleRepository,
        vector_store: IVectorStore,
        embedder: TextEmbedder
    ):
        self._articles = article_repository
        self._vector_store = vector_store
        self._embed = embedder

    async def embed_article(self, article: KnowledgeArticle) -> List[float]:
        return await self._embed(article.embedding_text)

    async def index(self, article: KnowledgeArticle) -> None:
        """Upsert a published article, drop anything else from the index."""
        if article.is_published and article.embedding:
            await self._vector_store.upsert([IndexedArticle(
                id=article.id,
                embedding=article.embedding,
                metadata={"title": article.title, "category": article.category},
            )])
        else:
            await self._vector_store.delete([article.id])

    async def reindex(self, article_id: str) -> KnowledgeArticle:
        """
        Recompute an article's embedding after an external content change.

        Raises:
            ResourceNotFoundException: If the article does not exist
        """
        article = await self._articles.get_by_id(article_id)
        if article is None:
            raise ResourceNotFoundException("KnowledgeArticle", article_id)

        embedding = await self.embed_article(article)
        article = await self._articles.update_embedding(article_id, embedding)
        await self.index(article)

        logger.info("Article reindexed", extra={"article_id": article_id, "status": article.status})
        return article

    async def warm_up(self) -> int:
        """Load every published article into the index. Returns the count indexed."""
        indexed = 0
        for article in await self._articles.list_published():
            try:
                if not article.embedding:
                    article = await self._articles.update_embedding(
                        article.id, await self.embed_article(article)
                    )
                await self.index(article)
                indexed += 1
            except (LLMException, VectorStoreException) as e:
                logger.warning(
                    "Skipping article during index warm-up",
                    extra={"article_id": article.id, "error": str(e)}
                )
        logger.info("Vector index warmed up", extra={"articles": indexed})
        return indexed


# ========== Retrieval ==========

_TERM_RE = re.compile(r"[a-z0-9]+")


def _keyword_terms(query: str, max_terms: int = 12) -> List[str]:
    """Distinct lower-case words longer than three characters, in query order."""
    terms: List[str] = []
    for word in _TERM_RE.findall(query.lower()):
        if len(word) > 3 and word not in terms:
            terms.append(word)
    return terms[:max_terms]


def _recency(article: KnowledgeArticle) -> float:
    return article.updated_at.timestamp() if article.updated_at else 0.0


class SemanticRetrievalService:
    """
    Vector-similarity article search.

    Only published articles scoring at or above the similarity floor are
    returned, optionally restricted to one category. When the embedding
    provider or the index fails, published articles are matched by keyword
    instead and every hit carries KEYWORD_MATCH_SCORE, which sits below the
    default suggestion threshold.
    """

    CANDIDATE_MULTIPLIER = 3
    KEYWORD_MATCH_SCORE = 0.5

    def __init__(
        self,
        embedder: TextEmbedder,
        vector_store: IVectorStore,
        article_repository: IKnowledgeArticleRepository,
        similarity_floor: float = 0.3
    ):
        self._embed = embedder
        self._vector_store = vector_store
        self._articles = article_repository
        self._floor = similarity_floor

    async def search(self, query: str, limit: int = 5, category: Optional[str] = None) -> List[RetrievalResult]:
        if not query or not query.strip() or limit <= 0:
            return []

        multiplier = self.CANDIDATE_MULTIPLIER * (2 if category else 1)
        try:
            query_embedding = await self._embed(query)
            candidates = await self._vector_store.search(
                query_embedding,
                top_k=max(limit * multiplier, 10)
            )
        except (LLMException, VectorStoreException) as e:
            logger.warning(
                "Semantic search unavailable, falling back to keyword search",
                extra={"error_type": type(e).__name__, "error": str(e)}
            )
            return await self.keyword_search(query, limit, category)

        scores = {c.id: c.score for c in candidates if c.score >= self._floor}
        if not scores:
            return []

        articles = await self._articles.get_by_ids(list(scores))
        hits = [
            (article, scores[article_id])
            for article_id, article in articles.items()
            if article.is_published and (category is None or article.category == category)
        ]
        hits.sort(key=lambda hit: (-hit[1], -hit[0].usage_count, -_recency(hit[0])))

        return [
            RetrievalResult(article_id=article.id, similarity_score=score, rank=rank, article=article)
            for rank, (article, score) in enumerate(hits[:limit], 1)
        ]

    async def keyword_search(
        self,
        query: str,
        limit: int = 5,
        category: Optional[str] = None
    ) -> List[RetrievalResult]:
        """Published articles ranked by how many query words they contain."""
        terms = _keyword_terms(query)
        if not terms or limit <= 0 or self.KEYWORD_MATCH_SCORE < self._floor:
            return []

        articles = await self._articles.search_published_text(terms, category=category)

        def matched(article: KnowledgeArticle) -> int:
            text = " ".join([article.title, article.summary, article.content, *article.tags]).lower()
            return sum(1 for term in terms if term in text)

        articles.sort(key=lambda a: (-matched(a), -a.usage_count, -_recency(a)))
        return [
            RetrievalResult(
                article_id=article.id,
                similarity_score=self.KEYWORD_MATCH_SCORE,
                rank=rank,
                article=article,
            )
            for rank, article in enumerate(articles[:limit], 1)
        ]


# ========== Effectiveness ==========

@dataclass
class ScoringRunSummary:
    scored: int = 0
    updated: int = 0
    conflicts: int = 0


class EffectivenessService:
    """
    Feedback loop for published articles.

    Scores are recomputed on a schedule, never inline with a request. A
    version conflict on write is logged and picked up on the next cycle.
    """

    def __init__(
        self,
        article_repository: IKnowledgeArticleRepository,
        auto_response_repository: IAutoResponseRepository,
        ticket_reader: ITicketStatusReader,
        policy_provider: PolicyProvider
    ):
        self._articles = article_repository
        self._auto_responses = auto_response_repository
        self._tickets = ticket_reader
        self._policy = policy_provider

    async def collect_signals(self, article: KnowledgeArticle, now: datetime) -> UsageSignals:
        window = timedelta(days=self._policy().scoring.trend_window_days)
        recent, citing_ticket_ids = await self._auto_responses.citation_stats(article.id, now - window)

        closed = 0
        if citing_ticket_ids:
            statuses = await self._tickets.get_statuses(citing_ticket_ids)
            closed = sum(1 for status in statuses.values() if status == TicketStatus.CLOSED)

        return UsageSignals(
            helpful_votes=article.helpful_votes,
            unhelpful_votes=article.unhelpful_votes,
            recent_citations=recent,
            citing_tickets=len(citing_ticket_ids),
            closed_citing_tickets=closed,
        )

    async def recompute_all(self, now: Optional[datetime] = None) -> ScoringRunSummary:
        now = now or datetime.now(timezone.utc)
        scorer = EffectivenessScorer.from_policy(self._policy().scoring)
        summary = ScoringRunSummary()

        for article in await self._articles.list_published():
            signals = await self.collect_signals(article, now)
            score = scorer.recompute(article, signals)
            summary.scored += 1

            if abs(score - article.effectiveness_score) < 1e-9:
                continue
            if await self._articles.update_score(article.id, score, article.version):
                summary.updated += 1
            else:
                summary.conflicts += 1
                logger.info(
                    "Score write skipped on version conflict",
                    extra={"article_id": article.id, "expected_version": article.version}
                )

        logger.info("Effectiveness scores recomputed", extra=summary.__dict__)
        return summary

    async def record_feedback(self, article_id: str, helpful: bool) -> KnowledgeArticle:
        """
        Count a helpful/unhelpful vote.

        Raises:
            ResourceNotFoundException: If the article does not exist
        """
        return await self._articles.increment_counters(
            article_id,
            helpful=1 if helpful else 0,
            unhelpful=0 if helpful else 1,
        )


# ========== Auto-response ==========

@dataclass
class AutoResponseOutcome:
    band: str
    result: Optional[RetrievalResult]
    applied: bool


class AutoResponseService:
    """
    Decides whether a knowledge article answers an incoming ticket.

    auto -> the article is applied (when the feature flag is on) and its
    usage count grows; suggest -> it is shown to the agent and its view
    count grows; none -> nothing is recorded.
    """

    def __init__(
        self,
        retrieval: SemanticRetrievalService,
        article_repository: IKnowledgeArticleRepository,
        auto_response_repository: IAutoResponseRepository,
        policy_provider: PolicyProvider
    ):
        self._retrieval = retrieval
        self._articles = article_repository
        self._auto_responses = auto_response_repository
        self._policy = policy_provider

    def build_gate(self) -> AutoResponseGate:
        gate_policy = self._policy().gate
        return AutoResponseGate(ConfidenceThresholds(
            high=gate_policy.high_threshold,
            medium=gate_policy.medium_threshold,
        ))

    async def respond(self, ticket_id: str, title: str, description: str) -> AutoResponseOutcome:
        results = await self._retrieval.search(f"{title}\n\n{description}", limit=3)
        decision: GateDecision = self.build_gate().classify(ticket_id, results)

        if decision.band == ConfidenceBand.NONE or decision.result is None:
            return AutoResponseOutcome(band=ConfidenceBand.NONE, result=None, applied=False)

        applied = decision.band == ConfidenceBand.AUTO and self._policy().gate.auto_response_enabled
        article_id = decision.result.article_id

        await self._auto_responses.add(AutoResponseRecord(
            id=None,
            ticket_id=ticket_id,
            article_id=article_id,
            band=decision.band,
            similarity=decision.result.similarity_score,
            applied=applied,
            created_at=datetime.now(timezone.utc),
        ))
        if applied:
            await self._articles.increment_counters(article_id, usage=1)
        else:
            await self._articles.increment_counters(article_id, views=1)

        logger.info(
            "Auto-response decision",
            extra={
                "ticket_id": ticket_id,
                "article_id": article_id,
                "band": decision.band,
                "similarity": decision.result.similarity_score,
                "applied": applied,
            }
        )
        return AutoResponseOutcome(band=decision.band, result=decision.result, applied=applied)

