"""Retrieval, auto-response gate and effectiveness scoring."""

import asyncio
from datetime import datetime, timezone

import pytest
from unittest.mock import AsyncMock

from kb_learning.config import ArticleSource, ArticleStatus, ConfidenceBand, TicketStatus
from kb_learning.core import DomainException, ResourceNotFoundException, VectorStoreException
from kb_learning.infrastructure.llm import MockLLMClient
from kb_learning.infrastructure.vectorstore import IndexedArticle, SearchResult
from kb_learning.knowledge.application import AutoResponseService, SemanticRetrievalService, TextEmbedder
from kb_learning.knowledge.domain import (
    AutoResponseGate,
    ConfidenceThresholds,
    EffectivenessScorer,
    KnowledgeArticle,
    RetrievalResult,
    UsageSignals,
)
from kb_learning.knowledge.infrastructure import SQLAlchemyAutoResponseRepository, SQLAlchemyKnowledgeArticleRepository
from kb_learning.main import build_services

from conftest import make_ticket, seed_tickets


SSO_TITLE = "Fix SSO login failures after certificate rotation"
SSO_SUMMARY = "Single sign on rejects the saml assertion when the identity provider certificate changed"
SSO_CONTENT = "Upload the new signing certificate in the service provider settings and retry"


async def _add_article(
    llm_client,
    vector_store,
    title=SSO_TITLE,
    status=ArticleStatus.PUBLISHED,
    usage_count=0,
    score=0.8,
    category="authentication",
) -> KnowledgeArticle:
    """Persist an article and put it in the vector index whatever its status."""
    repo = SQLAlchemyKnowledgeArticleRepository()
    article = KnowledgeArticle(
        id=None,
        title=title,
        summary=SSO_SUMMARY,
        content=SSO_CONTENT,
        category=category,
        tags=["sso"],
        status=status,
        source=ArticleSource.MANUAL,
        effectiveness_score=score,
    )
    article.embedding = (await llm_client.generate_embedding(article.embedding_text)).embedding
    created = await repo.create(article)
    if usage_count:
        created = await repo.increment_counters(created.id, usage=usage_count)
    await vector_store.upsert([IndexedArticle(id=created.id, embedding=created.embedding, metadata={})])
    return created


class TestArticleLifecycle:

    def _draft(self):
        return KnowledgeArticle(id="a", title="t", summary="s", content="c", category="x")

    def test_draft_publish_archive(self):
        article = self._draft()
        article.publish()
        assert article.is_published
        article.archive()
        assert article.status == ArticleStatus.ARCHIVED
        assert article.archived_at is not None

    def test_archived_article_cannot_be_republished(self):
        article = self._draft()
        article.archive()
        with pytest.raises(DomainException):
            article.publish()

    def test_score_outside_unit_interval_is_rejected(self):
        with pytest.raises(ValueError):
            KnowledgeArticle(id="a", title="t", summary="s", content="c", category="x", effectiveness_score=1.2)


def _result(score: float, rank: int = 1) -> RetrievalResult:
    article = KnowledgeArticle(id=f"a-{rank}", title="t", summary="s", content="c", category="x")
    return RetrievalResult(article_id=article.id, similarity_score=score, rank=rank, article=article)


class TestSemanticRetrieval:

    @pytest.mark.asyncio
    async def test_only_published_articles_are_returned(self, services, llm_client, vector_store):
        published = await _add_article(llm_client, vector_store)
        await _add_article(llm_client, vector_store, status=ArticleStatus.DRAFT)
        await _add_article(llm_client, vector_store, status=ArticleStatus.ARCHIVED)

        results = await services.retrieval_service.search(f"{SSO_TITLE} {SSO_SUMMARY}", limit=10)

        assert [r.article_id for r in results] == [published.id]
        assert results[0].rank == 1
        assert 0.0 <= results[0].similarity_score <= 1.0

    @pytest.mark.asyncio
    async def test_equal_similarity_prefers_more_used_article(self, services, llm_client, vector_store):
        rarely_used = await _add_article(llm_client, vector_store, usage_count=1)
        popular = await _add_article(llm_client, vector_store, usage_count=9)

        results = await services.retrieval_service.search(SSO_SUMMARY, limit=5)

        assert [r.article_id for r in results] == [popular.id, rarely_used.id]
        assert [r.rank for r in results] == [1, 2]

    @pytest.mark.asyncio
    async def test_limit_and_similarity_floor(self, services, llm_client, vector_store):
        for _ in range(3):
            await _add_article(llm_client, vector_store)

        assert len(await services.retrieval_service.search(SSO_SUMMARY, limit=2)) == 2
        assert await services.retrieval_service.search("quarterly revenue spreadsheet export", limit=5) == []

    @pytest.mark.asyncio
    async def test_category_filter(self, services, llm_client, vector_store):
        auth = await _add_article(llm_client, vector_store)
        await _add_article(llm_client, vector_store, category="network")

        results = await services.retrieval_service.search(SSO_SUMMARY, limit=5, category="authentication")

        assert [r.article_id for r in results] == [auth.id]
        assert await services.retrieval_service.search(SSO_SUMMARY, category="billing") == []

    @pytest.mark.asyncio
    async def test_embedding_timeout_falls_back_to_keywords(self, database, llm_client, vector_store):
        published = await _add_article(llm_client, vector_store)
        await _add_article(llm_client, vector_store, status=ArticleStatus.DRAFT)

        class SlowLLM(MockLLMClient):
            async def generate_embedding(self, text):
                await asyncio.sleep(1)
                return await super().generate_embedding(text)

        retrieval = SemanticRetrievalService(
            TextEmbedder(SlowLLM(dimension=256), timeout_seconds=0.01),
            vector_store,
            SQLAlchemyKnowledgeArticleRepository(),
        )
        results = await retrieval.search(SSO_SUMMARY)

        assert [r.article_id for r in results] == [published.id]
        assert results[0].similarity_score == SemanticRetrievalService.KEYWORD_MATCH_SCORE
        assert await retrieval.search("quarterly revenue spreadsheet export") == []

    @pytest.mark.asyncio
    async def test_index_failure_falls_back_to_keywords(self, database, llm_client, vector_store):
        popular = await _add_article(llm_client, vector_store, usage_count=5)
        await _add_article(llm_client, vector_store, category="network")
        broken_index = AsyncMock()
        broken_index.search.side_effect = VectorStoreException("connection refused")
        retrieval = SemanticRetrievalService(
            TextEmbedder(llm_client), broken_index, SQLAlchemyKnowledgeArticleRepository()
        )

        results = await retrieval.search("saml certificate rotation", category="authentication")

        assert [r.article_id for r in results] == [popular.id]
        assert results[0].rank == 1

    @pytest.mark.asyncio
    async def test_keyword_fallback_never_crosses_the_floor(self, database, llm_client, vector_store):
        await _add_article(llm_client, vector_store)
        retrieval = SemanticRetrievalService(
            TextEmbedder(llm_client), vector_store, SQLAlchemyKnowledgeArticleRepository(), similarity_floor=0.6
        )
        assert await retrieval.keyword_search(SSO_SUMMARY) == []

    @pytest.mark.asyncio
    async def test_scores_are_not_rounded(self, database, llm_client, vector_store):
        article = await _add_article(llm_client, vector_store)
        index = AsyncMock()
        index.search.return_value = [SearchResult(id=article.id, score=0.849961)]
        retrieval = SemanticRetrievalService(TextEmbedder(llm_client), index, SQLAlchemyKnowledgeArticleRepository())

        [result] = await retrieval.search(SSO_SUMMARY)

        assert result.similarity_score == 0.849961

    @pytest.mark.asyncio
    async def test_reindex_drops_unpublished_article_from_index(self, services, llm_client, vector_store):
        draft = await _add_article(llm_client, vector_store, status=ArticleStatus.DRAFT)
        assert await vector_store.get_document_count() == 1

        await services.indexer.reindex(draft.id)

        assert await vector_store.get_document_count() == 0

    @pytest.mark.asyncio
    async def test_reindex_unknown_article(self, services):
        with pytest.raises(ResourceNotFoundException):
            await services.indexer.reindex("0c6f7f43-4f1e-4c1b-9a7e-9e2f4b2c8d11")

    @pytest.mark.asyncio
    async def test_warm_up_rebuilds_index(self, services, llm_client, vector_store):
        await _add_article(llm_client, vector_store)
        await _add_article(llm_client, vector_store, status=ArticleStatus.DRAFT)
        await vector_store.delete(list(vector_store._vectors))

        assert await services.indexer.warm_up() == 1
        assert await vector_store.get_document_count() == 1


class TestAutoResponseGate:

    @pytest.fixture
    def gate(self):
        return AutoResponseGate(ConfidenceThresholds(high=0.85, medium=0.6))

    @pytest.mark.parametrize("score, band", [
        (0.95, ConfidenceBand.AUTO),
        (0.85, ConfidenceBand.AUTO),
        (0.8499, ConfidenceBand.SUGGEST),
        (0.6, ConfidenceBand.SUGGEST),
        (0.5999, ConfidenceBand.NONE),
        (0.0, ConfidenceBand.NONE),
    ])
    def test_bands(self, gate, score, band):
        assert gate.classify("T-1", [_result(score)]).band == band

    def test_no_results(self, gate):
        decision = gate.classify("T-1", [])
        assert decision.band == ConfidenceBand.NONE
        assert decision.result is None

    def test_top_result_decides(self, gate):
        decision = gate.classify("T-1", [_result(0.7, rank=2), _result(0.9, rank=1)])
        assert decision.band == ConfidenceBand.AUTO
        assert decision.result.rank == 1

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(ValueError):
            ConfidenceThresholds(high=0.5, medium=0.7)


class TestAutoResponseService:

    @pytest.mark.asyncio
    async def test_auto_band_without_flag_counts_a_view(self, services, llm_client, vector_store):
        article = await _add_article(llm_client, vector_store)

        outcome = await services.auto_response_service.respond("T-1", SSO_TITLE, f"{SSO_SUMMARY}\n\n{SSO_CONTENT}")

        assert outcome.band == ConfidenceBand.AUTO
        assert outcome.applied is False
        stored = await SQLAlchemyKnowledgeArticleRepository().get_by_id(article.id)
        assert (stored.view_count, stored.usage_count) == (1, 0)

    @pytest.mark.asyncio
    async def test_auto_band_with_flag_applies_article(self, database, llm_client, vector_store, policy):
        enabled = policy.merged_with({"gate": {"auto_response_enabled": True}})
        services = build_services(llm_client, vector_store, lambda: enabled)
        article = await _add_article(llm_client, vector_store)
        await seed_tickets([make_ticket("T-1", status=TicketStatus.CLOSED)])

        outcome = await services.auto_response_service.respond("T-1", SSO_TITLE, f"{SSO_SUMMARY}\n\n{SSO_CONTENT}")

        assert outcome.applied is True
        assert outcome.result.article_id == article.id
        stored = await SQLAlchemyKnowledgeArticleRepository().get_by_id(article.id)
        assert stored.usage_count == 1
        analytics = await services.analytics_service.get_analytics()
        assert analytics.auto_responses_sent == 1
        assert analytics.tickets_resolved_by_ai == 1

    @pytest.mark.asyncio
    async def test_score_just_below_high_threshold_is_a_suggestion(self, database, llm_client, policy):
        article = await _add_article(llm_client, AsyncMock())
        index = AsyncMock()
        index.search.return_value = [SearchResult(id=article.id, score=0.849961)]
        repo = SQLAlchemyKnowledgeArticleRepository()
        service = AutoResponseService(
            SemanticRetrievalService(TextEmbedder(llm_client), index, repo),
            repo,
            SQLAlchemyAutoResponseRepository(),
            lambda: policy,
        )

        outcome = await service.respond("T-3", SSO_TITLE, SSO_SUMMARY)

        assert outcome.band == ConfidenceBand.SUGGEST
        assert outcome.applied is False

    @pytest.mark.asyncio
    async def test_keyword_matches_are_never_applied(self, database, llm_client, vector_store, policy):
        enabled = policy.merged_with({"gate": {"auto_response_enabled": True}})
        await _add_article(llm_client, vector_store)
        broken_index = AsyncMock()
        broken_index.search.side_effect = VectorStoreException("connection refused")
        repo = SQLAlchemyKnowledgeArticleRepository()
        service = AutoResponseService(
            SemanticRetrievalService(TextEmbedder(llm_client), broken_index, repo),
            repo,
            SQLAlchemyAutoResponseRepository(),
            lambda: enabled,
        )

        outcome = await service.respond("T-4", SSO_TITLE, SSO_SUMMARY)

        assert outcome.band == ConfidenceBand.NONE
        assert outcome.applied is False

    @pytest.mark.asyncio
    async def test_unrelated_ticket_gets_no_response(self, services, llm_client, vector_store):
        await _add_article(llm_client, vector_store)

        outcome = await services.auto_response_service.respond(
            "T-2", "Quarterly revenue export", "The spreadsheet export of quarterly revenue has wrong totals"
        )

        assert outcome.band == ConfidenceBand.NONE
        assert outcome.result is None


class TestEffectivenessScorer:

    def _article(self, score=0.5):
        return KnowledgeArticle(id="a", title="t", summary="s", content="c", category="x", effectiveness_score=score)

    def test_no_evidence_keeps_current_score(self):
        assert EffectivenessScorer().recompute(self._article(0.62), UsageSignals()) == 0.62

    def test_votes_only(self):
        score = EffectivenessScorer().recompute(self._article(), UsageSignals(helpful_votes=3, unhelpful_votes=1))
        assert score == pytest.approx(0.375)

    def test_full_evidence_approaches_one(self):
        signals = UsageSignals(
            helpful_votes=50, unhelpful_votes=0,
            recent_citations=1000, citing_tickets=20, closed_citing_tickets=20,
        )
        assert EffectivenessScorer().recompute(self._article(), signals) > 0.99

    @pytest.mark.parametrize("signals", [
        UsageSignals(unhelpful_votes=10),
        UsageSignals(helpful_votes=10 ** 6, recent_citations=10 ** 6, citing_tickets=1, closed_citing_tickets=5),
        UsageSignals(citing_tickets=4, closed_citing_tickets=1),
    ])
    def test_score_stays_in_unit_interval(self, signals):
        score = EffectivenessScorer(vote_weight=2, trend_weight=1, resolution_weight=1).recompute(self._article(), signals)
        assert 0.0 <= score <= 1.0

    def test_weights_must_not_all_be_zero(self):
        with pytest.raises(ValueError):
            EffectivenessScorer(vote_weight=0, trend_weight=0, resolution_weight=0)


class TestEffectivenessService:

    @pytest.mark.asyncio
    async def test_feedback_then_recompute(self, services, llm_client, vector_store):
        article = await _add_article(llm_client, vector_store, score=0.9)
        for helpful in (True, True, True, False):
            await services.effectiveness_service.record_feedback(article.id, helpful)

        summary = await services.effectiveness_service.recompute_all(datetime.now(timezone.utc))

        assert (summary.scored, summary.updated) == (1, 1)
        stored = await SQLAlchemyKnowledgeArticleRepository().get_by_id(article.id)
        assert (stored.helpful_votes, stored.unhelpful_votes) == (3, 1)
        assert stored.effectiveness_score == pytest.approx(0.375)

    @pytest.mark.asyncio
    async def test_stale_version_write_is_skipped(self, services, llm_client, vector_store):
        article = await _add_article(llm_client, vector_store)
        repo = SQLAlchemyKnowledgeArticleRepository()
        await repo.increment_counters(article.id, helpful=1)

        assert await repo.update_score(article.id, 0.1, expected_version=article.version) is False
        stored = await repo.get_by_id(article.id)
        assert stored.effectiveness_score == article.effectiveness_score

    @pytest.mark.asyncio
    async def test_feedback_for_unknown_article(self, services):
        with pytest.raises(ResourceNotFoundException):
            await services.effectiveness_service.record_feedback("0c6f7f43-4f1e-4c1b-9a7e-9e2f4b2c8d11", True)
