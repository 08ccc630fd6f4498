"""HTTP API."""

from datetime import timedelta

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock, MagicMock

from kb_learning.config import ArticleSource, ArticleStatus, ConfidenceBand, FailureKind, TicketStatus
from kb_learning.core import ExternalServiceException, ResourceNotFoundException
from kb_learning.knowledge.application import AutoResponseOutcome
from kb_learning.knowledge.domain import KnowledgeArticle, RetrievalResult
from kb_learning.learning.application.services import LearningAnalytics, QueueStatusSummary
from kb_learning.learning.domain import LearningRun, SynthesisFailure
from kb_learning.main import attach_services, create_app

from conftest import NOW, cluster_tickets, make_ticket, seed_tickets


ARTICLE_ID = "0c6f7f43-4f1e-4c1b-9a7e-9e2f4b2c8d11"


def _article(**overrides) -> KnowledgeArticle:
    fields = dict(
        id=ARTICLE_ID,
        title="Fix SSO login failures",
        summary="Rotate the certificate",
        content="1. Upload certificate",
        category="authentication",
        tags=["sso"],
        status=ArticleStatus.PUBLISHED,
        source=ArticleSource.AI_GENERATED,
        source_ticket_ids=["T-1", "T-2"],
        effectiveness_score=0.82,
        embedding=[0.1, 0.2],
    )
    fields.update(overrides)
    return KnowledgeArticle(**fields)


@pytest.fixture
def app():
    app = create_app(with_lifespan=False)
    app.state.queue_manager = AsyncMock()
    app.state.ticket_repository = AsyncMock()
    app.state.batch_service = AsyncMock()
    app.state.analytics_service = AsyncMock()
    app.state.failure_repository = AsyncMock()
    app.state.retrieval_service = AsyncMock()
    app.state.effectiveness_service = AsyncMock()
    app.state.indexer = AsyncMock()
    app.state.auto_response_service = AsyncMock()
    return app


@pytest.fixture
def client(app):
    return TestClient(app)


class TestLearningQueueEndpoints:

    def test_status(self, app, client):
        app.state.queue_manager.status.return_value = QueueStatusSummary(
            pending=4, processing=1, completed_today=27, failed=2
        )

        response = client.get("/learning-queue/status")

        assert response.status_code == 200
        assert response.json() == {"pending": 4, "processing": 1, "completedToday": 27, "failed": 2}

    def test_enqueue_accepts_resolved_ticket(self, app, client):
        app.state.ticket_repository.get_by_ids.return_value = {"T-1": make_ticket("T-1")}

        response = client.post("/learning-queue/T-1")

        assert response.status_code == 202
        assert response.json() == {"ticketId": "T-1", "accepted": True}
        app.state.queue_manager.enqueue.assert_awaited_once_with("T-1")

    def test_enqueue_unknown_ticket(self, app, client):
        app.state.ticket_repository.get_by_ids.return_value = {}

        response = client.post("/learning-queue/T-404")

        assert response.status_code == 404
        assert response.json()["error_type"] == "ResourceNotFoundException"
        app.state.queue_manager.enqueue.assert_not_awaited()

    def test_enqueue_unresolved_ticket(self, app, client):
        app.state.ticket_repository.get_by_ids.return_value = {
            "T-1": make_ticket("T-1", status=TicketStatus.IN_PROGRESS)
        }

        response = client.post("/learning-queue/T-1")

        assert response.status_code == 422
        assert response.json()["details"]["status"] == TicketStatus.IN_PROGRESS

    def test_missing_service_is_unavailable(self, app, client):
        app.state.queue_manager = None
        assert client.get("/learning-queue/status").status_code == 503


class TestLearningEndpoints:

    def test_batch_process(self, app, client):
        app.state.batch_service.process.return_value = LearningRun(
            id="run-1",
            range_start=NOW - timedelta(days=7),
            range_end=NOW,
            started_at=NOW,
            ticket_count=12,
            patterns_found=3,
            articles_created=3,
            articles_published=3,
            completed_at=NOW,
        )

        response = client.post("/learning/batch-process", json={
            "start": (NOW - timedelta(days=7)).isoformat(),
            "end": NOW.isoformat(),
            "ticketIds": [" T-1 ", "T-1", "T-2"],
        })

        assert response.status_code == 200
        body = response.json()
        assert body["runId"] == "run-1"
        assert (body["patternsFound"], body["articlesCreated"]) == (3, 3)
        start, end, ticket_ids = app.state.batch_service.process.await_args.args
        assert ticket_ids == ["T-1", "T-2"]
        assert end - start == timedelta(days=7)

    def test_batch_range_must_be_ordered(self, app, client):
        response = client.post("/learning/batch-process", json={
            "start": NOW.isoformat(),
            "end": (NOW - timedelta(days=1)).isoformat(),
        })

        assert response.status_code == 422
        app.state.batch_service.process.assert_not_awaited()

    def test_provider_outage_during_batch(self, app, client):
        app.state.batch_service.process.side_effect = ExternalServiceException("LLM Service", "unavailable")

        response = client.post("/learning/batch-process", json={
            "start": (NOW - timedelta(days=1)).isoformat(),
            "end": NOW.isoformat(),
        })

        assert response.status_code == 502

    def test_latest_run_not_found(self, app, client):
        app.state.batch_service.latest_run.return_value = None
        assert client.get("/learning/runs/latest").status_code == 404

    def test_analytics_uses_camel_case(self, app, client):
        app.state.analytics_service.get_analytics.return_value = LearningAnalytics(
            articles_created=42,
            avg_effectiveness=0.81,
            auto_responses_sent=130,
            tickets_resolved_by_ai=97,
            top_categories=[{"category": "authentication", "count": 12}],
            malformed_outputs=1,
        )

        body = client.get("/learning/analytics").json()

        assert body == {
            "articlesCreated": 42,
            "avgEffectiveness": 0.81,
            "autoResponsesSent": 130,
            "ticketsResolvedByAI": 97,
            "topCategories": [{"category": "authentication", "count": 12}],
            "malformedOutputs": 1,
        }

    def test_failures(self, app, client):
        app.state.failure_repository.list_recent.return_value = [SynthesisFailure(
            id="f-1",
            provenance_key="abc",
            ticket_ids=["T-1", "T-2"],
            error_kind=FailureKind.MALFORMED_OUTPUT,
            message="missing category",
            created_at=NOW,
        )]

        response = client.get("/learning/failures", params={"limit": 10})

        assert response.status_code == 200
        assert response.json()[0]["errorKind"] == FailureKind.MALFORMED_OUTPUT
        app.state.failure_repository.list_recent.assert_awaited_once_with(10)

    def test_failures_limit_is_bounded(self, client):
        assert client.get("/learning/failures", params={"limit": 0}).status_code == 422


class TestKnowledgeEndpoints:

    def test_search(self, app, client):
        app.state.retrieval_service.search.return_value = [
            RetrievalResult(article_id=ARTICLE_ID, similarity_score=0.91, rank=1, article=_article())
        ]

        response = client.post("/knowledge/search", json={"query": "sso login fails", "limit": 3})

        assert response.status_code == 200
        [hit] = response.json()
        assert hit["rank"] == 1
        assert hit["similarityScore"] == 0.91
        assert hit["article"]["sourceTicketIds"] == ["T-1", "T-2"]
        assert "embedding" not in hit["article"]
        app.state.retrieval_service.search.assert_awaited_once_with("sso login fails", 3, category=None)

    def test_search_within_category(self, app, client):
        app.state.retrieval_service.search.return_value = []

        response = client.post("/knowledge/search", json={"query": "sso login fails", "category": "authentication"})

        assert response.status_code == 200
        app.state.retrieval_service.search.assert_awaited_once_with("sso login fails", 5, category="authentication")

    def test_score_is_rounded_only_in_the_response(self, app, client):
        app.state.retrieval_service.search.return_value = [
            RetrievalResult(article_id=ARTICLE_ID, similarity_score=0.849961, rank=1, article=_article())
        ]

        [hit] = client.post("/knowledge/search", json={"query": "sso"}).json()

        assert hit["similarityScore"] == 0.85

    @pytest.mark.parametrize("payload", [
        {"query": ""},
        {"query": "   "},
        {"query": "sso", "limit": 0},
        {"query": "sso", "limit": 51},
        {"query": "sso", "category": ""},
    ])
    def test_search_validation(self, client, payload):
        assert client.post("/knowledge/search", json=payload).status_code == 422

    def test_feedback(self, app, client):
        app.state.effectiveness_service.record_feedback.return_value = _article(helpful_votes=1)

        response = client.post(f"/knowledge/{ARTICLE_ID}/feedback", json={"helpful": True})

        assert response.status_code == 200
        assert response.json()["helpfulVotes"] == 1
        app.state.effectiveness_service.record_feedback.assert_awaited_once_with(ARTICLE_ID, True)

    def test_reindex_unknown_article(self, app, client):
        app.state.indexer.reindex.side_effect = ResourceNotFoundException("KnowledgeArticle", ARTICLE_ID)
        assert client.post(f"/knowledge/{ARTICLE_ID}/reindex").status_code == 404

    def test_auto_response_with_article(self, app, client):
        result = RetrievalResult(article_id=ARTICLE_ID, similarity_score=0.9, rank=1, article=_article())
        app.state.auto_response_service.respond.return_value = AutoResponseOutcome(
            band=ConfidenceBand.AUTO, result=result, applied=True
        )

        response = client.post("/triage/auto-response", json={
            "ticketId": "T-9", "title": "SSO broken", "description": "saml assertion rejected"
        })

        body = response.json()
        assert (body["band"], body["applied"], body["similarityScore"]) == ("auto", True, 0.9)
        assert body["article"]["id"] == ARTICLE_ID

    def test_auto_response_none_band_has_no_article(self, app, client):
        app.state.auto_response_service.respond.return_value = AutoResponseOutcome(
            band=ConfidenceBand.NONE, result=None, applied=False
        )

        body = client.post("/triage/auto-response", json={
            "ticketId": "T-9", "title": "Printer jam", "description": "Paper stuck in tray two"
        }).json()

        assert body == {
            "ticketId": "T-9", "band": "none", "article": None, "similarityScore": None, "applied": False
        }


class TestServiceEndpoints:

    def test_health_without_runtime_components(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["checks"]["scheduler"] == "stopped"
        assert body["checks"]["vector_store"] == "not_configured"

    def test_health_reports_vector_store(self, app, client):
        app.state.vector_store = MagicMock(get_document_count=AsyncMock(return_value=12))
        assert client.get("/health").json()["checks"]["vector_store"] == "available (12 documents)"

    def test_root(self, client):
        body = client.get("/").json()
        assert body["modules"]["knowledge"]["prefixes"] == ["/knowledge", "/triage"]

    def test_correlation_id_is_echoed(self, client):
        response = client.get("/", headers={"X-Correlation-ID": "abc-123"})
        assert response.headers["X-Correlation-ID"] == "abc-123"


@pytest.mark.asyncio
async def test_resolved_tickets_become_searchable(services):
    app = create_app(with_lifespan=False)
    attach_services(app, services)
    tickets = cluster_tickets(4)
    await seed_tickets(tickets)

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as api:
        for ticket in tickets:
            response = await api.post(f"/learning-queue/{ticket.id}")
            assert response.status_code == 202

        status = (await api.get("/learning-queue/status")).json()
        assert status["pending"] == 12

        await services.worker.run_once()

        analytics = (await api.get("/learning/analytics")).json()
        assert analytics["articlesCreated"] == 3

        hits = (await api.post(
            "/knowledge/search",
            json={"query": "Recurring authentication issue and its verified resolution"},
        )).json()
        assert [hit["rank"] for hit in hits] == list(range(1, len(hits) + 1))
        [auth_hit] = [hit for hit in hits if hit["article"]["category"] == "authentication"]
        assert auth_hit["article"]["status"] == "published"
        assert sorted(auth_hit["article"]["sourceTicketIds"]) == sorted(
            t.id for t in tickets if t.category == "authentication"
        )
