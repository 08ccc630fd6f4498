"""Background learning worker."""

import json

import pytest
from unittest.mock import AsyncMock

from kb_learning.config import FailureKind, QueueStatus, TicketStatus
from kb_learning.core import TransientProviderError
from kb_learning.infrastructure.llm import ChatCompletionResult, MockLLMClient
from kb_learning.main import build_services

from conftest import cluster_tickets, make_ticket, seed_tickets


async def _enqueue_all(services, ticket_ids):
    for ticket_id in ticket_ids:
        await services.queue_manager.enqueue(ticket_id)


@pytest.mark.asyncio
async def test_drain_learns_and_completes_everything(services):
    tickets = cluster_tickets(4)
    await seed_tickets(tickets)
    await _enqueue_all(services, [t.id for t in tickets])

    summary = await services.worker.run_once()

    assert summary.claimed == 12
    assert summary.patterns == 3
    assert summary.articles_created == 3
    assert summary.completed == 12
    status = await services.queue_manager.status()
    assert (status.pending, status.processing, status.completed_today) == (0, 0, 12)


@pytest.mark.asyncio
async def test_queued_ticket_joins_recently_resolved_peers(services):
    tickets = cluster_tickets(4)
    await seed_tickets(tickets)
    await services.queue_manager.enqueue("AUTH-1")

    summary = await services.worker.run_once()

    assert summary.claimed == 1
    assert summary.patterns == 1
    assert summary.articles_created == 1
    analytics = await services.analytics_service.get_analytics()
    assert analytics.articles_created == 1


@pytest.mark.asyncio
async def test_lonely_ticket_completes_without_article(services):
    await seed_tickets([make_ticket("T-1")])
    await services.queue_manager.enqueue("T-1")

    summary = await services.worker.run_once()

    assert summary.completed == 1
    assert summary.articles_created == 0


@pytest.mark.asyncio
async def test_missing_and_unresolved_tickets_fail_terminally(services):
    await seed_tickets([make_ticket("T-open", status=TicketStatus.OPEN)])
    await _enqueue_all(services, ["T-open", "T-404"])

    summary = await services.worker.run_once()

    assert summary.failed == 2
    status = await services.queue_manager.status()
    assert status.failed == 2


@pytest.mark.asyncio
async def test_malformed_output_fails_items_and_alerts(database, vector_store, policy, notifier):
    llm = MockLLMClient(dimension=256)
    llm.chat_completion = AsyncMock(return_value=ChatCompletionResult(
        content=json.dumps({"title": "t", "summary": "s", "content": "c", "tags": [], "effectiveness_score": 0.9}),
        model="mock",
    ))
    services = build_services(llm, vector_store, lambda: policy, notifier=notifier)
    tickets = [t for t in cluster_tickets(4) if t.category == "authentication"]
    await seed_tickets(tickets)
    await _enqueue_all(services, [t.id for t in tickets])

    summary = await services.worker.run_once()

    assert summary.failed == 4
    assert summary.articles_created == 0
    status = await services.queue_manager.status()
    assert status.failed == 4
    notifier.send_failure_alert.assert_awaited_once()
    ticket_ids, error_kind, _ = notifier.send_failure_alert.await_args.args
    assert sorted(ticket_ids) == sorted(t.id for t in tickets)
    assert error_kind == FailureKind.MALFORMED_OUTPUT
    analytics = await services.analytics_service.get_analytics()
    assert analytics.articles_created == 0


@pytest.mark.asyncio
async def test_transient_failures_retry_then_fail_with_alert(database, vector_store, policy, notifier):
    llm = MockLLMClient(dimension=256)
    llm.chat_completion = AsyncMock(side_effect=TransientProviderError("provider down"))
    services = build_services(llm, vector_store, lambda: policy, notifier=notifier)
    tickets = [t for t in cluster_tickets(2) if t.category == "billing"]
    await seed_tickets(tickets)
    await _enqueue_all(services, [t.id for t in tickets])

    first = await services.worker.run_once()
    assert first.retried == 2
    notifier.send_failure_alert.assert_not_awaited()
    item = await services.queue_manager._queue.get_active(tickets[0].id)
    assert item.status == QueueStatus.PENDING
    assert item.attempt_count == 1

    for _ in range(policy.retry.queue_retry_limit - 1):
        last = await services.worker.run_once()

    assert last.failed == 2
    status = await services.queue_manager.status()
    assert status.failed == 2
    _, error_kind, _ = notifier.send_failure_alert.await_args.args
    assert error_kind == FailureKind.TRANSIENT_PROVIDER


@pytest.mark.asyncio
async def test_empty_queue_is_a_no_op(services):
    summary = await services.worker.run_once()
    assert summary.claimed == 0


@pytest.mark.asyncio
async def test_similar_tickets_resolved_one_at_a_time_share_one_article(services):
    auth = [t for t in cluster_tickets(4) if t.category == "authentication"]
    await seed_tickets(auth[:2])
    await _enqueue_all(services, [t.id for t in auth[:2]])
    first = await services.worker.run_once()
    assert first.articles_created == 1

    for ticket in auth[2:]:
        await seed_tickets([ticket])
        await services.queue_manager.enqueue(ticket.id)
        summary = await services.worker.run_once()
        assert (summary.articles_created, summary.duplicates, summary.completed) == (0, 1, 1)

    analytics = await services.analytics_service.get_analytics()
    assert analytics.articles_created == 1
    hits = await services.retrieval_service.search("Recurring authentication issue and its verified resolution")
    assert [sorted(h.article.source_ticket_ids) for h in hits] == [sorted(t.id for t in auth[:2])]
