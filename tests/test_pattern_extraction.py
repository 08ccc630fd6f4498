"""Batch pattern extraction."""

import random
from datetime import timedelta

import pytest

from kb_learning.infrastructure.llm import MockLLMClient
from kb_learning.knowledge.application import TextEmbedder
from kb_learning.learning.domain import PatternExtractor

from conftest import NOW, cluster_tickets, make_ticket


@pytest.fixture
def extractor():
    return PatternExtractor(TextEmbedder(MockLLMClient(dimension=256)))


@pytest.mark.asyncio
async def test_three_clusters_of_four(extractor):
    patterns = await extractor.extract_patterns(cluster_tickets(4), min_cluster_size=2, similarity_threshold=0.8)

    assert len(patterns) == 3
    assert all(p.size == 4 for p in patterns)
    assert sorted(p.category for p in patterns) == ["authentication", "billing", "network"]
    for pattern in patterns:
        prefixes = {ticket_id.split("-")[0] for ticket_id in pattern.member_ticket_ids}
        assert len(prefixes) == 1


@pytest.mark.asyncio
async def test_single_ticket_yields_no_pattern(extractor):
    patterns = await extractor.extract_patterns([make_ticket("T-1")], min_cluster_size=2)
    assert patterns == []


@pytest.mark.asyncio
async def test_empty_input(extractor):
    assert await extractor.extract_patterns([]) == []


@pytest.mark.asyncio
async def test_result_does_not_depend_on_input_order(extractor):
    tickets = cluster_tickets(4)
    shuffled = list(tickets)
    random.Random(7).shuffle(shuffled)

    first = await extractor.extract_patterns(tickets)
    second = await extractor.extract_patterns(shuffled)

    assert [p.cluster_id for p in first] == [p.cluster_id for p in second]
    assert [p.member_ticket_ids for p in first] == [p.member_ticket_ids for p in second]
    assert [p.representative_text for p in first] == [p.representative_text for p in second]


@pytest.mark.asyncio
async def test_different_tags_are_never_merged(extractor):
    same_text = "Printer on the third floor shows paper jam although the tray is empty"
    tickets = [
        make_ticket("T-1", category="hardware", tags=["printer"], description=same_text),
        make_ticket("T-2", category="hardware", tags=["printer", "urgent"], description=same_text),
        make_ticket("T-3", category="Hardware", tags=["PRINTER"], description=same_text),
    ]

    patterns = await extractor.extract_patterns(tickets, min_cluster_size=2)

    assert len(patterns) == 1
    assert set(patterns[0].member_ticket_ids) == {"T-1", "T-3"}
    assert patterns[0].tags == ["printer"]


@pytest.mark.asyncio
async def test_dissimilar_tickets_in_same_group_stay_apart(extractor):
    tickets = [
        make_ticket("T-1", description="Password reset email never arrives in the inbox", resolution="Whitelist sender"),
        make_ticket("T-2", description="Dashboard charts render blank on safari browsers", resolution="Clear cache"),
    ]
    assert await extractor.extract_patterns(tickets, similarity_threshold=0.8) == []


@pytest.mark.asyncio
async def test_patterns_ordered_by_size_then_age(extractor):
    tickets = cluster_tickets(4)
    # Drop one billing ticket: billing becomes the smallest cluster
    tickets = [t for t in tickets if t.id != "BILL-4"]

    patterns = await extractor.extract_patterns(tickets)

    assert [p.size for p in patterns] == [4, 4, 3]
    assert patterns[-1].category == "billing"
    assert patterns[0].tickets[0].created_at <= patterns[1].tickets[0].created_at


@pytest.mark.asyncio
async def test_cluster_id_anchored_on_earliest_member(extractor):
    text = "Mobile app crashes on launch after the latest update on older android phones"
    tickets = [
        make_ticket("T-9", category="mobile", tags=["android"], description=text, created_at=NOW - timedelta(days=1)),
        make_ticket("T-5", category="mobile", tags=["android"], description=text, created_at=NOW - timedelta(days=5)),
    ]

    [pattern] = await extractor.extract_patterns(tickets)

    assert pattern.cluster_id == "mobile:T-5"
    assert pattern.member_ticket_ids == ["T-5", "T-9"]
