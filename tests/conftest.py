"""
Shared fixtures.

Environment is set before any kb_learning import so the cached settings
pick up the test configuration.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone
from typing import List, Optional

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MOCK_LLM", "true")
os.environ.setdefault("WORKER_ENABLED", "false")
os.environ.setdefault("EMBEDDING_DIMENSION", "256")
os.environ.setdefault(
    "DATABASE_URL",
    "sqlite+aiosqlite:///" + os.path.join(tempfile.gettempdir(), "kb_learning_app.db"),
)
os.environ.setdefault(
    "LEARNING_CONFIG_PATH",
    os.path.join(tempfile.gettempdir(), "kb_learning_no_policy.yaml"),
)

import pytest
import pytest_asyncio
from unittest.mock import AsyncMock

from kb_learning.config import TicketStatus
from kb_learning.infrastructure.database import (
    close_database,
    create_tables,
    get_session_context,
    init_database,
)
from kb_learning.infrastructure.llm import MockLLMClient
from kb_learning.infrastructure.vectorstore import InMemoryVectorStore
from kb_learning.learning.application import ILearningAlertNotifier
from kb_learning.learning.domain import LearningPolicy, ResolvedTicket
from kb_learning.learning.infrastructure.models import ResolvedTicketModel
from kb_learning.main import build_services


NOW = datetime.now(timezone.utc).replace(microsecond=0)


def make_ticket(
    ticket_id: str,
    category: str = "authentication",
    tags: Optional[List[str]] = None,
    description: str = "Users cannot log in",
    resolution: str = "Reset the session",
    status: str = TicketStatus.RESOLVED,
    created_at: Optional[datetime] = None,
    resolved_at: Optional[datetime] = None,
) -> ResolvedTicket:
    created_at = created_at or NOW - timedelta(days=2)
    if resolved_at is None and status in (TicketStatus.RESOLVED, TicketStatus.CLOSED):
        resolved_at = created_at + timedelta(hours=4)
    return ResolvedTicket(
        id=ticket_id,
        external_id=f"EXT-{ticket_id}",
        title=f"Ticket {ticket_id}",
        description=description,
        resolution=resolution,
        category=category,
        tags=list(tags if tags is not None else ["sso"]),
        status=status,
        created_at=created_at,
        resolved_at=resolved_at,
    )


CLUSTER_TEXT = {
    "authentication": (
        ["sso"],
        "Users cannot log in through single sign on because the identity provider "
        "rejects the saml assertion after the signing certificate was rotated",
        "Upload the new identity provider signing certificate to the service provider "
        "settings and ask the user to retry the login",
    ),
    "billing": (
        ["invoice"],
        "Customer was charged twice on the monthly invoice after changing the "
        "subscription plan in the middle of the billing period",
        "Refund the duplicate charge from the payments console and regenerate the "
        "invoice with the prorated amount for the new plan",
    ),
    "network": (
        ["vpn"],
        "Remote employees lose the vpn tunnel every few minutes when the laptop "
        "switches between wireless access points in the office",
        "Enable the persistent tunnel option in the vpn client profile and raise "
        "the dead peer detection timeout on the gateway",
    ),
}


def cluster_tickets(per_cluster: int = 4) -> List[ResolvedTicket]:
    """Three clearly separated clusters of near-identical tickets."""
    tickets = []
    for c_index, (category, (tags, description, resolution)) in enumerate(sorted(CLUSTER_TEXT.items())):
        for n in range(per_cluster):
            tickets.append(make_ticket(
                ticket_id=f"{category[:4].upper()}-{n + 1}",
                category=category,
                tags=tags,
                description=f"{description} case {c_index * 10 + n}",
                resolution=resolution,
                created_at=NOW - timedelta(days=3, minutes=-(c_index * 10 + n)),
            ))
    return tickets


async def seed_tickets(tickets: List[ResolvedTicket]) -> None:
    async with get_session_context() as session:
        for t in tickets:
            session.add(ResolvedTicketModel(
                id=t.id,
                external_id=t.external_id,
                title=t.title,
                description=t.description,
                resolution=t.resolution,
                category=t.category,
                tags=list(t.tags),
                status=t.status,
                created_at=t.created_at,
                updated_at=t.resolved_at or t.created_at,
                resolved_at=t.resolved_at,
                closed_at=t.closed_at,
            ))


@pytest_asyncio.fixture
async def database(tmp_path):
    init_database(f"sqlite+aiosqlite:///{tmp_path / 'kb_learning.db'}")
    await create_tables()
    yield
    await close_database()


@pytest.fixture
def policy() -> LearningPolicy:
    """Default policy without backoff sleeps."""
    return LearningPolicy().merged_with({
        "retry": {"base_delay_seconds": 0, "max_delay_seconds": 0, "jitter": 0},
    })


@pytest.fixture
def llm_client() -> MockLLMClient:
    return MockLLMClient(dimension=256)


@pytest.fixture
def vector_store() -> InMemoryVectorStore:
    return InMemoryVectorStore()


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock(spec=ILearningAlertNotifier)
    mock.send_failure_alert.return_value = True
    return mock


@pytest.fixture
def services(database, llm_client, vector_store, policy, notifier):
    return build_services(llm_client, vector_store, lambda: policy, notifier=notifier)
