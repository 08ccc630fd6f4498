"""
Learning Infrastructure Layer
==============================

Contains:
- Models: SQLAlchemy ORM models
- Repositories: SQLAlchemy repository implementations
- External: policy file watcher, Slack alerts, scheduler
"""

from kb_learning.learning.infrastructure.models import (
    ResolvedTicketModel,
    LearningQueueModel,
    LearningRunModel,
    SynthesisFailureModel,
)
from kb_learning.learning.infrastructure.repositories import (
    SQLAlchemyResolvedTicketRepository,
    SQLAlchemyLearningQueueRepository,
    SQLAlchemyLearningRunRepository,
    SQLAlchemySynthesisFailureRepository,
)
from kb_learning.learning.infrastructure.external import (
    LearningConfigManager,
    CircuitBreaker,
    CircuitState,
    SlackClient,
    LearningScheduler,
)

__all__ = [
    # Models
    "ResolvedTicketModel",
    "LearningQueueModel",
    "LearningRunModel",
    "SynthesisFailureModel",
    # Repositories
    "SQLAlchemyResolvedTicketRepository",
    "SQLAlchemyLearningQueueRepository",
    "SQLAlchemyLearningRunRepository",
    "SQLAlchemySynthesisFailureRepository",
    # External
    "LearningConfigManager",
    "CircuitBreaker",
    "CircuitState",
    "SlackClient",
    "LearningScheduler",
]
