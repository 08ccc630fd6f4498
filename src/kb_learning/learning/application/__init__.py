"""
Learning Application Layer
===========================

Contains:
- Services: queue manager, article synthesizer, analytics
- Pipeline: batch learning runs, run tracker, queue worker
- DTOs: Data transfer objects for API serialization
"""

from kb_learning.learning.application.dto import (
    BatchProcessRequest,
    QueueStatusResponse,
    EnqueueResponse,
    LearningRunResponse,
    CategoryCount,
    LearningAnalyticsResponse,
    SynthesisFailureResponse,
)
from kb_learning.learning.application.services import (
    IResolvedTicketRepository,
    ILearningQueueRepository,
    ILearningRunRepository,
    ISynthesisFailureRepository,
    ILearningAlertNotifier,
    QueueStatusSummary,
    LearningQueueManager,
    SynthesisOutcome,
    SynthesisResult,
    ArticleSynthesizer,
    LearningAnalytics,
    LearningAnalyticsService,
)
from kb_learning.learning.application.pipeline import (
    LearningRunTracker,
    BatchLearningService,
    WorkerSummary,
    LearningWorker,
)

__all__ = [
    # DTOs
    "BatchProcessRequest",
    "QueueStatusResponse",
    "EnqueueResponse",
    "LearningRunResponse",
    "CategoryCount",
    "LearningAnalyticsResponse",
    "SynthesisFailureResponse",
    # Repository Interfaces
    "IResolvedTicketRepository",
    "ILearningQueueRepository",
    "ILearningRunRepository",
    "ISynthesisFailureRepository",
    "ILearningAlertNotifier",
    # Services
    "QueueStatusSummary",
    "LearningQueueManager",
    "SynthesisOutcome",
    "SynthesisResult",
    "ArticleSynthesizer",
    "LearningAnalytics",
    "LearningAnalyticsService",
    "LearningRunTracker",
    "BatchLearningService",
    "WorkerSummary",
    "LearningWorker",
]
