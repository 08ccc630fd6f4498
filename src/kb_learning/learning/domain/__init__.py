"""
Learning Domain Layer
=====================

Domain layer for the knowledge learning module.

Contains:
- Entities: LearningQueueItem (state machine), ResolvedTicket, Pattern,
  LearningRun, SynthesisFailure
- Value Objects: LearningPolicy, RetryPolicy, GeneratedArticle,
  ArticlePromptBuilder
- Domain Services: PatternExtractor (clustering)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from kb_learning.learning.domain.entities import (
    LearningQueueItem,
    ResolvedTicket,
    Pattern,
    LearningRun,
    SynthesisFailure,
)
from kb_learning.learning.domain.value_objects import (
    compute_provenance_key,
    ClusteringPolicy,
    PublishingPolicy,
    GatePolicy,
    RetrySettings,
    ScoringPolicy,
    LearningPolicy,
    RetryPolicy,
    GeneratedArticle,
    ArticlePromptBuilder,
)
from kb_learning.learning.domain.clustering import PatternExtractor

__all__ = [
    # Entities
    "LearningQueueItem",
    "ResolvedTicket",
    "Pattern",
    "LearningRun",
    "SynthesisFailure",
    # Value Objects
    "compute_provenance_key",
    "ClusteringPolicy",
    "PublishingPolicy",
    "GatePolicy",
    "RetrySettings",
    "ScoringPolicy",
    "LearningPolicy",
    "RetryPolicy",
    "GeneratedArticle",
    "ArticlePromptBuilder",
    # Domain Services
    "PatternExtractor",
]
