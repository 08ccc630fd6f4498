"""
Knowledge Domain Layer
======================

Contains:
- Entities: KnowledgeArticle, RetrievalResult, AutoResponseRecord
- Value Objects: UsageSignals, ConfidenceThresholds, GateDecision
- Domain Services: EffectivenessScorer, AutoResponseGate
"""

from kb_learning.knowledge.domain.entities import (
    KnowledgeArticle,
    RetrievalResult,
    AutoResponseRecord,
)
from kb_learning.knowledge.domain.value_objects import (
    UsageSignals,
    EffectivenessScorer,
    ConfidenceThresholds,
    GateDecision,
    AutoResponseGate,
)

__all__ = [
    "KnowledgeArticle",
    "RetrievalResult",
    "AutoResponseRecord",
    "UsageSignals",
    "EffectivenessScorer",
    "ConfidenceThresholds",
    "GateDecision",
    "AutoResponseGate",
]
