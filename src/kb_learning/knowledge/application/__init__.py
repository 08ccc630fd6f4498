"""
Knowledge Application Layer
============================

Contains:
- Services: embedding, indexing, retrieval, effectiveness, auto-response
- DTOs: Data transfer objects for API serialization
"""

from kb_learning.knowledge.application.dto import (
    SearchRequest,
    FeedbackRequest,
    AutoResponseRequest,
    ArticleResponse,
    SearchResultResponse,
    AutoResponseResponse,
)
from kb_learning.knowledge.application.services import (
    IKnowledgeArticleRepository,
    IAutoResponseRepository,
    ITicketStatusReader,
    TextEmbedder,
    ArticleIndexer,
    SemanticRetrievalService,
    ScoringRunSummary,
    EffectivenessService,
    AutoResponseOutcome,
    AutoResponseService,
)

__all__ = [
    # DTOs
    "SearchRequest",
    "FeedbackRequest",
    "AutoResponseRequest",
    "ArticleResponse",
    "SearchResultResponse",
    "AutoResponseResponse",
    # Repository Interfaces
    "IKnowledgeArticleRepository",
    "IAutoResponseRepository",
    "ITicketStatusReader",
    # Services
    "TextEmbedder",
    "ArticleIndexer",
    "SemanticRetrievalService",
    "ScoringRunSummary",
    "EffectivenessService",
    "AutoResponseOutcome",
    "AutoResponseService",
]
