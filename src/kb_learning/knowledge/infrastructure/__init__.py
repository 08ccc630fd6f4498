"""
Knowledge Infrastructure Layer
===============================

Contains:
- Models: SQLAlchemy ORM models
- Repositories: Data access implementations
"""

from kb_learning.knowledge.infrastructure.models import KnowledgeArticleModel, AutoResponseModel
from kb_learning.knowledge.infrastructure.repositories import (
    SQLAlchemyKnowledgeArticleRepository,
    SQLAlchemyAutoResponseRepository,
)

__all__ = [
    # Models
    "KnowledgeArticleModel",
    "AutoResponseModel",
    # Repositories
    "SQLAlchemyKnowledgeArticleRepository",
    "SQLAlchemyAutoResponseRepository",
]
