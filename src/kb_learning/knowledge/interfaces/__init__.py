"""
Knowledge Interfaces Layer
===========================

FastAPI route handlers for knowledge search and the auto-response gate.
"""

from kb_learning.knowledge.interfaces.controllers import router as knowledge_router, triage_router

__all__ = ["knowledge_router", "triage_router"]
