"""
Learning Interfaces Layer
==========================

FastAPI route handlers for the learning queue, batch runs and analytics.
"""

from kb_learning.learning.interfaces.controllers import queue_router, router as learning_router

__all__ = ["queue_router", "learning_router"]
