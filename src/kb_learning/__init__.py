"""
Knowledge Learning Pipeline
===========================

Learns reusable knowledge articles from resolved support tickets and serves
confidence-scored retrieval for ticket triage.

Bounded contexts:
- learning: learning queue, pattern extraction, article synthesis, batch runs
- knowledge: article store, effectiveness scoring, retrieval, auto-response gate
"""

__version__ = "1.0.0"
