"""
Infrastructure Layer
====================

Adapters for persistence, language models and the vector index.
"""
