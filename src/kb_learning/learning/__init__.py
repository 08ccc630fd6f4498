"""
Learning Module
================

Turns resolved tickets into knowledge articles.

Features:
- Persisted learning queue with atomic claim and retry/backoff
- Batch pattern extraction (category/tag grouping + embedding similarity)
- Article synthesis through the generation service with schema validation
- On-demand batch runs over a date range
- Learning analytics for the admin dashboard
"""
