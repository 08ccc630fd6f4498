"""
Knowledge Module
=================

Knowledge article store, effectiveness feedback loop, semantic retrieval
and the auto-response confidence gate.
"""
