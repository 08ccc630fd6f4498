"""
Shared Kernel Module
====================

Shared infrastructure used across both bounded contexts (learning and
knowledge).

Architecture Pattern: Modular Monolith
- Each module (learning, knowledge) is a bounded context
- Shared kernel contains only generic infrastructure

DO NOT add business logic from learning or knowledge to the shared kernel.
"""
