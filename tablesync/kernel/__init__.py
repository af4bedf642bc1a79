"""Kernel utilities shared across the scheduler.

Rules:
- Kernel code must not import from scheduling or state modules.
- Kernel utilities should stay small and stable; avoid business logic here.
"""
