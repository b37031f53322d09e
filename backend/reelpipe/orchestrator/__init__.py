"""Render pipeline orchestrator.

- catalogue: static ordered step catalogue for a plan version
- state: run/step state constants and transition rules
- steps: per-variant step handlers
- executor: durable, resumable step execution with retry
- service: run lifecycle API and bounded worker pool
"""

__all__ = []
