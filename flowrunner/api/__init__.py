"""HTTP API for the orchestration engine."""

from .endpoints import router

__all__ = ["router"]
