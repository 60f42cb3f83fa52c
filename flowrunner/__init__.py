"""Workflow orchestration engine with durable, resumable runs."""

__version__ = "1.0.0"
