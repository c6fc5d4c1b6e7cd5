"""Persistence for jobs and iterations."""

from .job_store import JobStore

__all__ = ["JobStore"]
